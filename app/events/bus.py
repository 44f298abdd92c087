"""
Channel-based publish/subscribe for domain events.

Delivery is at-most-once and nothing is persisted: a subscriber that
connects after a publish never sees that event. Without a Redis client the
bus dispatches in-process; with one, events travel over Redis pub/sub and a
single listener task fans them out to local handlers.
"""

import asyncio
import contextlib
import functools
import inspect
import itertools
import logging
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Any, Callable, Optional

from pydantic import BaseModel, ValidationError
from redis.asyncio import Redis

from app.cache.clients import TRANSPORT_ERRORS
from app.events.schemas import ActivityPing, Channels, Event, Notification, TodoChange

logger = logging.getLogger(__name__)

Handler = Callable[[Event], Any]


@dataclass(frozen=True)
class Subscription:
    id: int
    target: str
    is_pattern: bool = False


class EventBus:
    def __init__(self, redis: Optional[Redis] = None, poll_timeout: float = 1.0):
        self._redis = redis
        self._poll_timeout = poll_timeout
        self._handlers: dict[Subscription, Handler] = {}
        self._ids = itertools.count(1)
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None
        self._deliveries: set[asyncio.Future] = set()

    @property
    def is_distributed(self) -> bool:
        return self._redis is not None

    async def publish(self, channel: str, payload: BaseModel | dict) -> int:
        """
        Fire-and-forget publish. Returns how many receivers got the event.

        Never waits on handler work: coroutine handlers run as their own
        tasks, see ``drain``.
        """
        event = Event(channel=channel, payload=payload)

        if self._redis is None:
            return await self._dispatch(event, self._matching(channel))

        try:
            return await self._redis.publish(channel, event.model_dump_json())
        except TRANSPORT_ERRORS as e:
            logger.error(f"Publish to {channel} failed: {e}")
            return 0

    async def subscribe(self, channel: str, handler: Handler) -> Subscription:
        return await self._add(channel, handler, is_pattern=False)

    async def subscribe_pattern(self, pattern: str, handler: Handler) -> Subscription:
        return await self._add(pattern, handler, is_pattern=True)

    async def unsubscribe(self, subscription: Subscription) -> None:
        if self._handlers.pop(subscription, None) is None:
            return
        if self._redis is None or self._pubsub is None:
            return
        if self._has_target(subscription.target, subscription.is_pattern):
            return
        try:
            if subscription.is_pattern:
                await self._pubsub.punsubscribe(subscription.target)
            else:
                await self._pubsub.unsubscribe(subscription.target)
        except TRANSPORT_ERRORS as e:
            logger.error(f"Unsubscribe from {subscription.target} failed: {e}")

    async def publish_todo_event(self, kind: str, todo: dict, owner_id: str) -> int:
        change = TodoChange(kind=kind, owner_id=owner_id, todo=todo)
        return await self.publish(Channels.for_todo_change(kind, owner_id), change)

    async def publish_user_activity(
        self, owner_id: str, action: str, metadata: Optional[dict] = None
    ) -> int:
        ping = ActivityPing(owner_id=owner_id, action=action, metadata=metadata or {})
        return await self.publish(Channels.user_activity(owner_id), ping)

    async def publish_notification(self, message: str, level: str = "info") -> int:
        return await self.publish(
            Channels.GLOBAL_NOTIFICATIONS, Notification(message=message, level=level)
        )

    async def close(self) -> None:
        if self._listener:
            self._listener.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listener
            self._listener = None
        for task in list(self._deliveries):
            task.cancel()
        await asyncio.gather(*list(self._deliveries), return_exceptions=True)
        self._deliveries.clear()
        if self._pubsub is not None:
            try:
                await self._pubsub.aclose()
            except TRANSPORT_ERRORS as e:
                logger.error(f"Error closing pub/sub connection: {e}")
            self._pubsub = None
        self._handlers.clear()

    def _has_target(self, target: str, is_pattern: bool) -> bool:
        return any(
            sub.target == target and sub.is_pattern == is_pattern for sub in self._handlers
        )

    async def _add(self, target: str, handler: Handler, is_pattern: bool) -> Subscription:
        subscription = Subscription(next(self._ids), target, is_pattern)
        first = not self._has_target(target, is_pattern)
        self._handlers[subscription] = handler

        if self._redis is not None and first:
            try:
                if self._pubsub is None:
                    self._pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
                if is_pattern:
                    await self._pubsub.psubscribe(target)
                else:
                    await self._pubsub.subscribe(target)
                # the connection only exists once something is subscribed
                if self._listener is None or self._listener.done():
                    self._listener = asyncio.create_task(self._listen())
            except TRANSPORT_ERRORS as e:
                logger.error(f"Subscribe to {target} failed: {e}")

        return subscription

    def _matching(self, channel: str) -> list[tuple[Subscription, Handler]]:
        matches = []
        for subscription, handler in list(self._handlers.items()):
            if subscription.is_pattern:
                if fnmatchcase(channel, subscription.target):
                    matches.append((subscription, handler))
            elif subscription.target == channel:
                matches.append((subscription, handler))
        return matches

    async def _dispatch(self, event: Event, targets: list[tuple[Subscription, Handler]]) -> int:
        """
        Hand ``event`` to each target without waiting on their work.

        Plain handlers run inline. Coroutine handlers are scheduled as tasks
        and their outcome is logged when they finish.
        """
        delivered = 0
        for subscription, handler in targets:
            try:
                result = handler(event)
            except Exception:
                logger.exception(
                    f"Event handler for {subscription.target} failed on {event.channel}"
                )
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._deliveries.add(task)
                task.add_done_callback(
                    functools.partial(self._delivery_done, subscription.target, event.channel)
                )
            delivered += 1
        return delivered

    def _delivery_done(self, target: str, channel: str, task: asyncio.Future) -> None:
        self._deliveries.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                f"Event handler for {target} failed on {channel}",
                exc_info=(type(error), error, error.__traceback__),
            )

    async def drain(self) -> None:
        """Wait until every scheduled handler has finished."""
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    async def _handle_message(self, message: dict) -> None:
        if message.get("type") not in ("message", "pmessage"):
            return
        try:
            event = Event.model_validate_json(message["data"])
        except ValidationError as e:
            logger.warning(f"Dropping malformed event on {message.get('channel')}: {e}")
            return

        if message["type"] == "pmessage":
            pattern = message["pattern"]
            targets = [
                (sub, handler)
                for sub, handler in list(self._handlers.items())
                if sub.is_pattern and sub.target == pattern
            ]
        else:
            channel = message["channel"]
            targets = [
                (sub, handler)
                for sub, handler in list(self._handlers.items())
                if not sub.is_pattern and sub.target == channel
            ]
        await self._dispatch(event, targets)

    async def _listen(self) -> None:
        while True:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self._poll_timeout
                )
            except TRANSPORT_ERRORS as e:
                logger.error(f"Pub/sub listener error: {e}")
                await asyncio.sleep(self._poll_timeout)
                continue
            if message is not None:
                await self._handle_message(message)
