"""
Client-side synchronization engine.

Every mutation is applied to local state first and then confirmed or rolled
back per target once the authoritative backend answers. Reads fall back
through the shared cache, the backend and a locally persisted snapshot, and
schedule a later re-fetch whenever they had to settle for a possibly stale
tier.
"""

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from app.core.config import Settings, get_settings
from app.events.bus import EventBus, Subscription
from app.events.schemas import Channels, Event, TodoChange, get_utc_now
from app.sync.backend import TodoBackend
from app.sync.errors import BackendError, ErrorKind, SyncError, classify_error, to_sync_error
from app.sync.local_cache import LocalSnapshotStore
from app.sync.optimistic import MutationKind, OptimisticTransaction, PendingMutation
from app.sync.pool import run_with_concurrency
from app.sync.retry import retry_with_backoff
from app.sync.state import LocalTodoStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ReadTier(str, Enum):
    FAST_CACHE = "fast_cache"
    AUTHORITATIVE = "authoritative"
    CACHE = "cache"
    LOCAL = "local"


@dataclass
class ReadResult:
    todos: list[dict]
    tier: ReadTier


@dataclass
class BulkResult:
    kind: MutationKind
    succeeded: int
    failed: int
    failed_ids: list[str] = field(default_factory=list)
    error: Optional[SyncError] = None

    def summary(self) -> dict:
        label = "deleted" if self.kind is MutationKind.BULK_DELETE else "updated"
        return {label: self.succeeded, "failed": self.failed}


class SyncEngine:
    def __init__(
        self,
        backend: TodoBackend,
        store: Optional[LocalTodoStore] = None,
        local_cache: Optional[LocalSnapshotStore] = None,
        settings: Optional[Settings] = None,
        owner_id: str = "",
    ):
        self.backend = backend
        self.store = store if store is not None else LocalTodoStore()
        self.local_cache = local_cache
        self.settings = settings or get_settings()
        self.owner_id = owner_id

        self._pending: dict[str, PendingMutation] = {}
        self._tasks: set[asyncio.Task] = set()
        self._timers: set[asyncio.TimerHandle] = set()
        self._subscriptions: list[tuple[EventBus, Subscription]] = []

    @property
    def pending(self) -> dict[str, PendingMutation]:
        return dict(self._pending)

    @property
    def pending_refreshes(self) -> int:
        return len(self._timers)

    def on_change(self, listener: Callable[[list[dict]], None]) -> Callable[[], None]:
        return self.store.on_change(listener)

    # Network plumbing

    async def _call(
        self,
        operation: Callable[[], Awaitable[T]],
        timeout: float,
        mutation: Optional[PendingMutation] = None,
    ) -> T:
        async def attempt():
            return await asyncio.wait_for(operation(), timeout)

        def on_retry(count: int, error: BaseException):
            if mutation is not None:
                mutation.attempt = count

        return await retry_with_backoff(
            attempt,
            max_retries=self.settings.sync_max_retries,
            base_delay=self.settings.sync_retry_base_delay,
            max_delay=self.settings.sync_retry_max_delay,
            on_retry=on_retry,
        )

    async def _run(self, tx: OptimisticTransaction, operation, timeout: float):
        try:
            return await self._call(operation, timeout, tx.mutation)
        except asyncio.CancelledError:
            tx.rollback()
            raise
        except Exception as e:
            tx.rollback()
            error = to_sync_error(e)
            logger.warning(
                f"{tx.kind.value} {tx.target_ids} rolled back ({error.kind.value}): {e!r}"
            )
            raise error from e

    def _transaction(self, kind: MutationKind, ids: list[str]) -> OptimisticTransaction:
        return OptimisticTransaction(self.store, kind, ids, pending=self._pending)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _invalidate_in_background(self) -> None:
        async def invalidate():
            try:
                await asyncio.wait_for(
                    self.backend.invalidate_cache(), self.settings.sync_write_timeout
                )
            except Exception as e:
                logger.info(f"Best-effort cache invalidation failed: {e!r}")

        self._spawn(invalidate())

    async def _delete_one(self, todo_id: str) -> None:
        try:
            await self.backend.delete_todo(todo_id)
        except BackendError as e:
            # already gone is what we wanted
            if e.status != 404:
                raise

    # Single mutations

    async def create(self, data: dict) -> dict:
        temp_id = f"temp-{uuid.uuid4().hex}"
        now = get_utc_now().isoformat()
        optimistic = {
            "status": "TODO",
            "priority": "MEDIUM",
            "tags": [],
            **data,
            "id": temp_id,
            "owner_id": self.owner_id,
            "created_at": now,
            "updated_at": now,
        }

        tx = self._transaction(MutationKind.CREATE, [temp_id])
        tx.apply(lambda store: store.insert(0, optimistic))
        record = await self._run(
            tx, lambda: self.backend.create_todo(data), self.settings.sync_write_timeout
        )
        tx.confirm(temp_id, record)
        self._invalidate_in_background()
        return record

    def _check_saved(self, todo_id: str) -> None:
        mutation = self._pending.get(todo_id)
        if mutation is not None and mutation.kind is MutationKind.CREATE:
            raise SyncError(
                ErrorKind.PERMANENT, "This item is still being saved. Try again in a moment.", 409
            )

    async def update(self, todo_id: str, changes: dict) -> dict:
        if todo_id not in self.store:
            raise SyncError(ErrorKind.PERMANENT, "The requested item was not found.", 404)
        self._check_saved(todo_id)

        now = get_utc_now().isoformat()
        tx = self._transaction(MutationKind.UPDATE, [todo_id])
        tx.apply(
            lambda store: store.replace(
                todo_id, {**store.get(todo_id), **changes, "updated_at": now}
            )
        )
        record = await self._run(
            tx,
            lambda: self.backend.update_todo(todo_id, changes),
            self.settings.sync_write_timeout,
        )
        tx.confirm(todo_id, record)
        self._invalidate_in_background()
        return record

    async def delete(self, todo_id: str) -> None:
        self._check_saved(todo_id)
        tx = self._transaction(MutationKind.DELETE, [todo_id])
        tx.apply(lambda store: store.remove(todo_id))
        await self._run(
            tx, lambda: self._delete_one(todo_id), self.settings.sync_delete_timeout
        )
        tx.confirm(todo_id)
        self._invalidate_in_background()

    # Bulk mutations

    async def bulk_update(self, ids: list[str], changes: dict) -> BulkResult:
        now = get_utc_now().isoformat()

        def mutate(store: LocalTodoStore):
            for todo_id in ids:
                current = store.get(todo_id)
                if current is not None:
                    store.replace(todo_id, {**current, **changes, "updated_at": now})

        tx = self._transaction(MutationKind.BULK_UPDATE, ids)
        return await self._run_bulk(
            tx,
            mutate,
            batch=lambda: self.backend.batch_update(tx.target_ids, changes),
            single=lambda todo_id: self.backend.update_todo(todo_id, changes),
            timeout=self.settings.sync_write_timeout,
        )

    async def bulk_delete(self, ids: list[str]) -> BulkResult:
        def mutate(store: LocalTodoStore):
            for todo_id in ids:
                store.remove(todo_id)

        tx = self._transaction(MutationKind.BULK_DELETE, ids)
        return await self._run_bulk(
            tx,
            mutate,
            batch=lambda: self.backend.bulk_delete(tx.target_ids),
            single=self._delete_one,
            timeout=self.settings.sync_delete_timeout,
        )

    async def _run_bulk(
        self,
        tx: OptimisticTransaction,
        mutate: Callable[[LocalTodoStore], None],
        batch: Callable[[], Awaitable],
        single: Callable[[str], Awaitable],
        timeout: float,
    ) -> BulkResult:
        ids = tx.target_ids
        if not ids:
            return BulkResult(tx.kind, 0, 0)

        tx.apply(mutate)
        failures: dict[str, BaseException] = {}

        try:
            outcome = await self._call(batch, timeout, tx.mutation)
        except asyncio.CancelledError:
            tx.rollback()
            raise
        except Exception as e:
            if classify_error(e) is ErrorKind.RATE_LIMITED:
                tx.rollback()
                return BulkResult(tx.kind, 0, len(ids), list(ids), to_sync_error(e))
            logger.warning(f"Batch {tx.kind.value} failed, sending items one by one: {e!r}")
        else:
            for todo_id in outcome.succeeded_ids:
                tx.confirm(todo_id, outcome.records.get(todo_id))
            for todo_id in outcome.failed_ids:
                failures[todo_id] = BackendError(400, "Rejected by the batch request")

        remaining = [todo_id for todo_id in tx.open_ids if todo_id not in failures]
        if remaining:
            logger.info(
                f"Processing {len(remaining)} of {len(ids)} items individually "
                f"(concurrency {self.settings.bulk_concurrency})"
            )

        async def worker(todo_id: str, index: int):
            try:
                result = await self._call(lambda: single(todo_id), timeout, tx.mutation)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                failures[todo_id] = e
                return
            tx.confirm(todo_id, result if isinstance(result, dict) else None)

        try:
            await run_with_concurrency(remaining, worker, self.settings.bulk_concurrency)
        except asyncio.CancelledError:
            tx.rollback()
            raise

        failed_ids = [todo_id for todo_id in ids if todo_id in failures]
        tx.rollback(failed_ids)

        error = None
        if failed_ids:
            error = to_sync_error(failures[failed_ids[0]])
            logger.warning(
                f"{tx.kind.value}: {len(ids) - len(failed_ids)} succeeded, "
                f"{len(failed_ids)} failed and were rolled back"
            )
        if len(failed_ids) < len(ids):
            self._invalidate_in_background()

        return BulkResult(tx.kind, len(ids) - len(failed_ids), len(failed_ids), failed_ids, error)

    # Reads

    async def read(self) -> ReadResult:
        """
        Tiered read of the owner's collection.

        1. fast cached read; non-empty data is used and refreshed right away
        2. authoritative read with retries; persisted as the local snapshot
        3. cached read with a longer deadline, re-fetched later
        4. local snapshot, re-fetched later

        Raises the classified error of the authoritative read when every
        tier fails.
        """
        settings = self.settings

        try:
            cached = await asyncio.wait_for(
                self.backend.fetch_todos(use_cache=True), settings.sync_fast_read_timeout
            )
        except Exception as e:
            logger.debug(f"Fast cached read unavailable: {e!r}")
        else:
            if cached:
                self._merge(cached)
                self._spawn(self.refresh())
                return ReadResult(self.store.all(), ReadTier.FAST_CACHE)

        try:
            todos = await self._call(self._fetch_authoritative, settings.sync_read_timeout)
        except Exception as e:
            primary_error = e
            logger.warning(f"Authoritative read failed, trying fallbacks: {e!r}")
        else:
            self._merge(todos)
            self._save_snapshot(todos)
            return ReadResult(self.store.all(), ReadTier.AUTHORITATIVE)

        try:
            cached = await asyncio.wait_for(
                self.backend.fetch_todos(use_cache=True), settings.sync_cache_read_timeout
            )
        except Exception as e:
            logger.warning(f"Cached read failed: {e!r}")
        else:
            self._merge(cached)
            self._schedule_refresh(settings.sync_cache_refresh_delay)
            return ReadResult(self.store.all(), ReadTier.CACHE)

        snapshot = self.local_cache.load(self.owner_id) if self.local_cache else None
        if snapshot is not None:
            logger.warning(f"Serving {len(snapshot)} todos from the local snapshot")
            self._merge(snapshot)
            self._schedule_refresh(settings.sync_local_refresh_delay)
            return ReadResult(self.store.all(), ReadTier.LOCAL)

        raise to_sync_error(primary_error) from primary_error

    async def refresh(self) -> Optional[list[dict]]:
        """Authoritative re-fetch. Failures are logged, never raised."""
        try:
            todos = await self._call(self._fetch_authoritative, self.settings.sync_read_timeout)
        except Exception as e:
            logger.warning(f"Background refresh failed: {e!r}")
            return None
        self._merge(todos)
        self._save_snapshot(todos)
        return self.store.all()

    def _fetch_authoritative(self):
        return self.backend.fetch_todos(use_cache=False, refresh=True)

    def _save_snapshot(self, todos: list[dict]) -> None:
        if self.local_cache is not None:
            self.local_cache.save(self.owner_id, todos)

    def _merge(self, todos: list[dict]) -> None:
        """Adopt ``todos`` as local state, keeping pending targets as they are locally."""
        local = {todo["id"]: todo for todo in self.store.all()}
        merged, seen = [], set()

        for todo in todos:
            todo_id = todo.get("id")
            if todo_id is None or todo_id in seen:
                continue
            seen.add(todo_id)
            if todo_id in self._pending:
                # pending deletes stay gone, pending updates stay optimistic
                if todo_id in local:
                    merged.append(local[todo_id])
                continue
            merged.append(todo)

        unconfirmed = [
            todo for todo in local.values() if todo["id"] in self._pending and todo["id"] not in seen
        ]
        self.store.replace_all(unconfirmed + merged)
        self.store.notify()

    def _schedule_refresh(self, delay: float) -> None:
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()

        def fire():
            self._timers.discard(handle)
            self._spawn(self.refresh())

        handle = asyncio.get_running_loop().call_later(delay, fire)
        self._timers.add(handle)

    # Events from other sessions

    async def attach(self, bus: EventBus, owner_id: Optional[str] = None) -> Subscription:
        subscription = await bus.subscribe_pattern(
            Channels.todo_pattern(owner_id or self.owner_id), self._on_event
        )
        self._subscriptions.append((bus, subscription))
        return subscription

    def _on_event(self, event: Event) -> None:
        change = event.payload
        if not isinstance(change, TodoChange):
            return

        todo_id = change.todo_id
        if todo_id in self._pending:
            logger.debug(f"Ignoring {change.kind} event for pending todo {todo_id}")
            return

        if change.kind == "deleted":
            if self.store.remove(todo_id) is None:
                return
        else:
            self.store.upsert(change.todo)
        self.store.notify()

    async def close(self) -> None:
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()

        for bus, subscription in self._subscriptions:
            await bus.unsubscribe(subscription)
        self._subscriptions.clear()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
