"""Pytest fixtures for the todo sync tests."""
import asyncio
from typing import Optional

import pytest

from app.cache.clients import InMemoryCacheClient
from app.cache.layer import KeyValueCache
from app.core.config import Settings
from app.events.bus import EventBus
from app.sync.backend import BatchOutcome, TodoBackend
from app.sync.engine import SyncEngine
from app.sync.errors import BackendError
from app.sync.local_cache import LocalSnapshotStore
from app.sync.state import LocalTodoStore


class FakeClock:
    """Manually advanced clock usable as a cache timer."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_todo(todo_id: str, owner_id: str = "user-1", **fields) -> dict:
    return {
        "id": todo_id,
        "owner_id": owner_id,
        "title": f"Todo {todo_id}",
        "description": None,
        "status": "TODO",
        "priority": "MEDIUM",
        "category": None,
        "tags": [],
        "due_date": None,
        "created_at": "2024-01-01T00:00:00+00:00",
        "updated_at": "2024-01-01T00:00:00+00:00",
        **fields,
    }


class FakeBackend(TodoBackend):
    """
    Scriptable in-memory authoritative backend.

    ``errors[op]`` is a list of exceptions raised by successive calls of
    ``op`` (one per call, consumed in order). ``failing_ids`` always fail on
    single-item calls. ``delay`` makes every call sleep first, which lets
    tests trip deadlines and observe concurrency.
    """

    def __init__(self, todos: Optional[list[dict]] = None, cached: Optional[list[dict]] = None):
        self.todos = {t["id"]: dict(t) for t in todos or []}
        self.cached = cached
        self.errors: dict[str, list[Exception]] = {}
        self.failing_ids: set[str] = set()
        self.delay = 0.0
        self.calls: list[tuple] = []
        self.batch_outcome: Optional[BatchOutcome] = None
        self.in_flight = 0
        self.max_in_flight = 0
        self.gate: Optional[asyncio.Event] = None
        self._next_id = 1

    def fail(self, op: str, *errors: Exception) -> None:
        self.errors.setdefault(op, []).extend(errors)

    async def _enter(self, op: str, *args):
        self.calls.append((op, *args))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.gate is not None:
                await self.gate.wait()
        finally:
            self.in_flight -= 1
        queued = self.errors.get(op)
        if queued:
            raise queued.pop(0)

    def count(self, op: str) -> int:
        return sum(1 for call in self.calls if call[0] == op)

    async def fetch_todos(self, use_cache: bool = True, refresh: bool = False) -> list[dict]:
        if use_cache and not refresh:
            await self._enter("fetch_cache")
            if self.cached is None:
                raise BackendError(503, "cache unavailable")
            return [dict(t) for t in self.cached]
        await self._enter("fetch_live")
        return [dict(t) for t in self.todos.values()]

    async def create_todo(self, data: dict) -> dict:
        await self._enter("create", data)
        todo = make_todo(f"real-{self._next_id}", **data)
        self._next_id += 1
        self.todos[todo["id"]] = todo
        return dict(todo)

    async def update_todo(self, todo_id: str, changes: dict) -> dict:
        await self._enter("update", todo_id)
        if todo_id in self.failing_ids:
            raise BackendError(400, "rejected")
        if todo_id not in self.todos:
            raise BackendError(404, "not found")
        self.todos[todo_id].update(changes)
        return dict(self.todos[todo_id])

    async def delete_todo(self, todo_id: str) -> None:
        await self._enter("delete", todo_id)
        if todo_id in self.failing_ids:
            raise BackendError(400, "rejected")
        if todo_id not in self.todos:
            raise BackendError(404, "not found")
        del self.todos[todo_id]

    async def batch_update(self, ids: list[str], changes: dict) -> BatchOutcome:
        await self._enter("batch_update", list(ids))
        if self.batch_outcome is not None:
            return self.batch_outcome
        return BatchOutcome()

    async def bulk_delete(self, ids: list[str]) -> BatchOutcome:
        await self._enter("bulk_delete", list(ids))
        if self.batch_outcome is None:
            return BatchOutcome()
        for todo_id in self.batch_outcome.succeeded_ids:
            self.todos.pop(todo_id, None)
        return self.batch_outcome

    async def invalidate_cache(self) -> None:
        self.calls.append(("invalidate",))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    """Settings with no backoff waits and short deadlines."""
    return Settings(
        redis_enabled=False,
        sync_retry_base_delay=0.0,
        sync_retry_max_delay=0.0,
        sync_fast_read_timeout=0.2,
        sync_read_timeout=0.5,
        sync_cache_read_timeout=0.2,
        sync_write_timeout=0.5,
        sync_delete_timeout=0.5,
        sync_cache_refresh_delay=0.05,
        sync_local_refresh_delay=0.05,
        bulk_concurrency=4,
    )


@pytest.fixture
def memory_client(clock: FakeClock) -> InMemoryCacheClient:
    return InMemoryCacheClient(maxsize=1_000, timer=clock)


@pytest.fixture
def cache(memory_client: InMemoryCacheClient, settings: Settings) -> KeyValueCache:
    return KeyValueCache(memory_client, settings)


@pytest.fixture
async def bus() -> EventBus:
    event_bus = EventBus()
    yield event_bus
    await event_bus.close()


@pytest.fixture
def todos() -> list[dict]:
    return [make_todo(f"t{i}") for i in range(1, 11)]


@pytest.fixture
def backend(todos: list[dict]) -> FakeBackend:
    return FakeBackend(todos)


@pytest.fixture
async def engine(backend: FakeBackend, todos: list[dict], settings: Settings) -> SyncEngine:
    sync_engine = SyncEngine(
        backend,
        LocalTodoStore(todos),
        local_cache=LocalSnapshotStore(),
        settings=settings,
        owner_id="user-1",
    )
    yield sync_engine
    await sync_engine.close()
