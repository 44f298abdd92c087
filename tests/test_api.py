"""API tests: write path side effects, per-id bulk results and rate limiting."""
import asyncio

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.pool import StaticPool

from app.cache.keys import CacheKeys
from app.cache.rate_limit import RateLimiter
from app.database import build_engine, create_db_and_tables, get_db, make_session_factory
from app.events.bus import EventBus
from app.events.schemas import Channels
from app.main import app
from app.sync.backend import HttpTodoBackend
from app.sync.engine import SyncEngine
from app.sync.state import LocalTodoStore


@pytest.fixture
async def db_engine():
    engine = build_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def api(db_engine, cache):
    """The FastAPI app wired to in-memory collaborators."""
    session_factory = make_session_factory(db_engine)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.cache = cache
    app.state.events = EventBus()
    app.state.rate_limiter = RateLimiter(cache)
    yield app
    app.dependency_overrides.clear()
    await app.state.events.close()


@pytest.fixture
async def client(api) -> AsyncClient:
    transport = ASGITransport(app=api)
    async with AsyncClient(
        transport=transport, base_url="http://test", headers={"X-User-Id": "user-1"}
    ) as client:
        yield client


async def create(client: AsyncClient, title: str, owner: str = "user-1") -> dict:
    response = await client.post("/todos", json={"title": title}, headers={"X-User-Id": owner})
    assert response.status_code == 201
    return response.json()


class TestWritePath:

    @pytest.mark.asyncio
    async def test_create_invalidates_cache_and_publishes(self, client, api, cache):
        events = []
        await api.state.events.subscribe_pattern(Channels.todo_pattern("user-1"), events.append)
        await cache.set_todos("user-1", [])

        response = await client.post(
            "/todos", json={"title": "Write tests", "priority": "HIGH", "tags": ["dev"]}
        )

        assert response.status_code == 201
        body = response.json()
        assert body["owner_id"] == "user-1"
        assert body["priority"] == "HIGH"
        assert body["status"] == "TODO"
        assert not await cache.exists(CacheKeys.user_todos("user-1"))
        assert [e.payload.kind for e in events] == ["created"]
        assert events[0].payload.todo_id == body["id"]
        assert await cache.is_user_active("user-1")

    @pytest.mark.asyncio
    async def test_slow_subscriber_does_not_delay_writes(self, client, api):
        async def slow(event):
            await asyncio.sleep(5)

        await api.state.events.subscribe_pattern(Channels.todo_pattern("user-1"), slow)

        response = await asyncio.wait_for(client.post("/todos", json={"title": "Quick"}), 1.0)

        assert response.status_code == 201

    @pytest.mark.asyncio
    async def test_update_and_delete(self, client, api):
        todo = await create(client, "Plan")
        events = []
        await api.state.events.subscribe_pattern(Channels.todo_pattern("user-1"), events.append)

        response = await client.put(f"/todos/{todo['id']}", json={"status": "DONE"})
        assert response.status_code == 200
        assert response.json()["status"] == "DONE"

        response = await client.delete(f"/todos/{todo['id']}")
        assert response.status_code == 204

        response = await client.delete(f"/todos/{todo['id']}")
        assert response.status_code == 404
        assert [e.payload.kind for e in events] == ["updated", "deleted"]

    @pytest.mark.asyncio
    async def test_other_owner_cannot_touch_todo(self, client):
        todo = await create(client, "Private")
        intruder = {"X-User-Id": "user-2"}

        assert (await client.get(f"/todos/{todo['id']}", headers=intruder)).status_code == 404
        assert (
            await client.put(f"/todos/{todo['id']}", json={"title": "x"}, headers=intruder)
        ).status_code == 404
        assert (await client.delete(f"/todos/{todo['id']}", headers=intruder)).status_code == 404

    @pytest.mark.asyncio
    async def test_missing_owner_header_is_rejected(self, api):
        async with AsyncClient(transport=ASGITransport(app=api), base_url="http://test") as c:
            response = await c.get("/todos/user")
        assert response.status_code == 422


class TestReads:

    @pytest.mark.asyncio
    async def test_collection_is_served_from_cache_after_first_read(self, client):
        await create(client, "One")
        await create(client, "Two")

        first = await client.get("/todos/user")
        second = await client.get("/todos/user")

        assert first.headers["X-Cache-Status"] == "miss"
        assert second.headers["X-Cache-Status"] == "hit"
        assert {t["title"] for t in second.json()} == {"One", "Two"}

    @pytest.mark.asyncio
    async def test_cache_bypass_flags(self, client):
        await create(client, "One")
        await client.get("/todos/user")

        refreshed = await client.get("/todos/user", params={"refresh": "true"})
        uncached = await client.get("/todos/user", params={"cache": "false"})

        assert refreshed.headers["X-Cache-Status"] == "miss"
        assert uncached.headers["X-Cache-Status"] == "miss"

    @pytest.mark.asyncio
    async def test_single_todo_is_read_through(self, client, cache):
        todo = await create(client, "Cached")

        response = await client.get(f"/todos/{todo['id']}")

        assert response.status_code == 200
        assert await cache.exists(CacheKeys.todo_item(todo["id"]))

    @pytest.mark.asyncio
    async def test_owners_only_see_their_todos(self, client):
        await create(client, "Mine")
        await create(client, "Theirs", owner="user-2")

        response = await client.get("/todos/user")

        assert [t["title"] for t in response.json()] == ["Mine"]


class TestBulk:

    @pytest.mark.asyncio
    async def test_batch_update_reports_per_id(self, client):
        a = await create(client, "A")
        b = await create(client, "B")
        foreign = await create(client, "C", owner="user-2")

        response = await client.post(
            "/todos/batch-update",
            json={"ids": [a["id"], b["id"], foreign["id"], "missing"], "data": {"status": "DONE"}},
        )

        body = response.json()
        assert response.status_code == 200
        assert body["count"] == 2
        assert {t["id"] for t in body["updated"]} == {a["id"], b["id"]}
        assert all(t["status"] == "DONE" for t in body["updated"])
        assert body["failed"] == [foreign["id"], "missing"]

    @pytest.mark.asyncio
    async def test_bulk_delete_reports_per_id(self, client):
        a = await create(client, "A")
        foreign = await create(client, "C", owner="user-2")

        response = await client.post(
            "/todos/bulk-delete", json={"ids": [a["id"], foreign["id"], "gone"]}
        )

        body = response.json()
        assert body["deleted"] == 2
        assert body["failed"] == 1
        assert body["results"] == [
            {"id": a["id"], "ok": True},
            {"id": foreign["id"], "ok": False},
            {"id": "gone", "ok": True},
        ]
        remaining = await client.get("/todos/user", headers={"X-User-Id": "user-2"})
        assert [t["id"] for t in remaining.json()] == [foreign["id"]]

    @pytest.mark.asyncio
    async def test_empty_id_list_is_invalid(self, client):
        response = await client.post("/todos/bulk-delete", json={"ids": []})
        assert response.status_code == 422


class TestRateLimitAndCacheRoutes:

    @pytest.mark.asyncio
    async def test_create_is_rate_limited(self, client, api):
        for _ in range(100):
            await api.state.rate_limiter.check_and_increment("create_todos:user-1")

        response = await client.post("/todos", json={"title": "one too many"})

        assert response.status_code == 429
        assert response.headers["X-RateLimit-Remaining"] == "0"
        # other owners are unaffected
        await create(client, "fine", owner="user-2")

    @pytest.mark.asyncio
    async def test_clear_user_cache(self, client, cache):
        await cache.set_todos("user-1", [])

        response = await client.delete("/cache", params={"type": "user"})

        assert response.json() == {"clearedKeys": 1, "type": "user"}
        assert not await cache.exists(CacheKeys.user_todos("user-1"))

    @pytest.mark.asyncio
    async def test_clear_search_cache(self, client, cache):
        await cache.set("search:user-1:milk", [1])
        await cache.set("search:user-1:eggs", [2])
        await cache.set("search:user-2:milk", [3])

        response = await client.delete("/cache", params={"type": "search"})

        assert response.json() == {"clearedKeys": 2, "type": "search"}
        assert await cache.exists("search:user-2:milk")

    @pytest.mark.asyncio
    async def test_cache_status_and_health(self, client):
        status = (await client.get("/cache")).json()
        assert status["health"]["status"] == "healthy"
        assert status["keys"] == {"todos": False, "stats": False}

        assert (await client.get("/health")).json() == {"status": "healthy"}


class TestEngineAgainstApi:

    @pytest.mark.asyncio
    async def test_sync_engine_round_trip(self, api, settings):
        http = AsyncClient(transport=ASGITransport(app=api), base_url="http://test")
        backend = HttpTodoBackend("http://test", "user-1", client=http)
        engine = SyncEngine(backend, settings=settings, owner_id="user-1")
        await engine.attach(api.state.events)

        created = await engine.create({"title": "From the engine"})
        second = await engine.create({"title": "Second"})
        assert engine.store.ids() == [second["id"], created["id"]]

        await engine.update(created["id"], {"status": "IN_PROGRESS"})
        result = await engine.bulk_delete([second["id"]])
        assert result.summary() == {"deleted": 1, "failed": 0}

        read = await engine.read()
        assert [t["id"] for t in read.todos] == [created["id"]]
        assert read.todos[0]["status"] == "IN_PROGRESS"

        await engine.close()
        await http.aclose()

    @pytest.mark.asyncio
    async def test_rejected_bulk_delete_ids_stay_failed(self, api, client, settings):
        mine = await create(client, "Mine")
        theirs = await create(client, "Theirs", owner="user-2")
        http = AsyncClient(transport=ASGITransport(app=api), base_url="http://test")
        backend = HttpTodoBackend("http://test", "user-1", client=http)
        engine = SyncEngine(
            backend, LocalTodoStore([mine, theirs]), settings=settings, owner_id="user-1"
        )

        result = await engine.bulk_delete([mine["id"], theirs["id"]])

        assert result.summary() == {"deleted": 1, "failed": 1}
        assert result.failed_ids == [theirs["id"]]
        assert engine.store.ids() == [theirs["id"]]
        remaining = await client.get("/todos/user", headers={"X-User-Id": "user-2"})
        assert [t["id"] for t in remaining.json()] == [theirs["id"]]

        await engine.close()
        await http.aclose()
