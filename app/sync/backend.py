"""
Authoritative backend consumed by the sync engine.

``TodoBackend`` is the capability the engine depends on; ``HttpTodoBackend``
talks to the FastAPI service in ``app.routers`` over httpx. Non-2xx replies
are raised as ``BackendError`` carrying the status so the engine can
classify them.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from app.sync.errors import BackendError

logger = logging.getLogger(__name__)


@dataclass
class BatchOutcome:
    """Per-id result of a batch call. Ids in neither list were not confirmed."""

    succeeded_ids: list[str] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)
    records: dict[str, dict] = field(default_factory=dict)


class TodoBackend(ABC):
    @abstractmethod
    async def fetch_todos(self, use_cache: bool = True, refresh: bool = False) -> list[dict]:
        ...

    @abstractmethod
    async def create_todo(self, data: dict) -> dict:
        ...

    @abstractmethod
    async def update_todo(self, todo_id: str, changes: dict) -> dict:
        ...

    @abstractmethod
    async def delete_todo(self, todo_id: str) -> None:
        ...

    @abstractmethod
    async def batch_update(self, ids: list[str], changes: dict) -> BatchOutcome:
        ...

    @abstractmethod
    async def bulk_delete(self, ids: list[str]) -> BatchOutcome:
        ...

    async def invalidate_cache(self) -> None:
        return None


def _outcome_from_count(ids: list[str], count: int) -> BatchOutcome:
    # a bare count cannot say which ids succeeded unless it covers all of them
    if count == len(ids):
        return BatchOutcome(succeeded_ids=list(ids))
    return BatchOutcome()


class HttpTodoBackend(TodoBackend):
    def __init__(
        self,
        base_url: str,
        owner_id: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.owner_id = owner_id
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self._timeout)
        return self._client

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = {"X-User-Id": self.owner_id, **kwargs.pop("headers", {})}
        response = await self._get_client().request(method, path, headers=headers, **kwargs)
        if response.is_success:
            return response

        try:
            body = response.json()
        except ValueError:
            body = None
        detail = body.get("detail", response.text) if isinstance(body, dict) else response.text
        logger.info(f"{method} {path} returned {response.status_code}: {detail}")
        raise BackendError(response.status_code, str(detail))

    async def fetch_todos(self, use_cache: bool = True, refresh: bool = False) -> list[dict]:
        params = {"cache": str(use_cache).lower()}
        if refresh:
            params["refresh"] = "true"
        response = await self._request("GET", "/todos/user", params=params)
        data = response.json()
        if not isinstance(data, list):
            raise BackendError(response.status_code, "Malformed collection payload")
        return data

    async def create_todo(self, data: dict) -> dict:
        response = await self._request("POST", "/todos", json=data)
        return response.json()

    async def update_todo(self, todo_id: str, changes: dict) -> dict:
        response = await self._request("PUT", f"/todos/{todo_id}", json=changes)
        return response.json()

    async def delete_todo(self, todo_id: str) -> None:
        await self._request("DELETE", f"/todos/{todo_id}")

    async def batch_update(self, ids: list[str], changes: dict) -> BatchOutcome:
        response = await self._request(
            "POST", "/todos/batch-update", json={"ids": ids, "data": changes}
        )
        body: dict[str, Any] = response.json()
        if "updated" not in body:
            return _outcome_from_count(ids, int(body.get("count", 0)))

        records = {record["id"]: record for record in body["updated"]}
        return BatchOutcome(
            succeeded_ids=[i for i in ids if i in records],
            failed_ids=[i for i in ids if i in set(body.get("failed", []))],
            records=records,
        )

    async def bulk_delete(self, ids: list[str]) -> BatchOutcome:
        response = await self._request("POST", "/todos/bulk-delete", json={"ids": ids})
        body: dict[str, Any] = response.json()
        if "results" not in body:
            return _outcome_from_count(ids, int(body.get("deleted", 0)))

        outcome = {r["id"]: r["ok"] for r in body["results"]}
        return BatchOutcome(
            succeeded_ids=[i for i in ids if outcome.get(i) is True],
            failed_ids=[i for i in ids if outcome.get(i) is False],
        )

    async def invalidate_cache(self) -> None:
        await self._request("DELETE", "/cache", params={"type": "user"})

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
