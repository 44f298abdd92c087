import logging

from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.cache.decorators import invalidates_owner, read_through
from app.cache.keys import TODO_ITEM_TTL, CacheKeys
from app.cache.layer import KeyValueCache
from app.events.bus import EventBus
from app.models import (
    BatchUpdateResponse,
    BulkDeleteResponse,
    DeleteOutcome,
    Todo,
    TodoCreate,
    TodoResponse,
    TodoUpdate,
    get_utc_now,
)

logger = logging.getLogger(__name__)


def serialize_todo(todo: Todo) -> dict:
    return TodoResponse.model_validate(todo).model_dump(mode="json")


class TodoService:
    """
    Authoritative write path for one owner's todos: database write, then
    cache invalidation, then event publication.
    """

    def __init__(self, db: AsyncSession, cache: KeyValueCache, events: EventBus, owner_id: str):
        self.db = db
        self.cache = cache
        self.events = events
        self.owner_id = owner_id

    async def list_todos(self, use_cache: bool = True, refresh: bool = False):
        """Returns ``(todos, cache_hit)``. A database read always refills the cache."""
        if use_cache and not refresh:
            cached = await self.cache.get_todos(self.owner_id)
            if cached is not None:
                return cached, True

        query = (
            select(Todo)
            .where(Todo.owner_id == self.owner_id)
            .order_by(col(Todo.created_at).desc())
        )
        result = await self.db.exec(query)
        todos = [serialize_todo(todo) for todo in result.all()]

        await self.cache.set_todos(self.owner_id, todos)
        return todos, False

    @read_through(lambda todo_id: CacheKeys.todo_item(todo_id), ttl=TODO_ITEM_TTL)
    async def get_todo(self, todo_id: str):
        todo = await self.db.get(Todo, todo_id)
        if todo is None:
            return None
        return serialize_todo(todo)

    async def _get_owned(self, todo_id: str) -> Todo | None:
        todo = await self.db.get(Todo, todo_id)
        if todo is None or todo.owner_id != self.owner_id:
            return None
        return todo

    @invalidates_owner(publish="created", serialize=serialize_todo)
    async def create_todo(self, todo_data: TodoCreate) -> Todo:
        todo = Todo.model_validate(todo_data, update={"owner_id": self.owner_id})
        self.db.add(todo)
        await self.db.commit()
        await self.db.refresh(todo)
        return todo

    async def record_activity(self, action: str, metadata: dict | None = None) -> None:
        await self.cache.update_user_activity(self.owner_id)
        await self.events.publish_user_activity(self.owner_id, action, metadata)

    @invalidates_owner(publish="updated", serialize=serialize_todo)
    async def update_todo(self, todo_id: str, todo_data: TodoUpdate) -> Todo | None:
        todo = await self._get_owned(todo_id)
        if not todo:
            return None
        todo.sqlmodel_update(todo_data.model_dump(exclude_unset=True))
        todo.updated_at = get_utc_now()
        self.db.add(todo)
        await self.db.commit()
        await self.db.refresh(todo)
        return todo

    @invalidates_owner(publish="deleted", serialize=serialize_todo)
    async def delete_todo(self, todo_id: str) -> Todo | None:
        todo = await self._get_owned(todo_id)
        if not todo:
            return None
        await self.db.delete(todo)
        await self.db.commit()
        return todo

    async def _load(self, ids: list[str]) -> dict[str, Todo]:
        result = await self.db.exec(select(Todo).where(col(Todo.id).in_(ids)))
        return {todo.id: todo for todo in result.all()}

    @invalidates_owner(publish="updated", serialize=serialize_todo)
    async def _update_many(self, todos: list[Todo], changes: dict) -> list[Todo]:
        now = get_utc_now()
        for todo in todos:
            todo.sqlmodel_update(changes)
            todo.updated_at = now
            self.db.add(todo)
        await self.db.commit()
        for todo in todos:
            await self.db.refresh(todo)
        return todos

    async def batch_update(self, ids: list[str], todo_data: TodoUpdate) -> BatchUpdateResponse:
        ids = list(dict.fromkeys(ids))
        found = await self._load(ids)
        owned = [found[i] for i in ids if i in found and found[i].owner_id == self.owner_id]

        updated = await self._update_many(owned, todo_data.model_dump(exclude_unset=True))
        updated_ids = {todo.id for todo in updated}
        failed = [i for i in ids if i not in updated_ids]
        if failed:
            logger.info(f"Batch update for {self.owner_id}: {len(failed)} ids not updated")

        return BatchUpdateResponse(
            count=len(updated),
            updated=[TodoResponse.model_validate(todo) for todo in updated],
            failed=failed,
        )

    @invalidates_owner(publish="deleted", serialize=serialize_todo)
    async def _delete_many(self, todos: list[Todo]) -> list[Todo]:
        for todo in todos:
            await self.db.delete(todo)
        await self.db.commit()
        return todos

    async def bulk_delete(self, ids: list[str]) -> BulkDeleteResponse:
        """Ids that no longer exist count as deleted; ids of other owners fail."""
        ids = list(dict.fromkeys(ids))
        found = await self._load(ids)
        owned = [found[i] for i in ids if i in found and found[i].owner_id == self.owner_id]
        await self._delete_many(owned)

        results = [
            DeleteOutcome(id=i, ok=i not in found or found[i].owner_id == self.owner_id)
            for i in ids
        ]
        deleted = sum(1 for r in results if r.ok)
        return BulkDeleteResponse(deleted=deleted, failed=len(results) - deleted, results=results)
