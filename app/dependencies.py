from fastapi import Depends, Header, Request
from sqlmodel.ext.asyncio.session import AsyncSession
from typing_extensions import Annotated

from app.cache.layer import KeyValueCache
from app.database import get_db
from app.events.bus import EventBus
from app.services.todo_service import TodoService


def get_cache(request: Request) -> KeyValueCache:
    return request.app.state.cache


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.events


async def get_owner_id(x_user_id: Annotated[str, Header(min_length=1)]) -> str:
    return x_user_id


CacheDep = Annotated[KeyValueCache, Depends(get_cache)]
EventBusDep = Annotated[EventBus, Depends(get_event_bus)]
OwnerDep = Annotated[str, Depends(get_owner_id)]


def get_todo_service(
    owner_id: OwnerDep,
    cache: CacheDep,
    events: EventBusDep,
    db: AsyncSession = Depends(get_db),
) -> TodoService:
    return TodoService(db, cache, events, owner_id)


TodoServiceDep = Annotated[TodoService, Depends(get_todo_service)]
