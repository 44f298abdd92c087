from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from app.cache.rate_limit import rate_limit
from app.dependencies import OwnerDep, TodoServiceDep
from app.models import (
    BatchUpdateRequest,
    BatchUpdateResponse,
    BulkDeleteRequest,
    BulkDeleteResponse,
    TodoCreate,
    TodoResponse,
    TodoUpdate,
)

router = APIRouter(prefix="/todos", tags=["todos"])


def not_found(todo_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Todo with id {todo_id} not found",
    )


@router.get(
    "/user",
    response_model=list[TodoResponse],
    dependencies=[Depends(rate_limit("list_todos", max_requests=1000))],
)
async def list_user_todos(
    response: Response,
    service: TodoServiceDep,
    cache: bool = Query(default=True),
    refresh: bool = Query(default=False),
):
    """All todos of the calling owner, newest first"""
    todos, hit = await service.list_todos(use_cache=cache, refresh=refresh)
    response.headers["X-Cache-Status"] = "hit" if hit else "miss"
    return todos


@router.post(
    "",
    response_model=TodoResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("create_todos", max_requests=100))],
)
async def create_todo(todo_data: TodoCreate, service: TodoServiceDep):
    """Create a new todo"""
    todo = await service.create_todo(todo_data)
    await service.record_activity("todo_created", {"todo_id": todo.id})
    return todo


@router.post("/batch-update", response_model=BatchUpdateResponse)
async def batch_update(request: BatchUpdateRequest, service: TodoServiceDep):
    """Apply the same changes to many todos, reporting the outcome per id"""
    return await service.batch_update(request.ids, request.data)


@router.post("/bulk-delete", response_model=BulkDeleteResponse)
async def bulk_delete(request: BulkDeleteRequest, service: TodoServiceDep):
    return await service.bulk_delete(request.ids)


@router.get("/{todo_id}", response_model=TodoResponse)
async def get_todo(todo_id: str, owner_id: OwnerDep, service: TodoServiceDep):
    """Get a specific todo by ID"""
    todo = await service.get_todo(todo_id)
    if not todo or todo.get("owner_id") != owner_id:
        raise not_found(todo_id)
    return todo


@router.put("/{todo_id}", response_model=TodoResponse)
async def update_todo(todo_id: str, todo_data: TodoUpdate, service: TodoServiceDep):
    todo = await service.update_todo(todo_id, todo_data)
    if not todo:
        raise not_found(todo_id)
    return todo


@router.delete("/{todo_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_todo(todo_id: str, service: TodoServiceDep):
    """Delete a todo"""
    todo = await service.delete_todo(todo_id)
    if not todo:
        raise not_found(todo_id)
