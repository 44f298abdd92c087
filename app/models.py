import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import JSON, DateTime
from sqlmodel import Column, Field, SQLModel


def get_utc_now():
    """Helper function to get current UTC time with timezone"""
    return datetime.now(timezone.utc)


def new_todo_id() -> str:
    return uuid.uuid4().hex


class Status(str, Enum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    REVIEW = "REVIEW"
    DONE = "DONE"


class Priority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class TodoBase(SQLModel):
    """Base model with shared fields"""

    title: str = Field(min_length=1, max_length=200, index=True)
    description: str | None = Field(default=None)
    status: Status = Field(default=Status.TODO)
    priority: Priority = Field(default=Priority.MEDIUM)
    category: str | None = Field(default=None, max_length=100)
    tags: list[str] = Field(default_factory=list)
    due_date: datetime | None = None


class Todo(TodoBase, table=True):
    """Database model"""

    __tablename__ = "todos"

    id: str = Field(default_factory=new_todo_id, primary_key=True)
    owner_id: str = Field(index=True)
    tags: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    due_date: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    created_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
    updated_at: datetime = Field(
        default_factory=get_utc_now,
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )


class TodoCreate(TodoBase):
    """Schema for creating a todo"""

    pass


class TodoUpdate(SQLModel):
    """Schema for updating a todo - all fields optional"""

    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    status: Status | None = None
    priority: Priority | None = None
    category: str | None = None
    tags: list[str] | None = None
    due_date: datetime | None = None


class TodoResponse(TodoBase):
    """Schema for todo responses"""

    id: str
    owner_id: str
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class BatchUpdateRequest(SQLModel):
    ids: list[str] = Field(min_length=1, max_length=500)
    data: TodoUpdate


class BatchUpdateResponse(SQLModel):
    count: int
    updated: list[TodoResponse]
    failed: list[str]


class BulkDeleteRequest(SQLModel):
    ids: list[str] = Field(min_length=1, max_length=500)


class DeleteOutcome(SQLModel):
    id: str
    ok: bool


class BulkDeleteResponse(SQLModel):
    deleted: int
    failed: int
    results: list[DeleteOutcome]
