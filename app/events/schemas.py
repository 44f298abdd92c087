from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


def get_utc_now():
    return datetime.now(timezone.utc)


class Channels:
    """Hierarchical channel names: ``<entity>:<eventKind>:<ownerId>``."""

    GLOBAL_NOTIFICATIONS = "notifications:global"

    @staticmethod
    def todo_created(owner_id: str) -> str:
        return f"todo:created:{owner_id}"

    @staticmethod
    def todo_updated(owner_id: str) -> str:
        return f"todo:updated:{owner_id}"

    @staticmethod
    def todo_deleted(owner_id: str) -> str:
        return f"todo:deleted:{owner_id}"

    @staticmethod
    def user_activity(owner_id: str) -> str:
        return f"user:activity:{owner_id}"

    @staticmethod
    def todo_pattern(owner_id: str) -> str:
        """Every todo event kind for one owner."""
        return f"todo:*:{owner_id}"

    @staticmethod
    def for_todo_change(kind: str, owner_id: str) -> str:
        return f"todo:{kind}:{owner_id}"


class TodoChange(BaseModel):
    kind: Literal["created", "updated", "deleted"]
    owner_id: str
    todo: dict[str, Any]

    @property
    def todo_id(self) -> str:
        return str(self.todo.get("id"))


class ActivityPing(BaseModel):
    kind: Literal["activity"] = "activity"
    owner_id: str
    action: str
    metadata: dict[str, Any] = {}


class Notification(BaseModel):
    kind: Literal["notification"] = "notification"
    message: str
    level: str = "info"


EventPayload = Annotated[
    Union[TodoChange, ActivityPing, Notification], Field(discriminator="kind")
]


class Event(BaseModel):
    channel: str
    payload: EventPayload
    timestamp: datetime = Field(default_factory=get_utc_now)
