"""Versioned payload schema for the per-owner todo collection cache.

Collections are shaped before they are stored: long descriptions are
truncated and tag arrays are normalized, which keeps entries small.
Decoding is total: anything that does not validate against the current
version is treated as a cache miss.
"""

import logging
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

logger = logging.getLogger(__name__)

COLLECTION_VERSION = 1
MAX_DESCRIPTION_CHARS = 500
MAX_TAGS = 20


def trim_description(description: Optional[str]) -> Optional[str]:
    if not description:
        return None
    if len(description) <= MAX_DESCRIPTION_CHARS:
        return description
    return description[: MAX_DESCRIPTION_CHARS - 1] + "…"


def normalize_tags(tags: Any) -> list[str]:
    if not isinstance(tags, (list, tuple)):
        return []
    seen: list[str] = []
    for tag in tags:
        if tag is None:
            continue
        text = str(tag).strip()
        if text and text not in seen:
            seen.append(text)
        if len(seen) >= MAX_TAGS:
            break
    return seen


class CachedTodo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    owner_id: str
    title: str
    description: Optional[str] = None
    status: str = "TODO"
    priority: str = "MEDIUM"
    category: Optional[str] = None
    tags: list[str] = []
    due_date: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @field_validator("description", mode="before")
    @classmethod
    def _trim_description(cls, v):
        return trim_description(v)

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, v):
        return normalize_tags(v)

    @field_validator("due_date", "created_at", "updated_at", mode="before")
    @classmethod
    def _isoformat(cls, v):
        if v is None:
            return None
        return v.isoformat() if hasattr(v, "isoformat") else str(v)


class TodoCollectionPayload(BaseModel):
    v: Literal[1] = COLLECTION_VERSION
    items: list[CachedTodo]


def encode_collection(todos: list[Any]) -> dict:
    """Shape a todo collection (dicts or models) into the cached envelope."""
    items = []
    for todo in todos:
        if hasattr(todo, "model_dump"):
            todo = todo.model_dump(mode="json")
        items.append(CachedTodo.model_validate(todo))
    return TodoCollectionPayload(items=items).model_dump()


def decode_collection(raw: Any) -> Optional[list[dict]]:
    if raw is None:
        return None
    try:
        payload = TodoCollectionPayload.model_validate(raw)
    except ValidationError as e:
        logger.warning(f"Discarding cached collection with unexpected shape: {e.error_count()} errors")
        return None
    return [item.model_dump() for item in payload.items]
