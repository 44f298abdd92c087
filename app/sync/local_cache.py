import json
import logging
import time
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)


class LocalSnapshot(BaseModel):
    owner_id: str
    saved_at: float
    todos: list[dict]


class LocalSnapshotStore:
    """
    Client-persisted copy of the last authoritative collection.

    This is the last read tier: it is only consulted when both the backend
    and the shared cache are unreachable. With no ``path`` the snapshot lives
    in memory for the lifetime of the store.
    """

    def __init__(self, path: Optional[str | Path] = None):
        self.path = Path(path) if path else None
        self._memory: dict[str, LocalSnapshot] = {}

    def save(self, owner_id: str, todos: list[dict]) -> bool:
        snapshot = LocalSnapshot(owner_id=owner_id, saved_at=time.time(), todos=todos)

        if self.path is None:
            self._memory[owner_id] = snapshot
            return True

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            data = self._read_file()
            data[owner_id] = snapshot.model_dump(mode="json")
            self.path.write_text(json.dumps(data, default=str))
            return True
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Could not write local snapshot to {self.path}: {e}")
            return False

    def load(self, owner_id: str) -> Optional[list[dict]]:
        if self.path is None:
            snapshot = self._memory.get(owner_id)
            return snapshot.todos if snapshot else None

        raw = self._read_file().get(owner_id)
        if raw is None:
            return None
        try:
            return LocalSnapshot.model_validate(raw).todos
        except ValidationError as e:
            logger.warning(f"Discarding malformed local snapshot for {owner_id}: {e}")
            return None

    def clear(self, owner_id: Optional[str] = None) -> None:
        if self.path is None:
            if owner_id is None:
                self._memory.clear()
            else:
                self._memory.pop(owner_id, None)
            return

        data = {} if owner_id is None else self._read_file()
        data.pop(owner_id, None)
        try:
            self.path.write_text(json.dumps(data))
        except OSError as e:
            logger.warning(f"Could not clear local snapshot at {self.path}: {e}")

    def _read_file(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read local snapshot from {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}
