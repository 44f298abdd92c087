import copy
import logging
from typing import Callable, Iterable, Optional

logger = logging.getLogger(__name__)

Listener = Callable[[list[dict]], None]


class LocalTodoStore:
    """
    Ordered client-side copy of an owner's todos.

    Records are plain dicts keyed by ``id``. Everything handed out is a deep
    copy so that callers cannot mutate the store behind its back.
    """

    def __init__(self, todos: Optional[Iterable[dict]] = None):
        self._items: list[dict] = [copy.deepcopy(t) for t in todos or []]
        self._listeners: list[Listener] = []

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, todo_id: str) -> bool:
        return self.index_of(todo_id) is not None

    def all(self) -> list[dict]:
        return copy.deepcopy(self._items)

    def ids(self) -> list[str]:
        return [item["id"] for item in self._items]

    def get(self, todo_id: str) -> Optional[dict]:
        index = self.index_of(todo_id)
        return None if index is None else copy.deepcopy(self._items[index])

    def index_of(self, todo_id: str) -> Optional[int]:
        for index, item in enumerate(self._items):
            if item["id"] == todo_id:
                return index
        return None

    def insert(self, index: int, todo: dict) -> None:
        self._items.insert(index, copy.deepcopy(todo))

    def replace(self, todo_id: str, todo: dict) -> bool:
        """Swap the record in place. The new record may carry a different id."""
        index = self.index_of(todo_id)
        if index is None:
            return False
        self._items[index] = copy.deepcopy(todo)
        return True

    def remove(self, todo_id: str) -> Optional[dict]:
        index = self.index_of(todo_id)
        if index is None:
            return None
        return self._items.pop(index)

    def upsert(self, todo: dict) -> None:
        """Replace in place, or add to the top when the id is new."""
        if not self.replace(todo["id"], todo):
            self.insert(0, todo)

    def replace_all(self, todos: Iterable[dict]) -> None:
        self._items = [copy.deepcopy(t) for t in todos]

    def on_change(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def notify(self) -> None:
        snapshot = self.all()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Local state listener failed")
