"""
The optimistic transaction primitive shared by single and bulk mutations.

A transaction snapshots its targets, lets the caller apply the intended
change to local state, and then settles each target individually: confirmed
targets take the authoritative value, rolled back targets return to their
exact pre-mutation record and position.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Optional

from app.sync.state import LocalTodoStore


class MutationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    BULK_UPDATE = "bulk_update"
    BULK_DELETE = "bulk_delete"


@dataclass
class PendingMutation:
    kind: MutationKind
    target_ids: list[str]
    # record per target before the mutation, None when it did not exist yet
    snapshot: dict[str, Optional[dict]]
    order: list[str] = field(default_factory=list)
    attempt: int = 0


class OptimisticTransaction:
    def __init__(
        self,
        store: LocalTodoStore,
        kind: MutationKind,
        target_ids: Iterable[str],
        pending: Optional[dict[str, PendingMutation]] = None,
    ):
        self.store = store
        self.kind = kind
        self.target_ids = list(dict.fromkeys(target_ids))
        self._pending = pending if pending is not None else {}
        self._open: set[str] = set()
        self.mutation: Optional[PendingMutation] = None

    @property
    def open_ids(self) -> list[str]:
        return [t for t in self.target_ids if t in self._open]

    def apply(self, mutate: Callable[[LocalTodoStore], None]) -> PendingMutation:
        self.mutation = PendingMutation(
            kind=self.kind,
            target_ids=list(self.target_ids),
            snapshot={t: self.store.get(t) for t in self.target_ids},
            order=self.store.ids(),
        )
        mutate(self.store)
        for target_id in self.target_ids:
            self._pending[target_id] = self.mutation
            self._open.add(target_id)
        self.store.notify()
        return self.mutation

    def confirm(self, target_id: str, record: Optional[dict] = None) -> None:
        """
        Settle one target with the authoritative result.

        ``record`` is the backend's version of the target. Without one, a
        deletion is confirmed as is and any other kind keeps its optimistic
        value. A record with a new id (a created item) replaces the temporary
        one in place and drops any copy of the real id that reached local
        state in the meantime. While a later mutation on the same target is
        in flight the local value is left to it.
        """
        if target_id not in self._open:
            return

        deleting = self.kind in (MutationKind.DELETE, MutationKind.BULK_DELETE)
        if self._handed_over(target_id) and target_id in self._pending:
            # the later mutation is still in flight and keeps the local value
            if deleting:
                self._rebase(target_id, None)
            elif record is not None:
                self._rebase(target_id, record)
            return

        if deleting:
            self.store.remove(target_id)
        elif record is not None:
            if record["id"] != target_id and target_id in self.store:
                self.store.remove(record["id"])
            if not self.store.replace(target_id, record):
                self.store.upsert(record)

        self._settle(target_id)
        self.store.notify()

    def confirm_all(self, records: Optional[dict[str, dict]] = None) -> None:
        records = records or {}
        for target_id in self.open_ids:
            self.confirm(target_id, records.get(target_id))

    def rollback(self, ids: Optional[Iterable[str]] = None) -> list[str]:
        """
        Restore ``ids`` (default: every open target) to their snapshots.

        A target that a later mutation has taken over keeps that mutation's
        value; only the later mutation's snapshot moves back to ours.
        """
        targets = [t for t in (self.open_ids if ids is None else ids) if t in self._open]
        if not targets:
            return []

        order = self.mutation.order
        rank = {todo_id: index for index, todo_id in enumerate(order)}
        targets.sort(key=lambda t: rank.get(t, len(order)))

        for target_id in targets:
            previous = self.mutation.snapshot.get(target_id)
            if self._handed_over(target_id):
                self._rebase(target_id, previous)
                continue
            self.store.remove(target_id)
            if previous is not None:
                self.store.insert(self._restore_index(target_id, order, rank), previous)
            self._settle(target_id)

        self.store.notify()
        return targets

    def _handed_over(self, target_id: str) -> bool:
        # a later mutation on the same target replaced ours in the pending table
        if self._pending.get(target_id) is self.mutation:
            return False
        self._open.discard(target_id)
        return True

    def _rebase(self, target_id: str, value: Optional[dict]) -> None:
        successor = self._pending.get(target_id)
        if successor is not None:
            successor.snapshot[target_id] = value

    def _restore_index(self, target_id: str, order: list[str], rank: dict[str, int]) -> int:
        # after the closest earlier neighbour that is still present
        for predecessor in reversed(order[: rank[target_id]]):
            index = self.store.index_of(predecessor)
            if index is not None:
                return index + 1
        return 0

    def _settle(self, target_id: str) -> None:
        self._open.discard(target_id)
        if self._pending.get(target_id) is self.mutation:
            del self._pending[target_id]
