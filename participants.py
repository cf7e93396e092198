"""Participant membership primitives shared by every quest mutation."""
from typing import Iterable, Iterator, List

from schemas import QuestStatus


class ParticipantSet:
    """Ordered set of user ids; insertion order is join order."""

    def __init__(self, user_ids: Iterable[str] = ()):
        self._ids: List[str] = []
        for uid in user_ids:
            self.add(uid)

    def add(self, user_id: str) -> bool:
        if user_id in self._ids:
            return False
        self._ids.append(user_id)
        return True

    def discard(self, user_id: str) -> bool:
        if user_id not in self._ids:
            return False
        self._ids.remove(user_id)
        return True

    def as_list(self) -> List[str]:
        return list(self._ids)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._ids

    def __iter__(self) -> Iterator[str]:
        return iter(self._ids)

    def __len__(self) -> int:
        return len(self._ids)

    def __repr__(self) -> str:
        return f"ParticipantSet({self._ids!r})"


def derive_status(participant_count: int, max_participants: int, previous_status: str) -> str:
    """Recompute a quest's status from its capacity after a membership change."""
    if participant_count >= max_participants:
        return QuestStatus.CLOSED.value
    if previous_status == QuestStatus.CLOSED:
        return QuestStatus.OPEN.value
    return previous_status
