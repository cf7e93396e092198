"""
Membership coordinator: every operation that changes a quest's membership or a
join request's status goes through here.

Quest-scoped operations run under a per-quest lock and write through the
QuestStore version check, re-reading and re-validating the quest on each
attempt, so two accepts racing for the last slot can't both succeed.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic.alias_generators import to_camel

from database import now, oid
from errors import AuthorizationError, ConflictError, SideQuestError, ValidationError
from participants import ParticipantSet, derive_status
from schemas import Category, JoinRequest, Quest, QuestCreate, QuestStatus, QuestUpdate, RequestStatus
from stores import JoinRequestLedger, QuestStore, StaleWriteError

logger = logging.getLogger(__name__)

QUEST_FIELDS = ("title", "description", "category", "date_time", "location", "max_participants")
MAX_WRITE_ATTEMPTS = 3


class QuestLocks:
    """Exclusive lock per quest id; entries are dropped once no thread holds or waits on them."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}

    @contextmanager
    def hold(self, quest_id: str):
        with self._guard:
            entry = self._locks.get(quest_id)
            if entry is None:
                entry = self._locks[quest_id] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[quest_id]

    def __len__(self) -> int:
        return len(self._locks)


def _clean_fields(fields: QuestCreate, required: bool) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for name in QUEST_FIELDS:
        value = getattr(fields, name)
        if isinstance(value, str) and not value.strip():
            value = None
        if value is None:
            if required:
                raise ValidationError(f"{to_camel(name)} is required", field=to_camel(name))
            continue
        values[name] = value

    if "category" in values:
        try:
            values["category"] = Category(values["category"]).value
        except ValueError:
            raise ValidationError(f"Unknown category: {values['category']}", field="category") from None
    if "max_participants" in values and values["max_participants"] < 1:
        raise ValidationError("maxParticipants must be at least 1", field="maxParticipants")
    if "date_time" in values:
        when = values["date_time"]
        if when.tzinfo is None:
            values["date_time"] = when.replace(tzinfo=timezone.utc)
        else:
            values["date_time"] = when.astimezone(timezone.utc)
    return values


class MembershipCoordinator:
    def __init__(self, quests: QuestStore, requests: JoinRequestLedger, locks: Optional[QuestLocks] = None):
        self.quests = quests
        self.requests = requests
        self.locks = locks or QuestLocks()

    # ---------------------- Quests ----------------------
    def create_quest(self, creator_id: str, fields: QuestCreate) -> Quest:
        values = _clean_fields(fields, required=True)
        stamp = now()
        quest = Quest(
            id=oid(),
            creator_id=creator_id,
            participants=[creator_id],
            status=QuestStatus.OPEN,
            created_at=stamp,
            updated_at=stamp,
            **values,
        )
        self.quests.insert(quest)
        logger.info("SideQuest %s created by %s (max %d)", quest.id, creator_id, quest.max_participants)
        return quest

    def update_quest(self, caller_id: str, quest_id: str, fields: QuestUpdate) -> Quest:
        values = _clean_fields(fields, required=False)

        def apply(quest: Quest) -> Optional[Quest]:
            _require_creator(quest, caller_id, "update")
            if not values:
                return None
            changes = dict(values, updated_at=now())
            if "max_participants" in values:
                count = len(quest.participants)
                if values["max_participants"] < count:
                    raise ConflictError(
                        f"maxParticipants cannot be below the current {count} participants"
                    )
                changes["status"] = derive_status(count, values["max_participants"], quest.status)
            return quest.model_copy(update=changes)

        with self.locks.hold(quest_id):
            quest = self._write_quest(quest_id, apply)
        logger.info("SideQuest %s updated (%s)", quest_id, ", ".join(sorted(values)) or "no changes")
        return quest

    def delete_quest(self, caller_id: str, quest_id: str) -> None:
        # Join requests stay behind as history; they fail with NotFound when decided later.
        with self.locks.hold(quest_id):
            quest = self.quests.get(quest_id)
            _require_creator(quest, caller_id, "delete")
            self.quests.delete(quest_id)
        logger.info("SideQuest %s deleted by %s", quest_id, caller_id)

    # ---------------------- Join requests ----------------------
    def request_to_join(self, requester_id: str, quest_id: Optional[str]) -> JoinRequest:
        if not quest_id:
            raise ValidationError("SideQuest ID is required", field="sideQuestId")
        with self.locks.hold(quest_id):
            quest = self.quests.get(quest_id)
            if requester_id in ParticipantSet(quest.participants):
                raise ConflictError("You are already a participant")
            if self.requests.find_pending(quest_id, requester_id):
                raise ConflictError("Join request already pending")
            stamp = now()
            request = JoinRequest(
                id=oid(),
                side_quest_id=quest_id,
                user_id=requester_id,
                status=RequestStatus.PENDING,
                created_at=stamp,
                updated_at=stamp,
            )
            self.requests.insert(request)
        logger.info("Join request %s: %s -> sidequest %s", request.id, requester_id, quest_id)
        return request

    def list_pending_requests(self, caller_id: str, quest_id: str) -> List[JoinRequest]:
        quest = self.quests.get(quest_id)
        _require_creator(quest, caller_id, "view requests for")
        return self.requests.list_pending(quest_id)

    def accept_request(self, caller_id: str, request_id: str) -> JoinRequest:
        quest_id = self.requests.get(request_id).side_quest_id
        with self.locks.hold(quest_id):
            request = self._decidable_request(caller_id, request_id, quest_id, "accept")

            def admit(quest: Quest) -> Quest:
                members = ParticipantSet(quest.participants)
                if len(members) >= quest.max_participants:
                    raise ConflictError("SideQuest is full")
                if not members.add(request.user_id):
                    raise ConflictError("User is already a participant")
                return quest.model_copy(update={
                    "participants": members.as_list(),
                    "status": derive_status(len(members), quest.max_participants, quest.status),
                    "updated_at": now(),
                })

            quest = self._write_quest(quest_id, admit)
            try:
                accepted = self.requests.transition(request_id, RequestStatus.ACCEPTED)
            except SideQuestError:
                logger.warning("Join request %s could not be marked accepted; undoing admission", request_id)
                self._evict(quest_id, request.user_id)
                raise
        logger.info(
            "Join request %s accepted; sidequest %s now %d/%d (%s)",
            request_id, quest_id, len(quest.participants), quest.max_participants, quest.status,
        )
        return accepted

    def reject_request(self, caller_id: str, request_id: str) -> JoinRequest:
        quest_id = self.requests.get(request_id).side_quest_id
        with self.locks.hold(quest_id):
            self._decidable_request(caller_id, request_id, quest_id, "reject")
            rejected = self.requests.transition(request_id, RequestStatus.REJECTED)
        logger.info("Join request %s rejected", request_id)
        return rejected

    # ---------------------- Participants ----------------------
    def remove_participant(self, caller_id: str, quest_id: str, target_user_id: str) -> Quest:
        with self.locks.hold(quest_id):
            quest = self.quests.get(quest_id)
            if quest.creator_id != caller_id or target_user_id == caller_id:
                raise AuthorizationError("Not authorized to remove this participant")
            quest = self._evict(quest_id, target_user_id)
        return quest

    # ---------------------- Internals ----------------------
    def _decidable_request(self, caller_id: str, request_id: str, quest_id: str, action: str) -> JoinRequest:
        quest = self.quests.get(quest_id)
        if quest.creator_id != caller_id:
            raise AuthorizationError(f"Not authorized to {action} this request")
        request = self.requests.get(request_id)
        if request.status != RequestStatus.PENDING:
            raise ConflictError(f"Join request already {request.status}")
        return request

    def _evict(self, quest_id: str, user_id: str) -> Quest:
        removed = False

        def drop(quest: Quest) -> Optional[Quest]:
            nonlocal removed
            members = ParticipantSet(quest.participants)
            removed = members.discard(user_id)
            if not removed:
                return None
            return quest.model_copy(update={
                "participants": members.as_list(),
                "status": derive_status(len(members), quest.max_participants, quest.status),
                "updated_at": now(),
            })

        quest = self._write_quest(quest_id, drop)
        if removed:
            logger.info(
                "Participant %s removed from sidequest %s; now %d/%d (%s)",
                user_id, quest_id, len(quest.participants), quest.max_participants, quest.status,
            )
        else:
            logger.info("Participant %s not in sidequest %s; nothing to remove", user_id, quest_id)
        return quest

    def _write_quest(self, quest_id: str, mutate: Callable[[Quest], Optional[Quest]]) -> Quest:
        """Read, mutate and compare-and-swap a quest; `mutate` returning None means nothing to write."""
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            quest = self.quests.get(quest_id)
            updated = mutate(quest)
            if updated is None:
                return quest
            try:
                return self.quests.put(updated)
            except StaleWriteError:
                logger.warning("Lost write race on sidequest %s (attempt %d)", quest_id, attempt)
        raise ConflictError("SideQuest was modified concurrently; reload and retry")


def _require_creator(quest: Quest, caller_id: str, action: str) -> None:
    if quest.creator_id != caller_id:
        raise AuthorizationError(f"Not authorized to {action} this sidequest")
