"""
MongoDB-backed stores for quests and join requests.

QuestStore writes are compare-and-swap on the quest's `version` field so a
writer that read an older copy can never overwrite a newer one.
JoinRequestLedger keeps one `pendingKey` per request, unique across the
collection: "<questId>:<userId>" while pending, the request id once decided.
"""
import re
import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import JOIN_REQUEST_COLLECTION, QUEST_COLLECTION, now
from errors import ConflictError, InternalError, NotFoundError
from schemas import JoinRequest, Quest, QuestFilter, QuestStatus, RequestStatus

logger = logging.getLogger(__name__)

LIST_LIMIT = 50

Model = TypeVar("Model", bound=BaseModel)


class StaleWriteError(Exception):
    """The stored quest changed since it was read."""

    def __init__(self, quest_id: str):
        super().__init__(f"SideQuest {quest_id} was modified concurrently")
        self.quest_id = quest_id


@contextmanager
def storage(operation: str):
    try:
        yield
    except PyMongoError as exc:
        logger.exception("Storage failure during %s", operation)
        raise InternalError(f"Storage failure during {operation}") from exc


def to_document(model: BaseModel) -> Dict[str, Any]:
    doc = model.model_dump(by_alias=True)
    doc["_id"] = doc.pop("id")
    return doc


def quest_document(quest: Quest) -> Dict[str, Any]:
    doc = to_document(quest)
    doc["version"] = quest.version
    return doc


def from_document(cls: Type[Model], doc: Dict[str, Any]) -> Model:
    data = dict(doc)
    data["id"] = data.pop("_id")
    return cls.model_validate(data)


def _contains(text: str) -> Dict[str, str]:
    return {"$regex": re.escape(text), "$options": "i"}


class QuestStore:
    def __init__(self, db: Database):
        self.collection = db[QUEST_COLLECTION]

    def ensure_indexes(self) -> None:
        with storage("quest index creation"):
            self.collection.create_index([("status", ASCENDING), ("dateTime", ASCENDING)])
            self.collection.create_index([("creatorId", ASCENDING), ("createdAt", DESCENDING)])

    def get(self, quest_id: str) -> Quest:
        with storage("quest lookup"):
            doc = self.collection.find_one({"_id": quest_id})
        if not doc:
            raise NotFoundError("SideQuest not found")
        return from_document(Quest, doc)

    def insert(self, quest: Quest) -> Quest:
        with storage("quest insert"):
            self.collection.insert_one(quest_document(quest))
        return quest

    def put(self, quest: Quest) -> Quest:
        """Replace the stored quest if it is still at `quest.version`; returns the stored copy."""
        stored = quest.model_copy(update={"version": quest.version + 1})
        with storage("quest update"):
            result = self.collection.replace_one(
                {"_id": quest.id, "version": quest.version},
                quest_document(stored),
            )
        if result.matched_count == 0:
            raise StaleWriteError(quest.id)
        return stored

    def delete(self, quest_id: str) -> bool:
        with storage("quest delete"):
            result = self.collection.delete_one({"_id": quest_id})
        return result.deleted_count == 1

    def list(self, filters: QuestFilter) -> List[Quest]:
        query: Dict[str, Any] = {}
        if filters.status:
            query["status"] = QuestStatus(filters.status).value
        if filters.category:
            query["category"] = filters.category
        if filters.location:
            query["location"] = _contains(filters.location)
        if filters.search:
            query["$or"] = [
                {"title": _contains(filters.search)},
                {"description": _contains(filters.search)},
            ]
        with storage("quest listing"):
            docs = list(
                self.collection.find(query)
                .sort([("dateTime", ASCENDING), ("_id", ASCENDING)])
                .limit(LIST_LIMIT)
            )
        return [from_document(Quest, d) for d in docs]

    def list_by_creator(self, creator_id: str) -> List[Quest]:
        with storage("quest listing"):
            docs = list(
                self.collection.find({"creatorId": creator_id})
                .sort([("createdAt", DESCENDING), ("_id", DESCENDING)])
            )
        return [from_document(Quest, d) for d in docs]


def pending_key(quest_id: str, user_id: str) -> str:
    return f"{quest_id}:{user_id}"


class JoinRequestLedger:
    def __init__(self, db: Database):
        self.collection = db[JOIN_REQUEST_COLLECTION]

    def ensure_indexes(self) -> None:
        with storage("join request index creation"):
            self.collection.create_index("pendingKey", unique=True)
            self.collection.create_index(
                [("sideQuestId", ASCENDING), ("status", ASCENDING), ("createdAt", ASCENDING)]
            )

    def get(self, request_id: str) -> JoinRequest:
        with storage("join request lookup"):
            doc = self.collection.find_one({"_id": request_id})
        if not doc:
            raise NotFoundError("Join request not found")
        return from_document(JoinRequest, doc)

    def insert(self, request: JoinRequest) -> JoinRequest:
        doc = to_document(request)
        if request.status == RequestStatus.PENDING:
            doc["pendingKey"] = pending_key(request.side_quest_id, request.user_id)
        else:
            doc["pendingKey"] = request.id
        with storage("join request insert"):
            try:
                self.collection.insert_one(doc)
            except DuplicateKeyError as exc:
                raise ConflictError("Join request already pending") from exc
        return request

    def find_pending(self, quest_id: str, user_id: str) -> Optional[JoinRequest]:
        with storage("join request lookup"):
            doc = self.collection.find_one(
                {"sideQuestId": quest_id, "userId": user_id, "status": RequestStatus.PENDING.value}
            )
        return from_document(JoinRequest, doc) if doc else None

    def list_pending(self, quest_id: str) -> List[JoinRequest]:
        with storage("join request listing"):
            docs = list(
                self.collection.find({"sideQuestId": quest_id, "status": RequestStatus.PENDING.value})
                .sort([("createdAt", ASCENDING), ("_id", ASCENDING)])
            )
        return [from_document(JoinRequest, d) for d in docs]

    def transition(self, request_id: str, status: RequestStatus) -> JoinRequest:
        """Move a pending request to a terminal status; decided requests never change again."""
        with storage("join request update"):
            doc = self.collection.find_one_and_update(
                {"_id": request_id, "status": RequestStatus.PENDING.value},
                {"$set": {"status": RequestStatus(status).value, "updatedAt": now(), "pendingKey": request_id}},
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            current = self.get(request_id)
            raise ConflictError(f"Join request already {current.status}")
        return from_document(JoinRequest, doc)
