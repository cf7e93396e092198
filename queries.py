"""
Read-only lookups for the public feed, the creator's own list, and the user
profiles shown alongside quests and join requests.

Quests and requests going out to clients carry the public part of each
referenced user's profile in place of the bare id: `creatorId`,
`participants[]` and `userId` become `{_id, name, profilePicture[, bio]}`.
"""
from typing import Any, Dict, Iterable, List, Optional, Sequence

from pymongo.database import Database

from database import USER_COLLECTION
from schemas import JoinRequest, Quest, QuestFilter, QuestStatus
from stores import QuestStore, storage

CREATOR_FIELDS = ("name", "profilePicture", "bio")
MEMBER_FIELDS = ("name", "profilePicture")
REQUESTER_FIELDS = ("name", "profilePicture", "bio")


class UserDirectory:
    def __init__(self, db: Database):
        self.collection = db[USER_COLLECTION]

    def profiles(self, user_ids: Iterable[str], fields: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        """Public profile per id; ids without a user record resolve to an "unknown" placeholder."""
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}
        with storage("user lookup"):
            found = {
                u["_id"]: u
                for u in self.collection.find({"_id": {"$in": ids}}, {f: 1 for f in fields})
            }
        profiles = {}
        for uid in ids:
            user = found.get(uid)
            profile = {"_id": uid}
            for field in fields:
                profile[field] = user.get(field, "") if user else ""
            if user is None:
                profile["name"] = "unknown"
            profiles[uid] = profile
        return profiles

    def populate_quests(
        self,
        quests: List[Quest],
        creator_fields: Sequence[str] = CREATOR_FIELDS,
        participant_fields: Optional[Sequence[str]] = MEMBER_FIELDS,
    ) -> List[Dict[str, Any]]:
        creators = self.profiles([q.creator_id for q in quests], creator_fields)
        members = {}
        if participant_fields:
            members = self.profiles([uid for q in quests for uid in q.participants], participant_fields)
        populated = []
        for quest in quests:
            data = quest.model_dump(by_alias=True)
            data["creatorId"] = creators[quest.creator_id]
            if participant_fields:
                data["participants"] = [members[uid] for uid in quest.participants]
            populated.append(data)
        return populated

    def populate_quest(self, quest: Quest, **kwargs) -> Dict[str, Any]:
        return self.populate_quests([quest], **kwargs)[0]

    def populate_requests(
        self, requests: List[JoinRequest], fields: Sequence[str] = REQUESTER_FIELDS
    ) -> List[Dict[str, Any]]:
        users = self.profiles([r.user_id for r in requests], fields)
        populated = []
        for request in requests:
            data = request.model_dump(by_alias=True)
            data["userId"] = users[request.user_id]
            populated.append(data)
        return populated

    def populate_request(self, request: JoinRequest, fields: Sequence[str] = REQUESTER_FIELDS) -> Dict[str, Any]:
        return self.populate_requests([request], fields)[0]


class QuestQueries:
    def __init__(self, quests: QuestStore, users: UserDirectory):
        self.quests = quests
        self.users = users

    def get(self, quest_id: str) -> Dict[str, Any]:
        return self.users.populate_quest(self.quests.get(quest_id))

    def open_quests(self, category=None, location=None, search=None) -> List[Dict[str, Any]]:
        filters = QuestFilter(status=QuestStatus.OPEN, category=category, location=location, search=search)
        return self.users.populate_quests(self.quests.list(filters))

    def created_by(self, user_id: str) -> List[Dict[str, Any]]:
        return self.users.populate_quests(self.quests.list_by_creator(user_id), creator_fields=MEMBER_FIELDS)
