"""
Database Schemas for SideQuest (ad-hoc group activities)

Quest and JoinRequest map to MongoDB collections ("sidequest", "joinrequest").
Fields are snake_case in Python and camelCase on the wire and in the database.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel


class Category(str, Enum):
    CONCERT = "concert"
    TRAVEL = "travel"
    CAFE = "café"
    IDEA = "idea"
    SPORTS = "sports"
    GAMING = "gaming"
    FOOD = "food"
    LEARNING = "learning"
    OTHER = "other"


class QuestStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class RequestStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        validate_default=True,
    )


# Persisted entities

class Quest(CamelModel):
    id: str
    title: str
    description: str
    category: Category
    date_time: datetime
    location: str
    max_participants: int = Field(..., ge=1)
    creator_id: str
    participants: List[str] = Field(default_factory=list)
    status: QuestStatus = QuestStatus.OPEN
    created_at: datetime
    updated_at: datetime
    version: int = Field(default=0, exclude=True, description="Bumped on every write; used for compare-and-swap")


class JoinRequest(CamelModel):
    id: str
    side_quest_id: str
    user_id: str
    status: RequestStatus = RequestStatus.PENDING
    created_at: datetime
    updated_at: datetime


# Request bodies (validation layer only; required fields are checked by the coordinator)

class QuestCreate(CamelModel):
    title: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    date_time: Optional[datetime] = None
    location: Optional[str] = None
    max_participants: Optional[int] = None


class QuestUpdate(QuestCreate):
    pass


class JoinRequestCreate(CamelModel):
    side_quest_id: Optional[str] = None


class QuestFilter(BaseModel):
    status: Optional[QuestStatus] = QuestStatus.OPEN
    category: Optional[str] = None
    location: Optional[str] = None
    search: Optional[str] = None


# Identity

class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    name: str = Field(..., min_length=1, max_length=64)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class UserProfile(CamelModel):
    id: str
    email: str
    name: str
    bio: str = ""
    interests: List[str] = Field(default_factory=list)
    profile_picture: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ProfileUpdate(CamelModel):
    name: Optional[str] = Field(None, min_length=1, max_length=64)
    bio: Optional[str] = Field(None, max_length=500)
    interests: Optional[List[str]] = None
    profile_picture: Optional[str] = None


class TokenResponse(BaseModel):
    token: str
    user_id: str
    name: str
    user: UserProfile
