"""Shared fixtures: an in-memory MongoDB, the coordinator over it, and an API client."""
from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from coordinator import MembershipCoordinator
from schemas import QuestCreate
from stores import JoinRequestLedger, QuestStore

CREATOR = "user-a"

BASE_TIME = datetime(2026, 11, 1, 18, 0, tzinfo=timezone.utc)


@pytest.fixture
def db():
    database = mongomock.MongoClient(tz_aware=True)["sidequest_test"]
    QuestStore(database).ensure_indexes()
    JoinRequestLedger(database).ensure_indexes()
    return database


@pytest.fixture
def quests(db):
    return QuestStore(db)


@pytest.fixture
def ledger(db):
    return JoinRequestLedger(db)


@pytest.fixture
def coordinator(quests, ledger):
    return MembershipCoordinator(quests, ledger)


@pytest.fixture
def client(db):
    main.app.dependency_overrides[main.get_db] = lambda: db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def auth(user_id: str) -> dict:
    return {"Authorization": f"Bearer {main.sign_token({'user_id': user_id})}"}


def quest_fields(**overrides) -> QuestCreate:
    fields = {
        "title": "Sunset hike",
        "description": "Easy loop, bring water",
        "category": "sports",
        "date_time": BASE_TIME,
        "location": "Griffith Park",
        "max_participants": 2,
    }
    fields.update(overrides)
    return QuestCreate(**fields)


def quest_payload(**overrides) -> dict:
    payload = {
        "title": "Sunset hike",
        "description": "Easy loop, bring water",
        "category": "sports",
        "dateTime": "2026-11-01T18:00:00Z",
        "location": "Griffith Park",
        "maxParticipants": 2,
    }
    payload.update(overrides)
    return payload


def later(hours: int) -> datetime:
    return BASE_TIME + timedelta(hours=hours)
