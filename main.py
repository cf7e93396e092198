import os
import hmac
import json
import base64
import hashlib
import logging
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any

from fastapi import FastAPI, HTTPException, Depends, Header
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.database import Database

import database
from database import USER_COLLECTION, now, oid
from coordinator import MembershipCoordinator, QuestLocks
from errors import InternalError, NotFoundError, SideQuestError
from queries import MEMBER_FIELDS, QuestQueries, UserDirectory
from schemas import (
    JoinRequestCreate,
    LoginRequest,
    ProfileUpdate,
    QuestCreate,
    QuestUpdate,
    SignupRequest,
    TokenResponse,
    UserProfile,
)
from stores import JoinRequestLedger, QuestStore, from_document

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("sidequest")


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_indexes()
    yield


app = FastAPI(title="SideQuest API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------- Errors ----------------------
@app.exception_handler(SideQuestError)
async def handle_sidequest_error(request, exc: SideQuestError):
    if isinstance(exc, InternalError):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def handle_request_validation(request, exc: RequestValidationError):
    first = exc.errors()[0]
    field = ".".join(str(part) for part in first["loc"] if part != "body") or "body"
    return JSONResponse(status_code=400, content={"message": f"{field}: {first['msg']}", "field": field})

# ---------------------- Utilities ----------------------
SECRET = os.getenv("AUTH_SECRET", "change-me")
QUEST_LOCKS = QuestLocks()


def hash_password(password: str, salt: Optional[str] = None) -> Dict[str, str]:
    salt_bytes = os.urandom(16) if salt is None else base64.b64decode(salt)
    hashed = hashlib.pbkdf2_hmac("sha256", password.encode(), salt_bytes, 100_000)
    return {
        "salt": base64.b64encode(salt_bytes).decode(),
        "hash": base64.b64encode(hashed).decode(),
    }


def verify_password(password: str, salt: str, stored_hash: str) -> bool:
    calc = hash_password(password, salt)
    return hmac.compare_digest(calc["hash"], stored_hash)


def sign_token(payload: Dict[str, Any]) -> str:
    data = base64.urlsafe_b64encode(json.dumps(payload, sort_keys=True).encode()).decode()
    sig = hmac.new(SECRET.encode(), data.encode(), hashlib.sha256).hexdigest()
    return f"{data}.{sig}"


def verify_token(token: str) -> Dict[str, Any]:
    try:
        data, sig = token.split(".")
        expected = hmac.new(SECRET.encode(), data.encode(), hashlib.sha256).hexdigest()
        if not hmac.compare_digest(sig, expected):
            raise ValueError("Bad signature")
        payload = json.loads(base64.urlsafe_b64decode(data.encode()))
        if not isinstance(payload, dict):
            raise ValueError("Bad payload")
        return payload
    except (ValueError, UnicodeDecodeError):
        raise HTTPException(status_code=401, detail="Invalid token")


class AuthedUser(BaseModel):
    id: str
    name: str = ""


def get_current_user(authorization: Optional[str] = Header(None)) -> AuthedUser:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing token")
    token = authorization.split(" ", 1)[1]
    payload = verify_token(token)
    uid = payload.get("user_id")
    if not uid:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return AuthedUser(id=str(uid), name=str(payload.get("name", "")))


def get_db() -> Database:
    if database.db is None:
        raise InternalError("Database is not configured")
    return database.db


def get_coordinator(db: Database = Depends(get_db)) -> MembershipCoordinator:
    return MembershipCoordinator(QuestStore(db), JoinRequestLedger(db), QUEST_LOCKS)


def get_users(db: Database = Depends(get_db)) -> UserDirectory:
    return UserDirectory(db)


def get_queries(db: Database = Depends(get_db)) -> QuestQueries:
    return QuestQueries(QuestStore(db), UserDirectory(db))


def create_indexes():
    if database.db is not None:
        QuestStore(database.db).ensure_indexes()
        JoinRequestLedger(database.db).ensure_indexes()
        database.db[USER_COLLECTION].create_index("email", unique=True)

# ---------------------- Auth ----------------------
def _token_response(user: Dict[str, Any]) -> TokenResponse:
    token = sign_token({"user_id": user["_id"], "name": user["name"]})
    return TokenResponse(
        token=token, user_id=user["_id"], name=user["name"], user=from_document(UserProfile, user)
    )


@app.post("/api/auth/register", response_model=TokenResponse, status_code=201)
def register(req: SignupRequest, db: Database = Depends(get_db)):
    if db[USER_COLLECTION].find_one({"email": req.email}):
        raise HTTPException(400, "Email already registered")
    creds = hash_password(req.password)
    user = {
        "_id": oid(),
        "email": req.email,
        "name": req.name,
        "bio": "",
        "interests": [],
        "profilePicture": "",
        "passwordHash": creds["hash"],
        "passwordSalt": creds["salt"],
        "createdAt": now(),
        "updatedAt": now(),
    }
    db[USER_COLLECTION].insert_one(user)
    logger.info("User %s registered", user["_id"])
    return _token_response(user)


@app.post("/api/auth/login", response_model=TokenResponse)
def login(req: LoginRequest, db: Database = Depends(get_db)):
    user = db[USER_COLLECTION].find_one({"email": req.email})
    if not user or not verify_password(req.password, user["passwordSalt"], user["passwordHash"]):
        raise HTTPException(401, "Invalid credentials")
    return _token_response(user)


@app.get("/api/auth/profile", response_model=UserProfile)
def get_profile(user: AuthedUser = Depends(get_current_user), db: Database = Depends(get_db)):
    doc = db[USER_COLLECTION].find_one({"_id": user.id}, {"passwordHash": 0, "passwordSalt": 0})
    if not doc:
        raise NotFoundError("User not found")
    return from_document(UserProfile, doc)


@app.put("/api/auth/profile")
def update_profile(data: ProfileUpdate, user: AuthedUser = Depends(get_current_user), db: Database = Depends(get_db)):
    changes = data.model_dump(by_alias=True, exclude_none=True)
    changes["updatedAt"] = now()
    doc = db[USER_COLLECTION].find_one_and_update(
        {"_id": user.id}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    if not doc:
        raise NotFoundError("User not found")
    return {"message": "Profile updated successfully", "user": from_document(UserProfile, doc)}

# ---------------------- SideQuests ----------------------
@app.post("/api/sidequests", status_code=201)
def create_sidequest(
    data: QuestCreate,
    user: AuthedUser = Depends(get_current_user),
    coordinator: MembershipCoordinator = Depends(get_coordinator),
    users: UserDirectory = Depends(get_users),
):
    quest = coordinator.create_quest(user.id, data)
    return {
        "message": "SideQuest created successfully",
        "sideQuest": users.populate_quest(quest, creator_fields=MEMBER_FIELDS, participant_fields=None),
    }


@app.get("/api/sidequests")
def list_sidequests(
    category: Optional[str] = None,
    location: Optional[str] = None,
    search: Optional[str] = None,
    queries: QuestQueries = Depends(get_queries),
):
    return queries.open_quests(category=category, location=location, search=search)


@app.get("/api/sidequests/my-sidequests")
def my_sidequests(user: AuthedUser = Depends(get_current_user), queries: QuestQueries = Depends(get_queries)):
    return queries.created_by(user.id)


@app.get("/api/sidequests/{quest_id}")
def get_sidequest(quest_id: str, queries: QuestQueries = Depends(get_queries)):
    return queries.get(quest_id)


@app.put("/api/sidequests/{quest_id}")
def update_sidequest(
    quest_id: str,
    data: QuestUpdate,
    user: AuthedUser = Depends(get_current_user),
    coordinator: MembershipCoordinator = Depends(get_coordinator),
    users: UserDirectory = Depends(get_users),
):
    quest = coordinator.update_quest(user.id, quest_id, data)
    return {
        "message": "SideQuest updated successfully",
        "sideQuest": users.populate_quest(quest, creator_fields=MEMBER_FIELDS, participant_fields=None),
    }


@app.delete("/api/sidequests/{quest_id}")
def delete_sidequest(
    quest_id: str,
    user: AuthedUser = Depends(get_current_user),
    coordinator: MembershipCoordinator = Depends(get_coordinator),
):
    coordinator.delete_quest(user.id, quest_id)
    return {"message": "SideQuest deleted successfully"}

# ---------------------- Join requests ----------------------
@app.post("/api/joinrequests/request-join", status_code=201)
def request_to_join(
    data: JoinRequestCreate,
    user: AuthedUser = Depends(get_current_user),
    coordinator: MembershipCoordinator = Depends(get_coordinator),
    users: UserDirectory = Depends(get_users),
):
    join_request = coordinator.request_to_join(user.id, data.side_quest_id)
    return {
        "message": "Join request sent successfully",
        "joinRequest": users.populate_request(join_request, MEMBER_FIELDS),
    }


@app.get("/api/joinrequests/{quest_id}/requests")
def list_join_requests(
    quest_id: str,
    user: AuthedUser = Depends(get_current_user),
    coordinator: MembershipCoordinator = Depends(get_coordinator),
    users: UserDirectory = Depends(get_users),
):
    return users.populate_requests(coordinator.list_pending_requests(user.id, quest_id))


@app.put("/api/joinrequests/{request_id}/accept")
def accept_join_request(
    request_id: str,
    user: AuthedUser = Depends(get_current_user),
    coordinator: MembershipCoordinator = Depends(get_coordinator),
):
    join_request = coordinator.accept_request(user.id, request_id)
    return {"message": "Join request accepted", "joinRequest": join_request}


@app.put("/api/joinrequests/{request_id}/reject")
def reject_join_request(
    request_id: str,
    user: AuthedUser = Depends(get_current_user),
    coordinator: MembershipCoordinator = Depends(get_coordinator),
):
    join_request = coordinator.reject_request(user.id, request_id)
    return {"message": "Join request rejected", "joinRequest": join_request}


@app.delete("/api/joinrequests/{quest_id}/participant/{user_id}")
def remove_participant(
    quest_id: str,
    user_id: str,
    user: AuthedUser = Depends(get_current_user),
    coordinator: MembershipCoordinator = Depends(get_coordinator),
):
    quest = coordinator.remove_participant(user.id, quest_id, user_id)
    return {"message": "Participant removed successfully", "sideQuest": quest}

# ---------------------- Health/Test ----------------------
@app.get("/")
def read_root():
    return {"message": "SideQuest API is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if database.DATABASE_URL else "❌ Not Set",
        "database_name": database.DATABASE_NAME,
        "connection_status": "Not Connected",
        "collections": []
    }
    if database.db is not None:
        response["database"] = "✅ Available"
        response["connection_status"] = "Connected"
        try:
            response["collections"] = database.db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
        except Exception as e:
            logger.warning("Database check failed: %s", e)
            response["database"] = f"⚠️ Connected but Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
