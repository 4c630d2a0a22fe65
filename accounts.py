"""
User accounts: password hashing, bearer tokens and user administration.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import bcrypt
import jwt
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import settings
from database import create_document, paginate, to_object_id, utcnow
from errors import Conflict, DuplicateEntry, Forbidden, NotFound, Unauthorized, ValidationFailed
from schemas import User as UserSchema, build, validate_email

logger = logging.getLogger(__name__)

ACCESS = "access"
REFRESH = "refresh"
MIN_PASSWORD_LENGTH = 6


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.bcrypt_rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def _check_password_length(password: str) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")


# ----------------------
# Tokens
# ----------------------

def _encode(user: Dict[str, Any], token_type: str, lifetime: timedelta) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user["_id"]),
        "role": user.get("role", "user"),
        "type": token_type,
        "iat": now,
        "exp": now + lifetime,
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def create_access_token(user: Dict[str, Any]) -> str:
    return _encode(user, ACCESS, timedelta(minutes=settings.access_token_expire_minutes))


def create_refresh_token(user: Dict[str, Any]) -> str:
    return _encode(user, REFRESH, timedelta(days=settings.refresh_token_expire_days))


def decode_token(token: str, expected_type: str = ACCESS) -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Not authorized, token failed")
    if payload.get("type") != expected_type:
        raise Unauthorized("Not authorized, token failed")
    return payload


def user_from_token(db: Database, token: str, expected_type: str = ACCESS) -> Dict[str, Any]:
    payload = decode_token(token, expected_type)
    sub = payload.get("sub")
    user = db["user"].find_one({"_id": ObjectId(sub)}) if sub and ObjectId.is_valid(sub) else None
    if not user or not user.get("is_active", True):
        raise Unauthorized("Not authorized, user not found")
    return user


def issue_tokens(user: Dict[str, Any]) -> Dict[str, str]:
    return {"token": create_access_token(user), "refresh_token": create_refresh_token(user)}


# ----------------------
# Users
# ----------------------

def present_user(user: Dict[str, Any]) -> Dict[str, Any]:
    doc = dict(user)
    doc.pop("password", None)
    return doc


def generate_membership_number(db: Database) -> str:
    year = datetime.now().year
    n = db["user"].count_documents({}) + 1
    while db["user"].find_one({"membership_number": f"MEM{year}{n:04d}"}):
        n += 1
    return f"MEM{year}{n:04d}"


def get_user(db: Database, user_id: str) -> Dict[str, Any]:
    user = db["user"].find_one({"_id": to_object_id(user_id, "user")})
    if not user:
        raise NotFound("User not found")
    return user


def create_user(
    db: Database,
    name: str,
    email: str,
    password: str,
    role: str = "user",
    phone: Optional[str] = None,
    address: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    _check_password_length(password)
    user = build(UserSchema, {
        "name": name,
        "email": email,
        "password": hash_password(password),
        "role": role,
        "membership_number": generate_membership_number(db),
        "phone": phone,
        "address": address,
    })
    if db["user"].find_one({"email": user.email}):
        raise DuplicateEntry("User already exists")
    try:
        user_id = create_document(db, "user", user)
    except DuplicateKeyError:
        raise DuplicateEntry("User already exists")
    logger.info("User created: %s (%s)", user.email, user.role)
    return db["user"].find_one({"_id": ObjectId(user_id)})


def authenticate(db: Database, email: str, password: str) -> Dict[str, Any]:
    user = db["user"].find_one({"email": (email or "").strip().lower()})
    if not user or not verify_password(password or "", user.get("password", "")):
        logger.warning("Login failed: invalid credentials for %s", email)
        raise Unauthorized("Invalid credentials")
    if not user.get("is_active", True):
        logger.warning("Login refused: account %s is deactivated", email)
        raise Forbidden("Account is deactivated")
    logger.info("User logged in: %s", user["email"])
    return user


def list_users(
    db: Database,
    search: Optional[str] = None,
    role: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> Tuple[List[Dict[str, Any]], int]:
    query: Dict[str, Any] = {}
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"email": {"$regex": pattern, "$options": "i"}},
            {"membership_number": {"$regex": pattern, "$options": "i"}},
        ]
    if role:
        query["role"] = role
    p = paginate(page, limit)
    docs = db["user"].find(query).sort("name", 1).skip(p["skip"]).limit(p["limit"])
    return [present_user(d) for d in docs], db["user"].count_documents(query)


def update_user(db: Database, user_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    user = get_user(db, user_id)
    changes = {k: v for k, v in changes.items() if v is not None}
    if not changes:
        return user
    if "email" in changes:
        try:
            changes["email"] = validate_email(changes["email"])
        except ValueError as e:
            raise ValidationFailed(str(e))
        if db["user"].find_one({"email": changes["email"], "_id": {"$ne": user["_id"]}}):
            raise DuplicateEntry("User already exists")
    changes["updated_at"] = utcnow()
    try:
        db["user"].update_one({"_id": user["_id"]}, {"$set": changes})
    except DuplicateKeyError:
        raise DuplicateEntry("User already exists")
    if "role" in changes and changes["role"] != user.get("role"):
        logger.info("User %s role changed from %s to %s", user["_id"], user.get("role"), changes["role"])
    return db["user"].find_one({"_id": user["_id"]})


def delete_user(db: Database, user_id: str) -> None:
    user = get_user(db, user_id)
    active = db["borrow"].count_documents({"user_id": str(user["_id"]), "status": {"$in": ["borrowed", "overdue"]}})
    if active > 0:
        raise Conflict("User has active borrows")
    db["user"].delete_one({"_id": user["_id"]})
    logger.info("User %s deleted", user["_id"])


def toggle_user_status(db: Database, user_id: str) -> Dict[str, Any]:
    user = get_user(db, user_id)
    updated = db["user"].find_one_and_update(
        {"_id": user["_id"]},
        {"$set": {"is_active": not user.get("is_active", True), "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("User %s is_active=%s", user["_id"], updated["is_active"])
    return updated


def change_password(db: Database, user_id: str, new_password: str) -> None:
    _check_password_length(new_password)
    user = get_user(db, user_id)
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password": hash_password(new_password), "updated_at": utcnow()}},
    )
    logger.info("Password changed for user %s", user["_id"])
