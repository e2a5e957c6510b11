"""User accounts and sign-in sessions"""
from typing import Dict, Any, Optional
from datetime import timedelta
import logging
import secrets

from pymongo.errors import PyMongoError, DuplicateKeyError
from werkzeug.security import generate_password_hash, check_password_hash

from carbon_exchange.errors import AuthError, ConflictError, StorageError, ValidationError
from carbon_exchange.services.mongodb_service import get_db, new_id, serialize, utcnow

logger = logging.getLogger(__name__)

ROLES = ("buyer", "seller")
MIN_PASSWORD_LENGTH = 8

PUBLIC_USER_FIELDS = ("user_id", "name", "email", "role", "created_at", "updated_at")


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    """The user as shown to clients, without credentials."""
    return {field: user.get(field) for field in PUBLIC_USER_FIELDS}


def create_user(name: str, email: str, password: str, role: str = "buyer") -> Dict[str, Any]:
    """Register a user with email and password.

    Raises:
        ValidationError: On a malformed email, short password or unknown role
        ConflictError: If the email is already registered
    """
    email = (email or "").strip().lower()
    if "@" not in email:
        raise ValidationError("A valid email is required")
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if role not in ROLES:
        raise ValidationError(f"role must be one of: {', '.join(ROLES)}")

    user = {
        "user_id": new_id(),
        "name": name,
        "email": email,
        "password_hash": generate_password_hash(password),
        "role": role,
        "created_at": utcnow(),
        "updated_at": utcnow()
    }
    try:
        result = get_db().users.insert_one(user)
    except DuplicateKeyError:
        raise ConflictError("Email already registered")
    except PyMongoError as e:
        raise StorageError(f"Failed to create user: {str(e)}")
    user["_id"] = str(result.inserted_id)
    logger.info("Registered user %s as %s", user["user_id"], role)
    return user


def authenticate(email: str, password: str) -> Dict[str, Any]:
    """Check credentials and return the matching user"""
    try:
        user = get_db().users.find_one({"email": (email or "").strip().lower()})
    except PyMongoError as e:
        raise StorageError(f"Failed to look up user: {str(e)}")
    if not user or not check_password_hash(user["password_hash"], password or ""):
        raise AuthError("Invalid email or password")
    return serialize(user)


def get_user(user_id: str) -> Optional[Dict[str, Any]]:
    try:
        return serialize(get_db().users.find_one({"user_id": user_id}))
    except PyMongoError as e:
        raise StorageError(f"Failed to get user: {str(e)}")


def set_user_role(user_id: str, role: str) -> None:
    if role not in ROLES:
        raise ValidationError(f"role must be one of: {', '.join(ROLES)}")
    try:
        get_db().users.update_one(
            {"user_id": user_id},
            {"$set": {"role": role, "updated_at": utcnow()}}
        )
    except PyMongoError as e:
        raise StorageError(f"Failed to update role: {str(e)}")


def start_session(user_id: str, ttl_hours: int = 168) -> Dict[str, Any]:
    """Open a session for the user and return it with its bearer token"""
    session_doc = {
        "session_id": new_id(),
        "token": secrets.token_urlsafe(32),
        "user_id": user_id,
        "created_at": utcnow(),
        "expires_at": utcnow() + timedelta(hours=ttl_hours)
    }
    try:
        get_db().sessions.insert_one(session_doc)
    except PyMongoError as e:
        raise StorageError(f"Failed to start session: {str(e)}")
    return session_doc


def resolve_session(token: Optional[str]) -> Optional[Dict[str, Any]]:
    """Get the user behind a session token, or None if it is unknown or expired"""
    if not token:
        return None
    try:
        db = get_db()
        session_doc = db.sessions.find_one({"token": token})
        if not session_doc:
            return None
        if session_doc["expires_at"] <= utcnow():
            db.sessions.delete_one({"token": token})
            return None
        return serialize(db.users.find_one({"user_id": session_doc["user_id"]}))
    except PyMongoError as e:
        raise StorageError(f"Failed to resolve session: {str(e)}")


def end_session(token: Optional[str]) -> None:
    if not token:
        return
    try:
        get_db().sessions.delete_one({"token": token})
    except PyMongoError as e:
        raise StorageError(f"Failed to end session: {str(e)}")
