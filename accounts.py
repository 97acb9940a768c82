"""
Account store: registration, login, profile and password management.

Emails are case-insensitive and stored lower-cased. Usernames keep the casing
they were registered with, but uniqueness and login go through a lower-cased
username_key, so "Bob" and "bob" are the same account name.
"""
import re
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pydantic import EmailStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, get_documents, to_decimal, to_object_id, utcnow
from errors import DuplicateCredential, InvalidCredentials, UserNotFound, ValidationFailed
from logging_config import get_logger
from schemas import Identity, OrderStatus, Role, User, UserPublic
from security import (
    RESET,
    VERIFY,
    create_access_token,
    create_reset_token,
    create_verification_token,
    decode_token,
    hash_password,
    resolve_user,
    verify_password,
)

logger = get_logger(__name__)

USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,30}$")
PASSWORD_MIN_LENGTH = 8


def password_problems(password: str) -> List[str]:
    errors = []
    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", password):
        errors.append("Password must contain at least one digit")
    return errors


def _check_password(password: str) -> None:
    errors = password_problems(password)
    if errors:
        raise ValidationFailed("Password does not meet requirements", errors=errors)


def _check_username(username: str) -> None:
    if not USERNAME_RE.match(username):
        raise ValidationFailed(
            "Username must be 3-30 characters of letters, digits or underscores",
            field="username",
        )


_email_adapter = TypeAdapter(EmailStr)


def _normalize_email(email: str) -> str:
    email = email.strip().lower()
    try:
        _email_adapter.validate_python(email)
    except PydanticValidationError as e:
        raise ValidationFailed("A valid email address is required", field="email") from e
    return email


def _check_unique(db: Database, email: Optional[str], username_key: Optional[str], exclude_id: ObjectId = None):
    base = {"_id": {"$ne": exclude_id}} if exclude_id else {}
    if email is not None and db["user"].find_one({**base, "email": email}):
        raise DuplicateCredential("email")
    if username_key is not None and db["user"].find_one({**base, "username_key": username_key}):
        raise DuplicateCredential("username")


def _duplicate_from(db: Database, exc: DuplicateKeyError, email, username_key, exclude_id=None):
    key_pattern = (exc.details or {}).get("keyPattern") or {}
    if "email" in key_pattern:
        return DuplicateCredential("email")
    if "username_key" in key_pattern:
        return DuplicateCredential("username")
    try:
        _check_unique(db, email, username_key, exclude_id)
    except DuplicateCredential as dup:
        return dup
    return DuplicateCredential("email")


def deliver_token(email: str, purpose: str, token: str) -> None:
    """Hand a one-off credential to the account owner.

    There is no mail transport; the token only goes to the debug log.
    """
    logger.debug("Account token issued", email=email, purpose=purpose, token=token)


def _store_password(db: Database, oid: ObjectId, password: str) -> datetime:
    """Replace the password hash and stamp password_changed_at, revoking earlier credentials."""
    now = utcnow()
    # Mongo keeps millisecond precision; land strictly after every earlier iat
    changed_at = now.replace(microsecond=now.microsecond // 1000 * 1000) + timedelta(milliseconds=1)
    db["user"].update_one(
        {"_id": oid},
        {"$set": {"password_hash": hash_password(password), "password_changed_at": changed_at, "updated_at": now}},
    )
    return changed_at


def _load(db: Database, user_id: str) -> Dict[str, Any]:
    oid = to_object_id(user_id)
    user = db["user"].find_one({"_id": oid}) if oid else None
    if not user:
        raise UserNotFound(user_id)
    return user


def register(db: Database, name: str, email: str, username: str, password: str, role: Role = Role.USER) -> Dict[str, Any]:
    """Create an account and return it with an access token.

    The verification token goes to deliver_token, never to the caller.
    """
    name = name.strip()
    if not name:
        raise ValidationFailed("Name is required", field="name")
    email = _normalize_email(email)
    username = username.strip()
    _check_username(username)
    _check_password(password)

    username_key = username.lower()
    _check_unique(db, email, username_key)

    user = User(
        name=name,
        email=email,
        username=username,
        username_key=username_key,
        password_hash=hash_password(password),
        role=role,
    )
    try:
        user_id = create_document(db, "user", user)
    except DuplicateKeyError as e:
        raise _duplicate_from(db, e, email, username_key) from e

    logger.info("User registered", user_id=user_id, username=username)
    deliver_token(email, VERIFY, create_verification_token(user_id))
    doc = _load(db, user_id)
    return {"user": UserPublic.from_doc(doc), "token": create_access_token(user_id)}


def login(db: Database, identifier: str, password: str) -> Dict[str, Any]:
    """Resolve by email or username. Every mismatch reports the same error."""
    identifier = identifier.strip()
    if "@" in identifier:
        user = db["user"].find_one({"email": identifier.lower()})
    else:
        user = db["user"].find_one({"username_key": identifier.lower()})
    if not user or not verify_password(password, user.get("password_hash", "")):
        raise InvalidCredentials()
    user_id = str(user["_id"])
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"last_login_at": utcnow()}})
    logger.info("User logged in", user_id=user_id)
    token = create_access_token(user_id, not_before=user.get("password_changed_at"))
    return {"user": UserPublic.from_doc(user), "token": token}


def get_user(db: Database, user_id: str) -> UserPublic:
    return UserPublic.from_doc(_load(db, user_id))


def update_profile(
    db: Database,
    identity: Identity,
    name: Optional[str] = None,
    email: Optional[str] = None,
    username: Optional[str] = None,
) -> UserPublic:
    oid = to_object_id(identity.id)
    update: Dict[str, Any] = {}
    if name is not None:
        if not name.strip():
            raise ValidationFailed("Name is required", field="name")
        update["name"] = name.strip()
    if email is not None:
        update["email"] = _normalize_email(email)
    if username is not None:
        username = username.strip()
        _check_username(username)
        update["username"] = username
        update["username_key"] = username.lower()
    if not update:
        return get_user(db, identity.id)

    _check_unique(db, update.get("email"), update.get("username_key"), exclude_id=oid)
    update["updated_at"] = utcnow()
    try:
        doc = db["user"].find_one_and_update({"_id": oid}, {"$set": update}, return_document=ReturnDocument.AFTER)
    except DuplicateKeyError as e:
        raise _duplicate_from(db, e, update.get("email"), update.get("username_key"), oid) from e
    if not doc:
        raise UserNotFound(identity.id)
    logger.info("Profile updated", user_id=identity.id, fields=sorted(k for k in update if k != "updated_at"))
    return UserPublic.from_doc(doc)


def change_password(db: Database, identity: Identity, current_password: str, new_password: str) -> str:
    """Replace the password and return a fresh access token.

    Stamping password_changed_at invalidates every credential issued earlier.
    """
    user = _load(db, identity.id)
    if not verify_password(current_password, user.get("password_hash", "")):
        raise InvalidCredentials("Current password is incorrect")
    _check_password(new_password)

    changed_at = _store_password(db, user["_id"], new_password)
    logger.info("Password changed", user_id=identity.id)
    return create_access_token(identity.id, not_before=changed_at)


def forgot_password(db: Database, email: str) -> None:
    """Send a reset credential if an account uses this email. The outcome is the same either way."""
    user = db["user"].find_one({"email": email.strip().lower()})
    if not user:
        logger.info("Password reset requested for unknown email")
        return
    user_id = str(user["_id"])
    deliver_token(user["email"], RESET, create_reset_token(user_id, not_before=user.get("password_changed_at")))
    logger.info("Password reset requested", user_id=user_id)


def reset_password(db: Database, token: str, new_password: str) -> str:
    """Set a new password from a reset credential and return a fresh access token.

    The new password_changed_at postdates the reset credential, so each one
    works once.
    """
    user = resolve_user(db, decode_token(token, RESET))
    _check_password(new_password)
    changed_at = _store_password(db, user["_id"], new_password)
    user_id = str(user["_id"])
    logger.info("Password reset", user_id=user_id)
    return create_access_token(user_id, not_before=changed_at)


def verify_email(db: Database, token: str) -> UserPublic:
    claims = decode_token(token, VERIFY)
    oid = to_object_id(claims["sub"])
    doc = db["user"].find_one_and_update(
        {"_id": oid},
        {"$set": {"is_verified": True, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    ) if oid else None
    if not doc:
        raise UserNotFound(claims["sub"])
    logger.info("Email verified", user_id=claims["sub"])
    return UserPublic.from_doc(doc)


def user_stats(db: Database, identity: Identity) -> Dict[str, Any]:
    orders = get_documents(db, "order", {"user_id": identity.id}, newest_first=False)
    spent = sum(
        (to_decimal(o["total"]) for o in orders if o["status"] != OrderStatus.CANCELLED.value),
        to_decimal(0),
    )
    return {
        "products": db["product"].count_documents({"owner_id": identity.id}),
        "orders": len(orders),
        "active_orders": sum(1 for o in orders if o["status"] == OrderStatus.PENDING.value),
        "total_spent": spent,
    }


def list_users(db: Database) -> List[UserPublic]:
    return [UserPublic.from_doc(u) for u in get_documents(db, "user")]


def ensure_admin(db: Database, email: str, username: str, password: str) -> Optional[str]:
    """Create the bootstrap admin account if no account uses that email yet."""
    if db["user"].find_one({"email": _normalize_email(email)}):
        return None
    result = register(db, "Admin", email, username, password, role=Role.ADMIN)
    db["user"].update_one({"_id": ObjectId(result["user"].id)}, {"$set": {"is_verified": True}})
    logger.info("Admin account created", user_id=result["user"].id)
    return result["user"].id
