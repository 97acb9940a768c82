"""
Access gateway: bearer credentials, password hashing and role checks.

Credentials are HS256 JWTs produced by the small encoder below. Claims:
sub (user id), iat (fractional epoch seconds), exp, typ ("access", "verify"
or "reset"). A credential whose iat precedes the user's password_changed_at
is rejected even if otherwise valid.
"""
import base64
import hashlib
import hmac
import json
import os
import time
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from pymongo.database import Database

import config
from database import as_utc, get_db, to_object_id
from errors import Forbidden, Unauthenticated
from schemas import Identity, Role

ACCESS = "access"
VERIFY = "verify"
RESET = "reset"


def _b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode()


def _b64url_decode(s: str) -> bytes:
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s + pad)


def jwt_encode(payload: dict, secret: str) -> str:
    header = {"alg": "HS256", "typ": "JWT"}
    header_b64 = _b64url_encode(json.dumps(header, separators=(",", ":")).encode())
    payload_b64 = _b64url_encode(json.dumps(payload, default=str, separators=(",", ":")).encode())
    signing_input = f"{header_b64}.{payload_b64}".encode()
    signature = hmac.new(secret.encode(), signing_input, hashlib.sha256).digest()
    sig_b64 = _b64url_encode(signature)
    return f"{header_b64}.{payload_b64}.{sig_b64}"


def jwt_decode(token: str, secret: str) -> dict:
    """Verify signature and expiry; raises ValueError on any defect."""
    try:
        header_b64, payload_b64, sig_b64 = token.split(".")
        signing_input = f"{header_b64}.{payload_b64}".encode()
        expected_sig = hmac.new(secret.encode(), signing_input, hashlib.sha256).digest()
        if not hmac.compare_digest(_b64url_encode(expected_sig), sig_b64):
            raise ValueError("Invalid signature")
        payload = json.loads(_b64url_decode(payload_b64))
        if not isinstance(payload, dict):
            raise ValueError("Payload is not an object")
        # exp check
        if "exp" in payload and time.time() > float(payload["exp"]):
            raise ValueError("Token expired")
        return payload
    except (TypeError, ValueError) as e:
        raise ValueError(str(e)) from e


def create_token(
    user_id: str,
    typ: str = ACCESS,
    expires_minutes: Optional[int] = None,
    not_before: Optional[datetime] = None,
) -> str:
    """Issue a credential. not_before lifts iat to at least that instant (a password change)."""
    if expires_minutes is None:
        expires_minutes = {
            ACCESS: config.ACCESS_TOKEN_EXPIRE_MINUTES,
            VERIFY: config.VERIFY_TOKEN_EXPIRE_MINUTES,
            RESET: config.RESET_TOKEN_EXPIRE_MINUTES,
        }[typ]
    now = time.time()
    if not_before is not None:
        now = max(now, as_utc(not_before).timestamp())
    payload = {"sub": user_id, "iat": now, "exp": now + expires_minutes * 60, "typ": typ}
    return jwt_encode(payload, config.JWT_SECRET)


def create_access_token(user_id: str, not_before: Optional[datetime] = None) -> str:
    return create_token(user_id, ACCESS, not_before=not_before)


def create_verification_token(user_id: str) -> str:
    return create_token(user_id, VERIFY)


def create_reset_token(user_id: str, not_before: Optional[datetime] = None) -> str:
    return create_token(user_id, RESET, not_before=not_before)


def decode_token(token: str, typ: str = ACCESS) -> Dict[str, Any]:
    try:
        claims = jwt_decode(token, config.JWT_SECRET)
    except ValueError as e:
        if "expired" in str(e):
            raise Unauthenticated("Your session has expired. Please login again") from e
        raise Unauthenticated("Invalid token. Please login again") from e
    if claims.get("typ", ACCESS) != typ or not claims.get("sub") or "iat" not in claims:
        raise Unauthenticated("Invalid token. Please login again")
    return claims


# Passwords: pbkdf2_sha256$<iterations>$<salt>$<hash>


def hash_password(password: str, iterations: Optional[int] = None) -> str:
    iterations = iterations or config.PASSWORD_HASH_ITERATIONS
    salt = _b64url_encode(os.urandom(16))
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), iterations)
    return f"pbkdf2_sha256${iterations}${salt}${_b64url_encode(digest)}"


def verify_password(password: str, hashed: str) -> bool:
    try:
        algorithm, iterations, salt, expected = hashed.split("$")
        iterations = int(iterations)
    except (AttributeError, ValueError):
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), iterations)
    return hmac.compare_digest(_b64url_encode(digest), expected)


# Gateway checks


def resolve_user(db: Database, claims: Dict[str, Any]) -> Dict[str, Any]:
    """Load the user a decoded credential names, enforcing password-change invalidation."""
    oid = to_object_id(claims["sub"])
    user = db["user"].find_one({"_id": oid}) if oid else None
    if not user:
        raise Unauthenticated("Token is invalid or has expired")
    changed_at = as_utc(user.get("password_changed_at"))
    if changed_at is not None and float(claims["iat"]) < changed_at.timestamp():
        raise Unauthenticated("Password was changed. Please login again")
    return user


def authenticate(db: Database, credential: Optional[str]) -> Identity:
    if not credential:
        raise Unauthenticated()
    claims = decode_token(credential, ACCESS)
    return Identity.from_doc(resolve_user(db, claims))


def authorize(identity: Identity, allowed: Iterable[Role]) -> Identity:
    allowed = frozenset(allowed)
    if identity.role not in allowed:
        raise Forbidden(f"User role '{identity.role.value}' is not authorized to access this route")
    return identity


def require_verified(identity: Identity) -> Identity:
    if not identity.is_verified:
        raise Forbidden("Please verify your email to access this resource")
    return identity


# FastAPI dependencies

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


def current_identity(token: Optional[str] = Depends(oauth2_scheme), db: Database = Depends(get_db)) -> Identity:
    return authenticate(db, token)


def admin_identity(identity: Identity = Depends(current_identity)) -> Identity:
    return authorize(identity, {Role.ADMIN})


def trading_identity(identity: Identity = Depends(current_identity)) -> Identity:
    """Identity allowed to list products and place orders."""
    if config.REQUIRE_VERIFIED_EMAIL:
        require_verified(identity)
    return identity
