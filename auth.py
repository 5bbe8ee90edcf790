"""
Admin session guard.

A session is a signed JWT carried in the `session` cookie. Validity comes
entirely from the signature and the embedded expiry; the server keeps no
session state and there is no revocation before expiry.
"""
import hmac
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Request
from passlib.context import CryptContext
from pydantic import BaseModel

from errors import AuthDenied

logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
SESSION_COOKIE = "session"
SESSION_TTL_MINUTES = 120

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


class SessionClaims(BaseModel):
    name: str
    admin: bool


class SessionCheck(BaseModel):
    allowed: bool
    claims: Optional[SessionClaims] = None


DENY = SessionCheck(allowed=False)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    try:
        return pwd_context.verify(password, hashed)
    except ValueError:
        # not a hash passlib recognises
        return False


def issue_session(name: str, expires_delta: Optional[timedelta] = None) -> str:
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=SESSION_TTL_MINUTES))
    claims = {"sub": name, "name": name, "admin": True, "iat": now, "exp": expire}
    return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALG)


def check_session(token: Optional[str]) -> SessionCheck:
    """Admit only a well-formed, correctly signed, unexpired token with admin == true.

    Never raises: every verification failure is a deny.
    """
    if not token:
        return DENY
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG], options={"require": ["exp"]})
    except jwt.PyJWTError:
        return DENY
    if not isinstance(payload, dict) or payload.get("admin") is not True:
        return DENY
    name = payload.get("name") or payload.get("sub") or ""
    return SessionCheck(allowed=True, claims=SessionClaims(name=str(name), admin=True))


def session_from_request(request: Request) -> SessionCheck:
    return check_session(request.cookies.get(SESSION_COOKIE))


def require_admin(request: Request) -> SessionClaims:
    """Dependency applied to every admin-scoped route."""
    result = session_from_request(request)
    if not result.allowed:
        raise AuthDenied()
    return result.claims


def authenticate(admins, name: str, password: str) -> bool:
    """Check a name/password pair against the admin collection."""
    doc = admins.find_one({"name": name})
    if not doc:
        return False
    if doc.get("password_hash"):
        return verify_password(password, doc["password_hash"])
    legacy = doc.get("password")
    if legacy is None:
        return False
    logger.warning("admin %r still has a cleartext password, re-create it with create_admin.py", name)
    return hmac.compare_digest(str(legacy).encode(), password.encode())
