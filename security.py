"""
Access gate: password hashing, bearer tokens and role allow-lists.

Each protected route declares the exact set of roles it accepts through
``require_roles``; there is no implied ordering between roles.
"""
from datetime import timedelta
from typing import Callable, Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pymongo.database import Database

import config
from database import get_db, to_object_id, utcnow
from errors import Forbidden, Unauthorized

security = HTTPBearer(auto_error=False)
password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=config.BCRYPT_ROUNDS)


def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return password_ctx.verify(password, hashed)


def create_token(user: dict) -> str:
    payload = {
        "sub": str(user["_id"]),
        "role": user.get("role", "customer"),
        "exp": utcnow() + timedelta(minutes=config.JWT_EXPIRES_MIN),
        "iat": utcnow(),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid token")


def _load_user(db: Database, token: str) -> dict:
    payload = decode_token(token)
    uid = to_object_id(payload.get("sub"))
    user = db["user"].find_one({"_id": uid}) if uid else None
    if not user:
        raise Unauthorized("User not found")
    return user


async def get_optional_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
                            db: Database = Depends(get_db)) -> Optional[dict]:
    if credentials is None:
        return None
    return _load_user(db, credentials.credentials)


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
                           db: Database = Depends(get_db)) -> dict:
    if credentials is None:
        raise Unauthorized("Not authorized, no token")
    return _load_user(db, credentials.credentials)


def require_roles(*roles: str) -> Callable:
    allowed = frozenset(roles)

    async def dependency(user: dict = Depends(get_current_user)) -> dict:
        if user.get("role") not in allowed:
            raise Forbidden(f"Role {user.get('role')} is not authorized to access this route")
        return user

    return dependency


def is_admin(user: Optional[dict]) -> bool:
    return bool(user) and user.get("role") in ("admin", "superadmin")
