import logging
from typing import Any, Dict, Optional

from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, serialize
from errors import DuplicateEntry, Unauthorized, ValidationError
from schemas import User, validate_as
from security import create_token, hash_password, verify_password

logger = logging.getLogger(__name__)

PUBLIC_FIELDS = ("_id", "name", "email", "phone", "address", "date_of_birth", "role", "created_at")


def public_view(user: Dict[str, Any]) -> Dict[str, Any]:
    return serialize({k: user[k] for k in PUBLIC_FIELDS if k in user})


def find_by_email(db: Database, email: str) -> Optional[dict]:
    return db["user"].find_one({"email": email.strip().lower()})


def create_account(db: Database, *, name: str, email: str, password: str, role: str = "customer",
                   phone: Optional[str] = None, address: Optional[str] = None, date_of_birth=None) -> dict:
    if len(password.strip()) < 6:
        raise ValidationError("Password must be at least 6 characters")
    if find_by_email(db, email):
        raise DuplicateEntry("User already exists")
    user = validate_as(User, {
        "name": name,
        "email": email,
        "hashed_password": hash_password(password.strip()),
        "phone": phone,
        "address": address,
        "date_of_birth": date_of_birth,
        "role": role,
    })
    try:
        inserted_id = create_document(db, "user", user)
    except DuplicateKeyError:
        raise DuplicateEntry("User already exists")
    logger.info("Created %s account %s", role, inserted_id)
    return db["user"].find_one({"_id": inserted_id})


def authenticate(db: Database, email: str, password: str) -> dict:
    email = (email or "").strip()
    password = (password or "").strip()
    if not email or not password:
        raise ValidationError("Please provide email and password")
    user = find_by_email(db, email)
    if not user or not verify_password(password, user.get("hashed_password", "")):
        raise Unauthorized("Invalid credentials")
    return user


def session_payload(user: dict) -> Dict[str, Any]:
    data = public_view(user)
    data["token"] = create_token(user)
    return data
