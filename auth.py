import logging
import os
from datetime import timedelta
from typing import Optional

import bcrypt
import jwt
from fastapi import Depends, Header
from pydantic import BaseModel

from database import now_utc
from errors import Forbidden, Unauthorized

logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "dev-jwt-secret")
JWT_ALGORITHM = "HS256"
JWT_EXPIRES_HOURS = int(os.getenv("JWT_EXPIRES_HOURS", "1"))


class Identity(BaseModel):
    id: str
    role: str = "user"
    name: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def hash_password(pw: str) -> str:
    return bcrypt.hashpw(pw.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def check_password(pw: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return bcrypt.checkpw(pw.encode("utf-8"), hashed.encode("utf-8"))


def create_token(user: dict) -> str:
    payload = {
        "id": str(user["_id"]),
        "role": user.get("role", "user"),
        "name": user.get("name"),
        "exp": now_utc() + timedelta(hours=JWT_EXPIRES_HOURS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> Identity:
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.PyJWTError as e:
        logger.info("Token verification failed: %s", e)
        raise Unauthorized("Token is not valid")
    return Identity(id=claims["id"], role=claims.get("role", "user"), name=claims.get("name"))


def get_current_user(authorization: Optional[str] = Header(None)) -> Identity:
    token = (authorization or "").replace("Bearer ", "", 1).strip()
    if not token:
        raise Unauthorized("No token, authorization denied")
    return decode_token(token)


def require_admin(user: Identity = Depends(get_current_user)) -> Identity:
    if not user.is_admin:
        raise Forbidden("Admin access required")
    return user
