import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from bson.objectid import ObjectId
from fastapi import Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

import config
from database import get_db, serialize_doc
from errors import Forbidden, Unauthenticated

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=config.BCRYPT_ROUNDS))
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False


def create_token(payload: dict) -> str:
    exp = datetime.now(timezone.utc) + timedelta(days=config.JWT_EXPIRE_DAYS)
    to_encode = {**payload, "exp": exp}
    return jwt.encode(to_encode, config.JWT_SECRET, algorithm=config.JWT_ALGO)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Token expired")
    except jwt.InvalidTokenError as exc:
        logger.debug("Token verification failed: %s", exc)
        raise Unauthenticated("Invalid token")


def issue_session(response: Response, user: dict) -> str:
    """Sign a token for the user and set it as an HTTP-only cookie."""
    token = create_token({"id": user["id"], "role": user.get("role", "user")})
    response.set_cookie(
        key=config.COOKIE_NAME,
        value=token,
        max_age=config.JWT_EXPIRE_DAYS * 24 * 60 * 60,
        httponly=True,
        samesite="lax",
        secure=config.COOKIE_SECURE,
    )
    return token


def clear_session(response: Response) -> None:
    response.delete_cookie(
        key=config.COOKIE_NAME,
        httponly=True,
        samesite="lax",
        secure=config.COOKIE_SECURE,
    )


def public_user(user: dict) -> dict:
    return {
        "id": user["id"],
        "full_name": user.get("full_name"),
        "email": user.get("email"),
        "role": user.get("role", "user"),
        "is_email_verified": user.get("is_email_verified", False),
        "shipping_address": user.get("shipping_address"),
    }


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db=Depends(get_db),
):
    # header first, then the session cookie
    token = credentials.credentials if credentials else request.cookies.get(config.COOKIE_NAME)
    if not token:
        raise Unauthenticated("Not authorized, token missing")
    payload = decode_token(token)
    user_id = payload.get("id")
    if not user_id or not isinstance(user_id, str):
        raise Unauthenticated("Invalid token payload")
    if not ObjectId.is_valid(user_id):
        raise Unauthenticated("Invalid token payload")
    user = db["user"].find_one({"_id": ObjectId(user_id)}, {"password_hash": 0})
    if not user:
        raise Unauthenticated("User not found")
    return serialize_doc(user)


def require_role(role: str):
    async def checker(user=Depends(get_current_user)):
        if user.get("role") != role:
            raise Forbidden(f"{role.capitalize()} access required")
        return user

    return checker


require_admin = require_role("admin")
require_user = require_role("user")
