from datetime import timedelta
from typing import Callable

import jwt
from bson import ObjectId
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pymongo.database import Database

import config
from database import get_db, now
from errors import Forbidden, Internal, Unauthorized
from schemas import Role

security = HTTPBearer(auto_error=False)
password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return password_ctx.verify(password, hashed)


def create_token(user: dict) -> str:
    if not config.JWT_SECRET:
        raise Internal("JWT secret not configured")
    issued = now()
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "role": user.get("role", Role.USER.value),
        "name": user.get("name"),
        "exp": issued + timedelta(minutes=config.JWT_EXPIRES_MIN),
        "iat": issued,
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid token")


def public_user(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "name": user.get("name"),
        "email": user.get("email"),
        "role": user.get("role", Role.USER.value),
        "phone": user.get("phone"),
        "city": user.get("city"),
    }


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Database = Depends(get_db),
) -> dict:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise Unauthorized("No token provided")
    payload = decode_token(credentials.credentials)
    uid = payload.get("sub")
    if not uid or not ObjectId.is_valid(uid):
        raise Unauthorized("Invalid token")
    # The user may have been removed after the token was issued
    user = db["user"].find_one({"_id": ObjectId(uid)})
    if not user:
        raise Unauthorized("User not found")
    return user


def require_roles(*roles: Role) -> Callable:
    allowed = {r.value for r in roles}

    async def checker(user: dict = Depends(get_current_user)) -> dict:
        if user.get("role") not in allowed:
            raise Forbidden("Not authorized for this action")
        return user

    return checker
