"""
Compliance Case Hub - Auth Router

Bearer-token authentication. Tokens are HS256 JWTs whose `sub` is a user id
in the users collection; the user's role permissions become an Actor.
"""

from fastapi import APIRouter, Depends, Header, HTTPException
from datetime import datetime, timezone
from typing import Optional
import jwt as pyjwt
import logging

from services.actors import Actor
from services.workflow_config import JWT_ALGORITHM, JWT_SECRET, JWT_TTL_SECONDS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

# Database - set by main app
db = None

def set_db(database):
    global db
    db = database


def create_token(user_id: str, ttl_seconds: Optional[int] = None) -> str:
    payload = {
        "sub": str(user_id),
        "exp": datetime.now(timezone.utc).timestamp() + (ttl_seconds or JWT_TTL_SECONDS),
    }
    return pyjwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> str:
    """Return the user id carried by a token. Raises HTTPException(401)."""
    try:
        payload = pyjwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except pyjwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id


async def get_current_actor(authorization: Optional[str] = Header(None)) -> Actor:
    """FastAPI dependency resolving the caller into an Actor."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")

    user_id = decode_token(authorization.split(" ", 1)[1].strip())
    user = await db.users.find_one({"id": user_id}, {"_id": 0, "password": 0})
    if not user:
        logger.warning("Token presented for unknown user %s", user_id)
        raise HTTPException(status_code=401, detail="User not found")
    return Actor.from_user_record(user)


@router.get("/me")
async def get_me(actor: Actor = Depends(get_current_actor)):
    """Current user with resolved capabilities."""
    return actor.to_dict()
