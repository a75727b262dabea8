"""
Distribution Hub - Auth Router

Bearer-token identity. Tokens carry the acting user and the department they
belong to; the distribution routes authorize every action against it.
"""

from fastapi import APIRouter, Depends, Header, HTTPException
from datetime import datetime, timezone
from typing import Optional
import jwt as pyjwt
import logging

from services.distribution_config import JWT_SECRET, JWT_ALGORITHM
from services.distribution.models import Actor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

TOKEN_TTL_SECONDS = 86400


def create_token(actor: Actor, ttl_seconds: int = TOKEN_TTL_SECONDS) -> str:
    payload = {
        "sub": actor.id,
        "department_id": actor.department_id,
        "name": actor.name,
        "exp": datetime.now(timezone.utc).timestamp() + ttl_seconds,
    }
    return pyjwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> Actor:
    """Resolve a bearer token to an Actor. Raises HTTPException(401)."""
    try:
        payload = pyjwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except pyjwt.InvalidTokenError as e:
        logger.warning("Rejected bearer token: %s", e)
        raise HTTPException(status_code=401, detail="Invalid token")

    if not payload.get("sub") or not payload.get("department_id"):
        raise HTTPException(status_code=401, detail="Token does not identify a department member")

    return Actor(id=payload["sub"], department_id=payload["department_id"], name=payload.get("name"))


async def get_current_actor(authorization: Optional[str] = Header(None)) -> Actor:
    """FastAPI dependency: the actor behind the Authorization header."""
    if not authorization:
        raise HTTPException(status_code=401, detail="Not authenticated")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return decode_token(token.strip())


@router.get("/me")
async def get_me(actor: Actor = Depends(get_current_actor)):
    """Get the current actor."""
    return actor.model_dump()
