"""
JWT Utilities
Verifies tokens issued by the identity provider and exposes the caller as an Actor
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from gocab.config import JWT_ALGORITHM, JWT_SECRET_KEY
from gocab.models.actor import DRIVER, RIDER, Actor

logger = logging.getLogger(__name__)

ACCESS_TOKEN_EXPIRE_HOURS = 24 * 7  # 7 days

# Security scheme
security = HTTPBearer()


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create JWT access token

    Tokens are normally minted by the identity provider; this is used by
    local tooling and tests.
    """
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS))
    to_encode.update({"exp": expire})

    return jwt.encode(to_encode, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> Optional[dict]:
    """
    Verify and decode JWT token

    Returns:
        Decoded token payload or None if invalid
    """
    try:
        return jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        logger.error(f"Token verification failed: {str(e)}")
        return None


def actor_from_token(token: str) -> Optional[Actor]:
    """Build an Actor from a token carrying user_id and role claims"""
    payload = verify_token(token)
    if payload is None:
        return None

    user_id = payload.get("user_id")
    role = payload.get("role")
    if not user_id or role not in (RIDER, DRIVER):
        logger.warning(f"Token payload missing identity: user_id={user_id}, role={role}")
        return None

    return Actor(user_id=str(user_id), role=role)


async def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Actor:
    """
    Get the authenticated caller from the bearer token
    Used as dependency in protected routes
    """
    actor = actor_from_token(credentials.credentials)
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return actor


async def require_driver(actor: Actor = Depends(get_current_actor)) -> Actor:
    """Require driver role for protected routes"""
    if actor.role != DRIVER:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Driver access required"
        )

    return actor


async def require_rider(actor: Actor = Depends(get_current_actor)) -> Actor:
    """Require rider role for protected routes"""
    if actor.role != RIDER:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Rider access required"
        )

    return actor
