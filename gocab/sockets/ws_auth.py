"""
WebSocket Authentication Utility
Handles JWT authentication for WebSocket connections
"""

import logging
from typing import Optional

from fastapi import WebSocket

from gocab.models.actor import Actor
from gocab.utils.jwt_utils import actor_from_token

logger = logging.getLogger(__name__)


def _extract_token(websocket: WebSocket) -> Optional[str]:
    # Browsers cannot set headers on a WebSocket, so the query string comes first
    token = websocket.query_params.get("token")
    if token:
        return token

    auth_header = websocket.headers.get("authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1]
    return None


async def authenticate_websocket(websocket: WebSocket) -> Optional[Actor]:
    """
    Authenticate WebSocket connection using JWT token

    Args:
        websocket: WebSocket connection, not yet accepted

    Returns:
        The authenticated actor, or None after closing the socket with a
        policy violation
    """
    token = _extract_token(websocket)
    if not token:
        logger.warning("WebSocket connection rejected: Missing authentication token")
        await websocket.close(code=1008, reason="Missing authentication token")
        return None

    actor = actor_from_token(token)
    if actor is None:
        logger.warning("WebSocket connection rejected: Invalid or expired token")
        await websocket.close(code=1008, reason="Invalid or expired token")
        return None

    logger.info(f"WebSocket authenticated: user_id={actor.user_id}, role={actor.role}")
    return actor
