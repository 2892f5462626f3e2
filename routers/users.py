from typing import List

from fastapi import APIRouter, Request

from logging_config import get_logger
from schemas.events import UserEntry

logger = get_logger(__name__)

users_router = APIRouter(prefix="/api/users", tags=["users"])


@users_router.get("", response_model=List[UserEntry])
async def list_online_users(request: Request):
    """Read-only snapshot of the clients currently in the chat."""
    client_host = request.client.host if request.client else 'unknown'
    users = await request.app.state.relay.snapshot()
    logger.debug(f"Online users requested from {client_host}: {len(users)} online")
    return users
