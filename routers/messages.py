from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

import constants
from engine.service import RoomEngine
from errors import PersistenceFailure
from logging_config import get_logger
from routers.dependencies import get_engine
from schemas.rooms import DeleteMessagesResponse

logger = get_logger(__name__)

messages_router = APIRouter(prefix="/messages", tags=["messages"])


@messages_router.delete("/delete", response_model=DeleteMessagesResponse)
async def delete_messages_except_pinned(
    engine: RoomEngine = Depends(get_engine),
    x_admin_token: Optional[str] = Header(None),
):
    if constants.ADMIN_TOKEN and x_admin_token != constants.ADMIN_TOKEN:
        logger.warning("Rejected message purge: bad admin token")
        raise HTTPException(status_code=401, detail="Invalid admin token")

    try:
        deleted = await engine.messages.delete_all_except_pinned()
    except PersistenceFailure as e:
        logger.error(f"Error deleting messages: {e}")
        raise HTTPException(status_code=503, detail="Failed to delete messages")

    logger.info(f"Deleted {deleted} global messages (pinned kept)")
    return DeleteMessagesResponse(message="success", deleted=deleted)
