"""Shared API dependencies."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from chorus_chat.services.addressing import ChannelKey, parse_channel_key
from chorus_chat.services.conversations import ConversationSync


def get_conversation_sync(request: Request) -> ConversationSync:
    """Return the conversation engine created at application startup.

    Raises:
        HTTPException: If the engine has not been started
    """
    sync: ConversationSync | None = getattr(request.app.state, "conversation_sync", None)
    if sync is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Conversation engine is not running",
        )
    return sync


def get_channel_key(channel_key: str) -> ChannelKey:
    """Parse the ``channel_key`` path parameter.

    Raises:
        HTTPException: If the key is not a valid channel key
    """
    try:
        return parse_channel_key(channel_key)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc


# Type aliases for dependencies
ConversationSyncDep = Annotated[ConversationSync, Depends(get_conversation_sync)]
ChannelKeyDep = Annotated[ChannelKey, Depends(get_channel_key)]
