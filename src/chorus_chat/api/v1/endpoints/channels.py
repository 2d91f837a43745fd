# src/chorus_chat/api/v1/endpoints/channels.py
"""Channel endpoints exposing the conversation engine over HTTP."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Query, Response, status

from chorus_chat.api.v1.dependencies import ChannelKeyDep, ConversationSyncDep
from chorus_chat.schemas.channel import ChannelSnapshot, OpenChannelRequest, SendMessageResponse
from chorus_chat.schemas.message import Message, MessageDraft
from chorus_chat.services.addressing import resolve
from chorus_chat.services.errors import (
    ChannelNotOpenError,
    ChannelPermissionError,
    PersistenceWriteError,
    TransientFetchError,
)

router = APIRouter(prefix="/channels", tags=["channels"])


def _not_open(exc: ChannelNotOpenError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.post("/", response_model=ChannelSnapshot)
async def open_channel(
    request: OpenChannelRequest,
    sync: ConversationSyncDep,
    wait: bool = Query(True, description="Return once the initial history page is merged"),
) -> ChannelSnapshot:
    """Open a community or direct channel and return its state."""
    try:
        channel = resolve(community_id=request.community_id, peers=request.peer_ids)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    snapshot = await sync.open_channel(channel)
    if wait:
        snapshot = await sync.wait_until_settled(channel)
    return snapshot


@router.get("/{channel_key}", response_model=ChannelSnapshot)
async def get_channel(channel: ChannelKeyDep, sync: ConversationSyncDep) -> ChannelSnapshot:
    """Return a channel's current snapshot; unopened channels report ``idle``."""
    return sync.get_channel_state(channel)


@router.delete("/{channel_key}", status_code=status.HTTP_204_NO_CONTENT)
async def close_channel(channel: ChannelKeyDep, sync: ConversationSyncDep) -> Response:
    """Close a channel. Closing an unopened channel succeeds."""
    await sync.close_channel(channel)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{channel_key}/older")
async def load_older(channel: ChannelKeyDep, sync: ConversationSyncDep) -> dict[str, Any]:
    """Merge the page preceding the oldest loaded message."""
    try:
        added = await sync.load_older(channel)
    except ChannelNotOpenError as exc:
        raise _not_open(exc) from exc
    except TransientFetchError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc

    snapshot = sync.get_channel_state(channel)
    return {"added": added, "has_older": snapshot.has_older, "status": snapshot.status}


@router.post(
    "/{channel_key}/messages",
    status_code=status.HTTP_201_CREATED,
    response_model=SendMessageResponse,
)
async def send_message(
    draft: MessageDraft,
    channel: ChannelKeyDep,
    sync: ConversationSyncDep,
) -> SendMessageResponse:
    """Send a message; the response reports ``confirmed`` or ``failed``."""
    try:
        message = await sync.send_message(channel, draft)
    except ChannelNotOpenError as exc:
        raise _not_open(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return SendMessageResponse(channel_key=str(channel), status=message.status, message=message)


@router.post("/{channel_key}/messages/{temp_id}/retry", response_model=SendMessageResponse)
async def retry_message(
    temp_id: int,
    channel: ChannelKeyDep,
    sync: ConversationSyncDep,
) -> SendMessageResponse:
    """Resend a failed message."""
    try:
        message = await sync.retry_message(channel, temp_id)
    except ChannelNotOpenError as exc:
        raise _not_open(exc) from exc
    except KeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Message {temp_id} not found",
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return SendMessageResponse(channel_key=str(channel), status=message.status, message=message)


@router.delete("/{channel_key}/messages/{temp_id}", status_code=status.HTTP_204_NO_CONTENT)
async def discard_message(
    temp_id: int,
    channel: ChannelKeyDep,
    sync: ConversationSyncDep,
) -> Response:
    """Discard a failed message."""
    try:
        sync.discard_message(channel, temp_id)
    except ChannelNotOpenError as exc:
        raise _not_open(exc) from exc
    except KeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Message {temp_id} not found",
        ) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/{channel_key}/messages/{message_id}/read", response_model=Message | None)
async def mark_read(
    message_id: int,
    channel: ChannelKeyDep,
    sync: ConversationSyncDep,
) -> Message | None:
    """Mark a message as read."""
    try:
        return await sync.mark_read(channel, message_id)
    except ChannelNotOpenError as exc:
        raise _not_open(exc) from exc
    except KeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Message {message_id} not found in {channel}",
        ) from exc
    except ChannelPermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except PersistenceWriteError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
