"""
Presence API Endpoints.

Heartbeats, typing indicators, online lists and a WebSocket that streams
presence changes for subscribed contexts.
"""

import asyncio
from typing import Any

import orjson
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from loguru import logger
from pydantic import BaseModel, Field

from evforum.core.database import async_session
from evforum.core.errors import ValidationError
from evforum.core.security import Actor, get_current_actor, resolve_actor
from evforum.modules.presence import (
    PresenceStatus,
    PresenceTracker,
    get_presence_tracker,
    typing_summary,
)

router = APIRouter()


# ==================== Schemas ====================


class HeartbeatRequest(BaseModel):
    """Client heartbeat."""

    page: str | None = Field(None, max_length=500)
    status: PresenceStatus = PresenceStatus.ONLINE
    sent_at: float | None = None


class TypingRequest(BaseModel):
    """Typing start/stop in a thread or reply context."""

    context_id: str = Field(..., min_length=1, max_length=200)
    is_typing: bool = True


# ==================== REST ====================


@router.post("/heartbeat")
async def heartbeat(
    request: HeartbeatRequest,
    actor: Actor = Depends(get_current_actor),
    tracker: PresenceTracker = Depends(get_presence_tracker),
) -> dict[str, Any]:
    """Refresh the caller's presence and return who else is on the page."""
    users = tracker.heartbeat(
        actor.id,
        request.page,
        status=request.status,
        username=actor.username,
        avatar=actor.avatar_url,
        sent_at=request.sent_at,
    )

    return {"page": request.page, "users": users, "count": len(users)}


@router.post("/typing")
async def typing(
    request: TypingRequest,
    actor: Actor = Depends(get_current_actor),
    tracker: PresenceTracker = Depends(get_presence_tracker),
) -> dict[str, Any]:
    """Start or stop the caller's typing indicator."""
    is_typing = tracker.set_typing(
        actor.id,
        request.context_id,
        request.is_typing,
        username=actor.username,
        avatar=actor.avatar_url,
    )

    return {"context_id": request.context_id, "is_typing": is_typing}


@router.get("/online")
async def get_online(
    context_id: str | None = Query(None, max_length=500),
    tracker: PresenceTracker = Depends(get_presence_tracker),
) -> dict[str, Any]:
    """Users currently online, optionally on one page or context."""
    users = tracker.list_online(context_id)

    return {"context_id": context_id, "users": users, "count": len(users)}


@router.get("/typing")
async def get_typing(
    context_id: str = Query(..., max_length=200),
    tracker: PresenceTracker = Depends(get_presence_tracker),
) -> dict[str, Any]:
    """Users typing in a context, with a display summary."""
    users = tracker.list_typing(context_id)
    names = [u["username"] or f"user {u['user_id']}" for u in users]

    return {"context_id": context_id, "users": users, "summary": typing_summary(names)}


# ==================== WebSocket ====================


def _sent_at(message: dict[str, Any]) -> float | None:
    value = message.get("sent_at")
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("sent_at must be a number", fields={"sent_at": "invalid"})
    return float(value)


def handle_presence_message(
    tracker: PresenceTracker,
    actor: Actor,
    message: Any,
    subscriptions: dict[str, asyncio.Queue],
) -> dict[str, Any] | None:
    """
    Apply one client message to the tracker.

    Supported ``type`` values are ``heartbeat``, ``typing``, ``subscribe``
    and ``unsubscribe``. Returns an immediate reply for the client, if any.

    Raises:
        ValidationError: message is not an object or carries bad fields
    """
    if not isinstance(message, dict):
        raise ValidationError("Message must be a JSON object", fields={"message": "invalid"})
    kind = message.get("type")

    if kind == "heartbeat":
        try:
            status = PresenceStatus(message.get("status", PresenceStatus.ONLINE.value))
        except ValueError as e:
            raise ValidationError("Unknown presence status", fields={"status": "invalid"}) from e
        page = message.get("page")
        if page is not None and not isinstance(page, str):
            raise ValidationError("page must be a string", fields={"page": "invalid"})
        users = tracker.heartbeat(
            actor.id,
            page,
            status=status,
            username=actor.username,
            avatar=actor.avatar_url,
            sent_at=_sent_at(message),
        )
        return {"event": "heartbeat_ack", "users": users}

    context_id = message.get("context_id")
    if not isinstance(context_id, str) or not context_id:
        raise ValidationError("context_id is required", fields={"context_id": "missing"})

    if kind == "typing":
        is_typing = tracker.set_typing(
            actor.id,
            context_id,
            bool(message.get("is_typing", True)),
            username=actor.username,
            avatar=actor.avatar_url,
        )
        return {"event": "typing_ack", "context_id": context_id, "is_typing": is_typing}

    if kind == "subscribe":
        if context_id not in subscriptions:
            subscriptions[context_id] = tracker.subscribe(context_id)
        return {"event": "snapshot", "context_id": context_id, "users": tracker.list_online(context_id)}

    if kind == "unsubscribe":
        queue = subscriptions.pop(context_id, None)
        if queue is not None:
            tracker.unsubscribe(context_id, queue)
        return None

    raise ValidationError(f"Unknown message type '{kind}'", fields={"type": "invalid"})


async def get_socket_actor(user_id: int = Query(...)) -> Actor | None:
    """Resolve the socket's user in a short session of its own."""
    async with async_session() as db:
        return await resolve_actor(db, user_id)


async def _forward(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        message = await queue.get()
        await websocket.send_json(message)


async def _stop_forwarder(task: asyncio.Task) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.debug(f"Presence forwarder ended with error: {e}")


@router.websocket("/ws")
async def presence_websocket(
    websocket: WebSocket,
    actor: Actor | None = Depends(get_socket_actor),
    tracker: PresenceTracker = Depends(get_presence_tracker),
) -> None:
    """
    WebSocket for live presence.

    Clients send heartbeat/typing/subscribe messages; the server pushes
    ``snapshot`` and ``leave`` messages for every subscribed context.
    """
    if actor is None:
        await websocket.close(code=4401)
        return

    await websocket.accept()
    tracker.open_connection(actor.id)
    subscriptions: dict[str, asyncio.Queue] = {}
    forwarders: dict[str, asyncio.Task] = {}

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                response = handle_presence_message(tracker, actor, orjson.loads(raw), subscriptions)
            except orjson.JSONDecodeError:
                await websocket.send_json(
                    {"event": "error", "error": "validation_error", "detail": "Malformed JSON"}
                )
                continue
            except ValidationError as e:
                await websocket.send_json({"event": "error", **e.to_dict()})
                continue

            for context_id, queue in subscriptions.items():
                if context_id not in forwarders:
                    forwarders[context_id] = asyncio.create_task(_forward(websocket, queue))
            for context_id in list(forwarders):
                if context_id not in subscriptions:
                    await _stop_forwarder(forwarders.pop(context_id))

            if response is not None:
                await websocket.send_json(response)
    except WebSocketDisconnect:
        logger.debug(f"Presence socket closed for user {actor.id}")
    finally:
        for task in forwarders.values():
            await _stop_forwarder(task)
        for context_id, queue in subscriptions.items():
            tracker.unsubscribe(context_id, queue)
        tracker.close_connection(actor.id)
