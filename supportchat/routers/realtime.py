"""WebSocket endpoints for live conversations and the escalation dashboard.

Client frames on ``/ws/conversations/{id}`` are JSON objects with an
``action`` of ``send_message``, ``typing`` or ``mark_as_read``. Rejected
handshakes close with 4404 (unknown conversation), 4403 (not allowed) or
4401 (bad access token).

The dashboard socket answers a ``ping`` text frame with ``{"type": "pong"}``.
"""

import asyncio
import contextlib
import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool

from ..broadcast.transport import WebSocketConnection
from ..container import Container, get_container
from ..core.auth import (
    AuthTokenConfigurationError,
    AuthTokenValidationError,
    resolve_session_context,
)
from ..core.errors import NotFoundError, Unauthorized, ValidationError
from ..core.session_context import SessionContext

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

CLOSE_UNAUTHENTICATED = 4401
CLOSE_NOT_FOUND = 4404
CLOSE_FORBIDDEN = 4403
CLOSE_INTERNAL_ERROR = 1011


def socket_context(websocket: WebSocket, container: Container) -> SessionContext:
    values: dict[str, Any] = {k.lower(): v for k, v in websocket.headers.items()}
    values.update(websocket.query_params)
    return resolve_session_context(values, container.settings.auth)


async def _accept_with_context(
    websocket: WebSocket, container: Container
) -> SessionContext | None:
    """Accept the handshake; close it and return ``None`` when the token is rejected."""

    await websocket.accept()
    try:
        return socket_context(websocket, container)
    except AuthTokenValidationError as exc:
        logger.info("Rejected WebSocket token: %s", exc)
        await websocket.close(code=CLOSE_UNAUTHENTICATED)
    except AuthTokenConfigurationError:
        logger.exception("WebSocket token verification is not configured")
        await websocket.close(code=CLOSE_INTERNAL_ERROR)
    return None


def _parse_frame(text: str) -> dict[str, Any]:
    try:
        frame = json.loads(text)
    except ValueError as exc:
        raise ValidationError.single("frame", "is not valid JSON") from exc
    if not isinstance(frame, dict):
        raise ValidationError.single("frame", "must be a JSON object")
    return frame


def _handle_action(
    container: Container,
    conversation_id: int,
    context: SessionContext,
    frame: dict[str, Any],
) -> None:
    action = frame.get("action")
    if action == "send_message":
        container.ingress.submit_message(
            conversation_id,
            frame.get("content"),
            "user",
            frame.get("metadata") or {},
            context=context,
        )
    elif action == "typing":
        container.conversations.typing(conversation_id, context, bool(frame.get("is_typing")))
    elif action == "mark_as_read":
        try:
            message_id = int(frame.get("message_id"))
        except (TypeError, ValueError) as exc:
            raise ValidationError.single("message_id", "must be an integer") from exc
        container.conversations.mark_as_read(conversation_id, context, message_id)
    else:
        raise ValidationError.single("action", "is not supported")


async def _close_pump(connection: WebSocketConnection, pump: asyncio.Task) -> None:
    connection.close()
    with contextlib.suppress(asyncio.TimeoutError):
        await asyncio.wait_for(pump, timeout=1.0)


@router.websocket("/ws/conversations/{conversation_id}")
async def conversation_socket(
    websocket: WebSocket,
    conversation_id: int,
    container: Container = Depends(get_container),
) -> None:
    context = await _accept_with_context(websocket, container)
    if context is None:
        return
    connection = WebSocketConnection(websocket, asyncio.get_running_loop())
    pump = asyncio.create_task(connection.pump())
    try:
        subscription = await run_in_threadpool(
            container.hub.subscribe, conversation_id, connection, context
        )
    except NotFoundError:
        await _close_pump(connection, pump)
        await websocket.close(code=CLOSE_NOT_FOUND)
        return
    except Unauthorized:
        await _close_pump(connection, pump)
        await websocket.close(code=CLOSE_FORBIDDEN)
        return

    try:
        while True:
            text = await websocket.receive_text()
            try:
                frame = _parse_frame(text)
                await run_in_threadpool(_handle_action, container, conversation_id, context, frame)
            except ValidationError as exc:
                connection.send({"type": "error", "errors": exc.errors})
            except (NotFoundError, Unauthorized) as exc:
                connection.send({"type": "error", "error": str(exc)})
    except (WebSocketDisconnect, ConnectionError):
        pass
    finally:
        await run_in_threadpool(container.hub.unsubscribe, subscription)
        await _close_pump(connection, pump)


@router.websocket("/ws/escalations")
async def escalation_socket(
    websocket: WebSocket,
    container: Container = Depends(get_container),
) -> None:
    context = await _accept_with_context(websocket, container)
    if context is None:
        return
    connection = WebSocketConnection(websocket, asyncio.get_running_loop())
    pump = asyncio.create_task(connection.pump())
    try:
        subscription = container.hub.subscribe_dashboard(connection, context)
    except Unauthorized:
        await _close_pump(connection, pump)
        await websocket.close(code=CLOSE_FORBIDDEN)
        return
    try:
        while True:
            if await websocket.receive_text() == "ping":
                connection.send({"type": "pong"})
    except (WebSocketDisconnect, ConnectionError):
        pass
    finally:
        container.hub.unsubscribe(subscription)
        await _close_pump(connection, pump)
