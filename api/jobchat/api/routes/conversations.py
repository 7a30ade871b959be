import asyncio
import contextlib
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError

from jobchat.api.errors import store_http_error
from jobchat.core.auth import Principal
from jobchat.core.config import Settings, get_settings
from jobchat.core.security import get_current_principal, resolve_principal, websocket_authorization
from jobchat.schemas.messages import (
    Conversation,
    ConversationMessagesOut,
    Message,
    MessageCreateRequest,
    PolicyViolationOut,
)
from jobchat.services.errors import PermissionDeniedError, PolicyViolationError, SendError, StoreError
from jobchat.services.inbox import Inbox, get_inbox
from jobchat.services.session import ConversationSession

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("", response_model=list[Conversation])
async def list_conversations(
    principal: Principal = Depends(get_current_principal),
    inbox: Inbox = Depends(get_inbox),
) -> list[Conversation]:
    try:
        view = await inbox.list_conversations(principal.user_id, live=False)
    except StoreError as exc:
        raise store_http_error(exc) from exc

    try:
        return list(view.conversations)
    finally:
        await view.close()


@router.get("/{counterpart_id}/messages", response_model=ConversationMessagesOut)
async def get_conversation_messages(
    counterpart_id: str,
    principal: Principal = Depends(get_current_principal),
    inbox: Inbox = Depends(get_inbox),
    application_id: str | None = Query(default=None),
) -> ConversationMessagesOut:
    try:
        session = await inbox.open_conversation(principal.user_id, counterpart_id, application_id, live=False)
    except StoreError as exc:
        raise store_http_error(exc) from exc

    try:
        return ConversationMessagesOut(
            counterpart_id=counterpart_id,
            application_id=application_id,
            messages=list(session.messages),
        )
    finally:
        await session.close()


@router.post("/{counterpart_id}/messages", response_model=Message, status_code=status.HTTP_201_CREATED)
async def send_message(
    counterpart_id: str,
    payload: MessageCreateRequest,
    principal: Principal = Depends(get_current_principal),
    inbox: Inbox = Depends(get_inbox),
) -> Message:
    try:
        session = await inbox.open_conversation(
            principal.user_id,
            counterpart_id,
            payload.application_id,
            live=False,
        )
        try:
            return await session.send(payload.content)
        finally:
            await session.close()
    except PolicyViolationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=PolicyViolationOut(kind=exc.violation.kind, reason=exc.violation.reason).model_dump(),
        ) from exc
    except PermissionDeniedError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except StoreError as exc:
        raise store_http_error(exc) from exc


@router.websocket("/{counterpart_id}/stream")
async def stream_conversation(
    websocket: WebSocket,
    counterpart_id: str,
    application_id: str | None = None,
    settings: Settings = Depends(get_settings),
    inbox: Inbox = Depends(get_inbox),
) -> None:
    """Push the conversation after every change and accept ``{"content": ...}`` frames to send."""

    try:
        principal = await resolve_principal(websocket_authorization(websocket), settings)
    except HTTPException as exc:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(exc.detail))
        return

    await websocket.accept()
    try:
        session = await inbox.open_conversation(principal.user_id, counterpart_id, application_id)
    except StoreError as exc:
        await websocket.send_json(_error_frame(exc))
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    updates: asyncio.Queue[None] = asyncio.Queue()
    stop_observing = session.observe(lambda _: updates.put_nowait(None))
    receive_task: asyncio.Task[str] | None = None
    update_task: asyncio.Task[None] | None = None
    try:
        await websocket.send_json(_snapshot(session))
        receive_task = asyncio.create_task(websocket.receive_text())
        update_task = asyncio.create_task(updates.get())
        while True:
            done, _ = await asyncio.wait({receive_task, update_task}, return_when=asyncio.FIRST_COMPLETED)
            if update_task in done:
                while not updates.empty():
                    updates.get_nowait()
                await websocket.send_json(_snapshot(session))
                update_task = asyncio.create_task(updates.get())
            if receive_task in done:
                await _handle_frame(websocket, session, receive_task.result())
                receive_task = asyncio.create_task(websocket.receive_text())
    except WebSocketDisconnect:
        logger.debug("conversation stream closed by client user=%s", principal.user_id)
    finally:
        for task in (receive_task, update_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect):
                    await task
        stop_observing()
        await session.close()


async def _handle_frame(websocket: WebSocket, session: ConversationSession, raw: str) -> None:
    try:
        payload = MessageCreateRequest.model_validate_json(raw)
    except ValidationError as exc:
        await websocket.send_json(
            {
                "type": "error",
                "error": "invalid_frame",
                "detail": exc.errors(include_url=False, include_context=False),
            }
        )
        return

    try:
        message = await session.send(payload.content, application_id=payload.application_id)
    except (PolicyViolationError, PermissionDeniedError, StoreError) as exc:
        await websocket.send_json(_error_frame(exc))
        return
    await websocket.send_json({"type": "sent", "message": message.model_dump(mode="json")})


def _error_frame(exc: SendError) -> dict[str, Any]:
    if isinstance(exc, PolicyViolationError):
        violation = exc.violation
        return {"type": "error", "error": "policy_violation", "kind": violation.kind, "detail": violation.reason}
    if isinstance(exc, PermissionDeniedError):
        return {"type": "error", "error": "permission_denied", "detail": str(exc)}
    return {"type": "error", "error": "store_unavailable", "detail": str(exc), "retryable": exc.retryable}


def _snapshot(session: ConversationSession) -> dict[str, Any]:
    return {
        "type": "messages",
        "state": session.state.value,
        "messages": [message.model_dump(mode="json") for message in session.messages],
    }
