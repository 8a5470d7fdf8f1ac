import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import ValidationError

from relaychat.config import Settings, get_settings
from relaychat.database.connection import mongo_db_dependency
from relaychat.errors import ChatError, InvalidInput, InvalidPayload, Unauthenticated
from relaychat.repositories.user_repository import UserRepository
from relaychat.schemas.message import MessageOut, MessagePage, SendMessageRequest
from relaychat.services.chat_service import ChatService
from relaychat.services.delivery import DeliveryBus
from relaychat.utils.dependencies import authenticate_token, build_services, get_chat_service, get_current_user, get_delivery


logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])

# close codes for rejected sockets
WS_UNAUTHENTICATED = 4401


@router.post("/conversations/{conversation_id}/messages", response_model=MessageOut)
async def send_message(conversation_id: str, body: SendMessageRequest, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.send_message(conversation_id, current_user["_id"], body.payload(), body.client_message_id)


@router.get("/conversations/{conversation_id}/messages", response_model=MessagePage)
async def list_messages(
    conversation_id: str,
    since: Optional[int] = Query(None, ge=0),
    before: Optional[int] = Query(None, ge=1),
    limit: int = Query(50, ge=1, le=200),
    current_user: dict = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return await service.list_messages(conversation_id, current_user["_id"], since=since, before=before, limit=limit)


@router.post("/conversations/{conversation_id}/read")
async def mark_read(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    unread = await service.mark_read(conversation_id, current_user["_id"])
    return {"conversation_id": conversation_id, "unread_count": unread}


@router.get("/conversations/{conversation_id}/unread")
async def get_unread(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    unread = await service.unread_count(conversation_id, current_user["_id"])
    return {"conversation_id": conversation_id, "unread_count": unread}


@router.get("/messages/unread")
async def get_unread_totals(current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    by_conversation = await service.unread_totals(current_user["_id"])
    return {"total": sum(by_conversation.values()), "by_conversation": by_conversation}


async def stop_forwarder(task: asyncio.Task, user_id: str) -> None:
    """Cancel a push forwarder and collect its outcome."""
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as exc:
        # typically a send on a socket the peer already closed
        logger.warning("Push forwarder for %s failed: %s", user_id, exc)


async def _snapshot_frame(service: ChatService, user_id: str) -> Dict[str, Any]:
    snapshot = await service.snapshot(user_id)
    return {"type": "snapshot", **snapshot.model_dump(mode="json")}


async def _handle_frame(frame: Dict[str, Any], user_id: str, service: ChatService) -> Dict[str, Any]:
    kind = frame.get("type")
    if kind == "ping":
        return {"type": "pong"}
    if kind == "resync":
        return await _snapshot_frame(service, user_id)
    conversation_id = frame.get("conversation_id")
    if not isinstance(conversation_id, str):
        raise InvalidInput("conversation_id required")
    if kind == "mark_read":
        unread = await service.mark_read(conversation_id, user_id)
        return {"type": "ack", "op": "mark_read", "conversation_id": conversation_id, "unread_count": unread}
    if kind == "send":
        try:
            body = SendMessageRequest(**{k: v for k, v in frame.items() if k not in ("type", "conversation_id")})
        except ValidationError as exc:
            raise InvalidPayload("; ".join(e["msg"] for e in exc.errors())) from exc
        message = await service.send_message(conversation_id, user_id, body.payload(), body.client_message_id)
        return {"type": "ack", "op": "send", "message": message.model_dump(mode="json")}
    raise InvalidInput(f"Unknown frame type {kind!r}")


@router.websocket("/ws")
async def delivery_socket(
    websocket: WebSocket,
    db: AsyncIOMotorDatabase = Depends(mongo_db_dependency),
    delivery: DeliveryBus = Depends(get_delivery),
    settings: Settings = Depends(get_settings),
):
    # JWT guards the socket: token comes in as ?token=...
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=WS_UNAUTHENTICATED)
        return
    try:
        user = await authenticate_token(token, UserRepository(db))
    except Unauthenticated:
        await websocket.close(code=WS_UNAUTHENTICATED)
        return
    user_id = user["_id"]
    _, service = build_services(db, delivery, settings)

    await websocket.accept()
    # subscribe before the snapshot so nothing committed in between is missed
    subscription = await delivery.subscribe(user_id)
    send_lock = asyncio.Lock()

    async def send(text: str) -> None:
        async with send_lock:
            await websocket.send_text(text)

    async def forward() -> None:
        async for raw in subscription:
            await send(raw)

    forwarder: Optional[asyncio.Task] = None
    try:
        await send(json.dumps(await _snapshot_frame(service, user_id)))
        forwarder = asyncio.create_task(forward())
        while True:
            data = await websocket.receive_text()
            try:
                frame = json.loads(data)
                if not isinstance(frame, dict):
                    raise InvalidInput("Frame must be a JSON object")
                reply = await _handle_frame(frame, user_id, service)
            except json.JSONDecodeError:
                reply = {"type": "error", "error": "InvalidInput", "detail": "Frame is not valid JSON"}
            except ChatError as exc:
                reply = {"type": "error", "error": exc.__class__.__name__, "detail": exc.detail}
            await send(json.dumps(reply, default=str))
    except WebSocketDisconnect:
        logger.info("Socket for %s disconnected", user_id)
    finally:
        if forwarder is not None:
            await stop_forwarder(forwarder, user_id)
        await subscription.close()
