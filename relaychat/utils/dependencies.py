import hmac
from typing import Optional, Tuple

import jwt
from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import ValidationError

from relaychat.config import Settings, get_settings
from relaychat.database.connection import mongo_db_dependency
from relaychat.errors import Unauthenticated, Unauthorized
from relaychat.repositories.conversation_repository import ConversationRepository
from relaychat.repositories.message_repository import MessageRepository
from relaychat.repositories.read_state_repository import get_read_state
from relaychat.repositories.user_repository import UserRepository
from relaychat.services.chat_service import ChatService
from relaychat.services.conversation_service import ConversationService
from relaychat.services.delivery import DeliveryBus
from relaychat.utils.realtime_bus import get_bus
from relaychat.utils.security import decode_access_token


bearer_scheme = HTTPBearer(auto_error=False)


async def authenticate_token(token: str, users: UserRepository) -> dict:
    try:
        payload = decode_access_token(token)
    except (jwt.PyJWTError, ValidationError) as exc:
        raise Unauthenticated("Invalid or expired token") from exc
    user = await users.get_user_by_id(payload.sub)
    if not user:
        raise Unauthenticated("Unknown user")
    return user


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: AsyncIOMotorDatabase = Depends(mongo_db_dependency),
) -> dict:
    if credentials is None:
        raise Unauthenticated("Missing bearer token")
    return await authenticate_token(credentials.credentials, UserRepository(db))


def require_admin(x_admin_token: Optional[str] = Header(None), settings: Settings = Depends(get_settings)) -> None:
    if not settings.admin_token or not x_admin_token or not hmac.compare_digest(x_admin_token, settings.admin_token):
        raise Unauthorized("Admin token required")


async def get_delivery() -> DeliveryBus:
    return DeliveryBus(await get_bus())


def build_services(db: AsyncIOMotorDatabase, delivery: DeliveryBus, settings: Settings) -> Tuple[ConversationService, ChatService]:
    convo_repo = ConversationRepository(db)
    msg_repo = MessageRepository(db)
    read_state = get_read_state(db, settings.read_state_backend)
    conversations = ConversationService(convo_repo, msg_repo, UserRepository(db), read_state, delivery, settings)
    chat = ChatService(msg_repo, convo_repo, read_state, conversations, delivery, settings)
    return conversations, chat


def get_conversation_service(
    db: AsyncIOMotorDatabase = Depends(mongo_db_dependency),
    delivery: DeliveryBus = Depends(get_delivery),
    settings: Settings = Depends(get_settings),
) -> ConversationService:
    return build_services(db, delivery, settings)[0]


def get_chat_service(
    db: AsyncIOMotorDatabase = Depends(mongo_db_dependency),
    delivery: DeliveryBus = Depends(get_delivery),
    settings: Settings = Depends(get_settings),
) -> ChatService:
    return build_services(db, delivery, settings)[1]
