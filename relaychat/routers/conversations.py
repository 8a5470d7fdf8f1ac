from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status

from relaychat.schemas.conversation import (
    ConversationOut,
    ConversationSnapshot,
    DirectConversationCreate,
    GroupConversationCreate,
    GroupRename,
)
from relaychat.services.chat_service import ChatService
from relaychat.services.conversation_service import ConversationService
from relaychat.utils.dependencies import get_chat_service, get_conversation_service, get_current_user


router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.get("", response_model=ConversationSnapshot)
async def list_conversations(limit: int = Query(20, ge=1, le=200), cursor: Optional[str] = None, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.snapshot(current_user["_id"], limit=limit, cursor=cursor)


@router.post("/direct", response_model=ConversationOut)
async def create_or_get_direct(body: DirectConversationCreate, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    return await service.create_or_get_direct(current_user["_id"], body.peer_id)


@router.post("/group", response_model=ConversationOut, status_code=status.HTTP_201_CREATED)
async def create_group(body: GroupConversationCreate, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    return await service.create_group(current_user["_id"], body.participant_ids, body.name)


@router.get("/{conversation_id}", response_model=ConversationOut)
async def get_conversation(conversation_id: str, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    return await service.get(conversation_id, current_user["_id"])


@router.patch("/{conversation_id}", response_model=ConversationOut)
async def rename_group(conversation_id: str, body: GroupRename, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    return await service.rename(conversation_id, current_user["_id"], body.name)


@router.delete("/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_group(conversation_id: str, current_user: dict = Depends(get_current_user), service: ConversationService = Depends(get_conversation_service)):
    await service.delete(conversation_id, current_user["_id"])
    return Response(status_code=status.HTTP_204_NO_CONTENT)
