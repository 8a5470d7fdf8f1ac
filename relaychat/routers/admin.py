from typing import Optional

from fastapi import APIRouter, Depends

from relaychat.schemas.conversation import BroadcastGroupSync, ConversationOut
from relaychat.services.conversation_service import ConversationService
from relaychat.utils.dependencies import get_conversation_service, require_admin


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.post("/broadcast-group/sync", response_model=ConversationOut)
async def sync_broadcast_group(body: Optional[BroadcastGroupSync] = None, service: ConversationService = Depends(get_conversation_service)):
    # every registered user ends up in the system-wide group
    return await service.sync_broadcast_group((body or BroadcastGroupSync()).name)
