from fastapi import APIRouter, Depends, Query

import settings
from models import ChatMessageResponse, ChatMessagesResponse, SendMessageRequest
from services.chat import ChatService
from utils.deps import get_chat_service

router = APIRouter()

# Send chat message
@router.post("/send", response_model=ChatMessageResponse)
async def send_message(
    payload: SendMessageRequest,
    chat: ChatService = Depends(get_chat_service),
):
    message = chat.send(
        payload.party_code,
        payload.user_id,
        payload.display_name,
        payload.platform,
        payload.message,
    )
    return ChatMessageResponse(message=message)

# Poll recent messages (клиенты опрашивают каждые 2 секунды)
@router.get("", response_model=ChatMessagesResponse)
async def fetch_messages(
    party_code: str = Query(..., alias="partyCode", min_length=1),
    limit: int = Query(settings.CHAT_DEFAULT_LIMIT, ge=1, le=settings.CHAT_MAX_LIMIT),
    chat: ChatService = Depends(get_chat_service),
):
    return ChatMessagesResponse(messages=chat.fetch(party_code, limit))
