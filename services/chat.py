import logging
from typing import List

from google.cloud import firestore

import settings
from errors import EmptyMessage, MessageTooLong, NotFound
from models import ChatMessage, Platform, gen_uuid
from services.parties import party_path
from utils.join_code import normalize_code
from utils.store import DocumentStore

logger = logging.getLogger(__name__)

def messages_path(code: str) -> str:
    return f"{party_path(code)}/messages"


class ChatService:
    """Append/poll text chat scoped to one party."""

    def __init__(self, store: DocumentStore, max_length: int = settings.CHAT_MAX_LENGTH):
        self.store = store
        self.max_length = max_length

    def send(
        self,
        party_code: str,
        user_id: str,
        display_name: str,
        platform: Platform,
        message: str,
    ) -> ChatMessage:
        code = normalize_code(party_code)
        if len(message) > self.max_length:
            raise MessageTooLong(f"Message exceeds {self.max_length} characters")
        if not message.strip():
            raise EmptyMessage("Message is empty")
        if not self.store.exists(party_path(code)):
            raise NotFound(f"Party {code} not found")

        msg_id = gen_uuid()
        path = f"{messages_path(code)}/{msg_id}"
        self.store.set(path, {
            "id":          msg_id,
            "partyId":     code,
            "userId":      user_id,
            "displayName": display_name,
            "platform":    platform,
            "message":     message,
            "timestamp":   firestore.SERVER_TIMESTAMP,
        })
        # перечитываем, чтобы получить серверное время
        stored = self.store.get(path)
        return ChatMessage.model_validate(stored)

    def fetch(self, party_code: str, limit: int = settings.CHAT_DEFAULT_LIMIT) -> List[ChatMessage]:
        """Most recent ``limit`` messages, oldest first."""
        limit = max(1, min(limit, settings.CHAT_MAX_LIMIT))
        docs = self.store.latest(messages_path(party_code), order_by="timestamp", limit=limit)
        return [ChatMessage.model_validate(d) for d in reversed(docs)]
