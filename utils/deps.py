from fastapi import Depends, Request

from services.chat import ChatService
from services.parties import PartyService
from utils.store import DocumentStore

def get_store(request: Request) -> DocumentStore:
    """
    Return the document store built in the app lifespan.
    """
    return request.app.state.store

def get_party_service(store: DocumentStore = Depends(get_store)) -> PartyService:
    return PartyService(store)

def get_chat_service(store: DocumentStore = Depends(get_store)) -> ChatService:
    return ChatService(store)
