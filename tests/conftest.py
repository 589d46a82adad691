import pytest
from fastapi.testclient import TestClient
from jose import jwt

import settings
from main import create_app
from models import Content
from services.chat import ChatService
from services.parties import PartyService
from utils.store import MemoryStore


@pytest.fixture
def store():
    return MemoryStore()

@pytest.fixture
def parties(store):
    return PartyService(store)

@pytest.fixture
def chat(store):
    return ChatService(store)

@pytest.fixture
def content():
    return Content(content_id="m1", content_title="Demo", video_url="https://x/demo.mp4")

@pytest.fixture
def party(parties, content):
    return parties.create_party("host", "Host", "web", content)

@pytest.fixture
def client(store):
    with TestClient(create_app(store)) as c:
        yield c

@pytest.fixture
def token():
    def make(user_id: str) -> str:
        return jwt.encode({"sub": user_id}, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return make
