from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel
from typing import List, Optional, Literal
from datetime import datetime, timezone
import uuid
from enum import Enum

def gen_uuid() -> str:
    return str(uuid.uuid4())

def now_utc() -> datetime:
    """Возвращает текущий момент в UTC с tzinfo."""
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    # Firestore документы и HTTP API используют camelCase
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=True, validate_default=True)

    def to_doc(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class PartyStatus(str, Enum):
    waiting = "waiting"
    playing = "playing"
    paused  = "paused"
    ended   = "ended"

Platform = Literal["mobile", "web", "roku"]

# Допустимые переходы статуса вечеринки
TRANSITIONS = {
    PartyStatus.waiting: {PartyStatus.waiting, PartyStatus.playing, PartyStatus.ended},
    PartyStatus.playing: {PartyStatus.playing, PartyStatus.paused, PartyStatus.ended},
    PartyStatus.paused:  {PartyStatus.paused, PartyStatus.playing, PartyStatus.ended},
    PartyStatus.ended:   set(),
}

def can_transition(current: PartyStatus, target: PartyStatus) -> bool:
    return PartyStatus(target) in TRANSITIONS[PartyStatus(current)]


class Content(CamelModel):
    content_id:    str
    content_title: str
    video_url:     str

class Participant(CamelModel):
    user_id:      str
    display_name: str
    platform:     Platform
    joined_at:    datetime = Field(default_factory=now_utc)

class Party(CamelModel):
    code:             str
    host_user_id:     str
    content_id:       str
    content_title:    str
    video_url:        str                  # фиксируется при создании
    status:           PartyStatus          = PartyStatus.waiting
    current_time:     float                = 0.0
    last_sync:        datetime             = Field(default_factory=now_utc)
    participants:     List[Participant]    = Field(default_factory=list)
    max_participants: int                  = 10
    created_at:       datetime             = Field(default_factory=now_utc)
    ended_at:         Optional[datetime]   = None

    def has_participant(self, user_id: str) -> bool:
        return any(p.user_id == user_id for p in self.participants)

    @property
    def is_full(self) -> bool:
        return len(self.participants) >= self.max_participants

    @property
    def host(self) -> Optional[Participant]:
        return next((p for p in self.participants if p.user_id == self.host_user_id), None)


class VoiceSignalRecord(CamelModel):
    user_id:      str
    display_name: str                = ""
    is_muted:     bool               = True
    is_speaking:  bool               = False
    peer_id:      Optional[str]      = None
    timestamp:    Optional[datetime] = None
    signals:      dict[str, str]     = Field(default_factory=dict)


class ChatMessage(CamelModel):
    id:           str = Field(default_factory=gen_uuid)
    party_id:     str
    user_id:      str
    display_name: str
    platform:     Platform
    message:      str
    timestamp:    datetime = Field(default_factory=now_utc)


# ─── HTTP payloads ──────────────────────────────────────────────────────────────
class CreatePartyRequest(CamelModel):
    user_id:       str = Field(..., min_length=1)
    display_name:  str = Field(..., min_length=1)
    platform:      Platform
    content_id:    str = Field(..., min_length=1)
    content_title: str = Field(..., min_length=1)
    video_url:     str = Field(..., min_length=1)

class JoinPartyRequest(CamelModel):
    code:         str = Field(..., min_length=1)
    user_id:      str = Field(..., min_length=1)
    display_name: str = Field(..., min_length=1)
    platform:     Platform

class PlaybackStateRequest(CamelModel):
    code:         str = Field(..., min_length=1)
    status:       PartyStatus
    current_time: float = Field(..., ge=0)
    user_id:      Optional[str] = None   # если передан, проверяем что это хост

class PartyCodeRequest(CamelModel):
    code: str = Field(..., min_length=1)

class SendMessageRequest(CamelModel):
    party_code:   str = Field(..., min_length=1)
    user_id:      str = Field(..., min_length=1)
    display_name: str = Field(..., min_length=1)
    platform:     Platform
    message:      str

class CreatePartyResponse(CamelModel):
    code:  str
    party: Party

class PartyResponse(CamelModel):
    party: Party

class ChatMessageResponse(CamelModel):
    message: ChatMessage

class ChatMessagesResponse(CamelModel):
    messages: List[ChatMessage]
