from pydantic import BaseModel, Field, TypeAdapter
from typing import Annotated, Literal, Optional, Union
from models import gen_uuid

class Offer(BaseModel):
    kind: Literal["offer"] = "offer"
    id:   str              = Field(default_factory=gen_uuid)
    sdp:  str

class Answer(BaseModel):
    kind: Literal["answer"] = "answer"
    id:   str               = Field(default_factory=gen_uuid)
    sdp:  str

class Candidate(BaseModel):
    kind:            Literal["candidate"] = "candidate"
    id:              str                  = Field(default_factory=gen_uuid)
    candidate:       str
    sdp_mid:         Optional[str]        = Field(default=None, alias="sdpMid")
    sdp_mline_index: Optional[int]        = Field(default=None, alias="sdpMLineIndex")

    model_config = {"populate_by_name": True}

SignalMessage = Annotated[Union[Offer, Answer, Candidate], Field(discriminator="kind")]

_adapter = TypeAdapter(SignalMessage)

def encode_signal(message: SignalMessage) -> str:
    return message.model_dump_json(by_alias=True)

def decode_signal(raw: str) -> SignalMessage:
    """Parse a serialized negotiation message; raises pydantic.ValidationError."""
    return _adapter.validate_json(raw)
