from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


# Inbound events (client -> relay)

class SendMessagePayload(BaseModel):
    message: str

class TypingPayload(BaseModel):
    isTyping: bool

class UserJoinEvent(BaseModel):
    event: Literal["user_join"]
    payload: str

class SendMessageEvent(BaseModel):
    event: Literal["send_message"]
    payload: SendMessagePayload

class TypingEvent(BaseModel):
    event: Literal["typing"]
    payload: TypingPayload

InboundEvent = Annotated[
    Union[UserJoinEvent, SendMessageEvent, TypingEvent],
    Field(discriminator="event"),
]

inbound_event_adapter = TypeAdapter(InboundEvent)


def parse_inbound(raw: str):
    """Validate a JSON text frame into one of the inbound event models.

    Raises pydantic.ValidationError for invalid JSON, unknown tags or bad payloads.
    """
    return inbound_event_adapter.validate_json(raw)


# Outbound events (relay -> clients)

class ChatMessage(BaseModel):
    id: int
    username: str
    message: str
    timestamp: datetime

class PresenceNotice(BaseModel):
    username: str
    message: str
    timestamp: datetime

class UserEntry(BaseModel):
    id: str
    username: str
    joinedAt: datetime

class UserTyping(BaseModel):
    username: str
    isTyping: bool

class ErrorNotice(BaseModel):
    code: str
    detail: str

class OutboundEnvelope(BaseModel):
    event: Literal["receive_message", "user_joined", "user_left", "users_list", "user_typing", "error"]
    payload: Any

    def to_text(self) -> str:
        return self.model_dump_json()


def envelope(event: str, payload) -> OutboundEnvelope:
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    elif isinstance(payload, list):
        payload = [item.model_dump(mode="json") if isinstance(item, BaseModel) else item for item in payload]
    return OutboundEnvelope(event=event, payload=payload)
