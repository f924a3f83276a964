from datetime import datetime, timezone
from typing import Annotated, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, TypeAdapter, field_serializer, field_validator

CHAT = "chat"
ERROR = "error"


class ChatMessageCreate(BaseModel):
    """Constraints the store enforces before a message is written."""
    username: str = Field(min_length=1, max_length=100)
    message: str = Field(min_length=1, max_length=500)
    room_id: Optional[str] = None

    class Config:
        str_strip_whitespace = True

    @field_validator("room_id")
    @classmethod
    def blank_room_is_global(cls, v):
        return v or None


class ChatMessageOut(BaseModel):
    id: str
    username: str
    message: str
    room_id: Optional[str] = Field(None, alias="roomId")
    created_at: datetime = Field(alias="createdAt")

    class Config:
        from_attributes = True
        populate_by_name = True

    @field_serializer("created_at")
    def iso_utc(self, v: datetime) -> str:
        # SQLite hands back naive datetimes; they are stored as UTC
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        return v.isoformat()


# Inbound (client -> hub)

class ChatPostIn(BaseModel):
    type: Literal["chat"]
    username: str
    message: str
    # Older clients send the game id as gameId
    room_id: Optional[str] = Field(None, validation_alias=AliasChoices("roomId", "gameId"))


# Outbound (hub -> clients)

class ChatBroadcast(BaseModel):
    type: Literal["chat"] = CHAT
    message: ChatMessageOut
    room_id: Optional[str] = Field(None, alias="roomId")

    class Config:
        populate_by_name = True


class ChatRejected(BaseModel):
    type: Literal["error"] = ERROR
    reason: str


OutboundEvent = Annotated[Union[ChatBroadcast, ChatRejected], Field(discriminator="type")]
outbound_events = TypeAdapter(OutboundEvent)


def dump_event(event: OutboundEvent) -> dict:
    return outbound_events.dump_python(event, mode="json", by_alias=True)
