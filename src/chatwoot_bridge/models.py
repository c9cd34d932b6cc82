"""Persistent and wire models for the bridge."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field as PydanticField
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FailedMessage(SQLModel, table=True):
    """An inbound forward that could not complete, kept for replay."""

    __tablename__ = "failed_messages"

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=_utcnow, index=True)
    sender_id: Optional[str] = Field(default=None, max_length=64)
    username: Optional[str] = Field(default=None, max_length=128)
    first_name: Optional[str] = Field(default=None, max_length=256)
    last_name: Optional[str] = Field(default=None, max_length=256)
    phone: Optional[str] = Field(default=None, max_length=64)
    message: Optional[str] = None
    error: Optional[str] = None
    source_id: Optional[str] = Field(default=None, max_length=128)
    contact_id: Optional[str] = Field(default=None, max_length=64)
    inbox_id: Optional[str] = Field(default=None, max_length=64)
    attempts: int = Field(default=0)
    next_attempt_at: Optional[datetime] = Field(default=None)


@dataclass(slots=True, frozen=True)
class InboundMessage:
    """A private text message received from a chat user."""

    sender_id: str
    text: str
    username: str = ""
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    is_group: bool = False


class WebhookConversation(BaseModel):
    # Chatwoot embeds the full conversation; keep the extras for tag lookup.
    model_config = ConfigDict(extra="allow")

    id: Optional[int] = None
    source_id: Optional[str] = None


class WebhookPayload(BaseModel):
    """Body of a Chatwoot webhook delivery."""

    model_config = ConfigDict(extra="allow")

    event: Optional[str] = None
    message_type: Optional[str] = None
    content: Optional[str] = None
    private: Optional[bool] = None
    conversation: Optional[WebhookConversation] = None

    def conversation_fields(self) -> dict[str, Any]:
        if self.conversation is None:
            return {}
        return self.conversation.model_dump(exclude_none=True)


class SendChannelRequest(BaseModel):
    channel: str = PydanticField(min_length=1)
    message: str = PydanticField(min_length=1)
