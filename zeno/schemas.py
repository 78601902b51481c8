from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Chat messages as seen by the orchestrator
# ---------------------------------------------------------------------------


class Sender(BaseModel):
    id: int
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    is_bot: bool = False


class Entity(BaseModel):
    """A typed span of a message's text (mentions, commands, ...)."""

    type: str
    text: str


class MediaInfo(BaseModel):
    kind: str
    file_id: str
    file_name: str | None = None
    mime_type: str | None = None
    size: int | None = None


class ChatMessage(BaseModel):
    """Transport-neutral snapshot of a Telegram message."""

    id: int
    chat_id: int
    chat_type: str = "group"
    sender: Sender | None = None
    # Raw peer reference when no resolved identity is available, e.g. "channel:-100123".
    sender_peer: str | None = None
    text: str = ""
    reply_to_id: int | None = None
    entities: list[Entity] = Field(default_factory=list)
    media: MediaInfo | None = None
    date: datetime | None = None

    @property
    def sender_id(self) -> int | None:
        return self.sender.id if self.sender else None

    @property
    def is_private(self) -> bool:
        return self.chat_type == "private"


# ---------------------------------------------------------------------------
# Generation requests and results
# ---------------------------------------------------------------------------


class ConversationTurn(BaseModel):
    speaker: str
    text: str


class Attachment(BaseModel):
    data: bytes
    mime_type: str
    file_name: str


class ToolCall(BaseModel):
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    id: str | None = None


class ToolResult(BaseModel):
    success: bool
    payload: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, **payload: Any) -> "ToolResult":
        return cls(success=True, payload=payload)

    @classmethod
    def failure(cls, error: Exception | str, **payload: Any) -> "ToolResult":
        if isinstance(error, Exception):
            payload.setdefault("error_type", type(error).__name__)
            payload["error"] = str(error)
        else:
            payload["error"] = error
        return cls(success=False, payload=payload)


class GroundingLink(BaseModel):
    title: str
    uri: str


class GeneratedImage(BaseModel):
    data: bytes
    mime_type: str


class GenerationResult(BaseModel):
    """What the image model returned: any text and the generated images."""

    text: str = ""
    images: list[GeneratedImage] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Persisted and queued records
# ---------------------------------------------------------------------------


class VertexLinksRead(BaseModel):
    id: str
    links: list[GroundingLink]
    sent: bool

    model_config = {"from_attributes": True}


class ImageJob(BaseModel):
    prompt: str
    chat_id: int
    reply_to_message_id: int | None = None
