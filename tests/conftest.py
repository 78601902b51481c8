"""Shared fixtures: a temporary SQLite storage, an in-memory messenger and
scripted model responses for agents running on a FunctionModel."""

from pathlib import Path
from typing import Sequence

import pytest
from pydantic_ai.messages import ModelResponse, TextPart, ToolCallPart

from zeno.config import Settings
from zeno.db import create_engine
from zeno.errors import FormattingError, TransportError
from zeno.models import Base
from zeno.schemas import ChatMessage, Entity, MediaInfo, Sender
from zeno.storage import Storage

BOT_ID = 999
BOT_HANDLE = "NityaXbot"
GROUP_ID = -1001


class ModelScript:
    """FunctionModel function replaying scripted responses (or errors), repeating the last one."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.calls = []

    async def __call__(self, messages, info):
        self.calls.append((list(messages), info))
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if isinstance(step, Exception):
            raise step
        return step


def text_response(content: str) -> ModelResponse:
    return ModelResponse(parts=[TextPart(content=content)])


def tool_response(*calls: tuple[str, dict], text: str = "") -> ModelResponse:
    parts = [TextPart(content=text)] if text else []
    parts.extend(
        ToolCallPart(tool_name=name, args=args, tool_call_id=f"call_{i}")
        for i, (name, args) in enumerate(calls)
    )
    return ModelResponse(parts=parts)


def make_message(
    id: int,
    text: str = "",
    *,
    chat_id: int = GROUP_ID,
    chat_type: str = "supergroup",
    user_id: int | None = 1,
    username: str | None = "alice",
    first_name: str | None = "Alice",
    reply_to: int | None = None,
    entities: list[tuple[str, str]] | None = None,
    media: MediaInfo | None = None,
) -> ChatMessage:
    sender = None
    if user_id is not None:
        sender = Sender(id=user_id, username=username, first_name=first_name)
    return ChatMessage(
        id=id,
        chat_id=chat_id,
        chat_type=chat_type,
        sender=sender,
        text=text,
        reply_to_id=reply_to,
        entities=[Entity(type=t, text=s) for t, s in entities or []],
        media=media,
    )


class FakeMessenger:
    """Messenger that keeps everything in memory and records every call."""

    def __init__(self):
        self.messages: dict[tuple[int, int], ChatMessage] = {}
        self.media: dict[int, bytes] = {}
        self.sent: list[dict] = []
        self.edits: list[dict] = []
        self.documents: list[dict] = []
        self.photos: list[dict] = []
        self.cleared: list[tuple[int, int]] = []
        self.download_calls: list[int] = []
        self.fail_send = False
        self.fail_history = False
        self.fail_lookup = False
        self.reject_markdown = False
        self._next_id = 5000

    def add(self, *messages: ChatMessage) -> None:
        for m in messages:
            self.messages[(m.chat_id, m.id)] = m

    async def get_history(self, chat_id: int, before_id: int, limit: int) -> list[ChatMessage]:
        if self.fail_history:
            raise TransportError("history unavailable")
        found = [m for (c, i), m in self.messages.items() if c == chat_id and i < before_id]
        found.sort(key=lambda m: m.id, reverse=True)
        return found[:limit]

    async def get_messages_by_ids(self, chat_id: int, ids: Sequence[int]) -> list[ChatMessage]:
        if self.fail_lookup:
            raise TransportError("lookup unavailable")
        return [self.messages[(chat_id, i)] for i in ids if (chat_id, i) in self.messages]

    async def download_media(self, message: ChatMessage) -> bytes:
        self.download_calls.append(message.id)
        if message.id not in self.media:
            raise TransportError("download failed")
        return self.media[message.id]

    async def send_message(
        self, chat_id, text, *, reply_to=None, parse_mode=None, buttons=None
    ) -> int:
        if self.fail_send:
            raise TransportError("send failed")
        self._next_id += 1
        self.sent.append(
            {
                "id": self._next_id,
                "chat_id": chat_id,
                "text": text,
                "reply_to": reply_to,
                "parse_mode": parse_mode,
                "buttons": buttons,
            }
        )
        self.add(
            make_message(
                self._next_id, text, chat_id=chat_id, user_id=BOT_ID, username=BOT_HANDLE
            )
        )
        return self._next_id

    async def edit_message(self, chat_id, message_id, text, *, parse_mode=None, buttons=None):
        if self.reject_markdown and parse_mode:
            raise FormattingError("can't parse entities")
        self.edits.append(
            {
                "chat_id": chat_id,
                "message_id": message_id,
                "text": text,
                "parse_mode": parse_mode,
                "buttons": buttons,
            }
        )

    async def clear_buttons(self, chat_id, message_id):
        self.cleared.append((chat_id, message_id))

    async def send_document(self, chat_id, path: Path, *, caption, reply_to=None) -> int:
        self.documents.append(
            {"chat_id": chat_id, "path": path, "caption": caption, "reply_to": reply_to}
        )
        return 1

    async def send_photo(self, chat_id, path: Path, *, caption, reply_to=None) -> int:
        if self.fail_send:
            raise TransportError("send failed")
        self.photos.append(
            {
                "chat_id": chat_id,
                "path": path,
                "data": path.read_bytes(),
                "caption": caption,
                "reply_to": reply_to,
            }
        )
        return 1

    @property
    def last_edit(self) -> dict:
        return self.edits[-1]


@pytest.fixture
def messenger() -> FakeMessenger:
    return FakeMessenger()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        telegram_bot_token="123:abc",
        aistudio_api_key="service-key",
        bot_handle=BOT_HANDLE,
        database_url=f"sqlite+aiosqlite:///{tmp_path}/zeno.db",
        generated_dir=str(tmp_path / "generated"),
    )


@pytest.fixture
async def storage(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield Storage(engine)
    await engine.dispose()
