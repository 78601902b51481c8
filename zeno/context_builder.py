"""Assemble the conversational context sent to a provider.

The request text is built from three delimited blocks: recent chat history,
the message being replied to, and the triggering query. Every fetch degrades
to "nothing" on failure so the user's direct query stays answerable.
"""

import logging
import mimetypes
from dataclasses import dataclass, field

from .config import (
    GROUP_HISTORY_LIMIT,
    HISTORY_OVERFETCH,
    PRIVATE_HISTORY_LIMIT,
    REPLY_LOOKUP_WINDOW,
)
from .errors import OperationTimeout, TransportError
from .messaging import Messenger, display_name
from .schemas import Attachment, ChatMessage, ConversationTurn
from .trigger import COMMAND_PREFIX

logger = logging.getLogger(__name__)

GENERIC_MIME_TYPES = frozenset({"", "application/octet-stream", "binary/octet-stream"})

# (offset, signature, mime type)
_SIGNATURES: tuple[tuple[int, bytes, str], ...] = (
    (0, b"\x89PNG\r\n\x1a\n", "image/png"),
    (0, b"\xff\xd8\xff", "image/jpeg"),
    (0, b"GIF87a", "image/gif"),
    (0, b"GIF89a", "image/gif"),
    (0, b"%PDF-", "application/pdf"),
    (0, b"OggS", "audio/ogg"),
    (0, b"ID3", "audio/mpeg"),
    (0, b"\x1aE\xdf\xa3", "video/webm"),
    (4, b"ftyp", "video/mp4"),
)


def classify_mime(declared: str | None, data: bytes, file_name: str | None = None) -> str:
    """Pick a MIME type, probing the content when the declared one is generic."""
    if declared and declared.lower() not in GENERIC_MIME_TYPES:
        return declared
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    for offset, signature, mime in _SIGNATURES:
        if data[offset : offset + len(signature)] == signature:
            return mime
    if file_name:
        guessed, _ = mimetypes.guess_type(file_name)
        if guessed:
            return guessed
    try:
        data[:1024].decode("utf-8")
    except UnicodeDecodeError:
        return "application/octet-stream"
    return "text/plain"


def history_limit(message: ChatMessage) -> int:
    return PRIVATE_HISTORY_LIMIT if message.is_private else GROUP_HISTORY_LIMIT


@dataclass
class AssembledContext:
    sender: str
    query: str
    history: list[ConversationTurn] = field(default_factory=list)
    replied_to: ConversationTurn | None = None
    attachments: list[Attachment] = field(default_factory=list)
    query_notes: list[str] = field(default_factory=list)
    replied_notes: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.query and self.replied_to is None and not self.history

    def render(self) -> str:
        parts: list[str] = []
        if self.history:
            lines = []
            for turn in self.history:
                lines.append(turn.speaker)
                lines.append(turn.text)
            parts.append("Chat context:\n```\n" + "\n".join(lines) + "\n```\n")

        if self.replied_to is not None:
            body = [self.replied_to.speaker, self.replied_to.text, *self.replied_notes]
            parts.append("Replied to:\n```\n" + "\n".join(b for b in body if b) + "\n```\n")

        if self.query or self.query_notes:
            body = [self.query, *self.query_notes]
            parts.append(
                f"user `{self.sender}` Asked:\n```\n"
                + "\n".join(b for b in body if b)
                + "\n```\n"
            )
        return "".join(parts)


class ContextAssembler:
    def __init__(self, messenger: Messenger, max_media_size: int):
        self.messenger = messenger
        self.max_media_size = max_media_size

    async def assemble(
        self, message: ChatMessage, query: str, *, with_media: bool = True
    ) -> AssembledContext:
        context = AssembledContext(sender=display_name(message), query=query)
        context.history = await self.fetch_history(message)

        if message.reply_to_id:
            replied = await self.fetch_message(message.chat_id, message.reply_to_id)
            if replied is None:
                logger.info(
                    "Replied message %s in chat %s unavailable",
                    message.reply_to_id,
                    message.chat_id,
                )
            else:
                context.replied_to = ConversationTurn(
                    speaker=display_name(replied), text=replied.text
                )
                if with_media:
                    attachment = await self.attachment_for(replied)
                    if attachment is not None:
                        context.attachments.append(attachment)
                        context.replied_notes.append(f"[attached file: {attachment.file_name}]")

        if with_media:
            attachment = await self.attachment_for(message)
            if attachment is not None:
                context.attachments.append(attachment)
                context.query_notes.append(f"[attached file: {attachment.file_name}]")

        return context

    async def fetch_history(self, message: ChatMessage) -> list[ConversationTurn]:
        """Recent messages before ``message``, oldest first.

        Excludes the triggering message, the message it replies to, empty
        text and commands.
        """
        limit = history_limit(message)
        try:
            fetched = await self.messenger.get_history(
                message.chat_id, message.id, limit + HISTORY_OVERFETCH
            )
        except TransportError:
            logger.warning("History fetch failed for chat %s", message.chat_id)
            return []

        excluded = {message.id}
        if message.reply_to_id:
            excluded.add(message.reply_to_id)

        kept = [
            m
            for m in fetched
            if m.id not in excluded
            and m.text.strip()
            and not m.text.startswith(COMMAND_PREFIX)
        ]
        kept.sort(key=lambda m: m.id)
        return [ConversationTurn(speaker=display_name(m), text=m.text) for m in kept[-limit:]]

    async def fetch_message(self, chat_id: int, message_id: int) -> ChatMessage | None:
        """Look a message up by id, falling back to a history window around it."""
        try:
            for m in await self.messenger.get_messages_by_ids(chat_id, [message_id]):
                if m.id == message_id:
                    return m
        except (TransportError, NotImplementedError):
            logger.debug("Direct lookup of %s in chat %s failed", message_id, chat_id)

        try:
            window = await self.messenger.get_history(
                chat_id, message_id + 1, REPLY_LOOKUP_WINDOW
            )
        except TransportError:
            logger.warning("History fallback for %s in chat %s failed", message_id, chat_id)
            return None
        for m in window:
            if m.id == message_id:
                return m
        return None

    async def attachment_for(self, message: ChatMessage) -> Attachment | None:
        """Download a message's media, or None when absent, oversized or unavailable."""
        media = message.media
        if media is None:
            return None
        if media.size is not None and media.size > self.max_media_size:
            logger.info(
                "Skipping %s media of message %s: %d bytes over cap",
                media.kind,
                message.id,
                media.size,
            )
            return None

        try:
            data = await self.messenger.download_media(message)
        except (TransportError, OperationTimeout):
            logger.warning("Media download failed for message %s", message.id)
            return None
        if len(data) > self.max_media_size:
            return None

        mime_type = classify_mime(media.mime_type, data, media.file_name)
        file_name = media.file_name
        if not file_name:
            ext = mimetypes.guess_extension(mime_type) or ""
            file_name = f"{media.kind}_{message.id}{ext}"
        return Attachment(data=data, mime_type=mime_type, file_name=file_name)
