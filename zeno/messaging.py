"""Messaging collaborator backed by the Telegram Bot API.

The Bot API cannot read chat history, so every message the bot sees or sends
is recorded in the message log and history/lookups are served from there.
"""

import logging
from pathlib import Path
from typing import Protocol, Sequence

from telegram import (
    Bot,
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    LinkPreviewOptions,
    Message,
    MessageEntity,
    ReplyParameters,
)
from telegram.error import BadRequest, TelegramError, TimedOut

from .errors import FormattingError, OperationTimeout, PersistenceError, TransportError
from .schemas import ChatMessage, Entity, MediaInfo, Sender
from .storage import Storage

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 32
_NO_PREVIEW = LinkPreviewOptions(is_disabled=True)

Buttons = Sequence[tuple[str, str]]


class Messenger(Protocol):
    async def get_history(self, chat_id: int, before_id: int, limit: int) -> list[ChatMessage]: ...

    async def get_messages_by_ids(self, chat_id: int, ids: Sequence[int]) -> list[ChatMessage]: ...

    async def download_media(self, message: ChatMessage) -> bytes: ...

    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        reply_to: int | None = None,
        parse_mode: str | None = None,
        buttons: Buttons | None = None,
    ) -> int: ...

    async def edit_message(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        *,
        parse_mode: str | None = None,
        buttons: Buttons | None = None,
    ) -> None: ...

    async def clear_buttons(self, chat_id: int, message_id: int) -> None: ...

    async def send_document(
        self, chat_id: int, path: Path, *, caption: str, reply_to: int | None = None
    ) -> int: ...

    async def send_photo(
        self, chat_id: int, path: Path, *, caption: str, reply_to: int | None = None
    ) -> int: ...


def display_name(message: ChatMessage) -> str:
    """Normalized speaker name: @username, else full name, else a numeric fallback."""
    sender = message.sender
    if sender is not None:
        if sender.username:
            return "@" + sender.username
        name = " ".join(part for part in (sender.first_name, sender.last_name) if part)
        if name:
            return name[:MAX_NAME_LENGTH]
        return f"User_{sender.id}"
    if message.sender_peer:
        return message.sender_peer
    return "Unknown"


def _media_info(message: Message) -> MediaInfo | None:
    if message.photo:
        photo = message.photo[-1]
        return MediaInfo(
            kind="photo",
            file_id=photo.file_id,
            file_name=f"photo_{message.message_id}.jpg",
            mime_type="image/jpeg",
            size=photo.file_size,
        )
    for kind in ("document", "video", "audio", "voice", "animation"):
        media = getattr(message, kind, None)
        if media is not None:
            return MediaInfo(
                kind=kind,
                file_id=media.file_id,
                file_name=getattr(media, "file_name", None),
                mime_type=getattr(media, "mime_type", None),
                size=media.file_size,
            )
    return None


def from_telegram(message: Message) -> ChatMessage:
    """Convert a python-telegram-bot Message into a ChatMessage."""
    sender = None
    sender_peer = None
    if message.from_user is not None:
        user = message.from_user
        sender = Sender(
            id=user.id,
            username=user.username,
            first_name=user.first_name,
            last_name=user.last_name,
            is_bot=user.is_bot,
        )
    elif message.sender_chat is not None:
        sender_peer = f"Channel_{message.sender_chat.id}"

    if message.text is not None:
        text = message.text
        parsed = message.parse_entities([MessageEntity.MENTION, MessageEntity.BOT_COMMAND])
    else:
        text = message.caption or ""
        parsed = message.parse_caption_entities(
            [MessageEntity.MENTION, MessageEntity.BOT_COMMAND]
        )

    return ChatMessage(
        id=message.message_id,
        chat_id=message.chat.id,
        chat_type=str(message.chat.type),
        sender=sender,
        sender_peer=sender_peer,
        text=text,
        reply_to_id=(
            message.reply_to_message.message_id if message.reply_to_message else None
        ),
        entities=[Entity(type=str(e.type), text=t) for e, t in parsed.items()],
        media=_media_info(message),
        date=message.date,
    )


def _markup(buttons: Buttons | None) -> InlineKeyboardMarkup | None:
    if not buttons:
        return None
    return InlineKeyboardMarkup(
        [[InlineKeyboardButton(label, callback_data=data)] for label, data in buttons]
    )


def _reply(reply_to: int | None) -> ReplyParameters | None:
    if not reply_to:
        return None
    return ReplyParameters(message_id=reply_to, allow_sending_without_reply=True)


def _translate(exc: TelegramError, operation: str) -> Exception:
    if isinstance(exc, TimedOut):
        return OperationTimeout(f"{operation} timed out")
    if isinstance(exc, BadRequest) and "parse entities" in exc.message.lower():
        return FormattingError(f"{operation}: {exc.message}")
    return TransportError(f"{operation} failed: {exc.message}")


class TelegramMessenger:
    def __init__(self, bot: Bot, storage: Storage):
        self.bot = bot
        self.storage = storage

    async def remember(self, message: Message | ChatMessage) -> None:
        """Record a message (and the one it replies to) in the message log."""
        if isinstance(message, Message):
            if message.reply_to_message is not None:
                await self._record(from_telegram(message.reply_to_message))
            message = from_telegram(message)
        await self._record(message)

    async def _record(self, message: ChatMessage) -> None:
        try:
            await self.storage.record_message(message)
        except PersistenceError:
            logger.warning(
                "Could not record message %s in chat %s", message.id, message.chat_id
            )

    async def _record_sent(self, sent: Message | bool) -> None:
        if isinstance(sent, Message):
            await self._record(from_telegram(sent))

    async def get_history(self, chat_id: int, before_id: int, limit: int) -> list[ChatMessage]:
        try:
            return await self.storage.get_history(chat_id, before_id, limit)
        except PersistenceError as exc:
            raise TransportError(f"history for chat {chat_id} unavailable") from exc

    async def get_messages_by_ids(self, chat_id: int, ids: Sequence[int]) -> list[ChatMessage]:
        try:
            return await self.storage.get_messages(chat_id, ids)
        except PersistenceError as exc:
            raise TransportError(f"messages {list(ids)} unavailable") from exc

    async def download_media(self, message: ChatMessage) -> bytes:
        if message.media is None:
            raise TransportError(f"message {message.id} has no media")
        try:
            file = await self.bot.get_file(message.media.file_id)
            return bytes(await file.download_as_bytearray())
        except TelegramError as exc:
            raise _translate(exc, "download_media") from exc

    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        reply_to: int | None = None,
        parse_mode: str | None = None,
        buttons: Buttons | None = None,
    ) -> int:
        try:
            sent = await self.bot.send_message(
                chat_id=chat_id,
                text=text,
                parse_mode=parse_mode,
                reply_markup=_markup(buttons),
                reply_parameters=_reply(reply_to),
                link_preview_options=_NO_PREVIEW,
            )
        except TelegramError as exc:
            raise _translate(exc, "send_message") from exc
        await self._record_sent(sent)
        return sent.message_id

    async def edit_message(
        self,
        chat_id: int,
        message_id: int,
        text: str,
        *,
        parse_mode: str | None = None,
        buttons: Buttons | None = None,
    ) -> None:
        try:
            edited = await self.bot.edit_message_text(
                text=text,
                chat_id=chat_id,
                message_id=message_id,
                parse_mode=parse_mode,
                reply_markup=_markup(buttons),
                link_preview_options=_NO_PREVIEW,
            )
        except BadRequest as exc:
            if "message is not modified" in exc.message.lower():
                return
            raise _translate(exc, "edit_message") from exc
        except TelegramError as exc:
            raise _translate(exc, "edit_message") from exc
        await self._record_sent(edited)

    async def clear_buttons(self, chat_id: int, message_id: int) -> None:
        try:
            await self.bot.edit_message_reply_markup(
                chat_id=chat_id, message_id=message_id, reply_markup=None
            )
        except BadRequest as exc:
            if "message is not modified" in exc.message.lower():
                return
            raise _translate(exc, "clear_buttons") from exc
        except TelegramError as exc:
            raise _translate(exc, "clear_buttons") from exc

    async def send_document(
        self, chat_id: int, path: Path, *, caption: str, reply_to: int | None = None
    ) -> int:
        try:
            with open(path, "rb") as fh:
                sent = await self.bot.send_document(
                    chat_id=chat_id,
                    document=fh,
                    filename=path.name,
                    caption=caption,
                    disable_content_type_detection=True,
                    reply_parameters=_reply(reply_to),
                )
        except OSError as exc:
            raise TransportError(f"cannot read {path.name}") from exc
        except TelegramError as exc:
            raise _translate(exc, "send_document") from exc
        await self._record_sent(sent)
        return sent.message_id

    async def send_photo(
        self, chat_id: int, path: Path, *, caption: str, reply_to: int | None = None
    ) -> int:
        try:
            with open(path, "rb") as fh:
                sent = await self.bot.send_photo(
                    chat_id=chat_id,
                    photo=fh,
                    caption=caption,
                    reply_parameters=_reply(reply_to),
                )
        except OSError as exc:
            raise TransportError(f"cannot read {path.name}") from exc
        except TelegramError as exc:
            raise _translate(exc, "send_photo") from exc
        await self._record_sent(sent)
        return sent.message_id
