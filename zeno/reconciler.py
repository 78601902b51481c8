"""Turn the outcome of an exchange into chat messages.

A turn starts with a placeholder reply that is edited with tool status while
the model works and finally replaced by the answer. Answers too long for one
message go to Telegraph (or are split), image directives become background
jobs, and grounding links hang off a one-shot "Show sources" button.
"""

import logging
import re
from dataclasses import dataclass

from telegram.constants import ParseMode

from .config import TELEGRAM_MESSAGE_LIMIT
from .errors import FormattingError, ImageQueueFull, OperationTimeout, TransportError
from .image_worker import ImageWorker
from .messaging import Buttons, Messenger
from .schemas import GroundingLink, ImageJob
from .storage import Storage
from .telegraph import TelegraphPublisher
from .utils import split_text

logger = logging.getLogger(__name__)

PLACEHOLDER_TEXT = "💭 Thinking..."
GENERATING_TEXT = "🎨 Generating image..."
NO_RESPONSE_TEXT = "🤷 I got no response this time. Please try rephrasing."
QUEUE_FULL_NOTE = "⚠️ Too many images are being generated right now, skipped: {prompt}"
SOURCES_BUTTON = "🔗 Show sources"
SOURCES_CALLBACK_PREFIX = "sources:"
PREVIEW_LENGTH = 600

IMAGE_DIRECTIVE_RE = re.compile(r"\[IMAGE:\s*(.*?)\s*\]", re.IGNORECASE | re.DOTALL)
_BLANK_LINES_RE = re.compile(r"\n{3,}")


def extract_image_directives(text: str) -> tuple[str, list[str]]:
    """Remove ``[IMAGE: prompt]`` directives, returning the cleaned text and prompts."""
    prompts = [p.strip() for p in IMAGE_DIRECTIVE_RE.findall(text) if p.strip()]
    cleaned = IMAGE_DIRECTIVE_RE.sub("", text)
    return _BLANK_LINES_RE.sub("\n\n", cleaned).strip(), prompts


def format_sources(links: list[GroundingLink]) -> str:
    lines = ["📚 Sources:"]
    for i, link in enumerate(links, start=1):
        lines.append(f"{i}. {link.title}\n{link.uri}")
    return "\n".join(lines)


def sources_callback(links_id: str) -> str:
    return SOURCES_CALLBACK_PREFIX + links_id


@dataclass
class Placeholder:
    chat_id: int
    message_id: int
    # the user message the answer threads under
    reply_to: int | None


class ResponseReconciler:
    def __init__(
        self,
        messenger: Messenger,
        storage: Storage,
        image_worker: ImageWorker,
        telegraph: TelegraphPublisher | None = None,
    ):
        self.messenger = messenger
        self.storage = storage
        self.image_worker = image_worker
        self.telegraph = telegraph

    async def open(self, chat_id: int, reply_to: int | None) -> Placeholder:
        """Send the placeholder reply.

        Raises:
            TransportError, OperationTimeout: nowhere to put an answer; the
                caller must abort the turn.
        """
        message_id = await self.messenger.send_message(
            chat_id, PLACEHOLDER_TEXT, reply_to=reply_to
        )
        return Placeholder(chat_id, message_id, reply_to)

    async def status(self, placeholder: Placeholder, text: str) -> None:
        try:
            await self.messenger.edit_message(
                placeholder.chat_id, placeholder.message_id, text
            )
        except (TransportError, OperationTimeout) as exc:
            logger.debug("Status update in chat %s failed: %s", placeholder.chat_id, exc)

    async def fail(self, placeholder: Placeholder, text: str) -> None:
        try:
            await self.messenger.edit_message(placeholder.chat_id, placeholder.message_id, text)
        except (TransportError, OperationTimeout):
            logger.warning("Could not show error in chat %s", placeholder.chat_id)

    def queue_images(self, placeholder: Placeholder, prompts: list[str]) -> list[str]:
        """Submit image jobs; returns visible notes for jobs the queue refused."""
        notes = []
        for prompt in prompts:
            job = ImageJob(
                prompt=prompt,
                chat_id=placeholder.chat_id,
                reply_to_message_id=placeholder.reply_to,
            )
            try:
                self.image_worker.submit(job)
            except ImageQueueFull:
                notes.append(QUEUE_FULL_NOTE.format(prompt=prompt))
        return notes

    async def finish(
        self,
        placeholder: Placeholder,
        text: str,
        *,
        markdown: bool,
        links_id: str | None = None,
        image_directives: bool = False,
        title: str = "",
    ) -> None:
        """Replace the placeholder with the final answer."""
        prompts: list[str] = []
        if image_directives:
            text, prompts = extract_image_directives(text)
            notes = self.queue_images(placeholder, prompts)
            if notes:
                text = "\n\n".join([text, *notes]) if text else "\n".join(notes)

        if not text.strip():
            text = GENERATING_TEXT if prompts else NO_RESPONSE_TEXT
            markdown = False

        buttons = [(SOURCES_BUTTON, sources_callback(links_id))] if links_id else None

        if len(text) <= TELEGRAM_MESSAGE_LIMIT:
            await self._edit(placeholder, text, markdown=markdown, buttons=buttons)
            return

        url = await self._publish(title or "Answer", text)
        if url is not None:
            preview = split_text(text, PREVIEW_LENGTH)[0]
            await self._edit(
                placeholder,
                f"{preview}...\n\n📖 Full answer: {url}",
                markdown=False,
                buttons=buttons,
            )
            return

        chunks = split_text(text)
        await self._edit(
            placeholder, chunks[0], markdown=False, buttons=buttons if len(chunks) == 1 else None
        )
        for i, chunk in enumerate(chunks[1:], start=2):
            await self.messenger.send_message(
                placeholder.chat_id,
                chunk,
                reply_to=placeholder.message_id,
                buttons=buttons if i == len(chunks) else None,
            )

    async def _publish(self, title: str, text: str) -> str | None:
        if self.telegraph is None:
            return None
        try:
            return await self.telegraph.publish(title, text)
        except (TransportError, OperationTimeout):
            logger.warning("Telegraph publish failed, splitting the answer instead")
            return None

    async def _edit(
        self, placeholder: Placeholder, text: str, *, markdown: bool, buttons: Buttons | None
    ) -> None:
        if markdown:
            try:
                await self.messenger.edit_message(
                    placeholder.chat_id,
                    placeholder.message_id,
                    text,
                    parse_mode=ParseMode.MARKDOWN,
                    buttons=buttons,
                )
                return
            except FormattingError:
                logger.info("Markdown rejected in chat %s, sending plain text", placeholder.chat_id)
        await self.messenger.edit_message(
            placeholder.chat_id, placeholder.message_id, text, buttons=buttons
        )

    async def deliver_sources(self, chat_id: int, message_id: int, links_id: str) -> str:
        """Send a link set once, then disable its button.

        Returns the short acknowledgement shown to whoever pressed the button.
        """
        record = await self.storage.get_links(links_id)
        if record is None:
            return "Sources not found."
        # flip first so concurrent presses can't both send
        if not await self.storage.mark_links_sent(links_id):
            return "Sources were already sent."

        for chunk in split_text(format_sources(record.links)):
            await self.messenger.send_message(chat_id, chunk, reply_to=message_id)
        try:
            await self.messenger.clear_buttons(chat_id, message_id)
        except (TransportError, OperationTimeout):
            logger.warning("Could not remove sources button in chat %s", chat_id)
        return "Sources sent."
