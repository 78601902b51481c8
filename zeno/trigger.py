"""Decide whether an incoming message should engage the bot.

Rules are evaluated in order and the first match wins:

1. the ask command (``/askai ...``)
2. the inline mention token (``@ask``) anywhere in the text
3. a reply to a message the bot itself sent
4. an explicit mention entity of the bot's handle

Command-prefixed text only ever satisfies rule 1.
"""

import enum
import logging
import re
from dataclasses import dataclass

from .errors import TransportError
from .messaging import Messenger
from .schemas import ChatMessage

logger = logging.getLogger(__name__)

COMMAND_PREFIX = "/"
_SPACES_RE = re.compile(r"[ \t]{2,}")


class TriggerRule(enum.Enum):
    COMMAND = "command"
    MENTION_PATTERN = "mention_pattern"
    REPLY_TO_BOT = "reply_to_bot"
    HANDLE_MENTION = "handle_mention"


@dataclass(frozen=True)
class Trigger:
    triggered: bool
    query: str = ""
    rule: TriggerRule | None = None


NOT_TRIGGERED = Trigger(triggered=False)


def _tidy(text: str) -> str:
    return _SPACES_RE.sub(" ", text).strip()


class TriggerDetector:
    def __init__(
        self,
        messenger: Messenger,
        bot_user_id: int,
        bot_handle: str,
        command: str = "askai",
        mention_trigger: str = "@ask",
    ):
        self.messenger = messenger
        self.bot_user_id = bot_user_id
        self.bot_handle = bot_handle.lstrip("@")
        self._command_re = re.compile(
            rf"^/{re.escape(command)}(?:@(?P<target>\w+))?(?=\s|$)(?P<args>.*)$",
            re.IGNORECASE | re.DOTALL,
        )
        self._mention_re = re.compile(
            rf"(?<!\w){re.escape(mention_trigger)}(?!\w)", re.IGNORECASE
        )

    async def detect(self, message: ChatMessage) -> Trigger:
        text = message.text or ""

        if text.startswith(COMMAND_PREFIX):
            return self._match_command(text)

        if self._mention_re.search(text):
            return Trigger(
                True, _tidy(self._mention_re.sub("", text)), TriggerRule.MENTION_PATTERN
            )

        if message.reply_to_id and await self._is_reply_to_bot(message):
            return Trigger(True, text.strip(), TriggerRule.REPLY_TO_BOT)

        handle = "@" + self.bot_handle.lower()
        for entity in message.entities:
            if entity.type == "mention" and entity.text.lower() == handle:
                return Trigger(
                    True, _tidy(text.replace(entity.text, "", 1)), TriggerRule.HANDLE_MENTION
                )

        return NOT_TRIGGERED

    def _match_command(self, text: str) -> Trigger:
        match = self._command_re.match(text)
        if match is None:
            return NOT_TRIGGERED
        target = match.group("target")
        if target and target.lower() != self.bot_handle.lower():
            # addressed to another bot in the same group
            return NOT_TRIGGERED
        return Trigger(True, match.group("args").strip(), TriggerRule.COMMAND)

    async def _is_reply_to_bot(self, message: ChatMessage) -> bool:
        try:
            replied = await self.messenger.get_messages_by_ids(
                message.chat_id, [message.reply_to_id]
            )
        except TransportError:
            logger.debug(
                "Could not resolve reply target %s in chat %s",
                message.reply_to_id,
                message.chat_id,
            )
            return False
        return any(
            m.id == message.reply_to_id and m.sender_id == self.bot_user_id for m in replied
        )
