"""One conversational turn, from trigger to final answer.

The ask command runs an agent on the user's own OpenAI-compatible key
without tools and renders plain text; mentions and replies run the chat
agent on the service Gemini key with tools and web search and render
Markdown.
"""

import logging

import logfire
from pydantic_ai import Agent

from .agents import build_ask_agent, build_chat_agent, run_exchange, user_prompt
from .context import AppContext
from .errors import (
    AuthError,
    EmptyResultError,
    OperationTimeout,
    PersistenceError,
    ProviderError,
    TransportError,
)
from .reconciler import NO_RESPONSE_TEXT, SOURCES_CALLBACK_PREFIX, Placeholder
from .schemas import ChatMessage
from .tools import ChatDeps, ToolContext
from .trigger import TriggerRule

logger = logging.getLogger(__name__)

KEY_URL = "https://cloud.cerebras.ai/platform/"
GENERIC_ERROR_TEXT = "⚠️ Something went wrong. Please try again later."
INVALID_KEY_TEXT = "🔑 Your API key was rejected. Register a new one in a private chat: /{command} <key>"


def missing_key_text(command: str) -> str:
    return f"Add your API key first.\nGet a key: {KEY_URL}\nThen DM me: /{command} <yourkey>"


def add_key_usage(command: str) -> str:
    return f"Usage: /{command} <your_api_key>\n\nGet your API key from: {KEY_URL}"


def ask_usage(command: str) -> str:
    return f"Usage: /{command} <query> or reply to a message with /{command}"


class Orchestrator:
    def __init__(self, ctx: AppContext):
        self.ctx = ctx

    @property
    def settings(self):
        return self.ctx.settings

    async def handle_message(self, message: ChatMessage) -> bool:
        """Run a turn if ``message`` triggers the bot. Returns whether it did."""
        trigger = await self.ctx.detector.detect(message)
        if not trigger.triggered:
            return False

        logfire.info(
            f"trigger {trigger.rule.value} from {message.sender_id} in chat {message.chat_id}"
        )
        if trigger.rule is TriggerRule.COMMAND:
            await self.ask(message, trigger.query)
            return True

        if not self.settings.chat_allowed(message.chat_id):
            logger.info("Ignoring trigger in chat %s: not in ALLOWED_CHAT_IDS", message.chat_id)
            logfire.info(f"unauthorized chat {message.chat_id}")
            return False
        await self.chat(message, trigger.query)
        return True

    async def _reply(self, message: ChatMessage, text: str) -> None:
        try:
            await self.ctx.messenger.send_message(message.chat_id, text, reply_to=message.id)
        except (TransportError, OperationTimeout):
            logger.warning("Could not reply in chat %s", message.chat_id)

    async def credential_for(self, message: ChatMessage) -> str:
        """The sender's stored ask key.

        Raises:
            AuthError: no sender identity or no key registered.
        """
        if message.sender_id is None:
            raise AuthError("anonymous senders can't register keys")
        key = await self.ctx.storage.get_credential(message.sender_id, self.settings.ask_provider)
        if not key:
            raise AuthError(f"user {message.sender_id} has no {self.settings.ask_provider} key")
        return key

    async def ask(self, message: ChatMessage, query: str) -> None:
        try:
            api_key = await self.credential_for(message)
        except AuthError as exc:
            logger.info("Ask from %s declined: %s", message.sender_id, exc)
            await self._reply(message, missing_key_text(self.settings.add_key_command))
            return
        except PersistenceError:
            await self._reply(message, GENERIC_ERROR_TEXT)
            return

        context = await self.ctx.assembler.assemble(message, query, with_media=False)
        if context.is_empty:
            await self._reply(message, ask_usage(self.settings.ask_command))
            return

        placeholder = await self._open(message)
        if placeholder is None:
            return
        agent = build_ask_agent(self.ctx.gateway.for_user(api_key), self.settings.persona)
        await self._exchange(
            message,
            placeholder,
            agent,
            context.render(),
            markdown=False,
            image_directives=True,
            title=query,
        )

    async def chat(self, message: ChatMessage, query: str) -> None:
        context = await self.ctx.assembler.assemble(message, query)
        if context.is_empty and not context.attachments:
            await self._reply(message, ask_usage(self.settings.ask_command))
            return

        placeholder = await self._open(message)
        if placeholder is None:
            return
        agent = build_chat_agent(
            self.ctx.gateway.chat_model,
            self.settings.persona,
            grounding=self.settings.enable_grounding,
        )
        deps = ChatDeps(
            engine=self.ctx.tools,
            context=ToolContext(chat_id=message.chat_id, reply_to=message.id),
        )
        await self._exchange(
            message,
            placeholder,
            agent,
            user_prompt(context.render(), context.attachments),
            markdown=True,
            deps=deps,
            title=query,
        )

    async def _open(self, message: ChatMessage) -> Placeholder | None:
        try:
            return await self.ctx.reconciler.open(message.chat_id, message.id)
        except (TransportError, OperationTimeout):
            logger.exception("Placeholder failed in chat %s, dropping turn", message.chat_id)
            return None

    async def _exchange(
        self,
        message: ChatMessage,
        placeholder: Placeholder,
        agent: Agent,
        prompt,
        *,
        markdown: bool,
        image_directives: bool = False,
        deps: ChatDeps | None = None,
        title: str = "",
    ) -> None:
        reconciler = self.ctx.reconciler

        async def on_status(text: str) -> None:
            await reconciler.status(placeholder, text)

        if deps is not None:
            deps.on_status = on_status

        with logfire.span(
            "exchange in chat {chat_id}",
            chat_id=message.chat_id,
            user_id=message.sender_id,
            agent=agent.name,
        ):
            try:
                outcome = await run_exchange(agent, prompt, self.ctx.storage, deps=deps)
            except EmptyResultError:
                logger.info("No response from %s model in chat %s", agent.name, message.chat_id)
                await reconciler.fail(placeholder, NO_RESPONSE_TEXT)
                return
            except ProviderError as exc:
                logger.exception(
                    "Provider error in chat %s for user %s (status %s)",
                    message.chat_id,
                    message.sender_id,
                    exc.status,
                )
                if image_directives and exc.status in (401, 403):
                    text = INVALID_KEY_TEXT.format(command=self.settings.add_key_command)
                else:
                    text = GENERIC_ERROR_TEXT
                await reconciler.fail(placeholder, text)
                return
            except (TransportError, OperationTimeout):
                logger.exception(
                    "Exchange failed in chat %s for user %s", message.chat_id, message.sender_id
                )
                await reconciler.fail(placeholder, GENERIC_ERROR_TEXT)
                return
            except Exception:
                logger.exception(
                    "Unexpected failure in chat %s for user %s", message.chat_id, message.sender_id
                )
                await reconciler.fail(placeholder, GENERIC_ERROR_TEXT)
                return

            try:
                await reconciler.finish(
                    placeholder,
                    outcome.text,
                    markdown=markdown,
                    links_id=outcome.links_id,
                    image_directives=image_directives,
                    title=title,
                )
            except (TransportError, OperationTimeout):
                logger.exception("Could not deliver answer in chat %s", message.chat_id)
                return

        logfire.info(
            f"exchange finished in chat {message.chat_id} after {outcome.iterations} rounds"
        )

    async def add_credential(self, message: ChatMessage, args: list[str]) -> str:
        """Store the sender's ask key and return the reply text."""
        key = " ".join(args).strip()
        if not key:
            return add_key_usage(self.settings.add_key_command)
        if message.sender_id is None:
            return "I can't tell who you are, so I can't store a key for you."
        try:
            await self.ctx.storage.set_credential(
                message.sender_id, self.settings.ask_provider, key
            )
        except PersistenceError:
            return "Error saving API key. Try again."
        logger.info("Stored %s key for user %s", self.settings.ask_provider, message.sender_id)
        return f"API key saved successfully! You can now use /{self.settings.ask_command} in groups."

    async def show_sources(self, chat_id: int, message_id: int, data: str) -> str:
        links_id = data.removeprefix(SOURCES_CALLBACK_PREFIX)
        try:
            return await self.ctx.reconciler.deliver_sources(chat_id, message_id, links_id)
        except PersistenceError:
            return "Could not load sources right now."
        except (TransportError, OperationTimeout):
            logger.exception("Sending sources %s to chat %s failed", links_id, chat_id)
            return "Could not send sources."
