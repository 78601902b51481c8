import asyncio
import logging

import logfire
from telegram import Update
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from .config import Settings
from .context import build_app_context
from .errors import OperationTimeout, TransportError
from .messaging import from_telegram
from .orchestrator import Orchestrator
from .reconciler import SOURCES_CALLBACK_PREFIX

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", level=logging.INFO
)
# httpx logs every Bot API request at INFO, including the token in the URL
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def _orchestrator(context: ContextTypes.DEFAULT_TYPE) -> Orchestrator:
    return context.bot_data["orchestrator"]


async def record_message(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Keep every message the bot sees in the message log."""
    message = update.effective_message
    if message is None:
        return
    await _orchestrator(context).ctx.messenger.remember(message)


async def add_api_key(update: Update, context: ContextTypes.DEFAULT_TYPE):
    message = update.message
    if message is None:
        return
    orchestrator = _orchestrator(context)
    reply = await orchestrator.add_credential(from_telegram(message), context.args or [])
    try:
        await orchestrator.ctx.messenger.send_message(
            message.chat.id, reply, reply_to=message.message_id
        )
    except (TransportError, OperationTimeout):
        logger.warning("Could not answer key registration in chat %s", message.chat.id)


async def on_message(update: Update, context: ContextTypes.DEFAULT_TYPE):
    message = update.message
    if message is None:
        return
    await _orchestrator(context).handle_message(from_telegram(message))


async def show_sources(update: Update, context: ContextTypes.DEFAULT_TYPE):
    query = update.callback_query
    if query is None or query.data is None:
        return
    message = query.message
    if message is None:
        await query.answer("This message is too old.")
        return
    ack = await _orchestrator(context).show_sources(
        message.chat.id, message.message_id, query.data
    )
    await query.answer(ack)
    logfire.info(f"sources requested by {query.from_user.id} in chat {message.chat.id}")


async def on_error(update: object, context: ContextTypes.DEFAULT_TYPE):
    chat_id = None
    if isinstance(update, Update) and update.effective_chat is not None:
        chat_id = update.effective_chat.id
    logger.error("Update handling failed in chat %s", chat_id, exc_info=context.error)


async def _post_init(application: Application) -> None:
    settings: Settings = application.bot_data["settings"]
    ctx = await build_app_context(application.bot, settings)
    application.bot_data["orchestrator"] = Orchestrator(ctx)


async def _post_shutdown(application: Application) -> None:
    orchestrator = application.bot_data.get("orchestrator")
    if orchestrator is not None:
        await orchestrator.ctx.close()


def build_application(settings: Settings) -> Application:
    application = (
        ApplicationBuilder()
        .token(settings.telegram_bot_token)
        .concurrent_updates(True)
        .post_init(_post_init)
        .post_shutdown(_post_shutdown)
        .build()
    )
    application.bot_data["settings"] = settings

    # group -1 runs before (and independently of) the handlers below
    application.add_handler(
        MessageHandler(filters.UpdateType.MESSAGES, record_message), group=-1
    )
    application.add_handler(
        CommandHandler(
            settings.add_key_command, add_api_key, filters=filters.ChatType.PRIVATE
        )
    )
    application.add_handler(
        MessageHandler(
            (filters.TEXT | filters.CAPTION) & filters.UpdateType.MESSAGE, on_message
        )
    )
    application.add_handler(
        CallbackQueryHandler(show_sources, pattern=f"^{SOURCES_CALLBACK_PREFIX}")
    )
    application.add_error_handler(on_error)
    return application


def run_bot(settings: Settings | None = None) -> None:
    settings = settings or Settings.from_env()

    # Ensure main thread has an event loop for libraries that call get_event_loop()
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        asyncio.set_event_loop(asyncio.new_event_loop())

    application = build_application(settings)
    application.run_polling(allowed_updates=Update.ALL_TYPES)
