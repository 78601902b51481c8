"""Application context: every long-lived collaborator, built once at startup."""

import logging
from dataclasses import dataclass
from pathlib import Path

from telegram import Bot

from .config import Settings
from .context_builder import ContextAssembler
from .db import create_engine
from .image_worker import ImageWorker
from .messaging import TelegramMessenger
from .providers import ProviderGateway
from .reconciler import ResponseReconciler
from .sandbox import Sandbox
from .storage import Storage
from .telegraph import TelegraphPublisher
from .tools import ToolEngine
from .trigger import TriggerDetector

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    storage: Storage
    messenger: TelegramMessenger
    gateway: ProviderGateway
    detector: TriggerDetector
    assembler: ContextAssembler
    tools: ToolEngine
    image_worker: ImageWorker
    reconciler: ResponseReconciler
    telegraph: TelegraphPublisher
    bot_id: int
    bot_handle: str

    async def close(self) -> None:
        await self.image_worker.stop()
        await self.telegraph.aclose()
        await self.storage.engine.dispose()
        logger.info("Application context closed")


async def build_app_context(bot: Bot, settings: Settings) -> AppContext:
    """Wire the collaborators and start the image worker.

    The bot handle comes from ``BOT_HANDLE`` when set, otherwise from getMe.
    """
    storage = Storage(create_engine(settings.database_url))
    await storage.init_db()

    me = await bot.get_me()
    handle = settings.bot_handle or me.username or ""
    logger.info("Running as @%s (%s)", handle, me.id)

    messenger = TelegramMessenger(bot, storage)
    gateway = ProviderGateway(settings)
    image_worker = ImageWorker(gateway, messenger, maxsize=settings.image_queue_size)
    telegraph = TelegraphPublisher(storage, author=me.first_name or "Zeno")

    ctx = AppContext(
        settings=settings,
        storage=storage,
        messenger=messenger,
        gateway=gateway,
        detector=TriggerDetector(
            messenger,
            bot_user_id=me.id,
            bot_handle=handle,
            command=settings.ask_command,
            mention_trigger=settings.mention_trigger,
        ),
        assembler=ContextAssembler(messenger, settings.max_media_size),
        tools=ToolEngine(
            gateway,
            messenger,
            Sandbox(settings.sandbox_container),
            Path(settings.generated_dir),
        ),
        image_worker=image_worker,
        reconciler=ResponseReconciler(messenger, storage, image_worker, telegraph),
        telegraph=telegraph,
        bot_id=me.id,
        bot_handle=handle,
    )
    image_worker.start()
    return ctx
