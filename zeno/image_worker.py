"""Background image generation.

Jobs are queued by the reconciler when an answer carries ``[IMAGE: ...]``
directives and processed one at a time by a single consumer task, so slow
image synthesis never holds up a text reply.
"""

import asyncio
import logging
import os
import tempfile
from pathlib import Path

import logfire

from .config import IMAGE_WORKER_TIMEOUT
from .errors import (
    EmptyResultError,
    ImageQueueFull,
    OperationTimeout,
    ProviderError,
    TransportError,
)
from .messaging import Messenger
from .providers import ProviderGateway
from .schemas import ImageJob
from .tools import extension_for

logger = logging.getLogger(__name__)

CAPTION_LIMIT = 1024

FAILURE_MESSAGES = {
    "timeout": "⌛ Image generation timed out. Please try again.",
    "provider": "❌ The image service returned an error. Please try again later.",
    "empty": "❌ The image service returned no result.",
    "no_image": "❌ No image was produced for this prompt. Try rephrasing it.",
    "delivery": "❌ The image was generated but could not be sent.",
}


def caption_for(prompt: str) -> str:
    caption = f"🖼 {prompt}"
    if len(caption) > CAPTION_LIMIT:
        caption = caption[: CAPTION_LIMIT - 3] + "..."
    return caption


class ImageWorker:
    """Bounded FIFO of ImageJob drained by exactly one consumer task."""

    def __init__(self, gateway: ProviderGateway, messenger: Messenger, maxsize: int = 100):
        self.gateway = gateway
        self.messenger = messenger
        self.queue: asyncio.Queue[ImageJob] = asyncio.Queue(maxsize=maxsize)
        self._task: asyncio.Task | None = None

    def submit(self, job: ImageJob) -> None:
        """Queue a job without waiting.

        Raises:
            ImageQueueFull: the queue is at capacity; the job was not accepted.
        """
        try:
            self.queue.put_nowait(job)
        except asyncio.QueueFull as exc:
            logger.warning("Image queue full, rejecting job for chat %s", job.chat_id)
            raise ImageQueueFull(f"image queue is full ({self.queue.maxsize} jobs)") from exc

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="image-worker")
            logger.info("Image worker started")

    async def stop(self) -> None:
        """Cancel the consumer and explicitly abandon queued jobs."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        abandoned = 0
        while not self.queue.empty():
            job = self.queue.get_nowait()
            self.queue.task_done()
            abandoned += 1
            logger.info("Abandoning image job for chat %s: %r", job.chat_id, job.prompt)
        if abandoned:
            logger.warning("Image worker stopped with %d pending jobs abandoned", abandoned)

    async def _run(self) -> None:
        while True:
            job = await self.queue.get()
            try:
                await self.process(job)
            except asyncio.CancelledError:
                raise
            except Exception:
                # a broken job must not kill the consumer
                logger.exception("Image job for chat %s crashed", job.chat_id)
            finally:
                self.queue.task_done()

    async def process(self, job: ImageJob) -> bool:
        """Generate and deliver one image; report failures in the chat."""
        with logfire.span("image job for chat {chat_id}", chat_id=job.chat_id):
            try:
                result = await self.gateway.generate_image(
                    job.prompt, timeout=IMAGE_WORKER_TIMEOUT
                )
            except OperationTimeout:
                logger.warning("Image generation timed out for chat %s", job.chat_id)
                return await self._fail(job, "timeout")
            except EmptyResultError:
                return await self._fail(job, "empty")
            except (ProviderError, TransportError):
                logger.exception("Image generation failed for chat %s", job.chat_id)
                return await self._fail(job, "provider")

            if not result.images:
                return await self._fail(job, "no_image")

            image = result.images[0]
            fd, name = tempfile.mkstemp(suffix=extension_for(image.mime_type), prefix="zeno_")
            path = Path(name)
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(image.data)
                await self.messenger.send_photo(
                    job.chat_id,
                    path,
                    caption=caption_for(job.prompt),
                    reply_to=job.reply_to_message_id,
                )
            except (TransportError, OperationTimeout, OSError):
                logger.exception("Could not deliver image to chat %s", job.chat_id)
                return await self._fail(job, "delivery")
            finally:
                path.unlink(missing_ok=True)

            logfire.info(f"image delivered to chat {job.chat_id}")
            return True

    async def _fail(self, job: ImageJob, reason: str) -> bool:
        try:
            await self.messenger.send_message(
                job.chat_id, FAILURE_MESSAGES[reason], reply_to=job.reply_to_message_id
            )
        except (TransportError, OperationTimeout):
            logger.warning("Could not report image failure (%s) to chat %s", reason, job.chat_id)
        return False
