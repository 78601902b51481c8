import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, Response

from .config import DEFAULT_DATABASE_URL
from .db import create_engine
from .errors import PersistenceError
from .messaging import display_name
from .storage import Storage

logger = logging.getLogger("zeno.api")

# message ids are positive 32-bit in practice; anything above reads "latest"
LATEST = 2**62


def create_app(database_url: str | None = None) -> FastAPI:
    """Operator inspection API.

    Runs on its own event loop (uvicorn thread), so it owns a separate
    engine and Storage created in the lifespan.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        url = database_url or os.environ.get("DATABASE_URL") or DEFAULT_DATABASE_URL
        engine = create_engine(url)
        app.state.storage = Storage(engine)
        yield
        await engine.dispose()

    app = FastAPI(title="zeno", lifespan=lifespan)

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse({"status": "ok"})

    @app.get("/history/{chat_id}")
    async def history(
        request: Request, chat_id: int, limit: int = Query(20, ge=1, le=200)
    ) -> Response:
        """Return a chat's most recent logged messages as Markdown."""
        storage: Storage = request.app.state.storage
        try:
            msgs = await storage.get_history(chat_id, LATEST, limit)
        except PersistenceError as exc:
            logger.exception("Failed to get history for chat %s", chat_id)
            return JSONResponse(
                {"error": "failed to get history", "detail": str(exc)}, status_code=500
            )

        parts: list[str] = [f"# Chat {chat_id}\n\n"]
        for m in sorted(msgs, key=lambda m: m.id):
            stamp = m.date.strftime("%Y-%m-%d %H:%M:%S") if m.date else "unknown time"
            parts.append(f"## {m.id} · {display_name(m)} · {stamp}\n")
            if m.reply_to_id:
                parts.append(f"*in reply to {m.reply_to_id}*\n\n")
            if m.media is not None:
                parts.append(f"*[{m.media.kind}: {m.media.file_name or m.media.file_id}]*\n\n")
            parts.append(f"{m.text}\n\n---\n")

        return Response("".join(parts), media_type="text/markdown; charset=utf-8")

    @app.get("/links/{links_id}")
    async def links(request: Request, links_id: str) -> JSONResponse:
        storage: Storage = request.app.state.storage
        try:
            record = await storage.get_links(links_id)
        except PersistenceError as exc:
            logger.exception("Failed to get links %s", links_id)
            return JSONResponse(
                {"error": "failed to get links", "detail": str(exc)}, status_code=500
            )
        if record is None:
            return JSONResponse({"error": "unknown links id"}, status_code=404)
        return JSONResponse(record.model_dump())

    return app


app = create_app()
