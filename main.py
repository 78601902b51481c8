import logging
import threading

import logfire

from zeno.api import app as api_app
from zeno.config import Settings
from zeno.telegram_bot import run_bot


def setup_logfire(settings: Settings) -> None:
    """Configure LogFire if a token is present."""
    logger = logging.getLogger(__name__)
    if settings.logfire_token:
        logger.info("Configuring LogFire instrumentation")
        logfire.configure(token=settings.logfire_token, scrubbing=False)
        logfire.info("starting bot")
        logfire.instrument_httpx()
        logfire.instrument_sqlalchemy()


def _run_uvicorn(port: int) -> None:
    """Run the FastAPI app with uvicorn (used in a background thread)."""
    import uvicorn

    uvicorn.run(api_app, host="0.0.0.0", port=port)


def start_api_thread(port: int) -> threading.Thread:
    """Start the operator API in a daemon thread and return the Thread object."""
    t = threading.Thread(target=_run_uvicorn, args=(port,), daemon=True)
    t.start()
    return t


def main() -> None:
    """Small entrypoint: load config, start the API thread and run the bot."""
    settings = Settings.from_env()
    setup_logfire(settings)

    start_api_thread(settings.api_port)
    run_bot(settings)


if __name__ == "__main__":
    main()
