import re
from datetime import datetime
from zoneinfo import ZoneInfo

from .config import TELEGRAM_MESSAGE_LIMIT

_THINK_RE = re.compile(r"<think>.*?(?:</think>|$)", re.DOTALL | re.IGNORECASE)


def get_current_time() -> datetime:
    """Get current datetime in UTC."""
    return datetime.now(tz=ZoneInfo("UTC"))


def split_text(text: str, max_length: int = TELEGRAM_MESSAGE_LIMIT) -> list[str]:
    """Split ``text`` into chunks no longer than ``max_length``.

    Windows the text and prefers splitting at a newline, then at a space;
    otherwise hard cuts.
    """
    if len(text) <= max_length:
        return [text] if text else []

    chunks: list[str] = []
    n = len(text)
    start = 0
    while start < n:
        end = min(start + max_length, n)
        if end == n:
            chunks.append(text[start:])
            break
        window = text[start:end]
        split_at = window.rfind("\n")
        if split_at <= 0:
            split_at = window.rfind(" ")
        if split_at <= 0:
            chunks.append(window)
            start = end
        else:
            chunks.append(text[start : start + split_at])
            start = start + split_at + 1

    return [chunk.strip() for chunk in chunks if chunk.strip()]


def strip_think_blocks(text: str) -> str:
    """Drop ``<think>...</think>`` reasoning blocks some models emit inline."""
    return _THINK_RE.sub("", text).strip()
