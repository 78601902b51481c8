"""Publish answers that don't fit in a Telegram message to Telegraph."""

import json
import logging
from typing import Any

import httpx

from .config import TELEGRAPH_TIMEOUT
from .errors import OperationTimeout, PersistenceError, TransportError
from .storage import Storage

logger = logging.getLogger(__name__)

API_URL = "https://api.telegra.ph"
# telegra.ph is blocked in some regions, graph.org serves the same pages
PAGE_HOST = "https://graph.org"
TOKEN_SETTING = "telegraph_token"


def to_nodes(text: str) -> list[dict[str, Any]]:
    """One paragraph node per blank-line separated block."""
    blocks = [b.strip() for b in text.split("\n\n")]
    return [{"tag": "p", "children": [b]} for b in blocks if b] or [
        {"tag": "p", "children": [text]}
    ]


class TelegraphPublisher:
    def __init__(
        self,
        storage: Storage,
        author: str = "Zeno",
        client: httpx.AsyncClient | None = None,
    ):
        self.storage = storage
        self.author = author
        self._client = client or httpx.AsyncClient(base_url=API_URL, timeout=TELEGRAPH_TIMEOUT)
        self._token: str | None = None

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, method: str, data: dict[str, str]) -> dict[str, Any]:
        try:
            response = await self._client.post(f"/{method}", data=data)
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as exc:
            raise OperationTimeout(f"telegraph {method} timed out") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise TransportError(f"telegraph {method} failed") from exc
        if not body.get("ok"):
            raise TransportError(f"telegraph {method} error: {body.get('error')}")
        return body["result"]

    async def token(self) -> str:
        """Access token: memory, then the settings table, then a new account."""
        if self._token:
            return self._token

        try:
            stored = await self.storage.get_setting(TOKEN_SETTING)
        except PersistenceError:
            stored = None
        if isinstance(stored, dict) and stored.get("access_token"):
            logger.info("Loaded Telegraph token from DB")
            self._token = stored["access_token"]
            return self._token

        logger.info("No Telegraph token stored, creating a new account")
        account = await self._post(
            "createAccount", {"short_name": self.author, "author_name": self.author}
        )
        try:
            await self.storage.put_setting(
                TOKEN_SETTING,
                {
                    "access_token": account["access_token"],
                    "short_name": account.get("short_name", self.author),
                    "auth_url": account.get("auth_url", ""),
                },
            )
        except PersistenceError:
            # still usable for this process, a new account is made after restart
            logger.warning("Could not store the Telegraph token")
        self._token = account["access_token"]
        return self._token

    async def publish(self, title: str, text: str) -> str:
        """Create a page and return its public URL."""
        token = await self.token()
        page = await self._post(
            "createPage",
            {
                "access_token": token,
                "title": title[:256] or self.author,
                "author_name": self.author,
                "content": json.dumps(to_nodes(text), ensure_ascii=False),
                "return_content": "false",
            },
        )
        return f"{PAGE_HOST}/{page['path']}"
