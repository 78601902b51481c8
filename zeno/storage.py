import logging
import os
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable

from sqlalchemy import desc, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from .db import create_sessionmaker
from .errors import PersistenceError
from .models import MessageLog, SystemSetting, UserCredential, VertexLinks
from .schemas import ChatMessage, GroundingLink, VertexLinksRead
from .utils import get_current_time

logger = logging.getLogger(__name__)


def _insert_for(dialect: str):
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise PersistenceError(f"upsert is not supported on {dialect!r}")


class Storage:
    """Keyed document access over the bot's tables.

    One instance per event loop: the engine's connection pool is bound to the
    loop that first used it.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._sessions = create_sessionmaker(engine)
        self._dialect = engine.dialect.name

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessions() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.exception("Storage operation %s failed", operation)
            raise PersistenceError(f"{operation} failed") from exc

    async def init_db(self) -> None:
        """Ensure the sqlite directory exists and verify schema presence.

        The schema is created and migrated by Alembic; if the check query
        fails the database has not been initialized.
        """
        url = self.engine.url
        if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
            db_dir = os.path.dirname(url.database)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)

        try:
            async with self._sessions() as session:
                await session.execute(select(VertexLinks).limit(1))
        except SQLAlchemyError as exc:
            raise RuntimeError(
                "Database schema not found. Initialize the database with Alembic: 'alembic upgrade head'"
            ) from exc

        logger.info("storage.init_db(): verified DB schema via a lightweight check.")

    # ------------------------------------------------------------------
    # credentials
    # ------------------------------------------------------------------

    async def set_credential(self, user_id: int, provider: str, api_key: str) -> None:
        insert = _insert_for(self._dialect)
        stmt = insert(UserCredential).values(
            user_id=user_id,
            provider=provider,
            api_key=api_key,
            updated_time=get_current_time(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "provider"],
            set_={"api_key": stmt.excluded.api_key, "updated_time": stmt.excluded.updated_time},
        )
        async with self._session("set_credential") as session:
            await session.execute(stmt)
            await session.commit()

    async def get_credential(self, user_id: int, provider: str) -> str | None:
        """Return the stored key, or None when the user never registered one."""
        async with self._session("get_credential") as session:
            result = await session.execute(
                select(UserCredential.api_key).where(
                    UserCredential.user_id == user_id,
                    UserCredential.provider == provider,
                )
            )
            key = result.scalar_one_or_none()
        return key or None

    # ------------------------------------------------------------------
    # grounding links
    # ------------------------------------------------------------------

    async def create_links(self, links: Iterable[GroundingLink]) -> str:
        links_id = uuid.uuid4().hex
        record = VertexLinks(
            id=links_id,
            links=[link.model_dump() for link in links],
            sent=False,
            created_time=get_current_time(),
        )
        async with self._session("create_links") as session:
            session.add(record)
            await session.commit()
        return links_id

    async def get_links(self, links_id: str) -> VertexLinksRead | None:
        async with self._session("get_links") as session:
            record = await session.get(VertexLinks, links_id)
            if record is None:
                return None
            return VertexLinksRead.model_validate(record)

    async def mark_links_sent(self, links_id: str) -> bool:
        """Flip ``sent`` to true. Only the call that performed the flip gets True."""
        async with self._session("mark_links_sent") as session:
            result = await session.execute(
                update(VertexLinks)
                .where(VertexLinks.id == links_id, VertexLinks.sent.is_(False))
                .values(sent=True)
            )
            await session.commit()
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # system settings
    # ------------------------------------------------------------------

    async def get_setting(self, key: str) -> Any:
        async with self._session("get_setting") as session:
            record = await session.get(SystemSetting, key)
            return None if record is None else record.value

    async def put_setting(self, key: str, value: Any) -> None:
        insert = _insert_for(self._dialect)
        stmt = insert(SystemSetting).values(key=key, value=value)
        stmt = stmt.on_conflict_do_update(
            index_elements=["key"], set_={"value": stmt.excluded.value}
        )
        async with self._session("put_setting") as session:
            await session.execute(stmt)
            await session.commit()

    # ------------------------------------------------------------------
    # message log
    # ------------------------------------------------------------------

    async def record_message(self, message: ChatMessage) -> None:
        """Insert or replace a message snapshot (edits overwrite)."""
        row = MessageLog(
            chat_id=message.chat_id,
            message_id=message.id,
            sender_id=message.sender_id,
            content=message.model_dump_json(),
            created_time=get_current_time(),
        )
        async with self._session("record_message") as session:
            await session.merge(row)
            await session.commit()

    async def get_history(self, chat_id: int, before_id: int, limit: int) -> list[ChatMessage]:
        """Return up to ``limit`` messages older than ``before_id``, newest first."""
        async with self._session("get_history") as session:
            result = await session.execute(
                select(MessageLog)
                .where(MessageLog.chat_id == chat_id, MessageLog.message_id < before_id)
                .order_by(desc(MessageLog.message_id))
                .limit(limit)
            )
            rows = result.scalars().all()
        return [ChatMessage.model_validate_json(row.content) for row in rows]

    async def get_messages(self, chat_id: int, ids: Iterable[int]) -> list[ChatMessage]:
        ids = list(ids)
        if not ids:
            return []
        async with self._session("get_messages") as session:
            result = await session.execute(
                select(MessageLog).where(
                    MessageLog.chat_id == chat_id, MessageLog.message_id.in_(ids)
                )
            )
            rows = result.scalars().all()
        return [ChatMessage.model_validate_json(row.content) for row in rows]
