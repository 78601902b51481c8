from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase

from .utils import get_current_time


class Base(DeclarativeBase):
    pass


class UserCredential(Base):
    __tablename__ = "user_credential"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False, index=True)
    # provider name, e.g. "cerebras"
    provider = Column(String(64), nullable=False)
    api_key = Column(String, nullable=False)
    updated_time = Column(DateTime, nullable=False, default=get_current_time)

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_user_credential_provider"),
    )


class VertexLinks(Base):
    __tablename__ = "vertex_links"

    id = Column(String(32), primary_key=True)
    # list of {"title": ..., "uri": ...}
    links = Column(JSON, nullable=False)
    sent = Column(Boolean, nullable=False, default=False)
    created_time = Column(DateTime, nullable=False, default=get_current_time)


class SystemSetting(Base):
    __tablename__ = "system_setting"

    key = Column(String(128), primary_key=True)
    value = Column(JSON, nullable=False)


class MessageLog(Base):
    __tablename__ = "message_log"

    chat_id = Column(BigInteger, primary_key=True)
    message_id = Column(BigInteger, primary_key=True)
    sender_id = Column(BigInteger, nullable=True)
    # JSON dump of schemas.ChatMessage
    content = Column(Text, nullable=False)
    created_time = Column(DateTime, nullable=False, default=get_current_time)
