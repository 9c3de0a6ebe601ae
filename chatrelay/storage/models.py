# chatrelay/storage/models.py
from __future__ import annotations

from datetime import datetime, UTC

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class Agent(Base):
    __tablename__ = "agents"

    id = Column(String(64), primary_key=True)
    name = Column(String(128), nullable=False)
    avatar = Column(String(512), nullable=True)
    tag = Column(String(64), nullable=True)
    latest_version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow)

    versions = relationship("AgentVersion", back_populates="agent", cascade="all, delete-orphan")


class AgentVersion(Base):
    __tablename__ = "agent_versions"

    agent_id = Column(String(64), ForeignKey("agents.id", ondelete="CASCADE"), primary_key=True)
    version = Column(Integer, primary_key=True)
    description = Column(Text, nullable=True)
    system_prompt = Column(Text, nullable=True)
    # Opaque extension fields (rag_config, mcp_config, ...)
    config = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)

    agent = relationship("Agent", back_populates="versions")


class Thread(Base):
    __tablename__ = "threads"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    agent_id = Column(String(64), nullable=False, index=True)
    agent_version = Column(Integer, nullable=False, default=1)
    title = Column(String(255), nullable=True)
    is_debug = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, index=True)

    messages = relationship("Message", back_populates="thread", cascade="all, delete-orphan", passive_deletes=True)

    __table_args__ = (
        # one debug thread per agent
        Index(
            "uq_threads_debug_agent",
            "agent_id",
            unique=True,
            sqlite_where=text("is_debug = 1"),
            postgresql_where=text("is_debug"),
        ),
    )


class Message(Base):
    __tablename__ = "messages"

    id = Column(String(64), primary_key=True)
    thread_id = Column(String(64), ForeignKey("threads.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(16), nullable=False)  # user|assistant
    content = Column(Text, nullable=False)
    token = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow, index=True)
    # per-thread insertion order; breaks created_at ties
    seq = Column(Integer, nullable=False, default=0)

    thread = relationship("Thread", back_populates="messages")

    __table_args__ = (
        CheckConstraint("role in ('user','assistant')", name="ck_messages_role"),
        Index("ix_messages_thread_seq", "thread_id", "seq"),
    )
