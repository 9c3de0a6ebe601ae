# chatrelay/storage/repo.py
from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from chatrelay.storage.models import Agent, AgentVersion, Base, Message, Thread, utcnow


async def init_models(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class _Repo:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def session_scope(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise


class ChatRepo(_Repo):
    """Threads and their append-only message log."""

    async def find_thread(self, thread_id: str, user_id: str) -> Optional[Thread]:
        async with self.session_scope() as s:
            res = await s.execute(select(Thread).where(Thread.id == thread_id, Thread.user_id == user_id))
            return res.scalar_one_or_none()

    async def get_thread(self, thread_id: str) -> Optional[Thread]:
        async with self.session_scope() as s:
            return await s.get(Thread, thread_id)

    async def create_thread(
        self,
        *,
        thread_id: Optional[str],
        user_id: str,
        agent_id: str,
        agent_version: int,
        title: Optional[str],
        is_debug: bool = False,
    ) -> Thread:
        now = utcnow()
        th = Thread(
            id=thread_id or uuid.uuid4().hex,
            user_id=user_id,
            agent_id=agent_id,
            agent_version=agent_version,
            title=title,
            is_debug=is_debug,
            created_at=now,
            updated_at=now,
        )
        async with self.session_scope() as s:
            s.add(th)
        return th

    async def touch_thread(self, thread_id: str) -> None:
        async with self.session_scope() as s:
            await s.execute(update(Thread).where(Thread.id == thread_id).values(updated_at=utcnow()))

    async def append_message(
        self,
        thread_id: str,
        role: str,
        content: str,
        token: int = 0,
        message_id: Optional[str] = None,
    ) -> Message:
        now = utcnow()
        msg = Message(
            id=message_id or uuid.uuid4().hex,
            thread_id=thread_id,
            role=role,
            content=content,
            token=int(token or 0),
            created_at=now,
        )
        # next position in the thread, computed by the INSERT itself
        msg.seq = (
            select(func.coalesce(func.max(Message.seq), 0) + 1)
            .where(Message.thread_id == thread_id)
            .correlate(None)
            .scalar_subquery()
        )
        async with self.session_scope() as s:
            s.add(msg)
            await s.flush()
            await s.refresh(msg, ["seq"])
            await s.execute(update(Thread).where(Thread.id == thread_id).values(updated_at=now))
        return msg

    async def list_recent_messages(self, thread_id: str, exclude_id: Optional[str], limit: int) -> List[Message]:
        """Most recent ``limit`` messages of the thread, returned oldest-first."""
        if limit <= 0:
            return []
        q = select(Message).where(Message.thread_id == thread_id)
        if exclude_id:
            q = q.where(Message.id != exclude_id)
        q = q.order_by(Message.created_at.desc(), Message.seq.desc()).limit(limit)
        async with self.session_scope() as s:
            rows = list((await s.execute(q)).scalars())
        rows.reverse()
        return rows

    async def list_messages(self, thread_id: str) -> List[Message]:
        async with self.session_scope() as s:
            res = await s.execute(
                select(Message)
                .where(Message.thread_id == thread_id)
                .order_by(Message.created_at.asc(), Message.seq.asc())
            )
            return list(res.scalars())

    async def list_threads(self, user_id: str) -> List[Thread]:
        async with self.session_scope() as s:
            res = await s.execute(
                select(Thread)
                .where(Thread.user_id == user_id, Thread.is_debug == False)  # noqa: E712
                .order_by(Thread.updated_at.desc())
            )
            return list(res.scalars())

    async def delete_thread(self, thread_id: str, user_id: str) -> bool:
        # messages go with it through ON DELETE CASCADE
        async with self.session_scope() as s:
            res = await s.execute(delete(Thread).where(Thread.id == thread_id, Thread.user_id == user_id))
            return bool(res.rowcount)


class AgentRepo(_Repo):
    """Read side of agent configuration."""

    async def get_latest_version(self, agent_id: str) -> Optional[int]:
        async with self.session_scope() as s:
            res = await s.execute(select(Agent.latest_version).where(Agent.id == agent_id))
            return res.scalar_one_or_none()

    async def get_system_prompt(self, agent_id: str, version: int) -> Optional[str]:
        async with self.session_scope() as s:
            row = await s.get(AgentVersion, (agent_id, version))
            if row is None:
                return None
            if row.system_prompt:
                return row.system_prompt
            # older rows kept the prompt inside the JSON config
            cfg = row.config if isinstance(row.config, dict) else {}
            raw = cfg.get("system_prompt")
            return raw if isinstance(raw, str) and raw else None

    async def get_agent_display(self, agent_id: str, version: int) -> Optional[Dict[str, Any]]:
        async with self.session_scope() as s:
            res = await s.execute(
                select(Agent, AgentVersion)
                .join(AgentVersion, AgentVersion.agent_id == Agent.id)
                .where(Agent.id == agent_id, AgentVersion.version == version)
            )
            row = res.first()
            if row is None:
                return None
            agent, ver = row
            return {
                "agentId": agent.id,
                "agentVersion": version,
                "name": agent.name,
                "description": ver.description,
                "avatar": agent.avatar,
                "tag": agent.tag,
                "systemPrompt": ver.system_prompt,
                "isLatestVersion": version == agent.latest_version,
                "latestVersion": agent.latest_version,
            }

    async def save_agent(
        self,
        *,
        agent_id: str,
        name: str,
        system_prompt: Optional[str],
        version: int = 1,
        description: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        avatar: Optional[str] = None,
        tag: Optional[str] = None,
    ) -> None:
        """Insert or publish an agent version and make it the latest one."""
        async with self.session_scope() as s:
            agent = await s.get(Agent, agent_id)
            if agent is None:
                agent = Agent(id=agent_id, name=name, avatar=avatar, tag=tag, latest_version=version)
                s.add(agent)
            else:
                agent.name = name
                agent.latest_version = max(agent.latest_version or 0, version)
            ver = await s.get(AgentVersion, (agent_id, version))
            if ver is None:
                ver = AgentVersion(agent_id=agent_id, version=version)
                s.add(ver)
            ver.system_prompt = system_prompt
            ver.description = description
            ver.config = config
