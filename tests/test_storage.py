# tests/test_storage.py
from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from chatrelay.storage.models import Message, Thread, utcnow
from conftest import seed_history


async def _thread(app, thread_id: str = "t1", user_id: str = "u1", **kw) -> Thread:
    return await app.state.chats.create_thread(
        thread_id=thread_id, user_id=user_id, agent_id="a1", agent_version=1, title="hello", **kw
    )


async def test_thread_create_and_cascade(app) -> None:
    chats = app.state.chats
    th = await _thread(app)
    await chats.append_message(th.id, "user", "hi")
    await chats.append_message(th.id, "assistant", "hello", token=3)
    assert len(await chats.list_messages(th.id)) == 2

    assert await chats.delete_thread(th.id, "u1") is True

    async with chats.session_scope() as s:
        left = (await s.execute(select(Message).where(Message.thread_id == th.id))).scalars().all()
    assert left == []
    assert await chats.get_thread(th.id) is None


async def test_delete_thread_requires_owner(app) -> None:
    await _thread(app)
    assert await app.state.chats.delete_thread("t1", "someone-else") is False
    assert await app.state.chats.get_thread("t1") is not None


async def test_find_thread_is_scoped_to_owner(app) -> None:
    await _thread(app)
    assert await app.state.chats.find_thread("t1", "u1") is not None
    assert await app.state.chats.find_thread("t1", "u2") is None


async def test_append_message_advances_updated_at(app) -> None:
    chats = app.state.chats
    th = await _thread(app)
    before = (await chats.get_thread(th.id)).updated_at
    await asyncio.sleep(0.01)
    await chats.append_message(th.id, "user", "again")
    after = (await chats.get_thread(th.id)).updated_at
    assert after > before


async def test_recent_messages_window_is_oldest_first(app) -> None:
    chats = app.state.chats
    th = await _thread(app)
    contents = await seed_history(app, th.id, 25)
    latest = await chats.append_message(th.id, "user", "newest")

    recent = await chats.list_recent_messages(th.id, latest.id, 20)
    assert [m.content for m in recent] == contents[5:]

    with_latest = await chats.list_recent_messages(th.id, None, 3)
    assert [m.content for m in with_latest] == ["m23", "m24", "newest"]
    assert await chats.list_recent_messages(th.id, None, 0) == []


async def test_list_threads_hides_debug_and_orders_by_activity(app) -> None:
    chats = app.state.chats
    await _thread(app, "old")
    await _thread(app, "debug", is_debug=True)
    await _thread(app, "other-user", user_id="u2")
    await asyncio.sleep(0.01)
    await _thread(app, "new")
    await asyncio.sleep(0.01)
    await chats.append_message("old", "user", "bump")

    threads = await chats.list_threads("u1")
    assert [t.id for t in threads] == ["old", "new"]


async def test_only_one_debug_thread_per_agent(app) -> None:
    await _thread(app, "d1", is_debug=True)
    with pytest.raises(IntegrityError):
        await _thread(app, "d2", is_debug=True)
    # regular threads are unconstrained
    await _thread(app, "n1")
    await _thread(app, "n2")


async def test_message_role_is_constrained(app) -> None:
    await _thread(app)
    with pytest.raises(IntegrityError):
        await app.state.chats.append_message("t1", "system", "nope")


async def test_agent_versions_and_prompt_fallback(app) -> None:
    agents = app.state.agents
    assert await agents.get_latest_version("a1") == 1
    assert await agents.get_system_prompt("a1", 1) == "You are terse."
    assert await agents.get_latest_version("missing") is None

    await agents.save_agent(agent_id="a1", name="Helper", system_prompt=None, version=2,
                            config={"system_prompt": "From config."})
    assert await agents.get_latest_version("a1") == 2
    assert await agents.get_system_prompt("a1", 2) == "From config."
    assert await agents.get_system_prompt("a1", 9) is None

    display = await agents.get_agent_display("a1", 1)
    assert display["name"] == "Helper"
    assert display["isLatestVersion"] is False
    assert display["latestVersion"] == 2


async def test_same_timestamp_messages_keep_insertion_order(app, monkeypatch) -> None:
    chats = app.state.chats
    th = await _thread(app)
    frozen = utcnow()
    monkeypatch.setattr("chatrelay.storage.repo.utcnow", lambda: frozen)

    for content in ("a", "b", "c", "d", "e"):
        await chats.append_message(th.id, "user", content)

    listed = await chats.list_messages(th.id)
    assert [m.content for m in listed] == ["a", "b", "c", "d", "e"]
    assert [m.seq for m in listed] == [1, 2, 3, 4, 5]
    recent = await chats.list_recent_messages(th.id, None, 2)
    assert [m.content for m in recent] == ["d", "e"]


async def test_seq_is_per_thread(app) -> None:
    chats = app.state.chats
    await _thread(app, "t1")
    await _thread(app, "t2")
    await chats.append_message("t1", "user", "x")
    other = await chats.append_message("t2", "user", "y")
    assert other.seq == 1
