from __future__ import annotations

import asyncio
import json
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from chat_relay.connections import ConnectionRegistry, Session
from chat_relay.dispatcher import NullDispatcher, PushDispatcher
from chat_relay.errors import NotFoundError, PersistenceError
from chat_relay.models import MessageIn
from chat_relay.push import TOKEN_NOT_REGISTERED
from chat_relay.relay import Relay
from chat_relay.store import DiskMessageStore, InMemoryMessageStore
from chat_relay.tokens import TokenRegistry


class BrokenStore(InMemoryMessageStore):
    def append(self, message):
        raise PersistenceError("db down")


class SlowDispatcher:
    enabled = True

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.seen = []

    async def dispatch(self, message):
        self.started.set()
        await self.release.wait()
        self.seen.append(message.id)

    def close(self) -> None:
        pass


class ExplodingDispatcher:
    enabled = True

    async def dispatch(self, message):
        raise RuntimeError("dispatcher bug")

    def close(self) -> None:
        pass


async def _connect(reg: ConnectionRegistry, transport, user=None) -> Session:
    s = Session(transport)
    await reg.register(s)
    if user:
        await reg.associate(s, user)
    return s


async def _frames(*sessions: Session):
    for s in sessions:
        s.close()
    await asyncio.gather(*(s.run_writer() for s in sessions))
    return [[json.loads(f) for f in s.transport.sent] for s in sessions]


def test_submit_persists_broadcasts_and_notifies(make_transport, fake_provider):
    async def scenario():
        tokens = TokenRegistry()
        tokens.upsert("a@x.com", "tA")
        tokens.upsert("b@x.com", "tB")
        store = InMemoryMessageStore()
        conns = ConnectionRegistry()
        relay = Relay(store, conns, PushDispatcher(tokens, fake_provider))
        a = await _connect(conns, make_transport(), "a@x.com")
        b = await _connect(conns, make_transport(), "b@x.com")

        msg = await relay.submit(MessageIn(sender="a@x.com", text="hi"))
        await relay.drain()

        assert msg.id and store.get(msg.id) == msg
        frames_a, frames_b = await _frames(a, b)
        expected = {"type": "message", "data": msg.model_dump(mode="json")}
        assert frames_a == [expected]
        assert frames_b == [expected]
        assert fake_provider.sent[0].tokens == ["tB"]
        assert fake_provider.sent[0].body == "hi"

    asyncio.run(scenario())


def test_long_text_broadcast_verbatim_but_push_truncated(make_transport, fake_provider):
    async def scenario():
        tokens = TokenRegistry()
        tokens.upsert("b@x.com", "tB")
        conns = ConnectionRegistry()
        relay = Relay(InMemoryMessageStore(), conns, PushDispatcher(tokens, fake_provider))
        s = await _connect(conns, make_transport())

        text = "y" * 150
        await relay.submit(MessageIn(sender="a@x.com", text=text))
        await relay.drain()

        [frames] = await _frames(s)
        assert frames[0]["data"]["text"] == text
        assert len(fake_provider.sent[0].body) == 100

    asyncio.run(scenario())


def test_dead_token_is_not_used_again(make_transport, make_provider):
    async def scenario():
        tokens = TokenRegistry()
        tokens.upsert("b@x.com", "tB")
        tokens.upsert("c@x.com", "tC")
        provider = make_provider(errors={"tB": TOKEN_NOT_REGISTERED})
        relay = Relay(InMemoryMessageStore(), ConnectionRegistry(), PushDispatcher(tokens, provider))

        await relay.submit(MessageIn(sender="a@x.com", text="one"))
        await relay.drain()
        assert tokens.get("b@x.com").token is None

        await relay.submit(MessageIn(sender="a@x.com", text="two"))
        await relay.drain()
        assert provider.sent[-1].tokens == ["tC"]

    asyncio.run(scenario())


def test_persistence_failure_aborts_everything(make_transport, fake_provider):
    async def scenario():
        tokens = TokenRegistry()
        tokens.upsert("b@x.com", "tB")
        conns = ConnectionRegistry()
        relay = Relay(BrokenStore(), conns, PushDispatcher(tokens, fake_provider))
        s = await _connect(conns, make_transport())

        with pytest.raises(PersistenceError):
            await relay.submit(MessageIn(sender="a@x.com", text="hi"))
        await relay.drain()

        assert await _frames(s) == [[]]
        assert fake_provider.sent == []

    asyncio.run(scenario())


def test_broadcast_does_not_wait_for_dispatch(make_transport):
    async def scenario():
        conns = ConnectionRegistry()
        dispatcher = SlowDispatcher()
        relay = Relay(InMemoryMessageStore(), conns, dispatcher)
        s = await _connect(conns, make_transport())

        msg = await relay.submit(MessageIn(sender="a@x.com", text="hi"))
        # submit returned while the dispatch is still pending
        await dispatcher.started.wait()
        assert relay.in_flight == 1
        assert s.backlog() == 1

        dispatcher.release.set()
        await relay.drain()
        assert dispatcher.seen == [msg.id]
        assert relay.in_flight == 0

    asyncio.run(scenario())


def test_dispatch_crash_is_contained(make_transport):
    async def scenario():
        conns = ConnectionRegistry()
        relay = Relay(InMemoryMessageStore(), conns, ExplodingDispatcher())
        s = await _connect(conns, make_transport())
        await relay.submit(MessageIn(sender="a@x.com", text="hi"))
        await relay.drain()
        [frames] = await _frames(s)
        assert len(frames) == 1

    asyncio.run(scenario())


def test_one_dead_session_does_not_reduce_deliveries(make_transport):
    async def scenario():
        conns = ConnectionRegistry()
        relay = Relay(InMemoryMessageStore(), conns, NullDispatcher())
        live = [await _connect(conns, make_transport()) for _ in range(4)]
        broken = await _connect(conns, make_transport(fail=True))

        await relay.submit(MessageIn(sender="a@x.com", text="hi"))
        await broken.run_writer()
        assert broken.closed

        results = await _frames(*live)
        assert all(len(frames) == 1 for frames in results)

    asyncio.run(scenario())


def test_messages_broadcast_in_submission_order(make_transport):
    async def scenario():
        conns = ConnectionRegistry()
        relay = Relay(InMemoryMessageStore(), conns, NullDispatcher())
        s = await _connect(conns, make_transport())

        sent = await asyncio.gather(*(relay.submit(MessageIn(sender="a@x.com", text=str(i))) for i in range(20)))
        [frames] = await _frames(s)
        stored_order = [m.id for m in relay.store.list_recent(100)]
        assert [f["data"]["id"] for f in frames] == stored_order
        assert len({m.id for m in sent}) == 20

    asyncio.run(scenario())


def test_delete_broadcasts_id(make_transport):
    async def scenario():
        conns = ConnectionRegistry()
        store = InMemoryMessageStore()
        relay = Relay(store, conns, NullDispatcher())
        msg = await relay.submit(MessageIn(sender="a@x.com", text="hi"))
        s = await _connect(conns, make_transport())

        removed = await relay.delete(msg.id)
        assert removed.id == msg.id
        assert store.get(msg.id) is None
        [frames] = await _frames(s)
        assert frames == [{"type": "messageDeleted", "data": {"id": msg.id}}]

    asyncio.run(scenario())


def test_delete_unknown_id_emits_nothing(make_transport):
    async def scenario():
        conns = ConnectionRegistry()
        relay = Relay(InMemoryMessageStore(), conns, NullDispatcher())
        s = await _connect(conns, make_transport())
        with pytest.raises(NotFoundError):
            await relay.delete("missing")
        assert await _frames(s) == [[]]

    asyncio.run(scenario())


def test_delete_removes_local_image(tmp_path: Path):
    async def scenario():
        uploads = tmp_path / "uploads"
        uploads.mkdir()
        (uploads / "cat.png").write_bytes(b"png")
        relay = Relay(InMemoryMessageStore(), ConnectionRegistry(), NullDispatcher(), uploads_dir=str(uploads))
        msg = await relay.submit(MessageIn(sender="a@x.com", image="http://host/uploads/cat.png?v=1"))
        await relay.delete(msg.id)
        assert not (uploads / "cat.png").exists()

        # missing file is fine
        msg = await relay.submit(MessageIn(sender="a@x.com", image="http://host/uploads/gone.png"))
        await relay.delete(msg.id)

    asyncio.run(scenario())


def test_hung_provider_does_not_starve_persistence(make_provider):
    async def scenario():
        loop = asyncio.get_running_loop()
        # small default pool, the one store writes run on
        loop.set_default_executor(ThreadPoolExecutor(max_workers=5))
        tokens = TokenRegistry()
        tokens.upsert("b@x.com", "tB")
        dispatcher = PushDispatcher(tokens, make_provider(delay=1.0), timeout_seconds=0.05, max_workers=2)
        relay = Relay(InMemoryMessageStore(), ConnectionRegistry(), dispatcher)

        for i in range(5):
            await relay.submit(MessageIn(sender="a@x.com", text=str(i)))
        # every dispatch has timed out; provider calls are still blocked
        await asyncio.sleep(0.2)

        started = loop.time()
        await relay.submit(MessageIn(sender="a@x.com", text="after"))
        assert loop.time() - started < 0.5

        await relay.aclose()
        assert relay.in_flight == 0

    asyncio.run(scenario())


def test_disk_log_order_matches_broadcast_order(make_transport, tmp_data_dir: Path):
    async def scenario():
        conns = ConnectionRegistry()
        relay = Relay(DiskMessageStore(str(tmp_data_dir)), conns, NullDispatcher())
        s = await _connect(conns, make_transport())

        await asyncio.gather(*(relay.submit(MessageIn(sender="a@x.com", text=str(i))) for i in range(10)))
        [frames] = await _frames(s)
        logged = [
            json.loads(line)["message"]["id"]
            for line in (tmp_data_dir / "messages.jsonl").read_text(encoding="utf-8").splitlines()
        ]
        assert [f["data"]["id"] for f in frames] == logged

    asyncio.run(scenario())
