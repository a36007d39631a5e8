"""
Unit tests for core.reconciliation module.

Tests:
- NegentropyConfig validation
- Completed sessions and their difference
- Abort paths (NEG-ERR, CLOSED, NOTICE, timeout, relay loss, send failure,
  round limit, malformed reply, cancellation)
"""

import asyncio
import itertools
from typing import Any

import pytest
from pydantic import ValidationError

from relaypool.core.exceptions import ReconciliationAbort, TransportError
from relaypool.core.reconciliation import (
    NegentropyConfig,
    ReconciliationEngine,
    SessionStatus,
)
from relaypool.core.store import MemoryEventStore
from relaypool.models import Event, Filter, NegentropyDirection
from relaypool.models.message import (
    ClientMessage,
    NegCloseMessage,
    NegErrMessage,
    NegMsgMessage,
    NegOpenMessage,
)
from relaypool.nips.negentropy import Negentropy, NegentropyStorage
from tests.fixtures.events import make_event


URL = "wss://relay.example.com"
NOTES = Filter(kinds=(1,))


class ScriptedPeer:
    """Relay side of NIP-77, answering on the next loop iteration."""

    def __init__(self, events: list[Event]) -> None:
        self.events = events
        self.sent: list[ClientMessage] = []
        self.engine: ReconciliationEngine | None = None
        self.respond = True
        self.on_open: Any = None
        self._session: Negentropy | None = None

    def send(self, url: str, message: ClientMessage) -> None:
        self.sent.append(message)
        loop = asyncio.get_running_loop()
        match message:
            case NegOpenMessage(subscription_id=sub_id, message=msg):
                if self.on_open is not None:
                    loop.call_soon(self.on_open, url, sub_id)
                    return
                storage = NegentropyStorage((e.created_at, e.id) for e in self.events).seal()
                self._session = Negentropy(storage)
                self._answer(loop, url, sub_id, msg)
            case NegMsgMessage(subscription_id=sub_id, message=msg):
                self._answer(loop, url, sub_id, msg)

    def _answer(self, loop: asyncio.AbstractEventLoop, url: str, sub_id: str, msg: str) -> None:
        if not self.respond or self._session is None:
            return
        output, _, _ = self._session.reconcile(msg)
        assert self.engine is not None
        loop.call_soon(self.engine.handle_message, url, NegMsgMessage(sub_id, output or "61"))

    def closes(self) -> list[NegCloseMessage]:
        return [m for m in self.sent if isinstance(m, NegCloseMessage)]


def make_engine(
    peer: ScriptedPeer, local: list[Event], **config: Any
) -> ReconciliationEngine:
    ids = (f"neg{i}" for i in itertools.count())
    values: dict[str, Any] = {"initial_timeout": 1.0, "message_timeout": 1.0}
    values.update(config)
    engine = ReconciliationEngine(
        MemoryEventStore(local),
        peer.send,
        lambda: next(ids),
        NegentropyConfig(**values),
        metrics_label="reconciliation-test",
    )
    peer.engine = engine
    return engine


# =============================================================================
# Configuration Tests
# =============================================================================


class TestNegentropyConfig:
    def test_defaults(self) -> None:
        config = NegentropyConfig()
        assert config.frame_size_limit == 0
        assert config.max_rounds == 256
        assert config.direction is NegentropyDirection.DOWN

    def test_frame_size_limit(self) -> None:
        assert NegentropyConfig(frame_size_limit=4096).frame_size_limit == 4096
        with pytest.raises(ValidationError, match="frame_size_limit"):
            NegentropyConfig(frame_size_limit=1000)

    def test_direction_from_string(self) -> None:
        assert NegentropyConfig(direction="both").direction is NegentropyDirection.BOTH


# =============================================================================
# Completion Tests
# =============================================================================


class TestCompleted:
    async def test_difference(self) -> None:
        shared = [make_event() for _ in range(5)]
        local_only = [make_event() for _ in range(3)]
        remote_only = [make_event() for _ in range(4)]
        peer = ScriptedPeer(shared + remote_only)
        engine = make_engine(peer, shared + local_only)

        session = await engine.reconcile(URL, NOTES)

        assert session.completed
        assert session.status is SessionStatus.COMPLETED
        assert set(session.need_ids) == {e.id for e in remote_only}
        assert set(session.have_ids) == {e.id for e in local_only}
        assert session.local_count == 8
        assert session.negotiation_id == "neg0"
        assert session.error is None
        assert session.duration is not None
        assert len(peer.closes()) == 1
        assert engine.sessions() == []

    async def test_identical_sets_one_round(self) -> None:
        events = [make_event() for _ in range(40)]
        engine = make_engine(ScriptedPeer(events), events)
        session = await engine.reconcile(URL, NOTES)
        assert session.completed
        assert session.rounds == 1
        assert session.need_ids == session.have_ids == []

    async def test_local_items_ignore_limit(self) -> None:
        events = [make_event() for _ in range(3)]
        engine = make_engine(ScriptedPeer(events), events)
        session = await engine.reconcile(URL, NOTES.with_limit(1))
        assert session.local_count == 3
        assert session.need_ids == []

    async def test_open_carries_filter(self) -> None:
        peer = ScriptedPeer([])
        engine = make_engine(peer, [])
        await engine.reconcile(URL, NOTES)
        opening = peer.sent[0]
        assert isinstance(opening, NegOpenMessage)
        assert opening.filter == NOTES


# =============================================================================
# Abort Tests
# =============================================================================


class TestAborted:
    async def test_neg_err(self) -> None:
        peer = ScriptedPeer([])
        engine = make_engine(peer, [])
        peer.on_open = lambda url, sub_id: engine.handle_error(url, NegErrMessage(sub_id, "blocked: no"))
        session = await engine.reconcile(URL, NOTES)
        assert session.aborted
        assert isinstance(session.error, ReconciliationAbort)
        assert "NEG-ERR: blocked: no" in (session.abort_reason or "")
        assert peer.closes() == []

    async def test_closed(self) -> None:
        peer = ScriptedPeer([])
        engine = make_engine(peer, [])
        peer.on_open = lambda url, sub_id: engine.handle_closed(url, sub_id, "error: unsupported")
        session = await engine.reconcile(URL, NOTES)
        assert session.aborted
        assert "CLOSED" in (session.abort_reason or "")

    async def test_notice_before_first_reply(self) -> None:
        peer = ScriptedPeer([])
        engine = make_engine(peer, [])
        counts: list[int] = []
        peer.on_open = lambda url, sub_id: counts.append(engine.handle_notice(url, "unknown command"))
        session = await engine.reconcile(URL, NOTES)
        assert session.aborted
        assert counts == [1]
        assert len(peer.closes()) == 1

    async def test_initial_timeout(self) -> None:
        peer = ScriptedPeer([])
        peer.respond = False
        engine = make_engine(peer, [], initial_timeout=0.05)
        session = await engine.reconcile(URL, NOTES)
        assert session.aborted
        assert "no reply within 0.05s" in (session.abort_reason or "")
        assert len(peer.closes()) == 1

    async def test_relay_lost(self) -> None:
        peer = ScriptedPeer([])
        engine = make_engine(peer, [])
        peer.on_open = lambda url, sub_id: engine.relay_lost(url, "disconnected")
        session = await engine.reconcile(URL, NOTES)
        assert session.aborted
        assert session.abort_reason == f"{URL}: disconnected"
        assert peer.closes() == []

    async def test_send_failure(self) -> None:
        def failing_send(url: str, message: ClientMessage) -> None:
            raise TransportError("relay is disconnected")

        engine = ReconciliationEngine(MemoryEventStore(), failing_send, lambda: "neg")
        session = await engine.reconcile(URL, NOTES)
        assert session.aborted
        assert "cannot send NEG-OPEN" in (session.abort_reason or "")

    async def test_round_limit_keeps_partial_difference(self) -> None:
        local = [make_event() for _ in range(200)]
        remote = [make_event() for _ in range(200)]
        peer = ScriptedPeer(remote)
        engine = make_engine(peer, local, max_rounds=1)
        session = await engine.reconcile(URL, NOTES)
        assert session.aborted
        assert session.rounds == 1
        assert "exceeded 1 rounds" in (session.abort_reason or "")
        assert set(session.need_ids) <= {e.id for e in remote}

    async def test_malformed_reply(self) -> None:
        peer = ScriptedPeer([])
        engine = make_engine(peer, [])
        peer.on_open = lambda url, sub_id: engine.handle_message(url, NegMsgMessage(sub_id, "zz"))
        session = await engine.reconcile(URL, NOTES)
        assert session.aborted
        assert "invalid negentropy message" in (session.abort_reason or "")

    async def test_cancelled(self) -> None:
        peer = ScriptedPeer([])
        peer.respond = False
        engine = make_engine(peer, [])
        task = asyncio.create_task(engine.reconcile(URL, NOTES))
        await asyncio.sleep(0.01)
        assert len(engine.sessions(URL)) == 1
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert engine.sessions() == []
        assert len(peer.closes()) == 1

    async def test_abort_all(self) -> None:
        peer = ScriptedPeer([])
        peer.respond = False
        engine = make_engine(peer, [])
        task = asyncio.create_task(engine.reconcile(URL, NOTES))
        await asyncio.sleep(0.01)
        engine.abort_all("pool shutdown")
        session = await task
        assert session.abort_reason == f"{URL}: pool shutdown"


class TestRouting:
    def test_unknown_session(self) -> None:
        engine = ReconciliationEngine(MemoryEventStore(), lambda u, m: None, lambda: "x")
        assert engine.handle_message(URL, NegMsgMessage("nope", "61")) is False
        assert engine.handle_error(URL, NegErrMessage("nope", "x")) is False
        assert engine.handle_closed(URL, "nope", "x") is False
        assert engine.handle_notice(URL, "x") == 0
