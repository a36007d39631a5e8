"""
Negentropy (NIP-77) reconciliation sessions against individual relays.

The [ReconciliationEngine][relaypool.core.reconciliation.ReconciliationEngine]
runs one [ReconciliationSession][relaypool.core.reconciliation.ReconciliationSession]
per ``(relay, filter)`` request:

1. Load ``(created_at, id)`` pairs of the locally stored events matching the
   filter into a sealed
   [NegentropyStorage][relaypool.nips.negentropy.storage.NegentropyStorage].
2. Send ``NEG-OPEN`` with the initial message.
3. Feed every ``NEG-MSG`` from the relay to the algorithm, accumulate the
   ``have`` / ``need`` ids it reports and answer with the next ``NEG-MSG``,
   one round per message, until the algorithm has nothing left to say.
4. Send ``NEG-CLOSE``.

Sessions are bounded by ``initial_timeout`` (first reply), ``message_timeout``
(later replies) and ``max_rounds``. ``NEG-ERR``, a ``CLOSED`` for the session
id, a ``NOTICE`` before the first reply (how relays without NIP-77 support
usually answer), a disconnect, or removal of the relay abort the session;
an aborted session keeps the partial difference established so far.

Inbound messages are processed synchronously inside the pool's routing, so
each round is one critical section.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum

from pydantic import BaseModel, Field, field_validator

from relaypool.models.constants import NegentropyDirection
from relaypool.models.filter import Filter  # noqa: TC001
from relaypool.models.message import (
    ClientMessage,
    NegCloseMessage,
    NegErrMessage,
    NegMsgMessage,
    NegOpenMessage,
)
from relaypool.nips.negentropy import (
    MIN_FRAME_SIZE_LIMIT,
    Negentropy,
    NegentropyError,
    NegentropyStorage,
)

from .exceptions import ReconciliationAbort, RelayPoolError
from .logger import Logger
from .metrics import RECONCILIATION_ROUNDS, RECONCILIATIONS
from .store import EventStore  # noqa: TC001


class NegentropyConfig(BaseModel):
    """Reconciliation bounds and sync behaviour."""

    initial_timeout: float = Field(default=10.0, gt=0.0, description="Wait for the first reply")
    message_timeout: float = Field(default=30.0, gt=0.0, description="Wait for later replies")
    frame_size_limit: int = Field(default=0, ge=0, description="Max message bytes, 0 = no limit")
    max_rounds: int = Field(default=256, ge=1, description="Message rounds before aborting")
    fetch_batch_size: int = Field(default=50, ge=1, description="Ids per fetch during sync")
    direction: NegentropyDirection = Field(
        default=NegentropyDirection.DOWN, description="What sync does with the difference"
    )

    @field_validator("frame_size_limit")
    @classmethod
    def validate_frame_size_limit(cls, v: int) -> int:
        if v and v < MIN_FRAME_SIZE_LIMIT:
            raise ValueError(f"frame_size_limit must be 0 or >= {MIN_FRAME_SIZE_LIMIT}")
        return v


class SessionStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass(slots=True, eq=False)
class ReconciliationSession:
    """Progress and result of reconciling one filter with one relay.

    Attributes:
        relay_url: The relay reconciled against.
        filter: The reconciled filter.
        negotiation_id: Subscription id of the NIP-77 exchange.
        status: ``running``, ``completed`` or ``aborted``.
        rounds: Relay messages processed.
        need_ids: Ids the relay has and the local store lacks.
        have_ids: Ids the local store has and the relay lacks.
        local_count: Items loaded into local storage.
        error: Why the session was aborted.
    """

    relay_url: str
    filter: Filter
    negotiation_id: str
    status: SessionStatus = SessionStatus.RUNNING
    rounds: int = 0
    need_ids: list[str] = field(default_factory=list)
    have_ids: list[str] = field(default_factory=list)
    local_count: int = 0
    error: ReconciliationAbort | None = None
    started_at: float = field(default_factory=time.monotonic)
    finished_at: float | None = None
    _negentropy: Negentropy | None = field(default=None, repr=False)
    _progress: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def completed(self) -> bool:
        return self.status is SessionStatus.COMPLETED

    @property
    def aborted(self) -> bool:
        return self.status is SessionStatus.ABORTED

    @property
    def abort_reason(self) -> str | None:
        return str(self.error) if self.error is not None else None

    @property
    def duration(self) -> float | None:
        if self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def _add(self, have: list[str], need: list[str]) -> None:
        self.have_ids.extend(have)
        self.need_ids.extend(need)


SendFunc = Callable[[str, ClientMessage], None]


class ReconciliationEngine:
    """Runs negentropy sessions through the pool's connections.

    Args:
        store: Source of the local ``(created_at, id)`` items.
        send: ``(relay_url, message)`` enqueues on the relay's connection;
            raises a [RelayPoolError][relaypool.core.exceptions.RelayPoolError]
            when the relay cannot take it.
        allocate_id: Returns a never-used subscription id.
        config: Reconciliation bounds.
        metrics_label: Value of the ``pool`` metrics label.
    """

    def __init__(
        self,
        store: EventStore,
        send: SendFunc,
        allocate_id: Callable[[], str],
        config: NegentropyConfig | None = None,
        *,
        metrics_label: str = "default",
    ) -> None:
        self._store = store
        self._send = send
        self._allocate_id = allocate_id
        self._config = config or NegentropyConfig()
        self._metrics_label = metrics_label
        self._sessions: dict[tuple[str, str], ReconciliationSession] = {}
        self._logger = Logger("relaypool.reconciliation")

    @property
    def config(self) -> NegentropyConfig:
        return self._config

    @property
    def store(self) -> EventStore:
        return self._store

    def sessions(self, url: str | None = None) -> list[ReconciliationSession]:
        """Running sessions, optionally restricted to one relay."""
        return [s for (u, _), s in self._sessions.items() if url is None or u == url]

    async def reconcile(self, url: str, filter_: Filter) -> ReconciliationSession:
        """Reconcile *filter_* with the relay at *url*.

        Never raises for relay-side failures: the returned session is either
        completed or aborted with the partial difference.
        """
        session = ReconciliationSession(
            relay_url=url, filter=filter_, negotiation_id=self._allocate_id()
        )
        items = await self._store.negentropy_items(filter_.without_limit())
        try:
            storage = NegentropyStorage(items).seal()
            session._negentropy = Negentropy(storage, self._config.frame_size_limit)
            initial = session._negentropy.initiate()
        except NegentropyError as e:
            self._finish(session, SessionStatus.ABORTED, f"invalid local items: {e}")
            return session
        session.local_count = len(storage)

        self._sessions[(url, session.negotiation_id)] = session
        self._logger.debug(
            "negentropy_started",
            relay=url,
            negotiation_id=session.negotiation_id,
            local_items=session.local_count,
        )
        try:
            self._send(url, NegOpenMessage(session.negotiation_id, filter_, initial))
        except RelayPoolError as e:
            self._finish(session, SessionStatus.ABORTED, f"cannot send NEG-OPEN: {e}")
            return session

        try:
            while session.status is SessionStatus.RUNNING:
                timeout = (
                    self._config.initial_timeout
                    if session.rounds == 0
                    else self._config.message_timeout
                )
                session._progress.clear()
                try:
                    async with asyncio.timeout(timeout):
                        await session._progress.wait()
                except TimeoutError:
                    self._abort(session, f"no reply within {timeout}s", send_close=True)
        except asyncio.CancelledError:
            self._abort(session, "cancelled", send_close=True)
            raise
        return session

    # -- Inbound -----------------------------------------------------------------

    def handle_message(self, url: str, message: NegMsgMessage) -> bool:
        """Process one ``NEG-MSG``. Returns False if no session matches."""
        session = self._sessions.get((url, message.subscription_id))
        if session is None or session._negentropy is None:
            return False

        try:
            output, have, need = session._negentropy.reconcile(message.message)
        except NegentropyError as e:
            self._abort(session, f"invalid negentropy message: {e}", send_close=True)
            return True

        session.rounds += 1
        session._add(have, need)

        if output is None:
            self._close_remote(session)
            self._finish(session, SessionStatus.COMPLETED)
        elif session.rounds >= self._config.max_rounds:
            self._abort(session, f"exceeded {self._config.max_rounds} rounds", send_close=True)
        else:
            try:
                self._send(url, NegMsgMessage(session.negotiation_id, output))
            except RelayPoolError as e:
                self._abort(session, f"cannot send NEG-MSG: {e}")
        session._progress.set()
        return True

    def handle_error(self, url: str, message: NegErrMessage) -> bool:
        """Abort the session a ``NEG-ERR`` refers to."""
        session = self._sessions.get((url, message.subscription_id))
        if session is None:
            return False
        self._abort(session, f"NEG-ERR: {message.reason}")
        return True

    def handle_closed(self, url: str, subscription_id: str, reason: str) -> bool:
        session = self._sessions.get((url, subscription_id))
        if session is None:
            return False
        self._abort(session, f"CLOSED: {reason}")
        return True

    def handle_notice(self, url: str, notice: str) -> int:
        """Abort sessions on *url* still waiting for their first reply."""
        waiting = [s for s in self.sessions(url) if s.rounds == 0]
        for session in waiting:
            self._abort(session, f"NOTICE: {notice}", send_close=True)
        return len(waiting)

    def relay_lost(self, url: str, reason: str) -> None:
        """Abort every session on *url* (disconnect or removal)."""
        for session in self.sessions(url):
            self._abort(session, reason)

    def abort_all(self, reason: str) -> None:
        for session in self.sessions():
            self._abort(session, reason)

    # -- Internals -----------------------------------------------------------------

    def _close_remote(self, session: ReconciliationSession) -> None:
        try:
            self._send(session.relay_url, NegCloseMessage(session.negotiation_id))
        except RelayPoolError as e:
            self._logger.debug("negentropy_close_failed", relay=session.relay_url, error=str(e))

    def _abort(
        self, session: ReconciliationSession, reason: str, *, send_close: bool = False
    ) -> None:
        if session.status is not SessionStatus.RUNNING:
            return
        if send_close:
            self._close_remote(session)
        self._finish(session, SessionStatus.ABORTED, reason)

    def _finish(
        self, session: ReconciliationSession, status: SessionStatus, reason: str | None = None
    ) -> None:
        session.status = status
        session.finished_at = time.monotonic()
        session._negentropy = None
        if reason is not None:
            session.error = ReconciliationAbort(f"{session.relay_url}: {reason}")
        self._sessions.pop((session.relay_url, session.negotiation_id), None)
        session._progress.set()

        RECONCILIATIONS.labels(pool=self._metrics_label, status=status.value).inc()
        RECONCILIATION_ROUNDS.labels(pool=self._metrics_label).observe(session.rounds)
        if status is SessionStatus.COMPLETED:
            self._logger.info(
                "negentropy_completed",
                relay=session.relay_url,
                rounds=session.rounds,
                need=len(session.need_ids),
                have=len(session.have_ids),
            )
        else:
            self._logger.warning(
                "negentropy_aborted",
                relay=session.relay_url,
                rounds=session.rounds,
                reason=reason,
            )
