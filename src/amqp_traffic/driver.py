# driver.py
"""Test-traffic driver state machine.

The messaging engine feeds `Driver.handle` one event at a time and executes the
actions it returns. Nothing here touches the network, so every policy can be
exercised with plain objects and a fake clock.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, List, Optional

from .errors import DecodeError
from .outcomes import OutcomeClassifier, ReceiveVerdict
from .pacer import MessagePacer
from .session import OutgoingMessage, TestSession
from .stats_manager import LatencySample, Outcome, StatsManager
from .utils import read_send_timestamp

LOG = logging.getLogger(__name__)

RECEIVE_LOG_EVERY = 10


class State(enum.Enum):
    CONNECTING = "connecting"
    NEGOTIATING = "negotiating"
    ACTIVE = "active"
    DRAINING = "draining"
    TERMINATED = "terminated"


# -------- events --------
@dataclass(frozen=True)
class Started:
    pass

@dataclass(frozen=True)
class LinkOpened:
    address: int

@dataclass(frozen=True)
class LinkCredit:
    address: int
    credit: int

@dataclass(frozen=True)
class Tick:
    pass

@dataclass(frozen=True)
class SenderOutcome:
    address: int
    outcome: Outcome

@dataclass(frozen=True)
class Delivery:
    address: int
    readable: bool
    partial: bool
    body: Any = None
    credit: int = 0

@dataclass(frozen=True)
class Closed:
    pass

@dataclass(frozen=True)
class Inactive:
    pass


# -------- actions --------
@dataclass(frozen=True)
class SendMessage:
    message: OutgoingMessage

@dataclass(frozen=True)
class Flow:
    address: int
    credit: int

@dataclass(frozen=True)
class Accept:
    address: int

@dataclass(frozen=True)
class ScheduleTick:
    delay: float

@dataclass(frozen=True)
class ScheduleFlush:
    delay: float

@dataclass(frozen=True)
class Flush:
    pass

@dataclass(frozen=True)
class Halt:
    pass


class Driver:

    def __init__(self, session: TestSession, stats: Optional[StatsManager] = None):
        self.session = session
        self.stats = stats or StatsManager(session.total_expected)
        self.pacer = MessagePacer(session, self.stats)
        self.classifier = OutcomeClassifier(session, self.stats)
        self.state = State.CONNECTING
        self.halts = 0
        self.flush_deadline: Optional[float] = None
        self._arms = {
            Started: self._on_started,
            LinkOpened: self._on_link_opened,
            LinkCredit: self._on_link_credit,
            Tick: self._on_tick,
            SenderOutcome: self._on_sender_outcome,
            Delivery: self._on_delivery,
            Closed: self._on_closed,
            Inactive: self._on_inactive,
        }

    @property
    def flush_pending(self) -> bool:
        return self.flush_deadline is not None

    @property
    def stopping(self) -> bool:
        return self.state in (State.DRAINING, State.TERMINATED)

    def handle(self, event) -> List[Any]:
        try:
            arm = self._arms[type(event)]
        except KeyError:
            raise TypeError(f"unsupported driver event: {event!r}") from None
        return arm(event)

    # -------- lifecycle --------
    def _on_started(self, event: Started):
        for line in self.session.describe():
            LOG.info(line)
        return []

    def _on_link_opened(self, event: LinkOpened):
        addr = self.session.addresses[event.address]
        addr.open = True
        if self.state is State.CONNECTING:
            self.state = State.NEGOTIATING
        if self.state is State.NEGOTIATING and self.session.all_open():
            self.state = State.ACTIVE
            LOG.info("[DRIVER] all %d links open", len(self.session.addresses))

        if self.session.sending:
            LOG.info("[DRIVER] I am a sender on addr |%s|.", addr.path)
            return []
        LOG.info("[DRIVER] I am a receiver on addr |%s|.", addr.path)
        addr.credit = self.session.credit_window
        return [Flow(event.address, self.session.credit_window)]

    def _on_closed(self, event: Closed):
        if not self.stopping:
            LOG.info("[DRIVER] connection closed by peer")
            self.state = State.DRAINING
            self.pacer.disarm()
        return []

    def _on_inactive(self, event: Inactive):
        self.state = State.TERMINATED
        LOG.info("[STATS] final %s", self.stats.snapshot())
        return []

    def _halt(self) -> List[Any]:
        if self.stopping:
            return []
        self.state = State.DRAINING
        self.pacer.disarm()
        self.halts += 1
        return [Halt()]

    # -------- sending --------
    def _send(self, index: int) -> SendMessage:
        if self.stats.sent == 0:
            # first send of this window: throughput is measured from here
            self.session.send_start_time = self.session.clock()
        msg = self.session.next_message(index)
        addr = self.session.addresses[index]
        addr.sent += 1
        addr.credit = max(0, addr.credit - 1)
        if self.stats.total_sent == 0:
            LOG.info("[SEND] first_send")
        self.stats.record_sent()
        return SendMessage(msg)

    def _roll_window(self):
        if self.session.soak and self.pacer.window_complete():
            LOG.info("[SEND] %d messages sent.", self.stats.total_sent)
            self.stats.reset()

    def _defer(self, backoff: float) -> List[Any]:
        LOG.debug("[SEND] too soon to send, retrying in %.3fs", backoff)
        if self.pacer.tick_armed:
            return []
        self.pacer.tick_armed = True
        return [ScheduleTick(backoff)]

    def _pump(self, indices) -> List[Any]:
        backoff = self.pacer.start_backoff()
        if backoff is not None:
            return self._defer(backoff)
        actions = []
        for i in indices:
            n = self.pacer.credit_batch(i)
            for _ in range(n):
                actions.append(self._send(i))
                self._roll_window()
        return actions

    def _on_link_credit(self, event: LinkCredit):
        if self.stopping or not self.session.sending:
            return []
        self.session.addresses[event.address].credit = event.credit
        if self.session.throttled:
            if self.pacer.arm():
                return [ScheduleTick(self.session.throttle)]
            return []
        return self._pump([event.address])

    def _on_tick(self, event: Tick):
        self.pacer.disarm()
        if self.stopping or not self.session.sending:
            return []
        if not self.session.throttled:
            # retry after a start-delay deferral
            return self._pump(range(len(self.session.addresses)))
        return self._throttle_tick()

    def _throttle_tick(self) -> List[Any]:
        if self.pacer.quota_met():
            return []
        backoff = self.pacer.start_backoff()
        if backoff is not None:
            return self._defer(backoff)
        wait = self.pacer.spacing_wait()
        if wait is not None:
            self.pacer.tick_armed = True
            return [ScheduleTick(wait)]

        targets = self.pacer.batch_targets()
        if targets is None:
            # the missing link's first credit signal re-arms the timer
            LOG.debug("[SEND] no send link yet.")
            return []

        actions: List[Any] = [self._send(i) for i in targets]
        self.pacer.batch_sent()
        self._roll_window()
        if self.pacer.arm():
            actions.append(ScheduleTick(self.session.throttle))
        return actions

    # -------- outcomes --------
    def _on_sender_outcome(self, event: SenderOutcome):
        if self.state is State.TERMINATED:
            return []
        if self.classifier.on_sender_outcome(event.outcome):
            return self._halt()
        return []

    def _on_delivery(self, event: Delivery):
        if self.stopping or self.session.sending:
            return []
        if not event.readable or event.partial:
            # more data is on its way
            return []

        received_at = self.session.clock()
        try:
            sent_at = read_send_timestamp(event.body)
        except ValueError as exc:
            raise DecodeError(f"cannot decode message payload: {exc}") from exc

        addr = self.session.addresses[event.address]
        actions: List[Any] = [Accept(event.address)]
        self.stats.record_received()
        addr.received += 1
        if self.stats.total_received % RECEIVE_LOG_EVERY == 0:
            LOG.info("[RECV] %d messages received.", self.stats.total_received)

        self.stats.record_latency(LatencySample(received_at - sent_at, received_at))

        verdict = self.classifier.on_received()
        if verdict is ReceiveVerdict.FLUSH_LATER_AND_HALT:
            actions += self._schedule_flush()
            actions += self._halt()
            return actions
        if verdict is ReceiveVerdict.FLUSH_AND_CONTINUE:
            actions.append(Flush())

        addr.credit = event.credit
        replenish = self.session.credit_window - event.credit
        if replenish > 0:
            addr.credit += replenish
            actions.append(Flow(event.address, replenish))
        return actions

    # -------- flight times --------
    def _schedule_flush(self) -> List[Any]:
        delay = self.session.flush_delay
        if delay <= 0:
            return [Flush()]
        self.flush_deadline = self.session.clock() + delay
        LOG.info("[STATS] flushing flight times in %.0f seconds.", delay)
        return [ScheduleFlush(delay)]

    def flush_flight_times(self) -> int:
        self.flush_deadline = None
        if self.session.sending:
            return 0
        return self.stats.flush(self.session.flight_times_file)
