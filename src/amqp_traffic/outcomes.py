# outcomes.py
from __future__ import annotations
import enum
import logging
from typing import Optional

from .session import TestSession
from .stats_manager import Outcome, StatsManager

LOG = logging.getLogger(__name__)


class ReceiveVerdict(enum.Enum):
    CONTINUE = "continue"
    FLUSH_AND_CONTINUE = "flush_and_continue"
    FLUSH_LATER_AND_HALT = "flush_later_and_halt"


def throughput(accepted: int, start: Optional[float], stop: float) -> float:
    if start is None:
        return 0.0
    elapsed = stop - start
    if elapsed <= 0:
        return 0.0
    return accepted / elapsed


class OutcomeClassifier:
    """Counts terminal delivery states and decides when a run is done."""

    def __init__(self, session: TestSession, stats: StatsManager):
        self.session = session
        self.stats = stats
        self.completed = False
        self.throughput: Optional[float] = None

    def on_sender_outcome(self, outcome: Outcome) -> bool:
        """Count one settled outgoing delivery. True the first time the quota is met."""
        self.stats.record(outcome)
        if outcome is Outcome.UNKNOWN:
            LOG.warning("[DRIVER] unknown remote delivery state, continuing")
            return False
        if outcome is not Outcome.ACCEPTED or self.completed or self.session.soak:
            return False
        if self.stats.total_accepted < self.session.total_expected:
            return False

        self.completed = True
        stop = self.session.clock()
        self.throughput = throughput(self.stats.total_accepted, self.session.send_start_time, stop)
        LOG.info("[SEND] %d messages accepted. sender halting.", self.stats.total_accepted)
        LOG.info("[SEND] throughput %.3f", self.throughput)
        return True

    def on_received(self) -> ReceiveVerdict:
        if self.stats.received < self.session.total_expected:
            return ReceiveVerdict.CONTINUE
        if self.session.soak:
            return ReceiveVerdict.FLUSH_AND_CONTINUE
        self.completed = True
        LOG.info("[RECV] %d messages received. receiver halting.", self.stats.total_received)
        LOG.info("[RECV] %d total expected.", self.session.total_expected)
        return ReceiveVerdict.FLUSH_LATER_AND_HALT
