# pacer.py
from __future__ import annotations
from typing import List, Optional

from .session import TestSession
from .stats_manager import StatsManager

# Longest single wait while the start delay has not elapsed
START_BACKOFF = 1.0


class MessagePacer:
    """Decides when, and how much, a sender may send.

    Two policies, picked by the session's throttle setting:
      - credit-driven (throttle == 0): send on a link while it has credit and
        the quota allows, no delay between sends.
      - fixed-interval (throttle > 0): a credit signal only arms a timer; each
        tick sends one message to every address and re-arms the timer.
    """

    def __init__(self, session: TestSession, stats: StatsManager):
        self.session = session
        self.stats = stats
        self.tick_armed = False
        self.last_batch_at: Optional[float] = None

    # -------- quota --------
    def quota_met(self) -> bool:
        if self.session.soak:
            return False
        return self.stats.total_sent >= self.session.total_expected

    def window_complete(self) -> bool:
        # Soak senders roll their periodic counters once per quota's worth of sends
        return self.session.total_expected > 0 and self.stats.sent >= self.session.total_expected

    # -------- start delay --------
    def start_backoff(self) -> Optional[float]:
        remaining = self.session.send_not_before - self.session.clock()
        if remaining <= 0:
            return None
        return min(START_BACKOFF, remaining)

    # -------- timer --------
    def arm(self) -> bool:
        """Arm the tick timer. False if it is already armed or there is nothing left to send."""
        if self.tick_armed or self.quota_met():
            return False
        self.tick_armed = True
        return True

    def disarm(self):
        self.tick_armed = False

    def spacing_wait(self) -> Optional[float]:
        # Remaining time before the next batch may go out
        if self.last_batch_at is None:
            return None
        remaining = self.last_batch_at + self.session.throttle - self.session.clock()
        return remaining if remaining > 0 else None

    # -------- credit-driven --------
    def credit_batch(self, index: int) -> int:
        addr = self.session.addresses[index]
        if not addr.open or addr.credit <= 0:
            return 0
        if self.session.soak:
            return addr.credit
        per_address = self.session.messages - addr.sent
        overall = self.session.total_expected - self.stats.total_sent
        return max(0, min(addr.credit, per_address, overall))

    # -------- fixed-interval --------
    def batch_targets(self) -> Optional[List[int]]:
        """Every address index, or None while any sending link is missing."""
        if not self.session.all_open():
            return None
        return list(range(len(self.session.addresses)))

    def batch_sent(self):
        self.last_batch_at = self.session.clock()
