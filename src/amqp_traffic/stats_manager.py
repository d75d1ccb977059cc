# stats_manager.py
from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List

LOG = logging.getLogger(__name__)


class Outcome(enum.Enum):
    RECEIVED = "received"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    RELEASED = "released"
    MODIFIED = "modified"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class LatencySample:
    flight_time: float  # seconds
    timestamp: float    # receive time


class StatsManager:
    """Delivery counters and flight-time samples for one client.

    Periodic counters (sent, received, accepted) restart after every flush so a
    soak run reports one window at a time; the total_* counters and the
    outcome counters cover the whole process lifetime.
    """

    def __init__(self, capacity: int):
        self.capacity = max(0, int(capacity))

        self.sent = 0
        self.received = 0
        self.accepted = 0

        self.total_sent = 0
        self.total_received = 0
        self.total_accepted = 0

        self.rejected = 0
        self.released = 0
        self.modified = 0
        self.unknown = 0

        self.samples: List[LatencySample] = []
        self.flushes = 0

    # -------- counters --------
    def record_sent(self):
        self.sent += 1
        self.total_sent += 1

    def record_received(self):
        self.received += 1
        self.total_received += 1

    def record(self, outcome: Outcome):
        if outcome is Outcome.ACCEPTED:
            self.accepted += 1
            self.total_accepted += 1
        elif outcome is Outcome.REJECTED:
            self.rejected += 1
        elif outcome is Outcome.RELEASED:
            self.released += 1
        elif outcome is Outcome.MODIFIED:
            self.modified += 1
        elif outcome is Outcome.UNKNOWN:
            self.unknown += 1
        # RECEIVED is not terminal

    @property
    def settled(self) -> int:
        return self.total_accepted + self.rejected + self.released + self.modified + self.unknown

    # -------- flight times --------
    def record_latency(self, sample: LatencySample) -> bool:
        if self.is_full():
            return False
        self.samples.append(sample)
        return True

    def is_full(self) -> bool:
        return len(self.samples) >= self.capacity

    def reset(self):
        self.sent = 0
        self.received = 0
        self.accepted = 0
        self.samples = []

    def flush(self, path) -> int:
        """Append buffered samples to `path` and reset the periodic state.

        Lines are "<receive_ts> <flight_time_ms>". The file is only ever
        appended to, so restarted clients with the same name share it.
        """
        n = len(self.samples)
        if n == 0:
            LOG.warning("[STATS] no flight times to flush")
            return 0

        LOG.info("[STATS] flushing %d flight times to %s", n, path)
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            for s in self.samples:
                f.write("%.6f %.7f\n" % (s.timestamp, s.flight_time * 1000.0))
            f.flush()
            os.fsync(f.fileno())

        self.flushes += 1
        self.reset()
        return n

    def snapshot(self) -> dict:
        return {
            "sent": self.sent,
            "received": self.received,
            "accepted": self.accepted,
            "total_sent": self.total_sent,
            "total_received": self.total_received,
            "total_accepted": self.total_accepted,
            "rejected": self.rejected,
            "released": self.released,
            "modified": self.modified,
            "unknown": self.unknown,
            "buffered": len(self.samples),
        }
