# session.py
from __future__ import annotations
import enum
import os
import random
from dataclasses import dataclass
from typing import Callable, List, Optional

from .utils import now, make_body


class Role(enum.Enum):
    SEND = "send"
    RECEIVE = "receive"


@dataclass
class Address:
    path: str
    sent: int = 0
    received: int = 0
    open: bool = False
    credit: int = 0  # last credit seen on the link


@dataclass(frozen=True)
class OutgoingMessage:
    address: int
    tag: int
    body: bytes


class TestSession:
    """Everything one client run knows about itself: role, targets, quota and pacing."""

    __test__ = False  # not a pytest class

    def __init__(self, settings, clock: Callable[[], float] = now, rng: Optional[random.Random] = None):
        self.settings = settings
        self.clock = clock
        self.rng = rng

        self.role = Role(settings.operation)
        self.name = settings.name
        self.addresses: List[Address] = [Address(p) for p in settings.addresses]

        # messages is per address; total_expected covers all of them
        self.messages = int(settings.messages)
        self.total_expected = self.messages * len(self.addresses)

        self.throttle = float(settings.throttle)
        self.delay = float(settings.delay)
        self.credit_window = int(settings.credit_window)
        self.soak = bool(settings.soak)
        self.flush_delay = float(settings.flush_delay)
        self.payload = settings.payload
        self.max_message_length = int(settings.max_message_length)
        self.flight_times_file = settings.flight_times_file

        self.start_time = clock()
        self.send_start_time: Optional[float] = None
        self._next_tag = 0

    @property
    def sending(self) -> bool:
        return self.role is Role.SEND

    @property
    def throttled(self) -> bool:
        return self.throttle > 0

    @property
    def send_not_before(self) -> float:
        return self.start_time + self.delay

    def all_open(self) -> bool:
        return bool(self.addresses) and all(a.open for a in self.addresses)

    def link_name(self, index: int) -> str:
        kind = "send" if self.sending else "recv"
        return "%d_%s_%05d" % (os.getpid(), kind, index)

    def container_id(self) -> str:
        return "%d_%d" % (os.getpid(), int(self.clock()))

    def next_message(self, index: int) -> OutgoingMessage:
        tag = self._next_tag
        self._next_tag += 1
        body = make_body(self.payload, self.clock(), self.max_message_length, self.rng)
        return OutgoingMessage(address=index, tag=tag, body=body)

    def describe(self) -> List[str]:
        lines = ["context {"]
        for a in self.addresses:
            lines.append("  address            : |%s|" % a.path)
        lines += [
            "  throttle           : %s" % self.throttle,
            "  delay              : %s" % self.delay,
            "  operation          : %s" % ("sending" if self.sending else "receiving"),
            "  name               : %s" % self.name,
            "  max_message_length : %d" % self.max_message_length,
            "  payload            : %s" % self.payload,
            "  host               : %s" % self.settings.host,
            "  port               : %s" % self.settings.port,
            "  log                : %s" % self.settings.log,
            "  messages           : %d" % self.messages,
            "  credit_window      : %d" % self.credit_window,
            "  soak               : %s" % ("true" if self.soak else "false"),
            "  flight_times       : %s" % self.flight_times_file,
            "}",
        ]
        return lines
