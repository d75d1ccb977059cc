# handler.py
"""proton glue: turns reactor callbacks into driver events and runs the actions back."""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from proton import Delivery as PnDelivery
from proton import Message, ProtonException
from proton.handlers import MessagingHandler

from .driver import (
    Accept, Closed, Delivery, Driver, Flow, Flush, Halt, LinkCredit, LinkOpened,
    ScheduleFlush, ScheduleTick, SendMessage, SenderOutcome, Started, Tick,
)
from .errors import DecodeError, EncodeError, MessageTooLarge, TrafficError
from .session import OutgoingMessage
from .stats_manager import Outcome

LOG = logging.getLogger(__name__)

# Largest encoded message accepted in either direction
MAX_RECEIVE_LENGTH = 2000000
OUTGOING_BUFFER_SIZE = 2000000

REMOTE_STATES = (
    (PnDelivery.RECEIVED, Outcome.RECEIVED),
    (PnDelivery.ACCEPTED, Outcome.ACCEPTED),
    (PnDelivery.REJECTED, Outcome.REJECTED),
    (PnDelivery.RELEASED, Outcome.RELEASED),
    (PnDelivery.MODIFIED, Outcome.MODIFIED),
)


def classify_remote_state(state) -> Outcome:
    for known, outcome in REMOTE_STATES:
        if state == known:
            return outcome
    return Outcome.UNKNOWN


def encode_message(out: OutgoingMessage) -> bytes:
    msg = Message(id=str(out.tag), body=out.body)
    try:
        data = msg.encode()
    except ProtonException as exc:
        raise EncodeError(f"encoding message {out.tag}: {exc}") from exc
    if len(data) > OUTGOING_BUFFER_SIZE:
        raise EncodeError(f"overflowed outgoing_buffer_size == {OUTGOING_BUFFER_SIZE}")
    return data


def decode_body(link, dlv):
    size = dlv.pending
    if size >= MAX_RECEIVE_LENGTH:
        raise MessageTooLarge(f"incoming message too big: {size}")
    data = link.recv(size)
    link.advance()
    msg = Message()
    try:
        msg.decode(data)
    except ProtonException as exc:
        raise DecodeError(f"from message decode: {exc}") from exc
    body = msg.body
    # binary bodies can be views into the message buffer; copy before msg goes away
    if isinstance(body, memoryview):
        body = body.tobytes()
    return body


class _TickTask:
    def __init__(self, handler: "TrafficHandler"):
        self.handler = handler

    def on_timer_task(self, event):
        self.handler.tick = None
        self.handler.dispatch(Tick())


class _FlushTask:
    def __init__(self, handler: "TrafficHandler"):
        self.handler = handler

    def on_timer_task(self, event):
        self.handler.flush_task = None
        self.handler.driver.flush_flight_times()


class TrafficHandler(MessagingHandler):
    """One connection, one link per target address; credit and settlement handled by hand."""

    def __init__(self, driver: Driver, url: str):
        super(TrafficHandler, self).__init__(
            prefetch=0, auto_accept=False, auto_settle=False, peer_close_is_error=False
        )
        self.driver = driver
        self.url = url
        self.container = None
        self.connection = None
        self.links: List = []
        self._index_by_name: Dict[str, int] = {}
        self.tick = None
        self.flush_task = None
        self._current: Optional[PnDelivery] = None
        self._executors = {
            SendMessage: self._do_send,
            Flow: self._do_flow,
            Accept: self._do_accept,
            ScheduleTick: self._do_schedule_tick,
            ScheduleFlush: self._do_schedule_flush,
            Flush: self._do_flush,
            Halt: self._do_halt,
        }

    # -------- plumbing --------
    def dispatch(self, event):
        for action in self.driver.handle(event):
            self._executors[type(action)](action)

    def _index(self, link) -> Optional[int]:
        return self._index_by_name.get(link.name)

    # -------- reactor callbacks --------
    def on_start(self, event):
        session = self.driver.session
        self.container = event.container
        self.container.container_id = session.container_id()
        LOG.info("[DRIVER] connection id is |%s|", self.container.container_id)
        self.connection = self.container.connect(
            self.url, allowed_mechs="ANONYMOUS", sasl_enabled=True, reconnect=False
        )
        for i, addr in enumerate(session.addresses):
            name = session.link_name(i)
            if session.sending:
                link = self.container.create_sender(self.connection, addr.path, name=name)
            else:
                link = self.container.create_receiver(self.connection, addr.path, name=name)
            self.links.append(link)
            self._index_by_name[name] = i
        self.dispatch(Started())

    def on_link_opened(self, event):
        i = self._index(event.link)
        if i is not None:
            self.dispatch(LinkOpened(i))

    def on_sendable(self, event):
        i = self._index(event.sender)
        if i is not None:
            self.dispatch(LinkCredit(i, event.sender.credit))

    def on_delivery(self, event):
        dlv = event.delivery
        link = dlv.link
        i = self._index(link)
        if i is None:
            raise TrafficError(f"unknown link in delivery: |{link.name}|")

        if link.is_sender:
            if not dlv.updated:
                return
            outcome = classify_remote_state(dlv.remote_state)
            # settle whatever the outcome
            dlv.settle()
            self.dispatch(SenderOutcome(i, outcome))
            return

        if not dlv.readable or dlv.partial:
            self.dispatch(Delivery(i, readable=dlv.readable, partial=dlv.partial))
            return
        body = decode_body(link, dlv)
        self._current = dlv
        try:
            self.dispatch(Delivery(i, readable=True, partial=False, body=body, credit=link.credit))
        finally:
            self._current = None

    def on_connection_closed(self, event):
        self.dispatch(Closed())

    def on_disconnected(self, event):
        self.dispatch(Closed())

    # -------- actions --------
    def _do_send(self, action: SendMessage):
        out = action.message
        link = self.links[out.address]
        data = encode_message(out)
        link.delivery(str(out.tag))
        link.stream(data)
        link.advance()

    def _do_flow(self, action: Flow):
        self.links[action.address].flow(action.credit)

    def _do_accept(self, action: Accept):
        dlv = self._current
        if dlv is None:
            return
        dlv.update(PnDelivery.ACCEPTED)
        dlv.settle()

    def _do_schedule_tick(self, action: ScheduleTick):
        self.tick = self.container.schedule(action.delay, _TickTask(self))

    def _do_schedule_flush(self, action: ScheduleFlush):
        if self.flush_task is not None:
            self.flush_task.cancel()
        self.flush_task = self.container.schedule(action.delay, _FlushTask(self))

    def _do_flush(self, action: Flush):
        self.driver.flush_flight_times()

    def _do_halt(self, action: Halt):
        if self.tick is not None:
            self.tick.cancel()
            self.tick = None
        if self.connection is not None:
            self.connection.close()
