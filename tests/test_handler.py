import gc
from types import SimpleNamespace

import pytest
from proton import Delivery as PnDelivery
from proton import Message

from amqp_traffic.driver import Driver, Halt, ScheduleFlush, ScheduleTick
from amqp_traffic.errors import EncodeError, MessageTooLarge, TrafficError
from amqp_traffic.handler import (
    MAX_RECEIVE_LENGTH, OUTGOING_BUFFER_SIZE, TrafficHandler, _FlushTask, _TickTask,
    classify_remote_state, decode_body, encode_message,
)
from amqp_traffic.session import OutgoingMessage, TestSession
from amqp_traffic.stats_manager import Outcome
from amqp_traffic.utils import make_timestamped_body, read_send_timestamp


class FakeTask:
    def __init__(self, delay, target):
        self.delay = delay
        self.target = target
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeLink:
    def __init__(self, name, is_sender, credit=0):
        self.name = name
        self.is_sender = is_sender
        self.credit = credit
        self.flowed = []
        self.sent = []
        self.incoming = b""
        self.recv_calls = 0
        self._tag = None

    def flow(self, n):
        self.flowed.append(n)

    def delivery(self, tag):
        self._tag = tag

    def stream(self, data):
        self.sent.append((self._tag, data))

    def advance(self):
        pass

    def recv(self, size):
        self.recv_calls += 1
        return self.incoming[:size]


class FakeConnection:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


class FakeContainer:
    def __init__(self):
        self.container_id = None
        self.connection = FakeConnection()
        self.scheduled = []
        self.connected_to = None

    def connect(self, url, **kwargs):
        self.connected_to = url
        return self.connection

    def create_sender(self, conn, address, name=None):
        return FakeLink(name, is_sender=True)

    def create_receiver(self, conn, address, name=None):
        return FakeLink(name, is_sender=False)

    def schedule(self, delay, target):
        task = FakeTask(delay, target)
        self.scheduled.append(task)
        return task


class FakeDelivery:
    def __init__(self, link, updated=False, remote_state=None, readable=True, partial=False, pending=0):
        self.link = link
        self.updated = updated
        self.remote_state = remote_state
        self.readable = readable
        self.partial = partial
        self.pending = pending
        self.settled = False
        self.local_state = None

    def update(self, state):
        self.local_state = state

    def settle(self):
        self.settled = True


@pytest.fixture
def started(make_settings, clock):
    def _start(**overrides):
        driver = Driver(TestSession(make_settings(**overrides), clock=clock))
        handler = TrafficHandler(driver, "broker:5672")
        container = FakeContainer()
        handler.on_start(SimpleNamespace(container=container))
        for link in handler.links:
            handler.on_link_opened(SimpleNamespace(link=link))
        return handler, container

    return _start


def encoded(ts):
    return Message(body=make_timestamped_body(ts, 100)).encode()


def decoded_body(data):
    msg = Message()
    msg.decode(data)
    return bytes(msg.body)


def test_remote_state_mapping():
    assert classify_remote_state(PnDelivery.ACCEPTED) is Outcome.ACCEPTED
    assert classify_remote_state(PnDelivery.RELEASED) is Outcome.RELEASED
    assert classify_remote_state(None) is Outcome.UNKNOWN


def test_encode_message_limit():
    data = encode_message(OutgoingMessage(0, 1, b"abc"))
    msg = Message()
    msg.decode(data)
    assert msg.id == "1"
    with pytest.raises(EncodeError):
        encode_message(OutgoingMessage(0, 2, b"x" * (OUTGOING_BUFFER_SIZE + 1)))


def test_start_opens_one_link_per_address(started):
    handler, container = started(addresses=("a", "b"))
    assert container.connected_to == "broker:5672"
    assert container.container_id
    assert len(handler.links) == 2
    assert all(link.is_sender for link in handler.links)


def test_sender_streams_and_settles(started):
    handler, _ = started(messages=2)
    link = handler.links[0]
    link.credit = 5
    handler.on_sendable(SimpleNamespace(sender=link))
    assert [tag for tag, _ in link.sent] == ["0", "1"]

    dlv = FakeDelivery(link, updated=True, remote_state=PnDelivery.ACCEPTED)
    handler.on_delivery(SimpleNamespace(delivery=dlv))
    assert dlv.settled
    assert handler.driver.stats.total_accepted == 1


def test_receiver_grants_window_on_open(started):
    handler, _ = started(operation="receive", credit_window=7)
    assert handler.links[0].flowed == [7]


def test_partial_delivery_is_left_on_the_link(started):
    handler, _ = started(operation="receive")
    link = handler.links[0]
    dlv = FakeDelivery(link, partial=True, pending=10)
    handler.on_delivery(SimpleNamespace(delivery=dlv))
    assert link.recv_calls == 0
    assert not dlv.settled
    assert handler.driver.stats.received == 0


def test_complete_delivery_is_accepted_and_replenished(started, clock):
    handler, _ = started(operation="receive", credit_window=10)
    link = handler.links[0]
    link.incoming = encoded(clock() - 0.5)
    link.credit = 9
    dlv = FakeDelivery(link, pending=len(link.incoming))
    handler.on_delivery(SimpleNamespace(delivery=dlv))

    assert dlv.local_state == PnDelivery.ACCEPTED
    assert dlv.settled
    assert link.flowed == [10, 1]
    assert handler.driver.stats.samples[0].flight_time == pytest.approx(0.5)


def test_oversized_delivery_is_fatal(started):
    handler, _ = started(operation="receive")
    dlv = FakeDelivery(handler.links[0], pending=MAX_RECEIVE_LENGTH)
    with pytest.raises(MessageTooLarge):
        handler.on_delivery(SimpleNamespace(delivery=dlv))


def test_halt_cancels_timer_and_closes(started):
    handler, container = started(throttle=1.0)
    handler._do_schedule_tick(ScheduleTick(1.0))
    task = handler.tick
    handler._do_halt(Halt())
    assert task.cancelled
    assert handler.tick is None
    assert container.connection.closed


def test_tick_task_sends_a_batch(started, clock):
    handler, container = started(messages=3, throttle=1.0)
    link = handler.links[0]
    link.credit = 10
    handler.on_sendable(SimpleNamespace(sender=link))
    (task,) = container.scheduled
    assert task.delay == 1.0

    clock.advance(1.0)
    task.target.on_timer_task(None)
    assert len(link.sent) == 1
    assert read_send_timestamp(decoded_body(link.sent[0][1])) == clock()
    assert isinstance(container.scheduled[-1].target, _TickTask)


def test_decoded_body_outlives_the_message():
    link = FakeLink("r", is_sender=False)
    link.incoming = encoded(1001.0)
    body = decode_body(link, FakeDelivery(link, pending=len(link.incoming)))
    gc.collect()
    filler = [bytes(range(256)) * 4 for _ in range(100)]
    assert isinstance(body, bytes)
    assert read_send_timestamp(body) == 1001.0
    assert len(filler) == 100


def test_unknown_link_is_fatal(started):
    handler, _ = started()
    stray = FakeLink("not-ours", is_sender=True)
    dlv = FakeDelivery(stray, updated=True, remote_state=PnDelivery.ACCEPTED)
    with pytest.raises(TrafficError) as exc:
        handler.on_delivery(SimpleNamespace(delivery=dlv))
    assert exc.value.exit_code == 1


def test_deferred_flush_runs_from_timer(started, clock, tmp_path):
    handler, container = started(operation="receive", messages=2, flush_delay=30.0)
    link = handler.links[0]
    for _ in range(2):
        link.incoming = encoded(clock() - 0.1)
        handler.on_delivery(SimpleNamespace(delivery=FakeDelivery(link, pending=len(link.incoming))))

    flush_tasks = [t for t in container.scheduled if isinstance(t.target, _FlushTask)]
    assert len(flush_tasks) == 1
    assert flush_tasks[0].delay == 30.0
    assert container.connection.closed
    assert handler.driver.flush_pending
    out = tmp_path / "tester_flight_times"
    assert not out.exists()

    flush_tasks[0].target.on_timer_task(None)
    assert handler.flush_task is None
    assert not handler.driver.flush_pending
    assert len(out.read_text().splitlines()) == 2


def test_rescheduled_flush_replaces_pending_timer(started):
    handler, container = started(operation="receive")
    handler._do_schedule_flush(ScheduleFlush(10.0))
    first = handler.flush_task
    handler._do_schedule_flush(ScheduleFlush(20.0))
    assert first.cancelled
    assert handler.flush_task is container.scheduled[-1]
    assert not handler.flush_task.cancelled
