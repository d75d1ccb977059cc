import pytest

from amqp_traffic.outcomes import OutcomeClassifier, ReceiveVerdict, throughput
from amqp_traffic.session import TestSession
from amqp_traffic.stats_manager import Outcome, StatsManager


def make_classifier(make_settings, clock, **overrides):
    session = TestSession(make_settings(**overrides), clock=clock)
    return OutcomeClassifier(session, StatsManager(session.total_expected))


@pytest.mark.parametrize("start, stop, expected", [
    (None, 10.0, 0.0),
    (10.0, 10.0, 0.0),
    (12.0, 10.0, 0.0),
    (0.0, 4.0, 2.5),
])
def test_throughput(start, stop, expected):
    assert throughput(10, start, stop) == expected


def test_quota_is_reported_once(make_settings, clock):
    c = make_classifier(make_settings, clock, messages=2)
    c.session.send_start_time = clock()
    clock.advance(1.0)
    results = [c.on_sender_outcome(Outcome.ACCEPTED) for _ in range(3)]
    assert results == [False, True, False]
    assert c.throughput == 2.0


def test_rejections_do_not_complete(make_settings, clock):
    c = make_classifier(make_settings, clock, messages=1)
    assert not c.on_sender_outcome(Outcome.REJECTED)
    assert not c.on_sender_outcome(Outcome.UNKNOWN)
    assert not c.completed


def test_receive_verdicts(make_settings, clock):
    c = make_classifier(make_settings, clock, operation="receive", messages=2)
    c.stats.record_received()
    assert c.on_received() is ReceiveVerdict.CONTINUE
    c.stats.record_received()
    assert c.on_received() is ReceiveVerdict.FLUSH_LATER_AND_HALT


def test_soak_receiver_keeps_going(make_settings, clock):
    c = make_classifier(make_settings, clock, operation="receive", messages=1, soak=True)
    c.stats.record_received()
    assert c.on_received() is ReceiveVerdict.FLUSH_AND_CONTINUE
    assert not c.completed
