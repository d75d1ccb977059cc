import pytest

from amqp_traffic.config_loader import Settings
from amqp_traffic.driver import Driver, Flush
from amqp_traffic.session import TestSession


class FakeClock:
    def __init__(self, t=1000.0):
        self.t = t

    def __call__(self):
        return self.t

    def advance(self, dt):
        self.t += dt
        return self.t


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_settings(tmp_path):
    def _make(**overrides):
        values = {
            "operation": "send",
            "addresses": ("q1",),
            "name": "tester",
            "messages": 10,
            "flight_times_file": str(tmp_path / "tester_flight_times"),
            "flush_delay": 0.0,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def make_driver(make_settings, clock):
    def _make(**overrides):
        session = TestSession(make_settings(**overrides), clock=clock)
        return Driver(session)

    return _make


@pytest.fixture
def apply_flushes():
    """Run Flush actions the way the proton handler would."""

    def _apply(driver, actions):
        for a in actions:
            if isinstance(a, Flush):
                driver.flush_flight_times()
        return actions

    return _apply
