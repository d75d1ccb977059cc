#!/usr/bin/env python3
"""
AMQP 1.0 test client. Sends timestamped messages to one or more addresses,
or receives them and records per-message flight times.
"""
from __future__ import annotations
import logging
import sys
import time
from typing import Callable, Optional, Sequence

from proton.reactor import Container

from .config_loader import Settings, parse_settings
from .driver import Driver, Inactive
from .errors import ConfigError, TrafficError
from .handler import TrafficHandler
from .session import TestSession

LOG = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def setup_logging(settings: Settings):
    # Append: a restarted client with the same log keeps its earlier lines
    if settings.log:
        handlers = [logging.FileHandler(settings.log, mode="a")]
    else:
        handlers = [logging.StreamHandler()]
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def wait_for_flush(driver: Driver, sleep: Callable[[float], None] = time.sleep):
    """Block until a deferred flight-time flush that outlived the event loop is due, then run it."""
    if not driver.flush_pending:
        return
    remaining = driver.flush_deadline - driver.session.clock()
    if remaining > 0:
        LOG.info("[STATS] waiting %.1fs for deferred flight-time flush", remaining)
        sleep(remaining)
    driver.flush_flight_times()


def run(settings: Settings, container_factory=Container) -> Driver:
    session = TestSession(settings)
    driver = Driver(session)
    handler = TrafficHandler(driver, settings.url)
    container_factory(handler).run()
    driver.handle(Inactive())
    wait_for_flush(driver)
    return driver


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        settings = parse_settings(argv)
    except ConfigError as exc:
        print(f"amqp-traffic: {exc}", file=sys.stderr)
        return exc.exit_code

    try:
        setup_logging(settings)
    except OSError as exc:
        print(f"amqp-traffic: cannot open log {settings.log}: {exc}", file=sys.stderr)
        return 1
    LOG.info("start")
    try:
        run(settings)
    except (TrafficError, OSError) as exc:
        LOG.error("error : %s", exc)
        if settings.log:
            print(f"amqp-traffic: {exc}", file=sys.stderr)
        return getattr(exc, "exit_code", 1)
    except KeyboardInterrupt:
        LOG.info("interrupted")
    LOG.info("client exiting.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
