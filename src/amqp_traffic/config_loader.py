# config_loader.py
from __future__ import annotations
import argparse
import os
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml

from .errors import ConfigError
from .utils import PAYLOAD_MODES, PAYLOAD_TIMESTAMP

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = "5672"
DEFAULT_CREDIT_WINDOW = 1000
DEFAULT_MAX_MESSAGE_LENGTH = 100
# Give peer clients of a distributed run time to finish before the final write
DEFAULT_FLUSH_DELAY = 200.0


@dataclass(frozen=True)
class Settings:
    operation: str
    addresses: Tuple[str, ...]
    name: str = "default_name"
    host: str = DEFAULT_HOST
    port: str = DEFAULT_PORT
    log: Optional[str] = None
    log_level: str = "INFO"
    messages: int = 1
    throttle: float = 0.0
    delay: float = 0.0
    flight_times_file: str = ""
    soak: bool = False
    credit_window: int = DEFAULT_CREDIT_WINDOW
    max_message_length: int = DEFAULT_MAX_MESSAGE_LENGTH
    payload: str = PAYLOAD_TIMESTAMP
    flush_delay: float = DEFAULT_FLUSH_DELAY

    @property
    def url(self) -> str:
        return f"{self.host}:{self.port}"


class _ArgumentParser(argparse.ArgumentParser):
    # Configuration errors exit with 1, not argparse's default of 2
    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def load_yaml(path: str) -> Dict[str, Any]:
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"cannot read config {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("The YAML root must be a mapping.")
    return data


def build_parser(environ=None) -> argparse.ArgumentParser:
    env = os.environ if environ is None else environ
    parser = _ArgumentParser(
        prog="amqp-traffic",
        description="AMQP 1.0 test client: send or receive timestamped messages and report throughput and flight times.",
    )
    parser.add_argument("--config", default=None, help="YAML file with defaults for any option below.")
    parser.add_argument(
        "--operation",
        choices=["send", "receive"],
        default=None,
        help="Act as a sender or a receiver (required).",
    )
    parser.add_argument(
        "--address",
        dest="addresses",
        action="append",
        default=None,
        help="AMQP address (repeatable, one link per address).",
    )
    parser.add_argument("--name", default="default_name", help="Client name; 'PID' means client_<pid>.")
    parser.add_argument("--host", default=env.get("AMQP_HOST", DEFAULT_HOST), help="Host to connect to.")
    parser.add_argument("--port", default=env.get("AMQP_PORT", DEFAULT_PORT), help="Port to connect to.")
    parser.add_argument("--log", default=None, help="Append log lines to this file (default: stderr).")
    parser.add_argument(
        "--log-level",
        dest="log_level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default INFO).",
    )
    parser.add_argument("--messages", type=int, default=1, help="Messages per address.")
    parser.add_argument(
        "--throttle",
        type=float,
        default=0.0,
        help="Seconds between fan-out sends; 0 sends as fast as credit allows.",
    )
    parser.add_argument("--delay", type=float, default=0.0, help="Seconds to wait after start before sending.")
    parser.add_argument(
        "--flight_times_file_name",
        dest="flight_times_dir",
        default=None,
        help="Directory for <name>_flight_times (default /tmp/flight_times_<pid>).",
    )
    parser.add_argument(
        "--soak",
        action="store_true",
        default=False,
        help="Run forever; --messages only sets how many flight times are kept per flush.",
    )
    parser.add_argument("--credit_window", type=int, default=DEFAULT_CREDIT_WINDOW, help="Receiver credit window.")
    parser.add_argument(
        "--max_message_length",
        type=int,
        default=DEFAULT_MAX_MESSAGE_LENGTH,
        help="Message body length in bytes (upper bound in random payload mode).",
    )
    parser.add_argument("--payload", choices=PAYLOAD_MODES, default=PAYLOAD_TIMESTAMP, help="Body padding mode.")
    parser.add_argument(
        "--flush_delay",
        type=float,
        default=DEFAULT_FLUSH_DELAY,
        help="Seconds a finished receiver waits before writing flight times (0 = immediately).",
    )
    return parser


def _apply_yaml_defaults(parser: argparse.ArgumentParser, cfg: Dict[str, Any]):
    known = {a.dest: a for a in parser._actions if a.dest not in ("help", "config")}
    aliases = {"address": "addresses", "flight_times_file_name": "flight_times_dir", "log-level": "log_level"}
    defaults = {}
    for key, value in cfg.items():
        dest = aliases.get(key, key)
        if dest not in known:
            raise ConfigError(f"Unknown config key: {key}")
        if dest == "addresses" and isinstance(value, str):
            value = [value]
        defaults[dest] = value
    parser.set_defaults(**defaults)


def resolve_name(name: str) -> str:
    if name == "PID":
        return "client_%d" % os.getpid()
    return name


def resolve_flight_times_file(directory: Optional[str], name: str) -> str:
    if not directory:
        return "/tmp/flight_times_%d" % os.getpid()
    return os.path.join(directory, f"{name}_flight_times")


def validate(args: argparse.Namespace) -> Settings:
    if args.operation not in ("send", "receive"):
        raise ConfigError("value for --operation should be 'send' or 'receive'.")
    addresses: List[str] = [str(a) for a in (args.addresses or [])]
    if not addresses:
        raise ConfigError("at least one --address is required.")
    if int(args.max_message_length) <= 0:
        raise ConfigError("no max message length.")
    if int(args.messages) < 1:
        raise ConfigError("--messages must be >= 1.")
    if int(args.credit_window) < 1:
        raise ConfigError("--credit_window must be >= 1.")
    for opt in ("throttle", "delay", "flush_delay"):
        if float(getattr(args, opt)) < 0:
            raise ConfigError(f"--{opt} must be >= 0.")
    if args.payload not in PAYLOAD_MODES:
        raise ConfigError(f"--payload must be one of {', '.join(PAYLOAD_MODES)}.")
    if not isinstance(args.soak, bool):
        raise ConfigError(f"soak must be true or false, got {args.soak!r}.")

    name = resolve_name(str(args.name))
    return Settings(
        operation=args.operation,
        addresses=tuple(addresses),
        name=name,
        host=str(args.host),
        port=str(args.port),
        log=args.log,
        log_level=str(args.log_level).upper(),
        messages=int(args.messages),
        throttle=float(args.throttle),
        delay=float(args.delay),
        flight_times_file=resolve_flight_times_file(args.flight_times_dir, name),
        soak=bool(args.soak),
        credit_window=int(args.credit_window),
        max_message_length=int(args.max_message_length),
        payload=args.payload,
        flush_delay=float(args.flush_delay),
    )


def parse_settings(argv: Optional[Sequence[str]] = None, environ=None) -> Settings:
    """CLI flags override the YAML file, which overrides AMQP_* env vars and defaults.

    Unknown or malformed flags exit with status 1; semantic problems raise ConfigError.
    """
    parser = build_parser(environ)
    pre, _ = parser.parse_known_args(argv)
    if pre.config:
        _apply_yaml_defaults(parser, load_yaml(pre.config))
    args = parser.parse_args(argv)
    try:
        return validate(args)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"malformed option value: {exc}") from exc
