# errors.py
from __future__ import annotations


class TrafficError(Exception):
    """Fatal condition for this client process. Carries the exit code."""

    exit_code = 1


class ConfigError(TrafficError):
    exit_code = 1


class EncodeError(TrafficError):
    exit_code = 1


class MessageTooLarge(TrafficError):
    exit_code = 1


class DecodeError(TrafficError):
    exit_code = 2
