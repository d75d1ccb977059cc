from .config_loader import Settings, parse_settings
from .driver import Driver, State
from .session import TestSession
from .stats_manager import LatencySample, Outcome, StatsManager

__all__ = [
    "Driver",
    "LatencySample",
    "Outcome",
    "Settings",
    "State",
    "StatsManager",
    "TestSession",
    "parse_settings",
]
