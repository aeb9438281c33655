"""
THREADLOOM INFRASTRUCTURE - System-Level Modules

This package contains infrastructure components:
- config: TOML-backed settings converted into msgspec structs
- event_bus: Synchronous change notifier for graph mutation events
- logger: Logging setup and the in-memory mutation log
"""

from infrastructure.config import ThreadloomConfig, load_config
from infrastructure.event_bus import ChangeEvent, ChangeEventType, ChangeNotifier, Subscription
from infrastructure.logger import MutationLog, configure_from_config, configure_logging

__all__ = [
    "ThreadloomConfig",
    "load_config",
    "ChangeEvent",
    "ChangeEventType",
    "ChangeNotifier",
    "Subscription",
    "MutationLog",
    "configure_logging",
    "configure_from_config",
]
