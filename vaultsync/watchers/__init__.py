"""
Watchers package.

Polling loops and edge-triggered change detection with notification dedup.
"""

from vaultsync.watchers.change_watcher import ChangeWatcher, NotificationDeduper, WatchedValue
from vaultsync.watchers.mode_watcher import ModeTransition, ModeWatcher, ModeWatcherConfig
from vaultsync.watchers.polling import PollingConfig, PollingLoop

__all__ = [
    "ChangeWatcher",
    "NotificationDeduper",
    "WatchedValue",
    "ModeTransition",
    "ModeWatcher",
    "ModeWatcherConfig",
    "PollingConfig",
    "PollingLoop",
]
