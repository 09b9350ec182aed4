"""
Client-side auto-save for the draft editor.

Design intent:
- Mirror every edit to a durable local backup before touching the network.
- Debounce saves, keep one attempt in flight, and surface conflicts for an
  explicit decision instead of resolving them silently.
"""

from .backup_store import (
    BackupKeySpace,
    InMemoryKeyValueStorage,
    JsonFileKeyValueStorage,
    KeyValueStorage,
    LocalBackupStore,
)
from .scheduler import SaveScheduler
from .transport import CancellationToken, GatewaySaveTransport, HttpSaveTransport, SaveTransport

__all__ = [
    "BackupKeySpace",
    "CancellationToken",
    "GatewaySaveTransport",
    "HttpSaveTransport",
    "InMemoryKeyValueStorage",
    "JsonFileKeyValueStorage",
    "KeyValueStorage",
    "LocalBackupStore",
    "SaveScheduler",
    "SaveTransport",
]
