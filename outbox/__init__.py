"""Offline outbox: client-side queue and server-side sync service."""
from outbox.client import HttpSyncTransport, LocalSyncTransport, OfflineOutbox, SyncTransport
from outbox.server import OutboxSyncService
from outbox.storage import FileOutboxStorage, MemoryOutboxStorage, OutboxStorage

__all__ = [
    "OfflineOutbox", "SyncTransport", "HttpSyncTransport", "LocalSyncTransport",
    "OutboxSyncService",
    "OutboxStorage", "MemoryOutboxStorage", "FileOutboxStorage",
]
