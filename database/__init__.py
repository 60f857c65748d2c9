"""
Database layer — Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_stores
  stores = create_stores(settings.database)
  await stores.scheduled.claim_due(now)
"""
from database.models import Base, ScheduledMessageRow, OutboxReceiptRow
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import ScheduledMessageStore, OutboxReceiptStore
from database.store import SqlScheduledMessageStore, SqlOutboxReceiptStore
from database.store_memory import InMemoryScheduledMessageStore, InMemoryOutboxReceiptStore
from database.store_factory import Stores, create_stores

__all__ = [
    # ORM models
    "Base", "ScheduledMessageRow", "OutboxReceiptRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interfaces
    "ScheduledMessageStore", "OutboxReceiptStore",
    # Store backends
    "SqlScheduledMessageStore", "SqlOutboxReceiptStore",
    "InMemoryScheduledMessageStore", "InMemoryOutboxReceiptStore",
    # Factory
    "Stores", "create_stores",
]
