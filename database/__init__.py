"""
Database layer — Chat persistence and the shared key-value store.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - Redis for the shared store (dialogue state, leases, wait queue)

Quick start:
  from database import create_repository, create_kv_store
  repo = create_repository({"repository_backend": "memory"})
  chat = await repo.find_chat_by_contact("593991234567")
"""
from database.models import (
    Base, AgentRow, ChatRow, MessageRow, ChatNoteRow, SurveyResponseRow,
    ClientRow, DebtContractRow, DebtDetailRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.repository_base import ChatRepository
from database.repository_sql import SqlChatRepository
from database.repository_memory import InMemoryChatRepository
from database.repository_factory import create_repository, get_repository, reset_repository
from database.kv_store import (
    KeyValueStore, RedisKeyValueStore, InMemoryKeyValueStore,
    create_kv_store, get_kv_store, reset_kv_store,
)

__all__ = [
    # ORM models
    "Base", "AgentRow", "ChatRow", "MessageRow", "ChatNoteRow", "SurveyResponseRow",
    "ClientRow", "DebtContractRow", "DebtDetailRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Repository interface and backends
    "ChatRepository", "SqlChatRepository", "InMemoryChatRepository",
    # Factories
    "create_repository", "get_repository", "reset_repository",
    # Shared store
    "KeyValueStore", "RedisKeyValueStore", "InMemoryKeyValueStore",
    "create_kv_store", "get_kv_store", "reset_kv_store",
]
