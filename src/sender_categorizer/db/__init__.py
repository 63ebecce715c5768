"""Database layer for the sender categorizer.

This module provides SQLite database access with async operations.

Usage:
    from sender_categorizer.db import DatabaseStore

    store = DatabaseStore("data/sender_categorizer.db")
    await store.initialize()

    await store.upsert_user("user-1", "me@example.com")
    category = await store.get_or_create_category("user-1", "Receipt")
    await store.upsert_assignment("receipts@store.example", "user-1", category.id)
"""

from sender_categorizer.db.models import (
    SCHEMA_VERSION,
    init_database,
    verify_schema,
)
from sender_categorizer.db.store import (
    Category,
    DatabaseStore,
    ExistingAssignment,
    LLMLogEntry,
    SenderAssignment,
    User,
    to_utc_iso,
)

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    "to_utc_iso",
    # Dataclasses
    "User",
    "Category",
    "SenderAssignment",
    "ExistingAssignment",
    "LLMLogEntry",
]
