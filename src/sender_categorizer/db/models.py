"""SQLite schema for the sender categorizer.

Four tables:
- users: mailbox owners, their Graph token and the categorized time window
- categories: each user's category catalog, names unique per user ignoring case
- senders: at most one category per (sender, user)
- llm_request_log: every Claude call, kept for debugging classifications

Usage:
    from sender_categorizer.db.models import init_database

    await init_database("data/sender_categorizer.db")
"""

import stat
from pathlib import Path

import aiosqlite

from sender_categorizer.core.errors import DatabaseError
from sender_categorizer.core.logging import get_logger

logger = get_logger(__name__)

# Bump together with a migration
SCHEMA_VERSION = 1

REQUIRED_TABLES = ("users", "categories", "senders", "llm_request_log")

_OWNER_ONLY = stat.S_IRUSR | stat.S_IWUSR

SCHEMA_SQL = """
-- WAL is persistent once set; do it before any table exists
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    access_token TEXT,                          -- Graph bearer token; NULL = no mailbox access
    ai_enabled INTEGER DEFAULT 1,               -- 0 disables AI categorization for this user
    oldest_categorized_email_time TEXT,         -- ISO-8601 UTC, widens only
    newest_categorized_email_time TEXT,         -- ISO-8601 UTC, widens only
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS categories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    name TEXT NOT NULL COLLATE NOCASE,         -- "Newsletter" and "newsletter" are one category
    description TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(user_id, name)
);

CREATE INDEX IF NOT EXISTS idx_categories_user ON categories(user_id);

-- NULL category_id means the sender was seen and deliberately left uncategorized
CREATE TABLE IF NOT EXISTS senders (
    email TEXT NOT NULL,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    category_id INTEGER REFERENCES categories(id) ON DELETE SET NULL,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (email, user_id)
);

CREATE INDEX IF NOT EXISTS idx_senders_category ON senders(category_id);

CREATE TABLE IF NOT EXISTS llm_request_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    task_type TEXT,                             -- 'categorize_senders', 'categorize_sender'
    model TEXT,
    sender TEXT,                                -- NULL for batch calls
    run_id TEXT,
    prompt_json TEXT,
    response_json TEXT,
    tool_call_json TEXT,
    input_tokens INTEGER,
    output_tokens INTEGER,
    duration_ms INTEGER,
    error TEXT                                  -- NULL on success
);

CREATE INDEX IF NOT EXISTS idx_llm_log_time ON llm_request_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_llm_log_run ON llm_request_log(run_id);
"""


def _restrict_permissions(db_path: Path) -> None:
    """chmod 600 the database and any WAL sidecar files (they hold access tokens)."""
    for path in (db_path, Path(f"{db_path}-wal"), Path(f"{db_path}-shm")):
        if path.exists():
            path.chmod(_OWNER_ONLY)


async def _existing_tables(db: aiosqlite.Connection) -> set[str]:
    async with db.execute("SELECT name FROM sqlite_master WHERE type = 'table'") as cursor:
        return {name for (name,) in await cursor.fetchall()}


async def init_database(db_path: str | Path) -> None:
    """Create the database file and schema if missing. Safe to call repeatedly.

    Raises:
        DatabaseError: If SQLite cannot open or write the file
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(path) as db:
            async with db.execute("PRAGMA journal_mode=WAL") as cursor:
                (journal_mode,) = await cursor.fetchone()
            if str(journal_mode).lower() != "wal":
                logger.warning("wal_mode_unavailable", db_path=str(path), journal_mode=journal_mode)

            await db.executescript(SCHEMA_SQL)
            await db.commit()
            tables = await _existing_tables(db)
    except aiosqlite.Error as e:
        logger.error("database_init_failed", db_path=str(path), error=str(e))
        raise DatabaseError(
            f"Could not initialize the database at {path}: {e}. "
            "Make sure the directory is writable and the file is a valid SQLite database."
        ) from e

    _restrict_permissions(path)
    logger.info(
        "database_initialized",
        db_path=str(path),
        schema_version=SCHEMA_VERSION,
        table_count=len(tables),
    )


async def verify_schema(db_path: str | Path) -> bool:
    """True when every table in REQUIRED_TABLES is present."""
    try:
        async with aiosqlite.connect(db_path) as db:
            missing = set(REQUIRED_TABLES) - await _existing_tables(db)
    except aiosqlite.Error as e:
        logger.error("schema_check_failed", db_path=str(db_path), error=str(e))
        return False

    if missing:
        logger.warning("schema_tables_missing", db_path=str(db_path), missing=sorted(missing))
        return False
    return True
