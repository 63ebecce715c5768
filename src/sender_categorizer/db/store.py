"""Database store with CRUD operations for all tables.

This module provides the DatabaseStore class that encapsulates all database
operations for the sender categorizer. It uses aiosqlite for async access
and returns dataclasses rather than raw rows.

Usage:
    from sender_categorizer.db.store import DatabaseStore

    store = DatabaseStore("data/sender_categorizer.db")
    await store.initialize()

    category = await store.get_or_create_category("user-1", "Newsletter")
    await store.upsert_assignment("news@example.com", "user-1", category.id)
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import aiosqlite

from sender_categorizer.core.errors import CategoryConflictError, DatabaseError
from sender_categorizer.core.logging import get_logger, get_run_id
from sender_categorizer.db.models import init_database

logger = get_logger(__name__)

# SQLite default SQLITE_MAX_VARIABLE_NUMBER is 999 on older builds
MAX_QUERY_PARAMS = 500


@dataclass
class User:
    """User record from the database."""

    id: str
    email: str
    access_token: str | None = None
    ai_enabled: bool = True
    oldest_categorized_email_time: datetime | None = None
    newest_categorized_email_time: datetime | None = None
    created_at: datetime | None = None


@dataclass
class Category:
    """Category record from the database."""

    id: int
    user_id: str
    name: str
    description: str | None = None
    created_at: datetime | None = None


@dataclass
class SenderAssignment:
    """Sender -> category assignment record from the database."""

    email: str
    user_id: str
    category_id: int | None = None
    category_name: str | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class ExistingAssignment:
    """A previously seen sender and its category name (None if uncategorized)."""

    email: str
    category_name: str | None = None


@dataclass
class LLMLogEntry:
    """LLM request log entry from the database."""

    id: int
    timestamp: datetime
    task_type: str | None = None
    model: str | None = None
    sender: str | None = None
    run_id: str | None = None
    prompt_json: dict[str, Any] | None = None
    response_json: dict[str, Any] | None = None
    tool_call_json: dict[str, Any] | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    duration_ms: int | None = None
    error: str | None = None


def to_utc_iso(value: datetime) -> str:
    """Serialize a datetime as fixed-width ISO-8601 UTC.

    Naive datetimes are taken to be UTC. The fixed width keeps string
    comparison (and SQLite MIN/MAX) consistent with chronological order.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _load_json(value: str | None) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return None


class DatabaseStore:
    """Database store for all sender categorizer data.

    Attributes:
        db_path: Path to the SQLite database file
        _initialized: Whether the database has been initialized
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed.

        This must be called before any other operations.
        """
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Sets all required PRAGMAs for reliability and performance:
        - busy_timeout: 10s to handle concurrent fallback writers and the CLI
        - foreign_keys: ON to enforce referential integrity
        - synchronous: NORMAL (safe with WAL, faster writes)
        - cache_size: 64MB for better read performance
        - temp_store: MEMORY for faster temp operations
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")

            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA cache_size = -64000")  # 64MB
            await db.execute("PRAGMA temp_store = MEMORY")

            db.row_factory = aiosqlite.Row
            yield db

    # =========================================================================
    # User Operations
    # =========================================================================

    async def get_user(self, user_id: str) -> User | None:
        """Get a user by ID, or None if the user does not exist."""
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM users WHERE id = ?", (user_id,))
                row = await cursor.fetchone()
                return self._row_to_user(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get user", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to get user {user_id}: {e}") from e

    async def upsert_user(
        self,
        user_id: str,
        email: str,
        access_token: str | None = None,
        ai_enabled: bool = True,
    ) -> User:
        """Insert or update a user.

        An existing access token is kept when access_token is None. Watermark
        columns are never touched here.
        """
        try:
            now = datetime.now(UTC).isoformat()
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO users (id, email, access_token, ai_enabled, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        email = excluded.email,
                        access_token = COALESCE(excluded.access_token, access_token),
                        ai_enabled = excluded.ai_enabled,
                        updated_at = excluded.updated_at
                    """,
                    (user_id, email, access_token, 1 if ai_enabled else 0, now, now),
                )
                await db.commit()

                cursor = await db.execute("SELECT * FROM users WHERE id = ?", (user_id,))
                row = await cursor.fetchone()

            logger.info("user_upserted", user_id=user_id, ai_enabled=ai_enabled)
            return self._row_to_user(row)

        except aiosqlite.Error as e:
            logger.error("Failed to upsert user", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to upsert user {user_id}: {e}") from e

    async def set_access_token(self, user_id: str, access_token: str | None) -> bool:
        """Store (or clear) the Graph access token for a user.

        Returns:
            True if the user exists and was updated
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "UPDATE users SET access_token = ?, updated_at = ? WHERE id = ?",
                    (access_token, datetime.now(UTC).isoformat(), user_id),
                )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("Failed to set access token", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to set access token for {user_id}: {e}") from e

    async def extend_watermark(
        self,
        user_id: str,
        observed_oldest: datetime | None,
        observed_newest: datetime | None,
    ) -> None:
        """Widen the user's categorized-time range to cover the observed range.

        stored_oldest becomes min(stored_oldest, observed_oldest) and
        stored_newest becomes max(stored_newest, observed_newest). A None
        observation leaves that end unchanged. The merge is a single UPDATE
        so concurrent runs for the same user cannot narrow the range.
        """
        if observed_oldest is None and observed_newest is None:
            return

        oldest = to_utc_iso(observed_oldest) if observed_oldest else None
        newest = to_utc_iso(observed_newest) if observed_newest else None

        try:
            async with self._db() as db:
                # Multi-argument MIN/MAX return NULL if any argument is NULL
                await db.execute(
                    """
                    UPDATE users SET
                        oldest_categorized_email_time = COALESCE(
                            MIN(COALESCE(oldest_categorized_email_time, :oldest), :oldest),
                            oldest_categorized_email_time
                        ),
                        newest_categorized_email_time = COALESCE(
                            MAX(COALESCE(newest_categorized_email_time, :newest), :newest),
                            newest_categorized_email_time
                        ),
                        updated_at = :now
                    WHERE id = :user_id
                    """,
                    {
                        "oldest": oldest,
                        "newest": newest,
                        "now": datetime.now(UTC).isoformat(),
                        "user_id": user_id,
                    },
                )
                await db.commit()

            logger.debug("watermark_extended", user_id=user_id, oldest=oldest, newest=newest)

        except aiosqlite.Error as e:
            logger.error("Failed to extend watermark", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to extend watermark for {user_id}: {e}") from e

    def _row_to_user(self, row: aiosqlite.Row) -> User:
        """Convert a database row to a User dataclass."""
        return User(
            id=row["id"],
            email=row["email"],
            access_token=row["access_token"],
            ai_enabled=bool(row["ai_enabled"]),
            oldest_categorized_email_time=_parse_datetime(row["oldest_categorized_email_time"]),
            newest_categorized_email_time=_parse_datetime(row["newest_categorized_email_time"]),
            created_at=_parse_datetime(row["created_at"]),
        )

    # =========================================================================
    # Category Operations
    # =========================================================================

    async def get_categories(self, user_id: str) -> list[Category]:
        """Get all categories for a user, ordered by name."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM categories WHERE user_id = ? ORDER BY name",
                    (user_id,),
                )
                rows = await cursor.fetchall()
                return [self._row_to_category(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to get categories", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to get categories for {user_id}: {e}") from e

    async def create_category(
        self,
        user_id: str,
        name: str,
        description: str | None = None,
    ) -> Category:
        """Create a new category.

        Raises:
            CategoryConflictError: If the user already has a category with this name
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "INSERT INTO categories (user_id, name, description) VALUES (?, ?, ?)",
                    (user_id, name, description),
                )
                await db.commit()
                category_id = cursor.lastrowid

            logger.info("category_created", user_id=user_id, name=name)
            return Category(id=category_id, user_id=user_id, name=name, description=description)

        except aiosqlite.IntegrityError as e:
            raise CategoryConflictError(
                f"Category '{name}' already exists for user {user_id}",
                user_id=user_id,
                name=name,
            ) from e
        except aiosqlite.Error as e:
            logger.error("Failed to create category", user_id=user_id, name=name, error=str(e))
            raise DatabaseError(f"Failed to create category '{name}': {e}") from e

    async def get_or_create_category(
        self,
        user_id: str,
        name: str,
        description: str | None = None,
    ) -> Category:
        """Return the user's category with this name, creating it if needed.

        Two runs creating the same name at once both end up with the single
        stored row: the insert is a no-op on conflict and the row is re-read.

        Raises:
            CategoryConflictError: If the row cannot be read back after a conflict
        """
        try:
            async with self._db() as db:
                try:
                    cursor = await db.execute(
                        """
                        INSERT INTO categories (user_id, name, description)
                        VALUES (?, ?, ?)
                        ON CONFLICT(user_id, name) DO NOTHING
                        """,
                        (user_id, name, description),
                    )
                    await db.commit()
                    created = cursor.rowcount > 0
                except aiosqlite.IntegrityError:
                    # Lost a race with a concurrent insert; the re-read below finds the winner
                    await db.rollback()
                    created = False

                cursor = await db.execute(
                    "SELECT * FROM categories WHERE user_id = ? AND name = ?",
                    (user_id, name),
                )
                row = await cursor.fetchone()

        except aiosqlite.Error as e:
            logger.error("Failed to get or create category", user_id=user_id, name=name, error=str(e))
            raise DatabaseError(f"Failed to get or create category '{name}': {e}") from e

        if row is None:
            raise CategoryConflictError(
                f"Category '{name}' for user {user_id} conflicted on insert but could not be read back",
                user_id=user_id,
                name=name,
            )

        if created:
            logger.info("category_created", user_id=user_id, name=name)
        return self._row_to_category(row)

    async def delete_category(self, user_id: str, name: str) -> bool:
        """Delete a category by name.

        Senders assigned to it keep their row with a NULL category.

        Returns:
            True if a category was deleted
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "DELETE FROM categories WHERE user_id = ? AND name = ?",
                    (user_id, name),
                )
                await db.commit()
                deleted = cursor.rowcount > 0

            if deleted:
                logger.info("category_deleted", user_id=user_id, name=name)
            return deleted

        except aiosqlite.Error as e:
            logger.error("Failed to delete category", user_id=user_id, name=name, error=str(e))
            raise DatabaseError(f"Failed to delete category '{name}': {e}") from e

    def _row_to_category(self, row: aiosqlite.Row) -> Category:
        """Convert a database row to a Category dataclass."""
        return Category(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            description=row["description"],
            created_at=_parse_datetime(row["created_at"]),
        )

    # =========================================================================
    # Sender Assignment Operations
    # =========================================================================

    async def find_assignments(
        self,
        addresses: Iterable[str],
        user_id: str,
    ) -> list[ExistingAssignment]:
        """Find existing sender rows for exactly the given addresses.

        Returns one entry per stored row, with category_name None when the
        sender has a row but no category.
        """
        normalized = list(dict.fromkeys(a.strip().lower() for a in addresses))
        if not normalized:
            return []

        try:
            results: list[ExistingAssignment] = []
            async with self._db() as db:
                for start in range(0, len(normalized), MAX_QUERY_PARAMS):
                    chunk = normalized[start : start + MAX_QUERY_PARAMS]
                    placeholders = ",".join("?" * len(chunk))
                    cursor = await db.execute(
                        f"""
                        SELECT s.email, c.name AS category_name
                        FROM senders s
                        LEFT JOIN categories c ON c.id = s.category_id
                        WHERE s.user_id = ? AND s.email IN ({placeholders})
                        """,
                        (user_id, *chunk),
                    )
                    rows = await cursor.fetchall()
                    results.extend(
                        ExistingAssignment(email=row["email"], category_name=row["category_name"])
                        for row in rows
                    )
            return results

        except aiosqlite.Error as e:
            logger.error("Failed to find sender assignments", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to find sender assignments: {e}") from e

    async def upsert_assignment(
        self,
        sender: str,
        user_id: str,
        category_id: int,
    ) -> SenderAssignment:
        """Assign a sender to a category, replacing any previous assignment.

        Idempotent: applying the same assignment twice leaves one row.
        """
        email = sender.strip().lower()
        now = datetime.now(UTC).isoformat()

        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO senders (email, user_id, category_id, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(email, user_id) DO UPDATE SET
                        category_id = excluded.category_id,
                        updated_at = excluded.updated_at
                    """,
                    (email, user_id, category_id, now, now),
                )
                await db.commit()

            return SenderAssignment(
                email=email,
                user_id=user_id,
                category_id=category_id,
                updated_at=_parse_datetime(now),
            )

        except aiosqlite.Error as e:
            logger.error("Failed to upsert sender assignment", sender=email, error=str(e))
            raise DatabaseError(f"Failed to assign sender {email}: {e}") from e

    async def clear_assignment(self, sender: str, user_id: str) -> bool:
        """Mark a sender as uncategorized, keeping its row.

        Returns:
            True if the sender had a row
        """
        email = sender.strip().lower()
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE senders SET category_id = NULL, updated_at = ?
                    WHERE email = ? AND user_id = ?
                    """,
                    (datetime.now(UTC).isoformat(), email, user_id),
                )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("Failed to clear sender assignment", sender=email, error=str(e))
            raise DatabaseError(f"Failed to clear assignment for {email}: {e}") from e

    async def list_assignments(
        self,
        user_id: str,
        category_name: str | None = None,
        limit: int = 100,
    ) -> list[SenderAssignment]:
        """List a user's sender assignments, most recently updated first."""
        try:
            async with self._db() as db:
                query = """
                    SELECT s.email, s.user_id, s.category_id, s.updated_at,
                           c.name AS category_name
                    FROM senders s
                    LEFT JOIN categories c ON c.id = s.category_id
                    WHERE s.user_id = ?
                """
                params: list[Any] = [user_id]

                if category_name:
                    query += " AND c.name = ?"
                    params.append(category_name)

                query += " ORDER BY s.updated_at DESC LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_assignment(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to list sender assignments", user_id=user_id, error=str(e))
            raise DatabaseError(f"Failed to list sender assignments: {e}") from e

    def _row_to_assignment(self, row: aiosqlite.Row) -> SenderAssignment:
        """Convert a database row to a SenderAssignment dataclass."""
        return SenderAssignment(
            email=row["email"],
            user_id=row["user_id"],
            category_id=row["category_id"],
            category_name=row["category_name"],
            updated_at=_parse_datetime(row["updated_at"]),
        )

    # =========================================================================
    # LLM Request Log Operations
    # =========================================================================

    async def log_llm_request(
        self,
        task_type: str,
        model: str,
        prompt: dict[str, Any] | list[dict[str, Any]],
        response: dict[str, Any] | None = None,
        tool_call: dict[str, Any] | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        duration_ms: int | None = None,
        sender: str | None = None,
        error: str | None = None,
    ) -> int:
        """Log an LLM request for debugging.

        Args:
            task_type: Tool name of the call ('categorize_senders', 'categorize_sender')
            model: Model string used
            prompt: The prompt sent to Claude
            response: The response from Claude
            tool_call: Extracted tool call result
            input_tokens: Input token count
            output_tokens: Output token count
            duration_ms: Request duration in milliseconds
            sender: Sender classified (None for batch calls)
            error: Error message (if failed)

        Returns:
            The log entry ID
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO llm_request_log (
                        task_type, model, sender, run_id,
                        prompt_json, response_json, tool_call_json,
                        input_tokens, output_tokens, duration_ms, error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        task_type,
                        model,
                        sender,
                        get_run_id(),
                        json.dumps(prompt),
                        json.dumps(response) if response else None,
                        json.dumps(tool_call) if tool_call else None,
                        input_tokens,
                        output_tokens,
                        duration_ms,
                        error,
                    ),
                )
                await db.commit()
                return cursor.lastrowid

        except aiosqlite.Error as e:
            logger.error("Failed to log LLM request", task_type=task_type, error=str(e))
            raise DatabaseError(f"Failed to log LLM request: {e}") from e

    async def get_llm_logs(
        self,
        limit: int = 100,
        sender: str | None = None,
        run_id: str | None = None,
    ) -> list[LLMLogEntry]:
        """Get LLM request logs, newest first, with optional filters."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM llm_request_log WHERE 1=1"
                params: list[Any] = []

                if sender:
                    query += " AND sender = ?"
                    params.append(sender)

                if run_id:
                    query += " AND run_id = ?"
                    params.append(run_id)

                query += " ORDER BY id DESC LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_llm_log(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to get LLM logs", error=str(e))
            raise DatabaseError(f"Failed to get LLM logs: {e}") from e

    async def prune_llm_logs(self, retention_days: int) -> int:
        """Delete LLM logs older than the retention period.

        Returns:
            Number of entries deleted
        """
        try:
            # CURRENT_TIMESTAMP is UTC in "YYYY-MM-DD HH:MM:SS" form
            cutoff = (datetime.now(UTC) - timedelta(days=retention_days)).strftime(
                "%Y-%m-%d %H:%M:%S"
            )

            async with self._db() as db:
                cursor = await db.execute(
                    "DELETE FROM llm_request_log WHERE timestamp < ?",
                    (cutoff,),
                )
                await db.commit()

                deleted = cursor.rowcount
                if deleted:
                    logger.info(
                        "Pruned LLM logs",
                        deleted=deleted,
                        retention_days=retention_days,
                    )
                return deleted

        except aiosqlite.Error as e:
            logger.error("Failed to prune LLM logs", error=str(e))
            raise DatabaseError(f"Failed to prune LLM logs: {e}") from e

    def _row_to_llm_log(self, row: aiosqlite.Row) -> LLMLogEntry:
        """Convert a database row to an LLMLogEntry dataclass."""
        return LLMLogEntry(
            id=row["id"],
            timestamp=_parse_datetime(row["timestamp"]) or datetime.now(UTC),
            task_type=row["task_type"],
            model=row["model"],
            sender=row["sender"],
            run_id=row["run_id"],
            prompt_json=_load_json(row["prompt_json"]),
            response_json=_load_json(row["response_json"]),
            tool_call_json=_load_json(row["tool_call_json"]),
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            duration_ms=row["duration_ms"],
            error=row["error"],
        )
