"""Sender categorization pipeline.

One invocation processes one page of the mailbox:

1. Validate the user (mailbox token, AI access) and load their categories
2. Discover senders on the next page of messages
3. Split senders into previously seen and new
4. Apply static rules to new senders
5. Classify the rest with one batch Claude call
6. Persist every resolved sender
7. Re-classify each still-unknown sender on its own, with message history
8. Widen the user's categorized-time watermark to cover the page

Work persisted before a failure stays persisted; a later run does not
redo it because those senders are then "previously seen".

Usage:
    from sender_categorizer.engine.categorize import SenderCategorizer

    categorizer = SenderCategorizer(
        store=db_store,
        engine=sender_classifier,
        reader_factory=lambda token: SenderReader(GraphClient(StaticTokenAuth(token))),
        config=app_config,
    )
    outcome = await categorizer.categorize_senders("user-1")
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from sender_categorizer.classifier.outcomes import (
    CategoryInfo,
    CategoryOutcome,
    SenderClassification,
    SenderEvidence,
)
from sender_categorizer.classifier.prompts import MAX_SNIPPETS_PER_SENDER
from sender_categorizer.classifier.static_rules import precategorize_senders
from sender_categorizer.core.errors import (
    AccessError,
    AuthenticationError,
    CategorizerError,
    ConfigurationError,
    DatabaseError,
    GraphAPIError,
    RateLimitExceeded,
)
from sender_categorizer.core.logging import get_logger, set_run_id

if TYPE_CHECKING:
    from sender_categorizer.config_schema import AppConfig
    from sender_categorizer.db.store import (
        Category,
        DatabaseStore,
        ExistingAssignment,
        SenderAssignment,
        User,
    )
    from sender_categorizer.graph.senders import MailboxReader, SenderPage

logger = get_logger(__name__)

# CategorizeError codes
ACCESS_DENIED = "access_denied"
NO_CATEGORIES = "no_categories"
PROVIDER_ERROR = "provider_error"
DATABASE_ERROR = "database_error"
INTERNAL_ERROR = "internal_error"


class SenderCategoryEngine(Protocol):
    """AI classification engine used by the pipeline."""

    async def classify_batch(
        self,
        user: User,
        senders: Sequence[SenderEvidence],
        categories: Sequence[CategoryInfo],
    ) -> list[SenderClassification]: ...

    async def classify_single(
        self,
        user: User,
        sender: str,
        snippets: Sequence[str],
        categories: Sequence[CategoryInfo],
    ) -> CategoryOutcome | None: ...


ReaderFactory = Callable[[str], "MailboxReader"]


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class CategorizeResult:
    """Result of one categorization invocation.

    categorized_count is the number of senders persisted with a category in
    this invocation (static + ai + fallback).
    """

    categorized_count: int = 0
    next_page_token: str | None = None
    run_id: str | None = None
    senders_found: int = 0
    static_count: int = 0
    ai_count: int = 0
    fallback_count: int = 0
    pages: int = 0
    duration_ms: int = 0


@dataclass(frozen=True)
class CategorizeError:
    """Typed failure returned instead of raising."""

    code: str
    message: str
    run_id: str | None = None


@dataclass(frozen=True)
class AssignmentResult:
    """Outcome of assigning a sender to a category.

    Attributes:
        new_category: The category if it was not in the invocation's list
            before this call, else None
        assignment: The stored sender assignment
    """

    new_category: Category | None
    assignment: SenderAssignment


# ---------------------------------------------------------------------------
# Persistence helper
# ---------------------------------------------------------------------------


async def assign_sender_category(
    store: DatabaseStore,
    sender: str,
    category_name: str,
    user_id: str,
    categories: list[Category],
) -> AssignmentResult:
    """Persist sender -> category, creating the category on first use.

    The name is looked up (case-insensitively) in the invocation's category
    list first; a category fetched or created here is appended to that list
    so later senders in the same invocation reuse it. Idempotent.

    Raises:
        DatabaseError: If the category or assignment cannot be stored
    """
    wanted = category_name.strip().lower()
    category = next((c for c in categories if c.name.lower() == wanted), None)
    new_category = None

    if category is None:
        category = await store.get_or_create_category(user_id, category_name.strip())
        # Another worker may have appended the same row while we awaited
        if not any(c.id == category.id for c in categories):
            categories.append(category)
            new_category = category

    assignment = await store.upsert_assignment(sender, user_id, category.id)
    assignment.category_name = category.name

    logger.debug("sender_assigned", sender=sender, category=category.name)
    return AssignmentResult(new_category=new_category, assignment=assignment)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class SenderCategorizer:
    """Runs the sender categorization pipeline for one user at a time.

    Each invocation generates a UUID4 run_id for log correlation. Categories
    are read fresh from the database on every invocation.

    Attributes:
        _store: DatabaseStore for users, categories and assignments
        _engine: AI engine, or None when no API key is configured
        _reader_factory: Builds a mailbox reader from an access token
        _config: Application configuration
    """

    def __init__(
        self,
        store: DatabaseStore,
        engine: SenderCategoryEngine | None,
        reader_factory: ReaderFactory,
        config: AppConfig,
    ):
        self._store = store
        self._engine = engine
        self._reader_factory = reader_factory
        self._config = config

    async def categorize_senders(
        self,
        user_id: str,
        page_token: str | None = None,
    ) -> CategorizeResult | CategorizeError:
        """Categorize the senders on one page of the user's mailbox.

        Never raises (except on cancellation): access and configuration
        problems, provider failures and database failures come back as a
        CategorizeError.
        """
        run_id = str(uuid.uuid4())
        set_run_id(run_id)
        start_time = time.monotonic()
        result = CategorizeResult(run_id=run_id)
        error: CategorizeError | None = None

        logger.info("categorize_run_start", user_id=user_id, resumed=page_token is not None)

        try:
            user, categories = await self._load_user_and_categories(user_id)
            await self._run(user, categories, page_token, result)

        except AccessError as e:
            error = CategorizeError(ACCESS_DENIED, str(e), run_id)
        except ConfigurationError as e:
            error = CategorizeError(NO_CATEGORIES, str(e), run_id)
        except (GraphAPIError, RateLimitExceeded, AuthenticationError) as e:
            code = PROVIDER_ERROR
            if isinstance(e, AuthenticationError) or (
                isinstance(e, GraphAPIError) and e.status_code in (401, 403)
            ):
                code = ACCESS_DENIED
            error = CategorizeError(code, str(e), run_id)
        except DatabaseError as e:
            error = CategorizeError(DATABASE_ERROR, str(e), run_id)
        except Exception as e:
            logger.exception("categorize_run_unexpected_error", error=str(e))
            error = CategorizeError(INTERNAL_ERROR, f"Unexpected error: {e}", run_id)
        finally:
            result.duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.info(
                "categorize_run_complete",
                user_id=user_id,
                duration_ms=result.duration_ms,
                senders_found=result.senders_found,
                categorized=result.categorized_count,
                static=result.static_count,
                ai=result.ai_count,
                fallback=result.fallback_count,
                has_next_page=result.next_page_token is not None,
                error_code=error.code if error else None,
            )
            set_run_id(None)

        if error is not None:
            logger.warning("categorize_run_failed", code=error.code, message=error.message)
            return error
        return result

    async def categorize_senders_to_completion(
        self,
        user_id: str,
        max_pages: int | None = None,
    ) -> CategorizeResult | CategorizeError:
        """Follow page tokens until the window is exhausted or max_pages is hit.

        If a later page fails, the totals so far are returned with
        next_page_token pointing at the failed page so the caller can resume.
        An error on the first page is returned as-is.
        """
        page_limit = max_pages if max_pages is not None else self._config.categorize.max_pages
        total = CategorizeResult()
        page_token: str | None = None

        while total.pages < page_limit:
            outcome = await self.categorize_senders(user_id, page_token)

            if isinstance(outcome, CategorizeError):
                if total.pages == 0:
                    return outcome
                logger.warning("categorize_pages_stopped", pages=total.pages, code=outcome.code)
                total.next_page_token = page_token
                return total

            total.pages += 1
            total.run_id = outcome.run_id
            total.categorized_count += outcome.categorized_count
            total.senders_found += outcome.senders_found
            total.static_count += outcome.static_count
            total.ai_count += outcome.ai_count
            total.fallback_count += outcome.fallback_count
            total.duration_ms += outcome.duration_ms
            total.next_page_token = outcome.next_page_token

            page_token = outcome.next_page_token
            if page_token is None:
                break

        return total

    async def categorize_sender(self, user_id: str, sender: str) -> str | None:
        """Categorize one sender from its recent messages.

        Returns:
            The category name persisted, or None if the sender stayed unknown

        Raises:
            AccessError: Unknown user, no mailbox token, or no AI access
            ConfigurationError: The user has no categories
            GraphAPIError: If the mailbox cannot be read
            ClassificationError: If the Claude call fails
            DatabaseError: If the assignment cannot be stored
        """
        user, categories = await self._load_user_and_categories(user_id)
        reader = self._reader_factory(user.access_token)
        limit = self._config.categorize.fallback_snippet_count

        snippets = await asyncio.to_thread(reader.get_recent_snippets, sender, limit)
        outcome = await self._engine.classify_single(
            user, sender, snippets[:limit], _catalog(categories)
        )

        if outcome is None or not outcome.is_resolved:
            logger.info("sender_left_uncategorized", sender=sender)
            return None

        await assign_sender_category(self._store, sender, outcome.category, user.id, categories)
        logger.info("sender_categorized", sender=sender, category=outcome.category)
        return outcome.category

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _load_user_and_categories(self, user_id: str) -> tuple[User, list[Category]]:
        """Validate access and load the user's category list.

        Raises:
            AccessError: Unknown user, no mailbox token, or no AI access
            ConfigurationError: The user has no categories
        """
        user = await self._store.get_user(user_id)
        if user is None:
            raise AccessError(f"Unknown user '{user_id}'. Add it with the add-user command.", user_id)
        if not user.access_token:
            raise AccessError(
                f"User '{user_id}' has no mailbox access token. "
                f"Run 'python -m sender_categorizer login --user {user_id}'.",
                user_id,
            )
        if not user.ai_enabled:
            raise AccessError(f"AI categorization is disabled for user '{user_id}'.", user_id)
        if self._engine is None:
            raise AccessError(
                "No AI access configured. Set ANTHROPIC_API_KEY in the environment or .env file.",
                user_id,
            )

        categories = await self._store.get_categories(user_id)
        if not categories:
            raise ConfigurationError(
                f"No categories found for user '{user_id}'. "
                "Run the seed-categories or add-category command first.",
                user_id,
            )
        return user, categories

    async def _run(
        self,
        user: User,
        categories: list[Category],
        page_token: str | None,
        result: CategorizeResult,
    ) -> None:
        reader = self._reader_factory(user.access_token)
        settings = self._config.categorize

        page: SenderPage = await asyncio.to_thread(
            reader.find_senders,
            settings.page_size,
            page_token,
            user.oldest_categorized_email_time,
            user.newest_categorized_email_time,
        )
        result.next_page_token = page.next_page_token
        senders = list(page.senders)
        result.senders_found = len(senders)

        if not senders:
            logger.info("no_senders_found")
            return

        existing, new_senders = await self._partition_senders(senders, user.id)
        catalog = _catalog(categories)

        # Static rules
        to_batch: list[str] = []
        for classification in precategorize_senders(new_senders):
            if classification.outcome.is_resolved:
                await assign_sender_category(
                    self._store, classification.sender, classification.category, user.id, categories
                )
                result.static_count += 1
            else:
                to_batch.append(classification.sender)

        # Batch AI
        unknown: list[str] = []
        if to_batch:
            evidence = [
                SenderEvidence(s, tuple(page.snippets_for(s)[:MAX_SNIPPETS_PER_SENDER]))
                for s in to_batch
            ]
            batch_results = await self._engine.classify_batch(user, evidence, catalog)
            batch_outcomes = {r.sender: r.outcome for r in batch_results}

            for sender in to_batch:
                outcome = batch_outcomes.get(sender, CategoryOutcome.unresolved())
                if outcome.needs_fallback:
                    unknown.append(sender)
                    continue
                await assign_sender_category(
                    self._store, sender, outcome.category, user.id, categories
                )
                result.ai_count += 1

        # Fallback: batch leftovers plus previously seen senders with no category
        unknown.extend(e.email for e in existing if e.category_name is None)
        result.fallback_count = await self._categorize_unknown_senders(
            user, reader, page, unknown, categories
        )

        result.categorized_count = result.static_count + result.ai_count + result.fallback_count

        await self._store.extend_watermark(user.id, page.date_range.oldest, page.date_range.newest)

    async def _partition_senders(
        self,
        senders: list[str],
        user_id: str,
    ) -> tuple[list[ExistingAssignment], list[str]]:
        """Split senders into (previously seen, new), preserving input order."""
        existing = await self._store.find_assignments(senders, user_id)
        seen = {e.email for e in existing}
        new_senders = [s for s in senders if s.lower() not in seen]

        logger.info(
            "senders_partitioned",
            existing=len(existing),
            uncategorized_existing=sum(1 for e in existing if e.category_name is None),
            new=len(new_senders),
        )
        return existing, new_senders

    async def _categorize_unknown_senders(
        self,
        user: User,
        reader: MailboxReader,
        page: SenderPage,
        senders: list[str],
        categories: list[Category],
    ) -> int:
        """Classify each unknown sender on its own; returns how many were persisted.

        Each sender is handled exactly once, by at most fallback_concurrency
        workers at a time.
        """
        unique = list(dict.fromkeys(senders))
        if not unique:
            return 0

        catalog = _catalog(categories)
        semaphore = asyncio.Semaphore(self._config.categorize.fallback_concurrency)

        async def worker(sender: str) -> bool:
            async with semaphore:
                return await self._categorize_unknown_sender(
                    user, reader, sender, page.snippets_for(sender), categories, catalog
                )

        outcomes = await asyncio.gather(*(worker(s) for s in unique))
        categorized = sum(1 for ok in outcomes if ok)

        logger.info("fallback_complete", senders=len(unique), categorized=categorized)
        return categorized

    async def _categorize_unknown_sender(
        self,
        user: User,
        reader: MailboxReader,
        sender: str,
        snippets: list[str],
        categories: list[Category],
        catalog: list[CategoryInfo],
    ) -> bool:
        limit = self._config.categorize.fallback_snippet_count
        try:
            if not snippets:
                snippets = await asyncio.to_thread(reader.get_recent_snippets, sender, limit)

            outcome = await self._engine.classify_single(user, sender, snippets[:limit], catalog)
            if outcome is None or not outcome.is_resolved:
                logger.info(
                    "fallback_no_result",
                    sender=sender,
                    outcome=str(outcome.kind) if outcome else None,
                    snippets=len(snippets),
                )
                return False

            await assign_sender_category(self._store, sender, outcome.category, user.id, categories)
            return True

        except CategorizerError as e:
            logger.warning(
                "fallback_sender_failed",
                sender=sender,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except Exception:
            logger.exception("fallback_sender_failed", sender=sender)
            return False


def _catalog(categories: Sequence[Category]) -> list[CategoryInfo]:
    return [CategoryInfo(name=c.name, description=c.description) for c in categories]
