"""Claude sender classifier using forced tool use.

Two entry points:
- classify_batch(): every rule-unresolved sender in one round-trip
- classify_single(): one sender with its message history (fallback stage)

Error handling strategy:
- Transient errors (429, 5xx, network): handled by the Anthropic SDK (max_retries=3)
- Logical errors (no tool call, malformed input): app-level retry, up to
  MAX_CLASSIFICATION_ATTEMPTS attempts
- Batch: any remaining failure leaves every sender UNRESOLVED so the fallback
  stage can still pick them up
- Single: API failures raise ClassificationError; a response with no usable
  answer returns None

Usage:
    from sender_categorizer.classifier.ai_classifier import SenderClassifier

    classifier = SenderClassifier(
        anthropic_client=anthropic.AsyncAnthropic(max_retries=3),
        store=db_store,
        config=app_config,
    )
    results = await classifier.classify_batch(user, evidence, categories)
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import anthropic

from sender_categorizer.classifier.outcomes import (
    CategoryInfo,
    CategoryOutcome,
    SenderClassification,
    SenderEvidence,
)
from sender_categorizer.classifier.prompts import (
    build_batch_tool,
    build_batch_user_message,
    build_single_tool,
    build_single_user_message,
    build_system_prompt,
)
from sender_categorizer.core.errors import ClassificationError
from sender_categorizer.core.logging import get_logger
from sender_categorizer.core.rate_limiter import get_bucket

if TYPE_CHECKING:
    from sender_categorizer.config_schema import AppConfig
    from sender_categorizer.db.store import DatabaseStore, User

logger = get_logger(__name__)

MAX_CLASSIFICATION_ATTEMPTS = 2

# Claude API rate limit (requests per second); adjust based on tier
CLAUDE_RATE = 2.0
CLAUDE_CAPACITY = 2

BATCH_MAX_TOKENS = 4096
SINGLE_MAX_TOKENS = 512


class SenderClassifier:
    """Classifies senders into a user's categories with Claude.

    Attributes:
        _client: Async Anthropic client (configured with max_retries=3)
        _store: Database store for LLM request logging
        _config: Application configuration
    """

    def __init__(
        self,
        anthropic_client: anthropic.AsyncAnthropic,
        store: DatabaseStore,
        config: AppConfig,
    ):
        self._client = anthropic_client
        self._store = store
        self._config = config
        self._rate_bucket = get_bucket(
            name="claude_api",
            rate=CLAUDE_RATE,
            capacity=CLAUDE_CAPACITY,
        )

    async def classify_batch(
        self,
        user: User,
        senders: Sequence[SenderEvidence],
        categories: Sequence[CategoryInfo],
    ) -> list[SenderClassification]:
        """Classify many senders in a single Claude call.

        Returns exactly one result per requested sender, in request order.
        Senders the engine skipped or answered with an unknown category come
        back UNRESOLVED.
        """
        if not senders:
            return []

        model_name = self._config.models.batch
        system_prompt = build_system_prompt(user.email, categories)
        messages = [
            {
                "role": "user",
                "content": build_batch_user_message(
                    senders, self._config.categorize.max_snippet_length
                ),
            }
        ]
        tool = build_batch_tool(categories)

        logger.info("batch_classification_start", senders=len(senders), model=model_name)

        try:
            tool_call = await self._call_with_tool(
                model=model_name,
                system_prompt=system_prompt,
                messages=messages,
                tool=tool,
                max_tokens=BATCH_MAX_TOKENS,
                validate=_validate_batch_call,
            )
        except ClassificationError as e:
            logger.error("batch_classification_failed", senders=len(senders), error=str(e))
            return [SenderClassification(s.sender, CategoryOutcome.unresolved()) for s in senders]

        valid_names = {c.name.lower(): c.name for c in categories}
        returned = _index_batch_entries(tool_call["senders"])

        results: list[SenderClassification] = []
        missing = 0
        for evidence in senders:
            entry = returned.get(evidence.sender.lower())
            if entry is None:
                missing += 1
                outcome = CategoryOutcome.unresolved()
            else:
                outcome = _outcome_from_tool(entry, valid_names, evidence.sender)
            results.append(SenderClassification(evidence.sender, outcome))

        if missing:
            logger.warning(
                "batch_classification_missing_senders",
                requested=len(senders),
                missing=missing,
            )

        logger.info(
            "batch_classification_complete",
            senders=len(senders),
            resolved=sum(1 for r in results if r.outcome.is_resolved),
        )
        return results

    async def classify_single(
        self,
        user: User,
        sender: str,
        snippets: Sequence[str],
        categories: Sequence[CategoryInfo],
    ) -> CategoryOutcome | None:
        """Classify one sender from its previous messages.

        Returns:
            The outcome, or None if Claude gave no usable answer

        Raises:
            ClassificationError: If the API call fails after SDK retries
        """
        model_name = self._config.models.single
        system_prompt = build_system_prompt(user.email, categories)
        messages = [
            {
                "role": "user",
                "content": build_single_user_message(
                    sender, snippets, self._config.categorize.max_snippet_length
                ),
            }
        ]

        try:
            tool_call = await self._call_with_tool(
                model=model_name,
                system_prompt=system_prompt,
                messages=messages,
                tool=build_single_tool(categories),
                max_tokens=SINGLE_MAX_TOKENS,
                validate=_validate_single_call,
                sender=sender,
            )
        except _NoUsableResponse:
            return None

        valid_names = {c.name.lower(): c.name for c in categories}
        return _outcome_from_tool(tool_call, valid_names, sender)

    async def _call_with_tool(
        self,
        model: str,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tool: dict[str, Any],
        max_tokens: int,
        validate: Any,
        sender: str | None = None,
    ) -> dict[str, Any]:
        """Call Claude with a forced tool and return the validated tool input.

        Raises:
            ClassificationError: On API errors (not retried at app level)
            _NoUsableResponse: When every attempt produced no valid tool call
        """
        last_error: str | None = None

        for attempt in range(1, MAX_CLASSIFICATION_ATTEMPTS + 1):
            await self._rate_bucket.consume()
            start_time = time.monotonic()

            try:
                # SDK handles transient retries (429, 5xx, connection errors)
                response = await self._client.messages.create(
                    model=model,
                    max_tokens=max_tokens,
                    system=system_prompt,
                    messages=messages,
                    tools=[tool],
                    tool_choice={"type": "tool", "name": tool["name"]},
                )
            except anthropic.APIError as e:
                duration_ms = int((time.monotonic() - start_time) * 1000)
                last_error = f"{type(e).__name__}: {e}"
                logger.error(
                    "classification_api_error",
                    sender=sender,
                    attempt=attempt,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                await self._log_request(
                    task_type=tool["name"],
                    model=model,
                    system_prompt=system_prompt,
                    messages=messages,
                    response=None,
                    tool_call=None,
                    duration_ms=duration_ms,
                    sender=sender,
                    error=last_error,
                )
                raise ClassificationError(
                    f"Claude call '{tool['name']}' failed: {last_error}. "
                    "Check ANTHROPIC_API_KEY and the Anthropic status page.",
                    sender=sender,
                    attempts=attempt,
                ) from e

            duration_ms = int((time.monotonic() - start_time) * 1000)
            tool_call = _extract_tool_call(response, tool["name"])
            validation_error = (
                "No tool call in response" if tool_call is None else validate(tool_call)
            )

            await self._log_request(
                task_type=tool["name"],
                model=model,
                system_prompt=system_prompt,
                messages=messages,
                response=response,
                tool_call=tool_call,
                duration_ms=duration_ms,
                sender=sender,
                error=validation_error,
            )

            if validation_error is None and tool_call is not None:
                return tool_call

            last_error = validation_error
            logger.warning(
                "classification_invalid_response",
                sender=sender,
                attempt=attempt,
                error=validation_error,
            )

        if sender is None:
            raise ClassificationError(
                f"Batch classification returned no usable answer after "
                f"{MAX_CLASSIFICATION_ATTEMPTS} attempts. Last error: {last_error}",
                attempts=MAX_CLASSIFICATION_ATTEMPTS,
            )
        raise _NoUsableResponse(last_error or "no usable response")

    async def _log_request(
        self,
        task_type: str,
        model: str,
        system_prompt: str,
        messages: list[dict[str, Any]],
        response: Any,
        tool_call: dict[str, Any] | None,
        duration_ms: int,
        sender: str | None = None,
        error: str | None = None,
    ) -> None:
        """Log an LLM request to the database. Never raises."""
        logging_config = self._config.llm_logging
        if not logging_config.enabled:
            return

        try:
            prompt_data: dict[str, Any] = {"messages": messages}
            if logging_config.log_prompts:
                prompt_data["system"] = system_prompt

            response_data: dict[str, Any] | None = None
            input_tokens: int | None = None
            output_tokens: int | None = None

            if response is not None and logging_config.log_responses:
                response_data = {
                    "model": getattr(response, "model", None),
                    "stop_reason": getattr(response, "stop_reason", None),
                    "content": [_content_block_to_dict(b) for b in response.content],
                }
                usage = getattr(response, "usage", None)
                if usage is not None:
                    input_tokens = usage.input_tokens
                    output_tokens = usage.output_tokens

            await self._store.log_llm_request(
                task_type=task_type,
                model=model,
                prompt=prompt_data,
                response=response_data,
                tool_call=tool_call,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                duration_ms=duration_ms,
                sender=sender,
                error=error,
            )
        except Exception as e:
            # Logging failures should never block classification
            logger.warning("llm_log_failed", error=str(e), sender=sender)


class _NoUsableResponse(Exception):
    """Internal: Claude answered but never with a valid tool call."""


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _extract_tool_call(response: Any, tool_name: str) -> dict[str, Any] | None:
    for block in getattr(response, "content", None) or []:
        if block.type == "tool_use" and block.name == tool_name:
            return block.input
    return None


def _validate_batch_call(data: dict[str, Any]) -> str | None:
    entries = data.get("senders")
    if not isinstance(entries, list):
        return "Missing 'senders' list"
    for entry in entries:
        if not isinstance(entry, dict) or not isinstance(entry.get("sender"), str):
            return "Every entry needs a 'sender' string"
    return None


def _validate_single_call(data: dict[str, Any]) -> str | None:
    if "category" not in data and "needs_more_information" not in data:
        return "Missing both 'category' and 'needs_more_information'"
    return None


def _index_batch_entries(entries: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
    """Index batch entries by lower-cased sender; the first entry for a sender wins."""
    indexed: dict[str, dict[str, Any]] = {}
    for entry in entries:
        indexed.setdefault(entry["sender"].strip().lower(), entry)
    return indexed


def _outcome_from_tool(
    data: dict[str, Any],
    valid_names: dict[str, str],
    sender: str,
) -> CategoryOutcome:
    """Turn one tool entry into an outcome, mapping names onto the catalog."""
    if data.get("needs_more_information") is True:
        return CategoryOutcome.insufficient_evidence()

    category = data.get("category")
    if isinstance(category, str) and category.strip():
        canonical = valid_names.get(category.strip().lower())
        if canonical is not None:
            return CategoryOutcome.resolved(canonical)
        logger.warning("classification_unknown_category", sender=sender, category=category)

    return CategoryOutcome.unresolved()


def _content_block_to_dict(block: Any) -> dict[str, Any]:
    if block.type == "text":
        return {"type": "text", "text": block.text}
    elif block.type == "tool_use":
        return {
            "type": "tool_use",
            "id": block.id,
            "name": block.name,
            "input": block.input,
        }
    return {"type": block.type}
