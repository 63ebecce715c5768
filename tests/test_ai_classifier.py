"""Tests for the Claude sender classifier.

Anthropic responses are faked with SimpleNamespace objects shaped like the
SDK's Message / ToolUseBlock types.
"""

from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import anthropic
import pytest

from sender_categorizer.classifier.ai_classifier import (
    MAX_CLASSIFICATION_ATTEMPTS,
    SenderClassifier,
)
from sender_categorizer.classifier.outcomes import (
    CategoryInfo,
    CategoryOutcome,
    OutcomeKind,
    SenderEvidence,
)
from sender_categorizer.classifier.prompts import BATCH_TOOL_NAME, SINGLE_TOOL_NAME
from sender_categorizer.config_schema import AppConfig
from sender_categorizer.core.errors import ClassificationError
from sender_categorizer.db.store import DatabaseStore, User

CATEGORIES = [
    CategoryInfo("Newsletter", "Subscriptions"),
    CategoryInfo("Receipt"),
    CategoryInfo("Personal", "People writing personally"),
]

USER = User(id="user-1", email="me@example.com", access_token="token")


def _make_tool_use_block(name: str, tool_input: dict[str, Any]) -> SimpleNamespace:
    return SimpleNamespace(type="tool_use", id="toolu_01", name=name, input=tool_input)


def _make_response(content: list[Any]) -> SimpleNamespace:
    return SimpleNamespace(
        content=content,
        model="claude-haiku-4-5-20251001",
        stop_reason="tool_use",
        usage=SimpleNamespace(input_tokens=120, output_tokens=40),
    )


def _batch_response(entries: list[dict[str, Any]]) -> SimpleNamespace:
    return _make_response([_make_tool_use_block(BATCH_TOOL_NAME, {"senders": entries})])


def _single_response(category: str | None, needs_more: bool = False) -> SimpleNamespace:
    return _make_response(
        [
            _make_tool_use_block(
                SINGLE_TOOL_NAME,
                {"rationale": "test", "category": category, "needs_more_information": needs_more},
            )
        ]
    )


def _rate_limit_error() -> anthropic.RateLimitError:
    return anthropic.RateLimitError(
        message="rate limited",
        response=MagicMock(status_code=429, headers={}),
        body=None,
    )


@pytest.fixture
def mock_client() -> MagicMock:
    client = MagicMock()
    client.messages.create = AsyncMock()
    return client


@pytest.fixture
def mock_store() -> MagicMock:
    store = MagicMock()
    store.log_llm_request = AsyncMock(return_value=1)
    return store


@pytest.fixture
def classifier(mock_client: MagicMock, mock_store: MagicMock, sample_config: AppConfig) -> SenderClassifier:
    return SenderClassifier(anthropic_client=mock_client, store=mock_store, config=sample_config)


class TestClassifyBatch:
    @pytest.mark.asyncio
    async def test_empty_input_makes_no_call(
        self, classifier: SenderClassifier, mock_client: MagicMock
    ) -> None:
        assert await classifier.classify_batch(USER, [], CATEGORIES) == []
        mock_client.messages.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_one_result_per_sender_in_request_order(
        self, classifier: SenderClassifier, mock_client: MagicMock
    ) -> None:
        mock_client.messages.create.return_value = _batch_response(
            [
                {"sender": "b@corp.example", "category": "Receipt", "needs_more_information": False},
                {"sender": "a@gmail.com", "category": "Personal", "needs_more_information": False},
            ]
        )
        senders = [SenderEvidence("a@gmail.com", ("hi",)), SenderEvidence("b@corp.example")]

        results = await classifier.classify_batch(USER, senders, CATEGORIES)

        assert [r.sender for r in results] == ["a@gmail.com", "b@corp.example"]
        assert results[0].outcome == CategoryOutcome.resolved("Personal")
        assert results[1].outcome == CategoryOutcome.resolved("Receipt")

    @pytest.mark.asyncio
    async def test_forces_batch_tool_with_catalog_enum(
        self, classifier: SenderClassifier, mock_client: MagicMock
    ) -> None:
        mock_client.messages.create.return_value = _batch_response([])

        await classifier.classify_batch(USER, [SenderEvidence("a@gmail.com")], CATEGORIES)

        kwargs = mock_client.messages.create.call_args.kwargs
        assert kwargs["tool_choice"] == {"type": "tool", "name": BATCH_TOOL_NAME}
        item_schema = kwargs["tools"][0]["input_schema"]["properties"]["senders"]["items"]
        assert item_schema["properties"]["category"]["enum"] == [
            "Newsletter",
            "Receipt",
            "Personal",
            None,
        ]
        assert "me@example.com" in kwargs["system"]

    @pytest.mark.asyncio
    async def test_missing_sender_is_unresolved(
        self, classifier: SenderClassifier, mock_client: MagicMock
    ) -> None:
        mock_client.messages.create.return_value = _batch_response(
            [{"sender": "a@gmail.com", "category": "Personal", "needs_more_information": False}]
        )
        senders = [SenderEvidence("a@gmail.com"), SenderEvidence("c@corp.example")]

        results = await classifier.classify_batch(USER, senders, CATEGORIES)

        assert results[1].outcome.kind is OutcomeKind.UNRESOLVED

    @pytest.mark.asyncio
    async def test_needs_more_information_is_insufficient_evidence(
        self, classifier: SenderClassifier, mock_client: MagicMock
    ) -> None:
        mock_client.messages.create.return_value = _batch_response(
            [{"sender": "a@gmail.com", "category": None, "needs_more_information": True}]
        )

        results = await classifier.classify_batch(USER, [SenderEvidence("a@gmail.com")], CATEGORIES)

        assert results[0].outcome.kind is OutcomeKind.INSUFFICIENT_EVIDENCE

    @pytest.mark.asyncio
    async def test_unknown_category_is_unresolved(
        self, classifier: SenderClassifier, mock_client: MagicMock
    ) -> None:
        mock_client.messages.create.return_value = _batch_response(
            [{"sender": "a@gmail.com", "category": "Spam", "needs_more_information": False}]
        )

        results = await classifier.classify_batch(USER, [SenderEvidence("a@gmail.com")], CATEGORIES)

        assert results[0].outcome.kind is OutcomeKind.UNRESOLVED

    @pytest.mark.asyncio
    async def test_category_name_matched_case_insensitively(
        self, classifier: SenderClassifier, mock_client: MagicMock
    ) -> None:
        mock_client.messages.create.return_value = _batch_response(
            [{"sender": "A@Gmail.com", "category": "newsletter", "needs_more_information": False}]
        )

        results = await classifier.classify_batch(USER, [SenderEvidence("a@gmail.com")], CATEGORIES)

        assert results[0].outcome == CategoryOutcome.resolved("Newsletter")

    @pytest.mark.asyncio
    async def test_api_error_leaves_all_unresolved(
        self, classifier: SenderClassifier, mock_client: MagicMock, mock_store: MagicMock
    ) -> None:
        mock_client.messages.create.side_effect = _rate_limit_error()
        senders = [SenderEvidence("a@gmail.com"), SenderEvidence("b@corp.example")]

        results = await classifier.classify_batch(USER, senders, CATEGORIES)

        assert [r.outcome.kind for r in results] == [OutcomeKind.UNRESOLVED] * 2
        assert mock_client.messages.create.call_count == 1
        assert mock_store.log_llm_request.await_args.kwargs["error"].startswith("RateLimitError")

    @pytest.mark.asyncio
    async def test_no_tool_call_is_retried_then_unresolved(
        self, classifier: SenderClassifier, mock_client: MagicMock
    ) -> None:
        mock_client.messages.create.return_value = _make_response(
            [SimpleNamespace(type="text", text="I cannot do that")]
        )

        results = await classifier.classify_batch(USER, [SenderEvidence("a@gmail.com")], CATEGORIES)

        assert results[0].outcome.kind is OutcomeKind.UNRESOLVED
        assert mock_client.messages.create.call_count == MAX_CLASSIFICATION_ATTEMPTS

    @pytest.mark.asyncio
    async def test_malformed_then_valid_response(
        self, classifier: SenderClassifier, mock_client: MagicMock
    ) -> None:
        mock_client.messages.create.side_effect = [
            _make_response([_make_tool_use_block(BATCH_TOOL_NAME, {"senders": "oops"})]),
            _batch_response(
                [{"sender": "a@gmail.com", "category": "Personal", "needs_more_information": False}]
            ),
        ]

        results = await classifier.classify_batch(USER, [SenderEvidence("a@gmail.com")], CATEGORIES)

        assert results[0].category == "Personal"


class TestClassifySingle:
    @pytest.mark.asyncio
    async def test_resolved(self, classifier: SenderClassifier, mock_client: MagicMock) -> None:
        mock_client.messages.create.return_value = _single_response("Receipt")

        outcome = await classifier.classify_single(
            USER, "shop@store.example", ["Your order shipped"], CATEGORIES
        )

        assert outcome == CategoryOutcome.resolved("Receipt")
        kwargs = mock_client.messages.create.call_args.kwargs
        assert kwargs["tool_choice"] == {"type": "tool", "name": SINGLE_TOOL_NAME}
        assert "Your order shipped" in kwargs["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_needs_more_information(
        self, classifier: SenderClassifier, mock_client: MagicMock
    ) -> None:
        mock_client.messages.create.return_value = _single_response(None, needs_more=True)

        outcome = await classifier.classify_single(USER, "a@gmail.com", [], CATEGORIES)

        assert outcome.kind is OutcomeKind.INSUFFICIENT_EVIDENCE

    @pytest.mark.asyncio
    async def test_no_usable_response_returns_none(
        self, classifier: SenderClassifier, mock_client: MagicMock
    ) -> None:
        mock_client.messages.create.return_value = _make_response([])

        assert await classifier.classify_single(USER, "a@gmail.com", [], CATEGORIES) is None

    @pytest.mark.asyncio
    async def test_api_error_raises_classification_error(
        self, classifier: SenderClassifier, mock_client: MagicMock
    ) -> None:
        mock_client.messages.create.side_effect = anthropic.APIConnectionError(request=MagicMock())

        with pytest.raises(ClassificationError) as exc_info:
            await classifier.classify_single(USER, "a@gmail.com", [], CATEGORIES)

        assert exc_info.value.sender == "a@gmail.com"


class TestRequestLogging:
    @pytest.mark.asyncio
    async def test_logging_failure_does_not_block(
        self, classifier: SenderClassifier, mock_client: MagicMock, mock_store: MagicMock
    ) -> None:
        mock_store.log_llm_request.side_effect = RuntimeError("disk full")
        mock_client.messages.create.return_value = _single_response("Receipt")

        outcome = await classifier.classify_single(USER, "a@store.example", [], CATEGORIES)

        assert outcome.category == "Receipt"

    @pytest.mark.asyncio
    async def test_logging_disabled(
        self, mock_client: MagicMock, mock_store: MagicMock, sample_config_dict: dict
    ) -> None:
        sample_config_dict["llm_logging"] = {"enabled": False}
        classifier = SenderClassifier(mock_client, mock_store, AppConfig(**sample_config_dict))
        mock_client.messages.create.return_value = _single_response("Receipt")

        await classifier.classify_single(USER, "a@store.example", [], CATEGORIES)

        mock_store.log_llm_request.assert_not_called()

    @pytest.mark.asyncio
    async def test_request_written_to_database(
        self, mock_client: MagicMock, store: DatabaseStore, sample_config: AppConfig
    ) -> None:
        classifier = SenderClassifier(mock_client, store, sample_config)
        mock_client.messages.create.return_value = _single_response("Receipt")

        await classifier.classify_single(USER, "a@store.example", ["order #1"], CATEGORIES)

        logs = await store.get_llm_logs(sender="a@store.example")
        assert len(logs) == 1
        assert logs[0].task_type == SINGLE_TOOL_NAME
        assert logs[0].input_tokens == 120
        assert logs[0].tool_call_json["category"] == "Receipt"
        assert logs[0].error is None
