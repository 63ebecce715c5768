"""Tests for rate limiting, run-id logging context and MSAL helpers."""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

from sender_categorizer.auth.msal_auth import GraphAuth, cache_path_for_user
from sender_categorizer.core.errors import AuthenticationError, RateLimitExceeded
from sender_categorizer.core.logging import add_run_id, get_run_id, set_run_id
from sender_categorizer.core.rate_limiter import TokenBucket, get_bucket


class TestTokenBucket:
    @pytest.mark.asyncio
    async def test_consume_within_capacity(self) -> None:
        bucket = TokenBucket(rate=1.0, capacity=2)

        assert await bucket.consume()
        assert await bucket.consume()
        assert bucket.tokens < 1

    def test_consume_sync(self) -> None:
        bucket = TokenBucket(rate=100.0, capacity=1)

        assert bucket.consume_sync()
        assert bucket.consume_sync()

    @pytest.mark.asyncio
    async def test_request_above_capacity(self) -> None:
        bucket = TokenBucket(rate=1.0, capacity=2)

        with pytest.raises(RateLimitExceeded):
            await bucket.consume(tokens=3)

    @pytest.mark.asyncio
    async def test_excessive_wait_raises(self) -> None:
        bucket = TokenBucket(rate=0.01, capacity=1, initial_tokens=0)

        with pytest.raises(RateLimitExceeded, match="would require"):
            await bucket.consume()

    @pytest.mark.asyncio
    async def test_concurrent_waiters_all_served(self) -> None:
        bucket = TokenBucket(rate=20.0, capacity=2)

        results = await asyncio.gather(*(bucket.consume() for _ in range(5)))

        assert results == [True] * 5

    def test_concurrent_sync_waiters_all_served(self) -> None:
        bucket = TokenBucket(rate=20.0, capacity=2)

        with ThreadPoolExecutor(max_workers=5) as pool:
            results = list(pool.map(lambda _: bucket.consume_sync(), range(5)))

        assert results == [True] * 5

    def test_named_buckets_are_shared(self) -> None:
        assert get_bucket("ms_graph", rate=10.0, capacity=10) is get_bucket("ms_graph")


class TestRunIdContext:
    def test_run_id_added_to_events(self) -> None:
        set_run_id("run-42")
        try:
            assert get_run_id() == "run-42"
            assert add_run_id(None, "info", {"event": "x"}) == {"event": "x", "run_id": "run-42"}
        finally:
            set_run_id(None)

    def test_no_run_id(self) -> None:
        assert add_run_id(None, "info", {"event": "x"}) == {"event": "x"}


class TestCachePathForUser:
    def test_derives_per_user_file(self) -> None:
        assert cache_path_for_user("data/token_cache.json", "user-1") == Path(
            "data/token_cache.user-1.json"
        )

    def test_unsafe_characters_replaced(self) -> None:
        path = cache_path_for_user("data/token_cache.json", "me@example.com/..")
        assert path.parent == Path("data")
        assert path.name == "token_cache.me_example_com___.json"


class TestGraphAuth:
    @pytest.fixture
    def mock_app(self) -> MagicMock:
        with patch("sender_categorizer.auth.msal_auth.msal.PublicClientApplication") as cls:
            yield cls.return_value

    @pytest.fixture
    def auth(self, mock_app: MagicMock, tmp_path: Path) -> GraphAuth:
        return GraphAuth(
            client_id="client-id",
            tenant_id="common",
            scopes=["Mail.Read"],
            token_cache_path=tmp_path / "token_cache.json",
        )

    def test_requires_client_id(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="client_id is required"):
            GraphAuth("", "common", ["Mail.Read"], tmp_path / "cache.json")

    def test_silent_acquisition(self, auth: GraphAuth, mock_app: MagicMock) -> None:
        mock_app.get_accounts.return_value = [{"username": "me@example.com"}]
        mock_app.acquire_token_silent.return_value = {"access_token": "cached-token"}

        assert auth.get_access_token() == "cached-token"
        mock_app.initiate_device_flow.assert_not_called()

    def test_device_flow_when_no_account(self, auth: GraphAuth, mock_app: MagicMock) -> None:
        mock_app.get_accounts.return_value = []
        mock_app.initiate_device_flow.return_value = {
            "user_code": "ABCD-1234",
            "verification_uri": "https://microsoft.com/devicelogin",
        }
        mock_app.acquire_token_by_device_flow.return_value = {"access_token": "fresh-token"}

        with patch.object(auth, "_display_auth_prompt"):
            assert auth.get_access_token() == "fresh-token"

    def test_declined_device_flow(self, auth: GraphAuth, mock_app: MagicMock) -> None:
        mock_app.get_accounts.return_value = []
        mock_app.initiate_device_flow.return_value = {
            "user_code": "ABCD-1234",
            "verification_uri": "https://microsoft.com/devicelogin",
        }
        mock_app.acquire_token_by_device_flow.return_value = {"error": "authorization_declined"}

        with patch.object(auth, "_display_auth_prompt"), pytest.raises(
            AuthenticationError, match="declined"
        ):
            auth.get_access_token()

    def test_network_errors_retried(self, auth: GraphAuth, mock_app: MagicMock) -> None:
        mock_app.get_accounts.return_value = []
        mock_app.initiate_device_flow.side_effect = requests.exceptions.ConnectionError("down")

        with patch("sender_categorizer.auth.msal_auth.time.sleep"), pytest.raises(
            AuthenticationError, match="after 3 attempts"
        ):
            auth.get_access_token()

        assert mock_app.initiate_device_flow.call_count == 3
