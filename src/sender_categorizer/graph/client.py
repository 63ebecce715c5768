"""Read-only Microsoft Graph HTTP client.

GraphClient wraps a requests.Session with the shared ms_graph token bucket,
bounded retries for throttling, 5xx responses and transport failures, and a
mapping of error responses onto GraphAPIError. Absolute URLs are sent
unchanged so an @odata.nextLink can be used directly as a page token.

Credentials come from any object with get_access_token(). The pipeline uses
StaticTokenAuth around the token stored for the user; the CLI login command
passes a GraphAuth.
"""

import random
import time
from dataclasses import dataclass
from typing import Any, Protocol

import requests

from sender_categorizer.core.errors import (
    AuthenticationError,
    GraphAPIError,
    RateLimitExceeded,
)
from sender_categorizer.core.logging import get_logger
from sender_categorizer.core.rate_limiter import get_bucket

logger = get_logger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAYS = [1.0, 2.0, 4.0]

# Graph throttles at roughly 10k requests / 10 min per mailbox
MS_GRAPH_RATE = 10.0
MS_GRAPH_CAPACITY = 10

_TRANSIENT_ERRORS = (requests.exceptions.Timeout, requests.exceptions.ConnectionError)

_STATUS_HINTS = {
    401: "The stored access token has probably expired; run the login command again.",
    403: "Check that Mail.Read is granted to the app in Azure Portal.",
    404: "The mailbox or message may have been removed.",
}


class TokenProvider(Protocol):
    """Anything that can hand out a Graph bearer token."""

    def get_access_token(self) -> str: ...


@dataclass(frozen=True)
class StaticTokenAuth:
    """Token provider for an access token that was acquired elsewhere."""

    access_token: str

    def get_access_token(self) -> str:
        if not self.access_token:
            raise AuthenticationError("No access token available for this mailbox")
        return self.access_token


def _with_jitter(seconds: float) -> float:
    return seconds * random.uniform(0.8, 1.2)


def _error_details(response: requests.Response) -> tuple[str, str]:
    """(code, message) from a Graph error body, tolerating non-JSON bodies."""
    try:
        error = response.json().get("error") or {}
    except ValueError:
        return "unknown", response.text or f"HTTP {response.status_code}"
    return error.get("code", "unknown"), error.get("message") or response.text


class GraphClient:
    """Synchronous Graph client used through asyncio.to_thread by the reader."""

    def __init__(
        self,
        auth: TokenProvider,
        base_url: str = GRAPH_BASE_URL,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delays: list[float] | None = None,
    ):
        self.auth = auth
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delays = retry_delays or DEFAULT_RETRY_DELAYS
        self.session = requests.Session()
        self._bucket = get_bucket("ms_graph", rate=MS_GRAPH_RATE, capacity=MS_GRAPH_CAPACITY)

    def _url_for(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def _auth_headers(self) -> dict[str, str]:
        try:
            token = self.auth.get_access_token()
        except AuthenticationError:
            raise
        except Exception as e:
            logger.error("graph_token_unavailable", error=str(e))
            raise AuthenticationError(
                f"Cannot get a Graph access token: {e}. Run the login command for this user."
            ) from e
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "Prefer": 'IdType="ImmutableId"',
        }

    def _backoff(self, attempt: int, response: requests.Response | None = None) -> float:
        """Seconds to wait before retry number attempt + 1.

        A numeric Retry-After on a 429 takes precedence over the fixed schedule.
        """
        if response is not None and response.status_code == 429:
            try:
                return _with_jitter(float(response.headers["Retry-After"]))
            except (KeyError, ValueError):
                pass
        return _with_jitter(self.retry_delays[min(attempt, len(self.retry_delays) - 1)])

    def _raise_for_response(self, response: requests.Response, endpoint: str) -> None:
        status = response.status_code
        code, message = _error_details(response)
        logger.error(
            "graph_request_failed",
            endpoint=endpoint[:200],
            status_code=status,
            error_code=code,
            error_message=(message or "")[:200],
        )

        if status == 429:
            raise RateLimitExceeded(
                f"Graph throttled the request (429), Retry-After: "
                f"{response.headers.get('Retry-After', 'unknown')}. "
                "Lower categorize.page_size or wait before the next run."
            )
        hint = _STATUS_HINTS.get(status, "")
        raise GraphAPIError(
            f"Graph API error ({status}): {message}. {hint}".rstrip(),
            status_code=status,
            error_code=code,
        )

    def request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        timeout: float = 30.0,
    ) -> dict[str, Any]:
        """Send one Graph request, retrying transient failures.

        Returns:
            The decoded JSON body ({} for 204 No Content)

        Raises:
            AuthenticationError: When no token can be obtained
            GraphAPIError: For error responses and exhausted transport retries
            RateLimitExceeded: When throttling outlasts the retries
        """
        url = self._url_for(endpoint)

        for attempt in range(self.max_retries + 1):
            retries_left = attempt < self.max_retries
            self._bucket.consume_sync()
            headers = self._auth_headers()
            logger.debug("graph_request", method=method, endpoint=endpoint[:200], attempt=attempt + 1)

            try:
                response = self.session.request(
                    method=method, url=url, headers=headers, params=params, timeout=timeout
                )
            except _TRANSIENT_ERRORS as e:
                if not retries_left:
                    raise GraphAPIError(
                        f"Could not reach Microsoft Graph after {attempt + 1} attempts: {e}",
                        status_code=None,
                    ) from e
                delay = self._backoff(attempt)
                logger.warning("graph_transport_retry", attempt=attempt + 1, delay=delay, error=str(e))
                time.sleep(delay)
                continue
            except requests.exceptions.RequestException as e:
                logger.error("graph_request_error", endpoint=endpoint[:200], error=str(e))
                raise GraphAPIError(
                    f"Graph request to {endpoint[:200]} failed: {e}", status_code=None
                ) from e

            status = response.status_code
            if status == 204:
                return {}
            if status < 400:
                try:
                    return response.json()
                except ValueError as e:
                    raise GraphAPIError(
                        f"Graph returned a non-JSON body ({status}) for {endpoint[:200]}",
                        status_code=status,
                    ) from e

            if retries_left and (status == 429 or status >= 500):
                delay = self._backoff(attempt, response)
                logger.warning("graph_status_retry", status_code=status, attempt=attempt + 1, delay=delay)
                time.sleep(delay)
                continue

            self._raise_for_response(response, endpoint)

        raise GraphAPIError(f"Request to {endpoint} was not attempted", status_code=None)

    def get(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        timeout: float = 30.0,
    ) -> dict[str, Any]:
        return self.request("GET", endpoint, params=params, timeout=timeout)

    def get_user_email(self) -> str:
        """Address of the signed-in mailbox (mail, else userPrincipalName)."""
        profile = self.get("/me", params={"$select": "mail,userPrincipalName"})
        email = profile.get("mail") or profile.get("userPrincipalName")
        if not email:
            raise GraphAPIError(
                "Graph /me returned neither 'mail' nor 'userPrincipalName'. "
                "Check that User.Read is granted.",
                status_code=None,
            )
        return email
