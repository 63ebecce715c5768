"""Graph sign-in through the MSAL device code flow.

The `login` command uses GraphAuth to obtain an access token for one user's
mailbox and stores it on the user row. MSAL keeps the refresh token in a
per-user cache file, so a second login for the same user is usually silent.

Usage:
    from sender_categorizer.auth.msal_auth import GraphAuth, cache_path_for_user

    auth = GraphAuth(
        client_id=config.auth.client_id,
        tenant_id=config.auth.tenant_id,
        scopes=config.auth.scopes,
        token_cache_path=cache_path_for_user(config.auth.token_cache_path, "user-1"),
    )
    token = auth.get_access_token()
"""

import os
import random
import stat
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import msal
import requests
from rich.console import Console
from rich.panel import Panel

from sender_categorizer.core.errors import AuthenticationError
from sender_categorizer.core.logging import get_logger

logger = get_logger(__name__)
console = Console()

MSAL_MAX_RETRIES = 3
MSAL_RETRY_DELAYS = [1.0, 2.0, 4.0]

_DEVICE_FLOW_ERRORS = {
    "authorization_pending": "Sign-in timed out. Run login again and finish within the time limit.",
    "expired_token": "The device code expired. Run login again and finish within the time limit.",
    "authorization_declined": "Sign-in was declined. Run login again and accept the permissions.",
}

T = TypeVar("T")


def cache_path_for_user(base_path: str | Path, user_id: str) -> Path:
    """Per-user token cache file derived from the configured cache path.

    data/token_cache.json + "user-1" -> data/token_cache.user-1.json
    """
    base = Path(base_path)
    safe_id = "".join(c if c.isalnum() or c in "-_" else "_" for c in user_id)
    return base.with_name(f"{base.stem}.{safe_id}{base.suffix}")


def _retry_transient(operation: Callable[[], T], name: str) -> T:
    """Call an MSAL operation, retrying network failures with jittered backoff."""
    for attempt, base_delay in enumerate(MSAL_RETRY_DELAYS[:MSAL_MAX_RETRIES], start=1):
        try:
            return operation()
        except requests.exceptions.RequestException as e:
            if attempt == MSAL_MAX_RETRIES:
                raise AuthenticationError(
                    f"{name} failed after {MSAL_MAX_RETRIES} attempts: {e}. "
                    "Check the network connection and run login again."
                ) from e
            delay = base_delay * random.uniform(0.8, 1.2)
            logger.warning("msal_retry", operation=name, attempt=attempt, delay=delay, error=str(e))
            time.sleep(delay)
    raise AuthenticationError(f"{name} was not attempted")


class GraphAuth:
    """Token provider backed by an MSAL public client and a file cache.

    Attributes:
        client_id: Application (client) ID of the Entra ID app registration
        tenant_id: Directory ID, or 'common' to accept personal accounts
        scopes: Delegated Graph scopes to request
        token_cache_path: Where the serialized MSAL cache lives (mode 600)
    """

    def __init__(
        self,
        client_id: str,
        tenant_id: str,
        scopes: list[str],
        token_cache_path: str | Path,
    ):
        if not (client_id and client_id.strip()):
            raise ValueError(
                "client_id is required. Create an app registration in Microsoft Entra ID "
                "and set auth.client_id in config.yaml."
            )

        self.client_id = client_id
        self.tenant_id = tenant_id
        self.scopes = scopes
        self.token_cache_path = Path(token_cache_path)

        self.cache = msal.SerializableTokenCache()
        if self.token_cache_path.exists():
            try:
                self.cache.deserialize(self.token_cache_path.read_text())
            except (OSError, ValueError) as e:
                logger.warning("token_cache_unreadable", path=str(self.token_cache_path), error=str(e))

        self.app = msal.PublicClientApplication(
            client_id=client_id,
            authority=f"https://login.microsoftonline.com/{tenant_id}",
            token_cache=self.cache,
        )

    def get_access_token(self) -> str:
        """Access token from the cache when possible, else via device code sign-in.

        Raises:
            AuthenticationError: If no token could be obtained
        """
        token = self._silent_token()
        if token:
            return token
        logger.info("device_code_flow_started")
        return self._device_code_flow()

    def _silent_token(self) -> str | None:
        accounts = self.app.get_accounts()
        if not accounts:
            return None
        try:
            result = _retry_transient(
                lambda: self.app.acquire_token_silent(scopes=self.scopes, account=accounts[0]),
                "silent_token_acquisition",
            )
        except AuthenticationError as e:
            logger.warning("silent_token_failed", error=str(e))
            return None
        if not result or "access_token" not in result:
            return None
        self._persist_cache()
        logger.debug("token_acquired_silently")
        return result["access_token"]

    def _device_code_flow(self) -> str:
        flow = _retry_transient(
            lambda: self.app.initiate_device_flow(scopes=self.scopes),
            "device_flow_initiation",
        )
        if "user_code" not in flow:
            raise AuthenticationError(
                f"Could not start device code sign-in: "
                f"{flow.get('error_description', 'no user code returned')}. "
                "Enable 'Allow public client flows' under the app registration's "
                "Authentication settings."
            )

        self._display_auth_prompt(flow["verification_uri"], flow["user_code"])

        result: dict[str, Any] = _retry_transient(
            lambda: self.app.acquire_token_by_device_flow(flow),
            "device_flow_token_acquisition",
        )
        if "access_token" not in result:
            error = result.get("error", "unknown_error")
            description = result.get("error_description", "no description")
            logger.error("device_code_flow_failed", error=error, description=description)
            raise AuthenticationError(
                _DEVICE_FLOW_ERRORS.get(error, f"Sign-in failed ({error}): {description}")
            )

        self._persist_cache()
        claims = result.get("id_token_claims") or {}
        logger.info("signed_in", username=claims.get("preferred_username", "unknown"))
        return result["access_token"]

    def _display_auth_prompt(self, verification_uri: str, user_code: str) -> None:
        console.print(
            Panel(
                f"Visit [bold blue]{verification_uri}[/bold blue]\n"
                f"and enter [bold green]{user_code}[/bold green] to sign in.",
                title="Microsoft sign-in",
                border_style="blue",
            )
        )

    def _persist_cache(self) -> None:
        """Write the MSAL cache if it changed, readable by the owner only."""
        if not self.cache.has_state_changed:
            return
        try:
            self.token_cache_path.parent.mkdir(parents=True, exist_ok=True)
            self.token_cache_path.write_text(self.cache.serialize())
            os.chmod(self.token_cache_path, stat.S_IRUSR | stat.S_IWUSR)
        except OSError as e:
            # Token still valid for this run
            logger.error("token_cache_write_failed", path=str(self.token_cache_path), error=str(e))
