"""Sender discovery over Microsoft Graph mail messages.

Reads one page of Inbox messages, groups them by sender address and keeps
each message's preview text as evidence for classification. A second call
fetches a few recent messages from one sender for the fallback stage.

Page tokens are the @odata.nextLink URLs Graph returns; they are handed back
to the caller and later passed to GraphClient unchanged.

Usage:
    from sender_categorizer.graph.client import GraphClient, StaticTokenAuth
    from sender_categorizer.graph.senders import SenderReader

    reader = SenderReader(GraphClient(StaticTokenAuth(token)))
    page = reader.find_senders(page_size=20)
    for address, messages in page.senders.items():
        ...
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from sender_categorizer.core.logging import get_logger

if TYPE_CHECKING:
    from sender_categorizer.graph.client import GraphClient

logger = get_logger(__name__)

SENDER_MESSAGE_FIELDS = "id,from,subject,receivedDateTime,bodyPreview"

# Graph caps $top at 50 for message lists
MAX_PAGE_SIZE = 50

_EARLIEST = "1900-01-01T00:00:00Z"


@dataclass(frozen=True)
class SenderMessage:
    """One message as seen during sender discovery."""

    id: str
    sender: str
    sender_name: str | None = None
    subject: str | None = None
    snippet: str | None = None
    received_at: datetime | None = None


@dataclass(frozen=True)
class DateRange:
    """Oldest and newest received time observed on a page."""

    oldest: datetime | None = None
    newest: datetime | None = None


@dataclass
class SenderPage:
    """One page of discovered senders.

    Attributes:
        senders: Lower-cased address -> messages, in first-seen order
        next_page_token: Opaque continuation token, None when exhausted
        date_range: Received-time range of the messages on this page
    """

    senders: dict[str, list[SenderMessage]] = field(default_factory=dict)
    next_page_token: str | None = None
    date_range: DateRange = field(default_factory=DateRange)

    def snippets_for(self, sender: str) -> list[str]:
        """Non-empty preview snippets seen for a sender on this page."""
        return [m.snippet for m in self.senders.get(sender.lower(), []) if m.snippet]


class MailboxReader(Protocol):
    """What the categorization pipeline needs from a mailbox."""

    def find_senders(
        self,
        page_size: int,
        page_token: str | None = None,
        oldest_date: datetime | None = None,
        newest_date: datetime | None = None,
    ) -> SenderPage: ...

    def get_recent_snippets(self, sender: str, limit: int = 3) -> list[str]: ...


def _format_graph_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_graph_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("graph_datetime_unparseable", value=value)
        return None


def build_window_filter(oldest_date: datetime | None, newest_date: datetime | None) -> str | None:
    """OData filter selecting messages outside the already-categorized range.

    With both bounds, messages newer than newest_date or older than
    oldest_date are selected. With neither, no filter applies.
    """
    clauses = []
    if newest_date is not None:
        clauses.append(f"receivedDateTime gt {_format_graph_datetime(newest_date)}")
    if oldest_date is not None:
        clauses.append(f"receivedDateTime lt {_format_graph_datetime(oldest_date)}")
    if not clauses:
        return None
    return " or ".join(clauses)


def _to_sender_message(raw: dict[str, Any]) -> SenderMessage | None:
    email_address = (raw.get("from") or {}).get("emailAddress") or {}
    address = (email_address.get("address") or "").strip().lower()
    if not address:
        return None
    return SenderMessage(
        id=raw.get("id", ""),
        sender=address,
        sender_name=email_address.get("name"),
        subject=raw.get("subject"),
        snippet=(raw.get("bodyPreview") or "").strip() or None,
        received_at=_parse_graph_datetime(raw.get("receivedDateTime")),
    )


class SenderReader:
    """Reads senders from a Graph mailbox.

    Attributes:
        client: GraphClient authorized for the mailbox
        folder: Mail folder to scan
    """

    def __init__(self, client: GraphClient, folder: str = "inbox"):
        self.client = client
        self.folder = folder

    def find_senders(
        self,
        page_size: int,
        page_token: str | None = None,
        oldest_date: datetime | None = None,
        newest_date: datetime | None = None,
    ) -> SenderPage:
        """Read one page of messages and group them by sender.

        When page_token is given it is requested verbatim and the window
        arguments are ignored, since the token already carries the query.

        Raises:
            GraphAPIError: If the request fails
        """
        if page_token:
            response = self.client.get(page_token)
        else:
            params: dict[str, Any] = {
                "$select": SENDER_MESSAGE_FIELDS,
                "$orderby": "receivedDateTime desc",
                "$top": min(page_size, MAX_PAGE_SIZE),
            }
            window = build_window_filter(oldest_date, newest_date)
            if window:
                params["$filter"] = window
            response = self.client.get(f"/me/mailFolders/{self.folder}/messages", params=params)

        senders: dict[str, list[SenderMessage]] = {}
        received: list[datetime] = []
        skipped = 0

        for raw in response.get("value", []):
            message = _to_sender_message(raw)
            if message is None:
                skipped += 1
                continue
            senders.setdefault(message.sender, []).append(message)
            if message.received_at is not None:
                received.append(message.received_at)

        page = SenderPage(
            senders=senders,
            next_page_token=response.get("@odata.nextLink"),
            date_range=DateRange(
                oldest=min(received) if received else None,
                newest=max(received) if received else None,
            ),
        )

        logger.info(
            "senders_discovered",
            messages=len(response.get("value", [])),
            senders=len(senders),
            skipped_without_sender=skipped,
            has_next_page=page.next_page_token is not None,
        )
        return page

    def get_recent_snippets(self, sender: str, limit: int = 3) -> list[str]:
        """Preview snippets of the most recent messages from one sender.

        Searches all folders, not only the scanned one.

        Raises:
            GraphAPIError: If the request fails
        """
        escaped = sender.strip().lower().replace("'", "''")
        # Graph only sorts a filtered query by a property that leads the filter
        sender_filter = (
            f"receivedDateTime ge {_EARLIEST} and from/emailAddress/address eq '{escaped}'"
        )
        response = self.client.get(
            "/me/messages",
            params={
                "$select": "id,subject,bodyPreview,receivedDateTime",
                "$filter": sender_filter,
                "$orderby": "receivedDateTime desc",
                "$top": limit,
            },
        )

        snippets = []
        for raw in response.get("value", []):
            preview = (raw.get("bodyPreview") or "").strip()
            if preview:
                snippets.append(preview)

        logger.debug("recent_snippets_fetched", sender=sender, count=len(snippets))
        return snippets[:limit]
