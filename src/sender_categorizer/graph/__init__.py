"""Microsoft Graph API access.

- GraphClient: retrying, rate-limited HTTP client
- SenderReader: paginated sender discovery and per-sender snippet lookup
"""

from sender_categorizer.graph.client import GraphClient, StaticTokenAuth, TokenProvider
from sender_categorizer.graph.senders import (
    DateRange,
    MailboxReader,
    SenderMessage,
    SenderPage,
    SenderReader,
    build_window_filter,
)

__all__ = [
    "GraphClient",
    "StaticTokenAuth",
    "TokenProvider",
    "DateRange",
    "MailboxReader",
    "SenderMessage",
    "SenderPage",
    "SenderReader",
    "build_window_filter",
]
