"""Deterministic sender rules applied before any Claude call.

Rules run in a fixed order and the first match wins:

1. Personal mail provider domain (gmail.com, outlook.com, ...) -> DEFERRED.
   These senders are usually people, but we deliberately let the AI decide
   rather than labeling them "Personal" here; the user's catalog may not
   have a Personal category, or may split people more finely.
2. Newsletter signals in the address or display name -> "Newsletter".
3. Receipt / transactional signals in the address local part -> "Receipt".
4. Otherwise -> UNRESOLVED.

This stage never touches the network and never raises: a pattern timeout is
logged and treated as "no match".

Usage:
    from sender_categorizer.classifier.static_rules import precategorize_senders

    results = precategorize_senders(["a@gmail.com", "newsletter@list.example"])
"""

from __future__ import annotations

from collections.abc import Iterable
from email.utils import parseaddr

import regex

from sender_categorizer.classifier.outcomes import CategoryOutcome, SenderClassification
from sender_categorizer.core.logging import get_logger

logger = get_logger(__name__)

# Regex timeout in seconds; all pattern matching goes through _search()
REGEX_TIMEOUT = 1.0

NEWSLETTER_CATEGORY = "Newsletter"
RECEIPT_CATEGORY = "Receipt"

PERSONAL_EMAIL_DOMAINS = frozenset(
    {
        "gmail.com",
        "googlemail.com",
        "yahoo.com",
        "hotmail.com",
        "outlook.com",
        "aol.com",
        "icloud.com",
        "live.com",
    }
)

# Bulk-mail platforms that only send subscription content
NEWSLETTER_PLATFORM_DOMAINS = (
    "substack.com",
    "beehiiv.com",
    "ghost.io",
    "mcsv.net",
    "list-manage.com",
    "convertkit-mail.com",
    "buttondown.email",
)

NEWSLETTER_PATTERN = regex.compile(r"news-?letters?", regex.IGNORECASE)

# Matched against the local part only, as whole dot/dash/underscore/plus-separated tokens
RECEIPT_PATTERN = regex.compile(
    r"(?:^|[._+\-])(?:receipts?|invoices?|billing|payments?|orders?|purchases?)(?:$|[._+\-])",
    regex.IGNORECASE,
)


def parse_sender(sender: str) -> tuple[str, str, str]:
    """Split a sender into (display name, address, domain), all lower-cased.

    Accepts bare addresses ("a@b.com") and RFC 5322 forms ("Name <a@b.com>").
    """
    name, address = parseaddr(sender)
    address = (address or sender).strip().lower()
    domain = address.rsplit("@", 1)[1] if "@" in address else ""
    return name.strip().lower(), address, domain


def _search(pattern: regex.Pattern, text: str) -> bool:
    try:
        return pattern.search(text, timeout=REGEX_TIMEOUT) is not None
    except TimeoutError:
        logger.warning("static_rule_pattern_timeout", pattern=pattern.pattern)
        return False


def _domain_matches(domain: str, candidates: Iterable[str]) -> bool:
    return any(domain == c or domain.endswith("." + c) for c in candidates)


def is_personal_domain_sender(sender: str) -> bool:
    """Whether the sender uses a large consumer mail provider."""
    _, _, domain = parse_sender(sender)
    return domain in PERSONAL_EMAIL_DOMAINS


def is_newsletter_sender(sender: str) -> bool:
    """Whether the sender looks like a newsletter.

    Signals: "newsletter" in the address or display name, or a known
    newsletter platform domain.
    """
    name, address, domain = parse_sender(sender)
    if _search(NEWSLETTER_PATTERN, address) or _search(NEWSLETTER_PATTERN, name):
        return True
    return _domain_matches(domain, NEWSLETTER_PLATFORM_DOMAINS)


def is_receipt_sender(sender: str) -> bool:
    """Whether the sender looks like a receipt / transactional mailer."""
    _, address, _ = parse_sender(sender)
    local_part = address.split("@", 1)[0]
    return _search(RECEIPT_PATTERN, local_part)


def classify_sender_statically(sender: str) -> CategoryOutcome:
    """Apply the ordered static rules to one sender."""
    if is_personal_domain_sender(sender):
        return CategoryOutcome.deferred()

    if is_newsletter_sender(sender):
        return CategoryOutcome.resolved(NEWSLETTER_CATEGORY)

    if is_receipt_sender(sender):
        return CategoryOutcome.resolved(RECEIPT_CATEGORY)

    return CategoryOutcome.unresolved()


def precategorize_senders(senders: Iterable[str]) -> list[SenderClassification]:
    """Classify every sender with static rules, preserving input order."""
    results = [SenderClassification(s, classify_sender_statically(s)) for s in senders]

    logger.debug(
        "static_rules_applied",
        total=len(results),
        resolved=sum(1 for r in results if r.outcome.is_resolved),
    )
    return results
