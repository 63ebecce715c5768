"""Sender classification components.

This package provides the classification stages of the pipeline:
- Outcome types (tagged variant for resolved / deferred / insufficient / unresolved)
- Static rules for personal, newsletter and receipt senders
- Claude classifier with tool use for batch and single-sender classification
"""

from sender_categorizer.classifier.ai_classifier import SenderClassifier
from sender_categorizer.classifier.outcomes import (
    CategoryInfo,
    CategoryOutcome,
    OutcomeKind,
    SenderClassification,
    SenderEvidence,
)
from sender_categorizer.classifier.prompts import (
    BATCH_TOOL_NAME,
    SINGLE_TOOL_NAME,
    build_batch_tool,
    build_single_tool,
)
from sender_categorizer.classifier.static_rules import (
    PERSONAL_EMAIL_DOMAINS,
    classify_sender_statically,
    is_newsletter_sender,
    is_receipt_sender,
    precategorize_senders,
)

__all__ = [
    # Outcomes
    "CategoryInfo",
    "CategoryOutcome",
    "OutcomeKind",
    "SenderClassification",
    "SenderEvidence",
    # Static rules
    "PERSONAL_EMAIL_DOMAINS",
    "classify_sender_statically",
    "is_newsletter_sender",
    "is_receipt_sender",
    "precategorize_senders",
    # Prompts
    "BATCH_TOOL_NAME",
    "SINGLE_TOOL_NAME",
    "build_batch_tool",
    "build_single_tool",
    # Claude classifier
    "SenderClassifier",
]
