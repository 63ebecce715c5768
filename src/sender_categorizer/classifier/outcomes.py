"""Classification outcome types shared by every pipeline stage.

A sender's classification is a tagged variant rather than a bare category
string. The two control signals ("deferred to the AI" and "the AI needs more
evidence") are distinct kinds, so a user category that happens to be named
"Unknown" is an ordinary resolved category and never changes routing.

Kinds:
- RESOLVED: a category name from the user's catalog (or a static rule)
- DEFERRED: static rules chose not to decide (personal mail domains)
- INSUFFICIENT_EVIDENCE: the AI judged the snippets insufficient
- UNRESOLVED: no decision was made (no rule matched, or no engine answer)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class OutcomeKind(StrEnum):
    """Kind of classification outcome."""

    RESOLVED = "resolved"
    DEFERRED = "deferred"
    INSUFFICIENT_EVIDENCE = "insufficient_evidence"
    UNRESOLVED = "unresolved"


@dataclass(frozen=True, slots=True)
class CategoryOutcome:
    """Result of classifying one sender.

    Attributes:
        kind: Outcome kind
        category: Category name, set only when kind is RESOLVED
    """

    kind: OutcomeKind
    category: str | None = None

    def __post_init__(self) -> None:
        if self.kind is OutcomeKind.RESOLVED and not self.category:
            raise ValueError("A resolved outcome requires a category name")
        if self.kind is not OutcomeKind.RESOLVED and self.category is not None:
            raise ValueError(f"A {self.kind} outcome cannot carry a category name")

    @classmethod
    def resolved(cls, category: str) -> CategoryOutcome:
        return cls(OutcomeKind.RESOLVED, category)

    @classmethod
    def deferred(cls) -> CategoryOutcome:
        return cls(OutcomeKind.DEFERRED)

    @classmethod
    def insufficient_evidence(cls) -> CategoryOutcome:
        return cls(OutcomeKind.INSUFFICIENT_EVIDENCE)

    @classmethod
    def unresolved(cls) -> CategoryOutcome:
        return cls(OutcomeKind.UNRESOLVED)

    @property
    def is_resolved(self) -> bool:
        return self.kind is OutcomeKind.RESOLVED

    @property
    def needs_fallback(self) -> bool:
        """Whether the sender should go through single-sender fallback."""
        return self.kind is not OutcomeKind.RESOLVED


@dataclass(frozen=True, slots=True)
class SenderClassification:
    """Classification of one sender address."""

    sender: str
    outcome: CategoryOutcome

    @property
    def category(self) -> str | None:
        return self.outcome.category


@dataclass(frozen=True, slots=True)
class SenderEvidence:
    """A sender together with the message snippets observed for it."""

    sender: str
    snippets: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class CategoryInfo:
    """The parts of a category the classifier sees."""

    name: str
    description: str | None = None
