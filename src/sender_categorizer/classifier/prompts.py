"""Prompts and tool definitions for Claude sender classification.

Both classification calls use forced tool use so the response is always
structured. The category enum in each tool is built per call from the user's
catalog; "needs more information" is a separate boolean rather than a
reserved category name, so it can never collide with a user category.

Usage:
    from sender_categorizer.classifier.prompts import (
        build_batch_tool,
        build_batch_user_message,
        build_system_prompt,
    )
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from sender_categorizer.classifier.outcomes import CategoryInfo, SenderEvidence

BATCH_TOOL_NAME = "categorize_senders"
SINGLE_TOOL_NAME = "categorize_sender"

# Snippets included per sender in the batch prompt
MAX_SNIPPETS_PER_SENDER = 3

SYSTEM_PROMPT_TEMPLATE = """You are an assistant that sorts email senders into categories for {user_email}.

Categories are about WHO the sender is, not about any single message. Pick the
category that best describes the sender as a whole, using the address, the
domain and the message snippets provided.

Available categories:
{category_list}

Rules:
- Only use category names exactly as listed above.
- If the snippets and address are not enough to choose confidently, set
  needs_more_information to true instead of guessing.
- Individuals using personal mail providers (gmail.com, outlook.com, ...) are
  usually people, but check the snippets before assuming."""


def format_category_list(categories: Sequence[CategoryInfo]) -> str:
    """Render the catalog as a bulleted list for the system prompt."""
    lines = []
    for category in categories:
        if category.description:
            lines.append(f"- {category.name}: {category.description}")
        else:
            lines.append(f"- {category.name}")
    return "\n".join(lines)


def build_system_prompt(user_email: str, categories: Sequence[CategoryInfo]) -> str:
    """Build the system prompt shared by batch and single classification."""
    return SYSTEM_PROMPT_TEMPLATE.format(
        user_email=user_email,
        category_list=format_category_list(categories),
    )


def _truncate(snippet: str, max_length: int) -> str:
    snippet = " ".join(snippet.split())
    if len(snippet) <= max_length:
        return snippet
    return snippet[: max_length - 3].rstrip() + "..."


def _format_snippets(snippets: Sequence[str], max_length: int) -> str:
    if not snippets:
        return "  (no message snippets available)"
    return "\n".join(
        f"  {i}. {_truncate(s, max_length)}"
        for i, s in enumerate(snippets[:MAX_SNIPPETS_PER_SENDER], start=1)
    )


def build_batch_user_message(senders: Sequence[SenderEvidence], max_snippet_length: int) -> str:
    """Build the user message listing every sender to categorize."""
    blocks = []
    for evidence in senders:
        blocks.append(
            f"Sender: {evidence.sender}\n"
            f"Recent messages:\n{_format_snippets(evidence.snippets, max_snippet_length)}"
        )

    return (
        f"Categorize each of the following {len(senders)} senders. "
        "Return exactly one entry per sender, using the sender address exactly as given.\n\n"
        + "\n\n".join(blocks)
    )


def build_single_user_message(sender: str, snippets: Sequence[str], max_snippet_length: int) -> str:
    """Build the user message for one sender with its message history."""
    return (
        f"Categorize this sender.\n\n"
        f"Sender: {sender}\n"
        f"Previous messages:\n{_format_snippets(snippets, max_snippet_length)}"
    )


def _category_property(categories: Sequence[CategoryInfo]) -> dict[str, Any]:
    return {
        "type": ["string", "null"],
        "enum": [c.name for c in categories] + [None],
        "description": "Category name from the list, or null when more information is needed",
    }


def build_batch_tool(categories: Sequence[CategoryInfo]) -> dict[str, Any]:
    """Tool definition for batch classification."""
    return {
        "name": BATCH_TOOL_NAME,
        "description": "Assign a category to each sender",
        "input_schema": {
            "type": "object",
            "properties": {
                "senders": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "sender": {
                                "type": "string",
                                "description": "Sender address exactly as given",
                            },
                            "category": _category_property(categories),
                            "needs_more_information": {
                                "type": "boolean",
                                "description": "True if the evidence is insufficient",
                            },
                        },
                        "required": ["sender", "category", "needs_more_information"],
                    },
                },
            },
            "required": ["senders"],
        },
    }


def build_single_tool(categories: Sequence[CategoryInfo]) -> dict[str, Any]:
    """Tool definition for single-sender classification."""
    return {
        "name": SINGLE_TOOL_NAME,
        "description": "Assign a category to the sender",
        "input_schema": {
            "type": "object",
            "properties": {
                "rationale": {
                    "type": "string",
                    "description": "One sentence explaining the choice",
                },
                "category": _category_property(categories),
                "needs_more_information": {
                    "type": "boolean",
                    "description": "True if the evidence is insufficient",
                },
            },
            "required": ["rationale", "category", "needs_more_information"],
        },
    }
