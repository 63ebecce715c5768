"""Categorization pipeline orchestration.

- SenderCategorizer: discover -> dedup -> static rules -> batch AI -> fallback -> persist
- assign_sender_category: get-or-create category and upsert the sender row
"""

from sender_categorizer.engine.categorize import (
    AssignmentResult,
    CategorizeError,
    CategorizeResult,
    SenderCategorizer,
    SenderCategoryEngine,
    assign_sender_category,
)

__all__ = [
    "AssignmentResult",
    "CategorizeError",
    "CategorizeResult",
    "SenderCategorizer",
    "SenderCategoryEngine",
    "assign_sender_category",
]
