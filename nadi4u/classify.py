"""Bucket free-text event category names into program groups."""

from enum import Enum
from typing import Any, Optional


class CategoryGroup(str, Enum):
    NADI4U = "nadi4u"
    NADI2U = "nadi2u"
    OTHER = "other"


TARGET_GROUP = CategoryGroup.NADI4U


def classify(category_name: Optional[Any]) -> CategoryGroup:
    """Map a category name to its group. Empty or unrecognised names are OTHER."""
    normalized = str(category_name or "").strip().lower()
    if not normalized:
        return CategoryGroup.OTHER
    if "nadi4u" in normalized:
        return CategoryGroup.NADI4U
    if "nadi2u" in normalized:
        return CategoryGroup.NADI2U
    return CategoryGroup.OTHER


def category_name_of(row: Any) -> Optional[str]:
    """Read ``nd_event_category.name`` from an event row, tolerating missing joins."""
    if not isinstance(row, dict):
        return None
    category = row.get("nd_event_category")
    if isinstance(category, dict):
        name = category.get("name")
        return name if isinstance(name, str) else None
    return None


def is_target(row: Any) -> bool:
    return classify(category_name_of(row)) is TARGET_GROUP
