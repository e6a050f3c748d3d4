"""Lightweight request validation helpers."""

import re
from typing import Any, Dict, List, Tuple, Optional, Set


Rule = Tuple[str, type, Optional[int]]

# Allowed source IDs - populated at runtime from SourceManager
_allowed_source_ids: Set[str] = set()

# Safe characters for source IDs (alphanumeric, dash, underscore)
SOURCE_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')

MAX_LIMIT = 500
MAX_CHAPTERS = 5000


def set_allowed_sources(source_ids: List[str]) -> None:
    """Set the list of valid source IDs (called during app init)."""
    global _allowed_source_ids
    _allowed_source_ids = set(source_ids)


def validate_fields(payload: Dict[str, Any], rules: List[Rule]) -> Optional[str]:
    """
    Validate required fields with optional max length.

    Args:
        payload: Incoming JSON dict.
        rules: List of (field, type, max_length or None).

    Returns:
        None if valid, or error message string.
    """
    for field, expected_type, max_len in rules:
        if field not in payload:
            return f"Missing required field: {field}"
        value = payload.get(field)
        # bool is an int subclass; a page index of True is not a page index
        if expected_type is int and isinstance(value, bool):
            return f"Field '{field}' must be int"
        if not isinstance(value, expected_type):
            return f"Field '{field}' must be {expected_type.__name__}"
        if max_len is not None and len(value if isinstance(value, list) else str(value)) > max_len:
            return f"Field '{field}' exceeds max length {max_len}"
    return None


def validate_source_id(source_id: Optional[str]) -> Optional[str]:
    """
    Validate a source ID against known sources and safe character pattern.

    Returns:
        None if valid, or error message string.
    """
    if not source_id:
        return "Missing source ID"

    if not SOURCE_ID_PATTERN.match(source_id):
        return "Invalid source ID format"

    if _allowed_source_ids and source_id not in _allowed_source_ids:
        return f"Unknown source: {source_id}"

    return None


def validate_chapters(chapters: List[Any]) -> Optional[str]:
    """Chapters must be ids or dicts carrying an 'id'."""
    for chapter in chapters:
        if isinstance(chapter, str) and chapter:
            continue
        if isinstance(chapter, dict) and chapter.get('id'):
            continue
        return "Each chapter must be an id string or an object with an 'id'"
    return None


def validate_limit(limit: Any, default: int = 20) -> Tuple[int, Optional[str]]:
    """Parse a ?limit= value. Returns (limit, error_or_none)."""
    if limit is None or limit == '':
        return default, None
    try:
        value = int(limit)
    except (TypeError, ValueError):
        return default, "Invalid limit"
    if value < 1:
        return default, "Limit must be positive"
    return min(value, MAX_LIMIT), None
