"""Helpers shared by the memory and Postgres stores."""

from __future__ import annotations

import uuid
from typing import Any, Optional


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object.

    Works with both dict-like objects and objects with attribute access.

    Args:
        row: Row data (dict-like or object)
        key: Key/attribute name
        default: Default value if not found

    Returns:
        Extracted value or default
    """
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def generate_account_id() -> str:
    """Prefixed, uppercase account identifier (``USR`` + 20 hex chars)."""
    return "USR" + uuid.uuid4().hex[:20].upper()


def archive_partition_name(moment) -> str:
    """Dated archive partition for audit rows moved at ``moment``."""
    return f"audit_archive_{moment:%Y_%m}"
