"""
Utility modules for the noise monitor backend.
"""

from app.utils.validation import (
    to_storage_id,
    to_upstream_id,
    validate_monitor_id,
    table_name_for,
    validate_table_name,
    parse_monitor_ids,
)

__all__ = [
    "to_storage_id",
    "to_upstream_id",
    "validate_monitor_id",
    "table_name_for",
    "validate_table_name",
    "parse_monitor_ids",
]
