"""
Input Validation Utilities
===========================

Validation and conversion helpers for monitor ids and time windows.

MONITOR IDS:
    The upstream API names monitors with dots ("10.1.3"). Our database uses
    the same id with underscores ("10_1_3") because it ends up in a table
    name. The two forms convert losslessly by swapping the characters.

Author: Noise Monitor Dashboard Team
"""

import re
from typing import Optional


# Storage ids end up in table names, so keep them boring
_STORAGE_ID_PATTERN = re.compile(r'^[A-Za-z0-9_]{1,50}$')
_TABLE_PREFIX = "noise_data_"


def to_storage_id(monitor_id: str) -> str:
    """Convert an upstream id ("10.1.3") to storage form ("10_1_3")."""
    return monitor_id.replace(".", "_")


def to_upstream_id(monitor_id: str) -> str:
    """Convert a storage id ("10_1_3") to upstream form ("10.1.3")."""
    return monitor_id.replace("_", ".")


def validate_monitor_id(monitor_id: Optional[str]) -> bool:
    """
    Validate a monitor id in either form.

    Args:
        monitor_id: Monitor id string (e.g., "10.1.3" or "10_1_3")

    Returns:
        True if the storage form is safe to use as part of a table name
    """
    if not monitor_id:
        return False
    return bool(_STORAGE_ID_PATTERN.match(to_storage_id(monitor_id)))


def table_name_for(monitor_id: str) -> str:
    """
    Build the readings table name for a monitor.

    Raises:
        ValueError: if the id contains anything but letters, digits, dots
                    and underscores
    """
    if not validate_monitor_id(monitor_id):
        raise ValueError(f"Invalid monitor id: {monitor_id!r}")
    return f"{_TABLE_PREFIX}{to_storage_id(monitor_id)}"


def validate_table_name(name: str) -> bool:
    """Check that a table name is one we could have generated."""
    if not name or not name.startswith(_TABLE_PREFIX):
        return False
    return bool(_STORAGE_ID_PATTERN.match(name[len(_TABLE_PREFIX):]))


def parse_monitor_ids(raw: str) -> list[str]:
    """
    Split a comma-separated id list from a URL path.

    Blank entries are dropped and duplicates removed (first one wins).
    """
    ids = []
    for part in raw.split(","):
        part = part.strip()
        if part and part not in ids:
            ids.append(part)
    return ids
