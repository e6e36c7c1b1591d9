from __future__ import annotations

import pytest

from app.utils.validation import (
    parse_monitor_ids,
    table_name_for,
    to_storage_id,
    to_upstream_id,
    validate_monitor_id,
    validate_table_name,
)


def test_id_forms_convert_both_ways() -> None:
    assert to_storage_id("10.1.3") == "10_1_3"
    assert to_upstream_id("10_1_3") == "10.1.3"
    assert to_upstream_id(to_storage_id("10.1.3")) == "10.1.3"


@pytest.mark.parametrize("monitor_id", ["10.1.3", "10_1_3", "A1"])
def test_valid_monitor_ids(monitor_id: str) -> None:
    assert validate_monitor_id(monitor_id) is True


@pytest.mark.parametrize(
    "monitor_id",
    ["", None, "10.1.3; DROP TABLE monitors", "10-1-3", "x" * 51, "10.1.3 "],
)
def test_invalid_monitor_ids(monitor_id) -> None:
    assert validate_monitor_id(monitor_id) is False


def test_table_name_is_built_from_storage_form() -> None:
    assert table_name_for("10.1.3") == "noise_data_10_1_3"
    assert validate_table_name("noise_data_10_1_3") is True


def test_table_name_rejects_unsafe_id() -> None:
    with pytest.raises(ValueError):
        table_name_for("1; DROP TABLE monitors")


def test_validate_table_name_rejects_foreign_names() -> None:
    assert validate_table_name("monitors") is False
    assert validate_table_name("noise_data_") is False
    assert validate_table_name("noise_data_1;x") is False


def test_parse_monitor_ids_strips_blanks_and_duplicates() -> None:
    assert parse_monitor_ids("10.1.3, 10.1.4,,10.1.3") == ["10.1.3", "10.1.4"]
    assert parse_monitor_ids(" , ") == []
