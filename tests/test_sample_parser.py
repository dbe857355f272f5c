from __future__ import annotations

import pytest
from conftest import T0_MS

from sporesignal.domain_models import (
    MAX_TIMESTAMP_MS,
    MIN_TIMESTAMP_MS,
    ms_to_iso,
    parse_timestamp_ms,
)
from sporesignal.sample_parser import (
    EmptyInputError,
    ParseError,
    parse_csv_text,
    parse_row,
    parse_rows,
)

_CSV_WITH_BAD_ROW = """Timestamp,Signal_mV
2026-01-01T00:00:00Z,10
2026-01-01T00:00:01Z,12
2026-01-01T00:00:02Z,abc
2026-01-01T00:00:03Z,40
2026-01-01T00:00:04Z,11
"""


def test_malformed_value_row_is_skipped_but_counted() -> None:
    result = parse_csv_text(_CSV_WITH_BAD_ROW)
    assert result.header == ["Timestamp", "Signal_mV"]
    assert result.total_rows == 5
    assert result.accepted_rows == 4
    assert result.skipped_rows == 1
    assert [s.value for s in result.samples] == [10.0, 12.0, 40.0, 11.0]
    assert [s.timestamp_ms for s in result.samples] == [
        T0_MS,
        T0_MS + 1000,
        T0_MS + 3000,
        T0_MS + 4000,
    ]
    assert result.errors[0].row_number == 4


def test_headerless_csv_is_detected() -> None:
    result = parse_csv_text(f"{T0_MS},1.5\n{T0_MS + 500},2.5\n")
    assert result.header is None
    assert result.total_rows == 2
    assert [s.timestamp_ms for s in result.samples] == [T0_MS, T0_MS + 500]


def test_missing_timestamps_are_synthesized_from_previous() -> None:
    result = parse_csv_text("ts,value\n,1\n,2\n5000,3\n,4\n", step_ms=250)
    assert [s.timestamp_ms for s in result.samples] == [0, 250, 5000, 5250]


def test_duplicate_and_regressing_timestamps_move_forward() -> None:
    rows = [
        ["2026-01-01T00:00:10Z", "1"],
        ["2026-01-01T00:00:10Z", "2"],
        ["2026-01-01T00:00:05Z", "3"],
    ]
    result = parse_rows(rows, has_header=False)
    stamps = [s.timestamp_ms for s in result.samples]
    assert stamps == [T0_MS + 10_000, T0_MS + 11_000, T0_MS + 12_000]
    assert all(a < b for a, b in zip(stamps, stamps[1:]))


def test_naive_iso_timestamp_is_utc() -> None:
    result = parse_rows([["2026-01-01 00:00:00", "7"]], has_header=False)
    assert result.samples[0].timestamp_ms == T0_MS


def test_numeric_json_rows_are_accepted() -> None:
    result = parse_rows([[T0_MS, 1], [T0_MS + 1000, -2.5]], has_header=False)
    assert [s.value for s in result.samples] == [1.0, -2.5]


def test_blank_rows_are_ignored_entirely() -> None:
    result = parse_csv_text("Timestamp,Signal_mV\n1000,1\n\n2000,2\n")
    assert result.total_rows == 2
    assert result.skipped_rows == 0


@pytest.mark.parametrize("value", ["nan", "inf", "-inf", "", "12mV"])
def test_non_finite_or_non_numeric_values_are_rejected(value: str) -> None:
    with pytest.raises(ParseError, match="row 2"):
        parse_row(["1000", value], 2)


def test_unparseable_timestamp_rejects_row() -> None:
    with pytest.raises(ParseError, match="timestamp"):
        parse_row(["yesterday", "1"], 3)


def test_short_row_rejected() -> None:
    with pytest.raises(ParseError, match="two columns"):
        parse_row(["1000"], 1)


@pytest.mark.parametrize(
    "text",
    ["", "   \n", "Timestamp,Signal_mV\n", "Timestamp,Signal_mV\nx,y\n1000,oops\n"],
)
def test_no_valid_rows_raises_empty_input(text: str) -> None:
    with pytest.raises(EmptyInputError):
        parse_csv_text(text)


def test_empty_input_error_is_value_error() -> None:
    assert issubclass(EmptyInputError, ValueError)
    assert issubclass(ParseError, ValueError)


@pytest.mark.parametrize("raw_ts", ["100000000000000000", "1e20", "-1e20"])
def test_out_of_range_epoch_timestamp_rejects_row(raw_ts: str) -> None:
    result = parse_csv_text(f"Timestamp,Signal_mV\n{raw_ts},1.0\n2026-01-01T00:00:00Z,2\n")
    assert result.total_rows == 2
    assert [s.value for s in result.samples] == [2.0]
    assert result.samples[0].timestamp_ms == T0_MS
    assert result.errors[0].row_number == 2
    assert "timestamp" in str(result.errors[0])


def test_timestamp_bounds_match_renderable_range() -> None:
    assert parse_timestamp_ms(MAX_TIMESTAMP_MS) == MAX_TIMESTAMP_MS
    assert parse_timestamp_ms(str(MAX_TIMESTAMP_MS + 1)) is None
    assert parse_timestamp_ms(MIN_TIMESTAMP_MS - 1) is None
    assert ms_to_iso(MAX_TIMESTAMP_MS) == "9999-12-31T23:59:59.999Z"


def test_synthesized_timestamp_past_the_end_rejects_row() -> None:
    result = parse_csv_text(f"Timestamp,Signal_mV\n{MAX_TIMESTAMP_MS},1\n,2\n")
    assert [s.value for s in result.samples] == [1.0]
    assert result.errors[0].row_number == 3
    assert "out of range" in str(result.errors[0])
