"""Turn an uploaded two-column record set into an ordered list of samples.

Rows are ``timestamp, value`` pairs, optionally preceded by a header row.
Malformed rows are dropped; only an upload with no usable rows at all is
an error.
"""

from __future__ import annotations

import csv
import io
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from .domain_models import MAX_TIMESTAMP_MS, Sample, _as_float_or_none, parse_timestamp_ms

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMESTAMP_STEP_MS = 1000


class ParseError(ValueError):
    """A single upload row could not be turned into a sample."""

    def __init__(self, row_number: int, reason: str) -> None:
        super().__init__(f"row {row_number}: {reason}")
        self.row_number = row_number
        self.reason = reason


class EmptyInputError(ValueError):
    """No valid rows remained after parsing an upload."""


@dataclass(slots=True)
class ParseResult:
    samples: list[Sample]
    total_rows: int
    skipped_rows: int = 0
    header: list[str] | None = None
    errors: list[ParseError] = field(default_factory=list)

    @property
    def accepted_rows(self) -> int:
        return len(self.samples)


def _looks_like_header(row: Sequence[str]) -> bool:
    if len(row) < 2:
        return False
    return _as_float_or_none(str(row[1]).strip()) is None


def parse_row(
    row: Sequence[object],
    row_number: int,
) -> tuple[int | None, float]:
    """Validate one raw row and return ``(timestamp_ms or None, value)``.

    An empty timestamp cell yields ``None`` so the caller can synthesize
    one; anything else that does not parse raises :class:`ParseError`.
    """
    if len(row) < 2:
        raise ParseError(row_number, "expected two columns")
    raw_ts = row[0]
    raw_value = row[1]
    value = _as_float_or_none(raw_value.strip() if isinstance(raw_value, str) else raw_value)
    if value is None:
        raise ParseError(row_number, f"value {raw_value!r} is not a finite number")
    if raw_ts is None or (isinstance(raw_ts, str) and not raw_ts.strip()):
        return None, value
    timestamp_ms = parse_timestamp_ms(raw_ts)
    if timestamp_ms is None:
        raise ParseError(row_number, f"timestamp {raw_ts!r} is not parseable")
    return timestamp_ms, value


def parse_rows(
    rows: Iterable[Sequence[object]],
    *,
    step_ms: int = DEFAULT_TIMESTAMP_STEP_MS,
    has_header: bool | None = None,
) -> ParseResult:
    """Parse raw rows into strictly ordered samples.

    *has_header* ``None`` auto-detects a header from the first row.  Missing
    timestamps become ``previous + step_ms``; so do timestamps that repeat or
    go backwards, which keeps every sample at a unique ordered position.
    """
    step_ms = max(1, int(step_ms))
    samples: list[Sample] = []
    errors: list[ParseError] = []
    header: list[str] | None = None
    total_rows = 0
    last_ms: int | None = None

    for index, raw_row in enumerate(rows):
        row = list(raw_row)
        if index == 0:
            if has_header is None:
                is_header = _looks_like_header([str(c) for c in row])
            else:
                is_header = has_header
            if is_header:
                header = [str(c).strip() for c in row]
                continue
        if not row or all(isinstance(c, str) and not c.strip() for c in row):
            continue
        total_rows += 1
        try:
            timestamp_ms, value = parse_row(row, index + 1)
        except ParseError as exc:
            LOGGER.debug("Skipping malformed upload row: %s", exc)
            errors.append(exc)
            continue
        if last_ms is None:
            timestamp_ms = 0 if timestamp_ms is None else timestamp_ms
        elif timestamp_ms is None or timestamp_ms <= last_ms:
            timestamp_ms = last_ms + step_ms
            if timestamp_ms > MAX_TIMESTAMP_MS:
                error = ParseError(index + 1, "synthesized timestamp is out of range")
                LOGGER.debug("Skipping malformed upload row: %s", error)
                errors.append(error)
                continue
        last_ms = timestamp_ms
        samples.append(Sample(timestamp_ms=timestamp_ms, value=value))

    if not samples:
        raise EmptyInputError(
            f"Upload has no valid data rows ({total_rows} row(s) read, {len(errors)} malformed)"
        )
    if errors:
        LOGGER.info(
            "Parsed upload: %d sample(s) accepted, %d malformed row(s) skipped",
            len(samples),
            len(errors),
        )
    return ParseResult(
        samples=samples,
        total_rows=total_rows,
        skipped_rows=len(errors),
        header=header,
        errors=errors,
    )


def parse_csv_text(text: str, *, step_ms: int = DEFAULT_TIMESTAMP_STEP_MS) -> ParseResult:
    normalized = text.replace("\r\n", "\n").replace("\r", "\n").strip()
    if not normalized:
        raise EmptyInputError("Upload is empty")
    reader = csv.reader(io.StringIO(normalized))
    return parse_rows(reader, step_ms=step_ms)
