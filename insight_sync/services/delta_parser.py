"""Parse raw delta feed lines into typed change records.

A delta file is CSV with a header row followed by lines of the form::

    source_row_id,source_sequence,target_object,change_timestamp,payload

The payload column carries a loosely structured key/value blob that is
frequently exported with doubled quotes or with bare keys and values. Lines
that cannot be understood are logged and skipped so a single bad row never
blocks the rest of the batch.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, Mapping

from insight_sync.services.errors import MalformedInputRecord

logger = logging.getLogger(__name__)

MIN_COLUMNS = 5
_STRUCTURAL_CHARS = frozenset("{}[],:")
_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S.%f"


@dataclass(frozen=True)
class DeltaRecord:
    source_row_id: str
    source_sequence: str
    target_object_name: str
    change_timestamp: datetime | None
    payload: Mapping[str, Any]
    position: int = 0


@dataclass
class ParseStats:
    lines_read: int = 0
    malformed: int = 0
    filtered: int = 0
    parsed: int = 0
    skipped_lines: list[int] = field(default_factory=list)


def split_delimited_line(line: str, delimiter: str = ",") -> list[str]:
    """Split ``line`` on ``delimiter`` while honouring double-quoted sections."""

    columns: list[str] = []
    current: list[str] = []
    inside_quotes = False
    for char in line:
        if char == '"':
            inside_quotes = not inside_quotes
            current.append(char)
        elif char == delimiter and not inside_quotes:
            columns.append("".join(current))
            current = []
        else:
            current.append(char)
    columns.append("".join(current))
    return columns


def _strip_enclosing_quotes(value: str) -> str:
    candidate = value.strip()
    if len(candidate) >= 2 and candidate.startswith('"') and candidate.endswith('"'):
        return candidate[1:-1]
    return candidate


def _clean_column(value: str) -> str:
    return _strip_enclosing_quotes(value).replace('""', '"').strip()


def _quote_bare_tokens(text: str) -> str:
    output: list[str] = []
    bare: list[str] = []
    inside_string = False
    escaped = False

    def flush() -> None:
        token = "".join(bare).strip()
        bare.clear()
        if not token:
            return
        if token == "null":
            output.append(token)
        else:
            output.append(json.dumps(token))

    for char in text:
        if inside_string:
            output.append(char)
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                inside_string = False
            continue
        if char == '"':
            flush()
            output.append(char)
            inside_string = True
        elif char in _STRUCTURAL_CHARS:
            flush()
            output.append(char)
        else:
            bare.append(char)
    flush()
    return "".join(output)


def normalize_payload(raw: str) -> str:
    """Return ``raw`` rewritten as strict JSON text.

    Doubled quotes are collapsed and bare identifiers or scalar values are
    wrapped in quotes. ``null`` is left untouched.
    """

    text = _strip_enclosing_quotes(raw)
    try:
        json.loads(text)
    except ValueError:
        pass
    else:
        return text
    return _quote_bare_tokens(text.replace('""', '"'))


def parse_payload(raw: str) -> dict[str, Any]:
    normalized = normalize_payload(raw)
    try:
        decoded = json.loads(normalized)
    except ValueError as exc:
        raise MalformedInputRecord(f"Payload is not valid JSON after normalization: {exc}") from exc
    if not isinstance(decoded, dict):
        raise MalformedInputRecord("Payload must be a JSON object.")
    return decoded


def parse_external_timestamp(value: str | None) -> datetime | None:
    """Parse ``YYYY-MM-DDTHH:MM:SS[.fff]Z`` into an aware UTC datetime.

    Returns ``None`` when the text cannot be interpreted.
    """

    if not isinstance(value, str):
        return None
    candidate = value.strip()
    if candidate.endswith("Z"):
        candidate = candidate[:-1]
    candidate = candidate.replace("T", " ")
    if not candidate:
        return None

    base, _, fraction = candidate.partition(".")
    fraction = fraction.ljust(3, "0")[:6]
    try:
        parsed = datetime.strptime(f"{base}.{fraction}", _TIMESTAMP_FORMAT)
    except ValueError:
        return None
    return parsed.replace(tzinfo=timezone.utc)


class DeltaParser:
    """Turns raw delta lines into :class:`DeltaRecord` instances for one target."""

    def __init__(self, target_object: str, *, delimiter: str = ",", has_header: bool = True) -> None:
        if not target_object or not target_object.strip():
            raise ValueError("A target object name is required to parse delta lines.")
        self._target = target_object.strip()
        self._target_folded = self._target.casefold()
        self._delimiter = delimiter
        self._has_header = has_header
        self.stats = ParseStats()

    @property
    def target_object(self) -> str:
        return self._target

    def parse(self, lines: Iterable[str]) -> Iterator[DeltaRecord]:
        for index, line in enumerate(lines):
            if index == 0 and self._has_header:
                continue
            text = line.rstrip("\r\n")
            if not text.strip():
                continue
            self.stats.lines_read += 1
            try:
                record = self.parse_line(text, position=index)
            except MalformedInputRecord as exc:
                self.stats.malformed += 1
                self.stats.skipped_lines.append(index)
                logger.warning("Skipping malformed delta line %s: %s", index, exc)
                continue
            if record.target_object_name.casefold() != self._target_folded:
                self.stats.filtered += 1
                logger.debug(
                    "Filtered delta line %s for target %s (expected %s)",
                    index,
                    record.target_object_name,
                    self._target,
                )
                continue
            self.stats.parsed += 1
            yield record

    def parse_line(self, line: str, *, position: int = 0) -> DeltaRecord:
        columns = split_delimited_line(line, self._delimiter)
        if len(columns) < MIN_COLUMNS:
            raise MalformedInputRecord(
                f"Expected at least {MIN_COLUMNS} columns but found {len(columns)}.",
                line_number=position,
            )
        raw_payload = self._delimiter.join(columns[MIN_COLUMNS - 1:])
        timestamp_text = _clean_column(columns[3])
        change_timestamp = parse_external_timestamp(timestamp_text)
        if change_timestamp is None and timestamp_text:
            logger.debug("Unparsable change timestamp %r on delta line %s", timestamp_text, position)
        return DeltaRecord(
            source_row_id=_clean_column(columns[0]),
            source_sequence=_clean_column(columns[1]),
            target_object_name=_clean_column(columns[2]),
            change_timestamp=change_timestamp,
            payload=parse_payload(raw_payload),
            position=position,
        )


def parse_delta_lines(
    lines: Iterable[str],
    target_object: str,
    *,
    delimiter: str = ",",
    has_header: bool = True,
) -> Iterator[DeltaRecord]:
    parser = DeltaParser(target_object, delimiter=delimiter, has_header=has_header)
    return parser.parse(lines)


__all__ = [
    "DeltaParser",
    "DeltaRecord",
    "MIN_COLUMNS",
    "ParseStats",
    "normalize_payload",
    "parse_delta_lines",
    "parse_external_timestamp",
    "parse_payload",
    "split_delimited_line",
]
