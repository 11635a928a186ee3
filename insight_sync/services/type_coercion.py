"""Coerce loosely typed payload values into the declared field types."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Mapping

from insight_sync.services.delta_parser import parse_external_timestamp

logger = logging.getLogger(__name__)


class FieldKind(str, Enum):
    BOOLEAN = "boolean"
    NUMBER = "number"
    DATE = "date"
    DATETIME = "datetime"
    TEXT = "text"


_KIND_BY_DECLARED_TYPE = {
    "boolean": FieldKind.BOOLEAN,
    "bool": FieldKind.BOOLEAN,
    "checkbox": FieldKind.BOOLEAN,
    "number": FieldKind.NUMBER,
    "numeric": FieldKind.NUMBER,
    "currency": FieldKind.NUMBER,
    "decimal": FieldKind.NUMBER,
    "double": FieldKind.NUMBER,
    "percent": FieldKind.NUMBER,
    "int": FieldKind.NUMBER,
    "integer": FieldKind.NUMBER,
    "long": FieldKind.NUMBER,
    "date": FieldKind.DATE,
    "datetime": FieldKind.DATETIME,
    "timestamp": FieldKind.DATETIME,
    "string": FieldKind.TEXT,
    "text": FieldKind.TEXT,
    "textarea": FieldKind.TEXT,
    "longtextarea": FieldKind.TEXT,
    "picklist": FieldKind.TEXT,
    "multipicklist": FieldKind.TEXT,
    "email": FieldKind.TEXT,
    "phone": FieldKind.TEXT,
    "url": FieldKind.TEXT,
}


def resolve_field_kind(declared_type: str | None) -> FieldKind:
    if not declared_type:
        return FieldKind.TEXT
    return _KIND_BY_DECLARED_TYPE.get(declared_type.strip().lower(), FieldKind.TEXT)


@dataclass(frozen=True)
class CoercionResult:
    value: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class CoercedRecord:
    values: dict[str, Any] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)


def _as_text(raw: Any) -> str:
    if isinstance(raw, str):
        return raw.strip()
    return str(raw).strip()


def coerce_value(raw: Any, declared_type: str | None) -> CoercionResult:
    """Coerce ``raw`` to ``declared_type``; failures are returned, never raised."""

    kind = resolve_field_kind(declared_type)
    try:
        text = _as_text(raw)
        if kind is FieldKind.BOOLEAN:
            return CoercionResult(text.lower() == "true" or text == "1")
        if kind is FieldKind.NUMBER:
            try:
                number = Decimal(text)
            except InvalidOperation:
                return CoercionResult(error=f"'{text}' is not a valid number")
            if not number.is_finite():
                return CoercionResult(error=f"'{text}' is not a finite number")
            return CoercionResult(number)
        if kind is FieldKind.DATE:
            try:
                return CoercionResult(datetime.strptime(text, "%Y-%m-%d").date())
            except ValueError:
                return CoercionResult(error=f"'{text}' is not a valid date")
        if kind is FieldKind.DATETIME:
            parsed = parse_external_timestamp(text)
            if parsed is None:
                return CoercionResult(error=f"'{text}' is not a valid datetime")
            return CoercionResult(parsed)
        return CoercionResult(text)
    except Exception as exc:  # noqa: BLE001
        return CoercionResult(error=f"Unable to coerce value: {exc}")


def coerce_record(
    payload: Mapping[str, Any],
    field_types: Mapping[str, str],
) -> CoercedRecord | None:
    """Coerce every payload field against ``field_types``.

    Returns ``None`` when any raw value is null: partial records are never
    written. Fields missing from ``field_types`` are kept as text.
    """

    record = CoercedRecord()
    for name, raw in payload.items():
        if raw is None:
            logger.debug("Discarding record because field %s is null", name)
            return None
        declared_type = field_types.get(name)
        result = coerce_value(raw, declared_type)
        if result.ok:
            record.values[name] = result.value
        else:
            logger.warning("Coercion failed for field %s (%s): %s", name, declared_type or "text", result.error)
            record.values[name] = None
            record.failures[name] = result.error or "coercion failed"
    return record


def to_storable(value: Any) -> Any:
    """Render a coerced value into a JSON-compatible representation."""

    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


__all__ = [
    "CoercedRecord",
    "CoercionResult",
    "FieldKind",
    "coerce_record",
    "coerce_value",
    "resolve_field_kind",
    "to_storable",
]
