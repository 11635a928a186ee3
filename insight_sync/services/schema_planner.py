"""Plan field definitions for an insight's target object."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Sequence

NUMBER_PRECISION = 18
NUMBER_SCALE = 0
LONG_TEXT_LENGTH = 32000
TEXT_LENGTH = 255


class AttributeRole(str, Enum):
    MEASURE = "measure"
    DIMENSION = "dimension"


class TargetFieldType(str, Enum):
    NUMBER = "Number"
    TEXT = "Text"
    LONG_TEXT = "LongText"


@dataclass(frozen=True)
class AttributeSpec:
    name: str
    display_label: str
    declared_type: str
    role: AttributeRole = AttributeRole.DIMENSION


@dataclass(frozen=True)
class FieldCreationRequest:
    full_name: str
    label: str
    target_type: TargetFieldType
    length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None

    def as_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "fullName": self.full_name,
            "label": self.label,
            "type": self.target_type.value,
        }
        if self.length is not None:
            payload["length"] = self.length
        if self.precision is not None:
            payload["precision"] = self.precision
        if self.scale is not None:
            payload["scale"] = self.scale
        return payload


@dataclass(frozen=True)
class FieldCreationPlan:
    target_object: str
    numeric_fields: tuple[FieldCreationRequest, ...]
    text_fields: tuple[FieldCreationRequest, ...]

    @property
    def total(self) -> int:
        return len(self.numeric_fields) + len(self.text_fields)


def build_field_request(target_object: str, attribute: AttributeSpec) -> FieldCreationRequest:
    full_name = f"{target_object}.{attribute.name}"
    label = attribute.display_label or attribute.name
    declared = (attribute.declared_type or "").strip()

    if declared.upper() == "NUMBER":
        return FieldCreationRequest(
            full_name=full_name,
            label=label,
            target_type=TargetFieldType.NUMBER,
            precision=NUMBER_PRECISION,
            scale=NUMBER_SCALE,
        )
    if declared.lower() == "longtextarea":
        return FieldCreationRequest(
            full_name=full_name,
            label=label,
            target_type=TargetFieldType.LONG_TEXT,
            length=LONG_TEXT_LENGTH,
        )
    return FieldCreationRequest(
        full_name=full_name,
        label=label,
        target_type=TargetFieldType.TEXT,
        length=TEXT_LENGTH,
    )


def plan_field_requests(target_object: str, attributes: Iterable[AttributeSpec]) -> FieldCreationPlan:
    """Split ``attributes`` into numeric and non-numeric field requests.

    Input order is preserved within each list. The function has no side
    effects and never talks to the schema administration service.
    """

    numeric: list[FieldCreationRequest] = []
    text: list[FieldCreationRequest] = []
    for attribute in attributes:
        request = build_field_request(target_object, attribute)
        if request.target_type is TargetFieldType.NUMBER:
            numeric.append(request)
        else:
            text.append(request)
    return FieldCreationPlan(
        target_object=target_object,
        numeric_fields=tuple(numeric),
        text_fields=tuple(text),
    )


def build_target_object_name(insight_name: str) -> str:
    sanitized = re.sub(r"[^A-Za-z0-9]+", "_", (insight_name or "").strip()).strip("_")
    if not sanitized:
        raise ValueError("Insight name must contain at least one alphanumeric character.")
    return f"{sanitized}__insight"


def attribute_type_map(attributes: Sequence[AttributeSpec]) -> dict[str, str]:
    return {attribute.name: attribute.declared_type for attribute in attributes}


__all__ = [
    "AttributeRole",
    "AttributeSpec",
    "FieldCreationPlan",
    "FieldCreationRequest",
    "LONG_TEXT_LENGTH",
    "NUMBER_PRECISION",
    "NUMBER_SCALE",
    "TEXT_LENGTH",
    "TargetFieldType",
    "attribute_type_map",
    "build_field_request",
    "build_target_object_name",
    "plan_field_requests",
]
