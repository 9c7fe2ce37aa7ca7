from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from typing import Any, Literal

from .targeting import Expression, classify, dump_expression, is_empty_targeting, parse_expression
from .variants import FlagType, VariantSet

FlagState = Literal["ENABLED", "DISABLED"]
MetadataType = Literal["string", "number", "boolean"]
MetadataValue = str | int | float | bool

FLAG_STATES: tuple[FlagState, ...] = ("ENABLED", "DISABLED")
METADATA_TYPES: tuple[MetadataType, ...] = ("string", "number", "boolean")
FLAG_KEY_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+$")

NOT_AN_OBJECT_MESSAGE = "JSON must be an object"
INVALID_JSON_MESSAGE = "Invalid JSON"
MISSING_STATE_MESSAGE = "Missing required field: state"
NO_VARIANTS_MESSAGE = "Must have at least one variant"
DANGLING_DEFAULT_MESSAGE = "Default variant must reference an existing variant"
METADATA_VALUE_MESSAGE = "Metadata values must be strings, numbers or booleans"


class FlagDocumentError(ValueError):
    """Raised when a flag document is malformed or misses required fields."""


@dataclass(slots=True)
class FlagDefinition:
    state: str = "ENABLED"
    variants: VariantSet = field(default_factory=VariantSet)
    default_variant: str = ""
    targeting: Expression | None = None
    metadata: dict[str, MetadataValue] | None = None

    @property
    def flag_type(self) -> FlagType:
        return self.variants.flag_type


@dataclass(slots=True)
class FlagEntry:
    key: str
    definition: FlagDefinition

    @classmethod
    def from_document(cls, key: str, document: Any) -> FlagEntry:
        return cls(key=key, definition=from_document(document))


@dataclass(slots=True)
class MetadataRow:
    key: str
    type: MetadataType
    value: MetadataValue


def to_document(model: FlagDefinition, strict: bool = True) -> dict[str, Any]:
    """Export a model as a flag document.

    ``strict`` export is what gets saved: it needs a named variant and a
    default that is empty or names one of the variants. Non-strict export
    renders mid-edit states as they are.
    """
    variants = model.variants.to_mapping()
    if strict and not variants:
        raise FlagDocumentError(NO_VARIANTS_MESSAGE)
    if strict and model.default_variant and model.default_variant not in variants:
        raise FlagDocumentError(DANGLING_DEFAULT_MESSAGE)

    document: dict[str, Any] = {"state": model.state, "variants": variants}
    if model.default_variant:
        document["defaultVariant"] = model.default_variant
    if not is_empty_targeting(model.targeting):
        document["targeting"] = dump_expression(model.targeting)  # type: ignore[arg-type]
    if model.metadata:
        document["metadata"] = dict(model.metadata)
    return document


def from_document(document: Any) -> FlagDefinition:
    if not isinstance(document, dict):
        raise FlagDocumentError(NOT_AN_OBJECT_MESSAGE)

    variants = document.get("variants")
    if not isinstance(variants, dict) or not variants:
        raise FlagDocumentError(NO_VARIANTS_MESSAGE)

    state = document.get("state")
    if not state:
        raise FlagDocumentError(MISSING_STATE_MESSAGE)
    if state not in FLAG_STATES:
        raise FlagDocumentError(f"Invalid state: {state!r} (expected ENABLED or DISABLED)")

    default_variant = document.get("defaultVariant")
    targeting = document.get("targeting")
    metadata = document.get("metadata")
    if isinstance(metadata, dict) and not all(is_metadata_value(value) for value in metadata.values()):
        raise FlagDocumentError(METADATA_VALUE_MESSAGE)
    return FlagDefinition(
        state=state,
        variants=VariantSet.from_mapping(variants),
        default_variant=default_variant if isinstance(default_variant, str) else "",
        targeting=parse_expression(targeting) if isinstance(targeting, dict) and targeting else None,
        metadata=dict(metadata) if isinstance(metadata, dict) and metadata else None,
    )


def parse_document_text(text: str) -> FlagDefinition:
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise FlagDocumentError(INVALID_JSON_MESSAGE) from exc
    return from_document(parsed)


def dump_document_text(document: Any) -> str:
    return json.dumps(document, indent=2, ensure_ascii=False)


def describe_flag(document: dict[str, Any]) -> dict[str, Any]:
    definition = from_document(document)
    return {
        "type": definition.flag_type,
        "state": definition.state,
        "variants": definition.variants.names(),
        "default": definition.default_variant or None,
        "targeting": classify(definition.targeting),
    }


def is_metadata_value(value: Any) -> bool:
    if isinstance(value, float):
        return math.isfinite(value)
    return isinstance(value, str | int | bool)


def infer_metadata_type(value: Any) -> MetadataType:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int | float):
        return "number"
    return "string"


def default_metadata_value(value_type: MetadataType) -> MetadataValue:
    if value_type == "number":
        return 0
    if value_type == "boolean":
        return False
    return ""


def normalize_metadata_value(value: Any, value_type: MetadataType) -> MetadataValue:
    if value_type == "number":
        if isinstance(value, str):
            try:
                value = float(value) if value.strip() else 0
            except ValueError:
                return 0
            if math.isfinite(value) and value.is_integer():
                return int(value)
        if isinstance(value, int | float) and not isinstance(value, bool) and math.isfinite(value):
            return value
        return 0
    if value_type == "boolean":
        return value is True or value == "true"
    if isinstance(value, str):
        return value
    return str(value) if is_metadata_value(value) else ""


def metadata_to_rows(metadata: dict[str, Any] | None) -> list[MetadataRow]:
    rows: list[MetadataRow] = []
    for key, value in (metadata or {}).items():
        value_type = infer_metadata_type(value)
        rows.append(MetadataRow(key=key, type=value_type, value=normalize_metadata_value(value, value_type)))
    return rows


def rows_to_metadata(rows: list[MetadataRow]) -> dict[str, MetadataValue] | None:
    metadata: dict[str, MetadataValue] = {}
    for row in rows:
        key = row.key.strip()
        if not key:
            continue
        metadata[key] = normalize_metadata_value(row.value, row.type)
    return metadata or None
