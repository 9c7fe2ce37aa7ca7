from __future__ import annotations

import copy
import json
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Literal

FlagType = Literal["boolean", "string", "number", "object"]

FLAG_TYPES: tuple[FlagType, ...] = ("boolean", "string", "number", "object")
EASY_FLAG_TYPES = {"boolean", "string"}
CANONICAL_PAIR_NAMES = ("on", "off")


@dataclass(slots=True)
class VariantRow:
    name: str
    value: Any


def value_type(value: Any) -> FlagType:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int | float):
        return "number"
    if isinstance(value, str):
        return "string"
    return "object"


def infer_flag_type(variants: dict[str, Any] | Iterable[VariantRow]) -> FlagType:
    if isinstance(variants, dict):
        values = list(variants.values())
    else:
        values = [row.value for row in variants]
    if not values:
        return "boolean"
    return value_type(values[0])


def validate_flag_type(flag_type: str) -> FlagType:
    if flag_type not in FLAG_TYPES:
        raise ValueError(f"unsupported flag type: {flag_type}")
    return flag_type  # type: ignore[return-value]


def default_value_for_type(flag_type: FlagType) -> Any:
    if flag_type == "boolean":
        return False
    if flag_type == "string":
        return ""
    if flag_type == "number":
        return 0
    return {}


def default_variants(flag_type: FlagType) -> list[VariantRow]:
    if flag_type == "boolean":
        return [VariantRow("on", True), VariantRow("off", False)]
    if flag_type == "object":
        return [VariantRow("variant-a", {})]
    value = default_value_for_type(flag_type)
    return [VariantRow("on", value), VariantRow("off", value)]


def coerce_value(flag_type: FlagType, raw: Any, previous: Any = None) -> Any:
    """Convert editor input into a variant value of the flag's type.

    Non-text input is taken as-is. Text is read the way a form field would
    submit it: ``"true"`` for booleans, numeric text (``0`` when unparsable)
    and JSON for objects, where unparsable text keeps ``previous``.
    """
    if not isinstance(raw, str):
        return raw
    if flag_type == "boolean":
        return raw.strip().lower() == "true"
    if flag_type == "number":
        return _parse_number(raw)
    if flag_type == "object":
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return previous
    return raw


def _parse_number(text: str) -> int | float:
    candidate = text.strip()
    try:
        return int(candidate)
    except ValueError:
        pass
    try:
        number = float(candidate)
    except ValueError:
        return 0
    return number if math.isfinite(number) else 0


@dataclass(slots=True)
class VariantSet:
    rows: list[VariantRow] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, variants: dict[str, Any]) -> VariantSet:
        return cls([VariantRow(str(name), copy.deepcopy(value)) for name, value in variants.items()])

    @classmethod
    def for_type(cls, flag_type: FlagType) -> VariantSet:
        return cls(default_variants(flag_type))

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[VariantRow]:
        return iter(self.rows)

    @property
    def flag_type(self) -> FlagType:
        return infer_flag_type(self.rows)

    def copy(self) -> VariantSet:
        return VariantSet([VariantRow(row.name, copy.deepcopy(row.value)) for row in self.rows])

    def add(self, value: Any) -> int:
        self.rows.append(VariantRow("", value))
        return len(self.rows) - 1

    def remove(self, index: int) -> None:
        del self.rows[index]

    def rename(self, index: int, new_name: str) -> None:
        self.rows[index].name = new_name

    def set_value(self, index: int, value: Any) -> None:
        self.rows[index].value = value

    def replace_all(self, rows: Iterable[VariantRow]) -> None:
        self.rows = [VariantRow(row.name, copy.deepcopy(row.value)) for row in rows]

    def names(self) -> list[str]:
        return [row.name for row in self.rows if row.name]

    def find(self, name: str) -> VariantRow | None:
        return next((row for row in self.rows if row.name == name), None)

    def to_mapping(self) -> dict[str, Any]:
        # duplicate names collapse, the last row wins
        mapping: dict[str, Any] = {}
        for row in self.rows:
            if row.name:
                mapping[row.name] = copy.deepcopy(row.value)
        return mapping

    def to_rows(self) -> list[list[Any]]:
        return [[row.name, row.value] for row in self.rows]

    def repair_default(self, current_default: str) -> str:
        if not current_default:
            return current_default
        names = self.names()
        if current_default in names:
            return current_default
        return names[0] if names else ""

    def is_canonical_pair(self, flag_type: FlagType) -> bool:
        if len(self.rows) != 2:
            return False
        if sorted(row.name for row in self.rows) != sorted(CANONICAL_PAIR_NAMES):
            return False
        if flag_type == "boolean":
            values = {row.name: row.value for row in self.rows}
            return values["on"] is True and values["off"] is False
        if flag_type == "string":
            return all(isinstance(row.value, str) for row in self.rows)
        return False
