from __future__ import annotations

import copy
import json
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Union

TIMESTAMP_CONTEXT_VAR = "$flagd.timestamp"
COMPARISON_OPERATORS = frozenset({"==", "!=", "in", "starts_with", "ends_with", ">=", "<="})
SIMPLE_OPERATORS: tuple[str, ...] = ("==", "!=", "in", "starts_with", "ends_with")
TIME_WINDOW_BOUNDS = {">=": "start", "<=": "end"}
MILLISECOND_EPOCH_THRESHOLD = 1_000_000_000_000

TARGETING_NONE = "none"
TARGETING_TIME_WINDOW = "time_window"
TARGETING_SIMPLE = "simple"
TARGETING_OPAQUE = "opaque"


@dataclass(slots=True, frozen=True)
class Literal:
    value: Any


@dataclass(slots=True, frozen=True)
class VarRef:
    path: str


@dataclass(slots=True, frozen=True)
class UnaryOp:
    op: str
    operand: Expression


@dataclass(slots=True, frozen=True)
class BinaryOp:
    op: str
    left: Expression
    right: Expression


@dataclass(slots=True, frozen=True)
class NAryOp:
    op: str
    operands: tuple[Expression, ...]


@dataclass(slots=True, frozen=True)
class Conditional:
    condition: Expression
    then: Expression
    otherwise: Expression


Expression = Union[Literal, VarRef, UnaryOp, BinaryOp, NAryOp, Conditional]


@dataclass(slots=True, frozen=True)
class TimeWindow:
    start: int | float | None = None
    end: int | float | None = None

    def to_expression(self) -> Expression | None:
        return build_time_window(self.start, self.end)


@dataclass(slots=True, frozen=True)
class SimpleRule:
    property_name: str
    operator: str
    value: Any
    then_variant: str | None
    else_variant: str | None

    @classmethod
    def from_text(
        cls,
        property_name: str,
        operator: str,
        value_text: str,
        then_variant: str | None = None,
        else_variant: str | None = None,
    ) -> SimpleRule:
        if operator not in SIMPLE_OPERATORS:
            raise ValueError(f"unsupported comparison operator: {operator}")
        value: Any = value_text
        if operator == "in":
            value = [token.strip() for token in value_text.split(",") if token.strip()]
        return cls(
            property_name=property_name,
            operator=operator,
            value=value,
            then_variant=then_variant or None,
            else_variant=else_variant or None,
        )

    @property
    def value_text(self) -> str:
        if isinstance(self.value, list):
            return ", ".join(_scalar_text(item) for item in self.value)
        return _scalar_text(self.value)

    def to_expression(self) -> Expression | None:
        if not self.property_name:
            return None
        return Conditional(
            condition=BinaryOp(self.operator, VarRef(self.property_name), Literal(copy.deepcopy(self.value))),
            then=Literal(self.then_variant),
            otherwise=Literal(self.else_variant),
        )


def parse_expression(value: Any) -> Expression:
    if not isinstance(value, dict) or len(value) != 1:
        return Literal(copy.deepcopy(value))
    ((op, raw_operands),) = value.items()
    if op == "var" and isinstance(raw_operands, str):
        return VarRef(raw_operands)
    if not isinstance(raw_operands, list):
        return UnaryOp(op, parse_expression(raw_operands))
    operands = tuple(parse_expression(item) for item in raw_operands)
    if op == "if" and len(operands) == 3:
        return Conditional(*operands)
    if op in COMPARISON_OPERATORS and len(operands) == 2:
        return BinaryOp(op, operands[0], operands[1])
    return NAryOp(op, operands)


def dump_expression(node: Expression) -> Any:
    match node:
        case Literal(value=value):
            return copy.deepcopy(value)
        case VarRef(path=path):
            return {"var": path}
        case UnaryOp(op=op, operand=operand):
            return {op: dump_expression(operand)}
        case BinaryOp(op=op, left=left, right=right):
            return {op: [dump_expression(left), dump_expression(right)]}
        case NAryOp(op=op, operands=operands):
            return {op: [dump_expression(item) for item in operands]}
        case Conditional(condition=condition, then=then, otherwise=otherwise):
            return {"if": [dump_expression(condition), dump_expression(then), dump_expression(otherwise)]}
    raise TypeError(f"unsupported expression node: {type(node).__name__}")


def is_empty_targeting(node: Expression | None) -> bool:
    match node:
        case None:
            return True
        case Literal(value=value):
            return value is None or value == {}
    return False


def match_time_window(node: Expression | None) -> TimeWindow | None:
    match node:
        case Conditional(condition=condition, then=Literal(value="on"), otherwise=Literal(value="off")):
            return _time_window_bounds(condition)
    return None


def _time_window_bounds(condition: Expression) -> TimeWindow | None:
    match condition:
        case BinaryOp():
            bound = _timestamp_bound(condition)
            if bound is None:
                return None
            name, value = bound
            return TimeWindow(**{name: value})
        case NAryOp(op="and", operands=operands) if 1 <= len(operands) <= 2:
            bounds: dict[str, int | float] = {}
            for operand in operands:
                bound = _timestamp_bound(operand)
                if bound is None:
                    return None
                name, value = bound
                bounds[name] = value
            return TimeWindow(**bounds)
    return None


def _timestamp_bound(node: Expression) -> tuple[str, int | float] | None:
    match node:
        case BinaryOp(op=op, left=VarRef(path=path), right=Literal(value=value)) if (
            op in TIME_WINDOW_BOUNDS and path == TIMESTAMP_CONTEXT_VAR and _is_finite_number(value)
        ):
            return TIME_WINDOW_BOUNDS[op], value
    return None


def build_time_window(start: int | float | None, end: int | float | None) -> Expression | None:
    timestamp = VarRef(TIMESTAMP_CONTEXT_VAR)
    conditions: list[Expression] = []
    if start is not None:
        conditions.append(BinaryOp(">=", timestamp, Literal(start)))
    if end is not None:
        conditions.append(BinaryOp("<=", timestamp, Literal(end)))
    if not conditions:
        return None
    condition = conditions[0] if len(conditions) == 1 else NAryOp("and", tuple(conditions))
    return Conditional(condition, Literal("on"), Literal("off"))


def match_simple_rule(node: Expression | None) -> SimpleRule | None:
    match node:
        case Conditional(
            condition=BinaryOp(op=op, left=VarRef(path=path), right=Literal(value=value)),
            then=Literal(value=then_variant),
            otherwise=Literal(value=else_variant),
        ) if op in SIMPLE_OPERATORS and _is_branch(then_variant) and _is_branch(else_variant):
            if op == "in":
                if not isinstance(value, list) or not all(_is_scalar(item) for item in value):
                    return None
            elif not _is_scalar(value):
                return None
            return SimpleRule(
                property_name=path,
                operator=op,
                value=copy.deepcopy(value),
                then_variant=then_variant,
                else_variant=else_variant,
            )
    return None


def classify(node: Expression | None) -> str:
    if is_empty_targeting(node):
        return TARGETING_NONE
    if match_time_window(node) is not None:
        return TARGETING_TIME_WINDOW
    if match_simple_rule(node) is not None:
        return TARGETING_SIMPLE
    return TARGETING_OPAQUE


def decode_time_window(targeting: Any) -> TimeWindow | None:
    return match_time_window(parse_expression(targeting))


def encode_time_window(start: int | float | None = None, end: int | float | None = None) -> dict[str, Any] | None:
    node = build_time_window(start, end)
    return dump_expression(node) if node is not None else None


def decode_simple_rule(targeting: Any) -> SimpleRule | None:
    return match_simple_rule(parse_expression(targeting))


def encode_simple_rule(
    property_name: str,
    operator: str,
    value_text: str,
    then_variant: str | None = None,
    else_variant: str | None = None,
) -> dict[str, Any] | None:
    node = SimpleRule.from_text(property_name, operator, value_text, then_variant, else_variant).to_expression()
    return dump_expression(node) if node is not None else None


def classify_targeting(targeting: Any) -> str:
    if targeting is None:
        return TARGETING_NONE
    return classify(parse_expression(targeting))


def condition_template(variant_names: list[str]) -> dict[str, Any]:
    first = variant_names[0] if variant_names else "variant-a"
    second = variant_names[1] if len(variant_names) > 1 else (variant_names[0] if variant_names else "variant-b")
    return {"if": [{"==": [{"var": ""}, ""]}, first, second]}


def fractional_template(variant_names: list[str]) -> dict[str, Any]:
    if not variant_names:
        return {"fractional": []}
    share = 100 // len(variant_names)
    return {"fractional": [[name, share] for name in variant_names]}


def to_epoch_seconds(value: datetime | int | float | None) -> int | float | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        moment = value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
        return math.floor(moment.timestamp())
    if not _is_finite_number(value):
        raise ValueError(f"timestamp must be a finite number or datetime, got {value!r}")
    return value


def from_epoch_seconds(value: int | float | None) -> datetime | None:
    if value is None or not _is_finite_number(value):
        return None
    seconds = value / 1000 if value > MILLISECOND_EPOCH_THRESHOLD else value
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def _is_finite_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool) and math.isfinite(value)


def _is_scalar(value: Any) -> bool:
    return value is None or isinstance(value, bool | int | float | str)


def _is_branch(value: Any) -> bool:
    return value is None or isinstance(value, str)


def _scalar_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)
