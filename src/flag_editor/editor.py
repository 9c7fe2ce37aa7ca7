from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Literal

from .db import json_dumps
from .document import (
    FLAG_KEY_PATTERN,
    FLAG_STATES,
    INVALID_JSON_MESSAGE,
    METADATA_TYPES,
    METADATA_VALUE_MESSAGE,
    FlagDefinition,
    FlagDocumentError,
    FlagEntry,
    MetadataRow,
    MetadataValue,
    default_metadata_value,
    dump_document_text,
    is_metadata_value,
    metadata_to_rows,
    normalize_metadata_value,
    parse_document_text,
    rows_to_metadata,
    to_document,
)
from .targeting import (
    SIMPLE_OPERATORS,
    Expression,
    SimpleRule,
    build_time_window,
    condition_template,
    dump_expression,
    fractional_template,
    from_epoch_seconds,
    is_empty_targeting,
    match_simple_rule,
    match_time_window,
    parse_expression,
    to_epoch_seconds,
)
from .variants import (
    EASY_FLAG_TYPES,
    FlagType,
    VariantRow,
    VariantSet,
    coerce_value,
    default_value_for_type,
    validate_flag_type,
)

EditorMode = Literal["easy", "advanced", "json"]
TargetingMode = Literal["none", "simple", "json"]

EDITOR_MODES: tuple[EditorMode, ...] = ("easy", "advanced", "json")
TARGETING_MODES: tuple[TargetingMode, ...] = ("none", "simple", "json")
FORMAT_ERROR_MESSAGE = "Cannot format: invalid JSON"
TARGETING_NOT_OBJECT_MESSAGE = "Targeting must be an object"

KEY_REQUIRED = "required"
KEY_PATTERN_MISMATCH = "pattern"
KEY_DUPLICATE = "duplicate"

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class SaveRequest:
    key: str
    document: dict[str, Any]
    original_key: str | None = None

    @property
    def is_rename(self) -> bool:
        return self.original_key is not None and self.original_key != self.key


class TargetingEditor:
    """Targeting sub-editor with ``none``, ``simple`` and ``json`` views.

    Edits are reported through ``on_change``; the owning engine calls
    :meth:`load` whenever it replaces the targeting itself.
    """

    def __init__(self, on_change: Callable[[Expression | None], None]) -> None:
        self._on_change = on_change
        self._targeting: Expression | None = None
        self.mode: TargetingMode = "none"
        self.raw_json = ""
        self.json_error: str | None = None
        self._reset_simple_fields()

    def load(self, targeting: Expression | None) -> None:
        self._targeting = targeting
        self.json_error = None
        if is_empty_targeting(targeting):
            self.mode = "none"
            self.raw_json = ""
            self._reset_simple_fields()
            return
        self.raw_json = dump_document_text(dump_expression(targeting))  # type: ignore[arg-type]
        rule = match_simple_rule(targeting)
        if rule is None:
            self.mode = "json"
            return
        self.mode = "simple"
        self.property_name = rule.property_name
        self.operator = rule.operator
        self.comparison_value = rule.value_text
        self.then_variant = rule.then_variant or ""
        self.else_variant = rule.else_variant or ""

    def set_mode(self, mode: TargetingMode, variant_names: list[str]) -> None:
        if mode not in TARGETING_MODES:
            raise ValueError(f"unknown targeting mode: {mode}")
        if mode == self.mode:
            return
        if mode == "none":
            self._emit(None)
        elif mode == "simple":
            self._reset_simple_fields()
            if variant_names:
                self.then_variant = variant_names[0]
                self.else_variant = variant_names[1] if len(variant_names) > 1 else variant_names[0]
            self._emit_simple_rule()
        else:
            current = self._targeting
            self.raw_json = "{}" if is_empty_targeting(current) else dump_document_text(dump_expression(current))  # type: ignore[arg-type]
            self.json_error = None
        self.mode = mode

    def update_simple(
        self,
        property_name: str | None = None,
        operator: str | None = None,
        comparison_value: str | None = None,
        then_variant: str | None = None,
        else_variant: str | None = None,
    ) -> None:
        if operator is not None and operator not in SIMPLE_OPERATORS:
            raise ValueError(f"unsupported comparison operator: {operator}")
        if property_name is not None:
            self.property_name = property_name
        if operator is not None:
            self.operator = operator
        if comparison_value is not None:
            self.comparison_value = comparison_value
        if then_variant is not None:
            self.then_variant = then_variant
        if else_variant is not None:
            self.else_variant = else_variant
        self._emit_simple_rule()

    def set_json_text(self, text: str) -> None:
        self.raw_json = text
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            self.json_error = INVALID_JSON_MESSAGE
            return
        if not isinstance(parsed, dict):
            self.json_error = TARGETING_NOT_OBJECT_MESSAGE
            return
        self.json_error = None
        self._emit(parse_expression(parsed) if parsed else None)

    def insert_template(self, kind: str, variant_names: list[str]) -> None:
        if kind == "condition":
            template = condition_template(variant_names)
        elif kind == "fractional":
            template = fractional_template(variant_names)
        else:
            raise ValueError(f"unknown targeting template: {kind}")
        self.mode = "json"
        self.set_json_text(dump_document_text(template))

    def clear(self) -> None:
        self.set_json_text("{}")

    def _reset_simple_fields(self) -> None:
        self.property_name = ""
        self.operator = "=="
        self.comparison_value = ""
        self.then_variant = ""
        self.else_variant = ""

    def _emit_simple_rule(self) -> None:
        rule = SimpleRule.from_text(
            self.property_name,
            self.operator,
            self.comparison_value,
            self.then_variant,
            self.else_variant,
        )
        self._emit(rule.to_expression())

    def _emit(self, targeting: Expression | None) -> None:
        self._targeting = targeting
        self._on_change(targeting)


class MetadataEditor:
    def __init__(self, on_change: Callable[[dict[str, MetadataValue] | None], None]) -> None:
        self._on_change = on_change
        self.rows: list[MetadataRow] = []

    def load(self, metadata: dict[str, Any] | None) -> None:
        self.rows = metadata_to_rows(metadata)

    def add_row(self) -> int:
        self.rows.append(MetadataRow(key="", type="string", value=""))
        self._emit()
        return len(self.rows) - 1

    def remove_row(self, index: int) -> None:
        del self.rows[index]
        self._emit()

    def set_key(self, index: int, key: str) -> None:
        self.rows[index].key = key
        self._emit()

    def set_type(self, index: int, value_type: str) -> None:
        if value_type not in METADATA_TYPES:
            raise ValueError(f"unsupported metadata type: {value_type}")
        row = self.rows[index]
        row.type = value_type  # type: ignore[assignment]
        row.value = default_metadata_value(row.type)
        self._emit()

    def set_value(self, index: int, value: Any) -> None:
        row = self.rows[index]
        row.value = normalize_metadata_value(value, row.type)
        self._emit()

    def _emit(self) -> None:
        self._on_change(rows_to_metadata(self.rows))


class FlagEditorEngine:
    """Single-session editor that keeps one flag consistent across three views.

    ``easy`` edits an on/off flag with an optional time window, ``advanced``
    edits variant rows and targeting directly and ``json`` edits the raw flag
    document. Mode switches project state between the views; :meth:`save`
    returns the validated document and hands it to ``on_save``.
    """

    def __init__(
        self,
        flag: FlagEntry | None = None,
        existing_keys: Iterable[str] = (),
        on_save: Callable[[SaveRequest], None] | None = None,
        on_cancel: Callable[[], None] | None = None,
    ) -> None:
        self._on_save = on_save
        self._on_cancel = on_cancel
        self.targeting_editor = TargetingEditor(self._targeting_edited)
        self.metadata_editor = MetadataEditor(self._metadata_edited)
        self.load_flag(flag, existing_keys)

    # --- Loading ---

    def load_flag(self, flag: FlagEntry | None, existing_keys: Iterable[str] = ()) -> None:
        definition = flag.definition if flag is not None else None
        flag_type: FlagType = definition.flag_type if definition is not None else "boolean"
        variants = definition.variants.copy() if definition is not None else VariantSet.for_type(flag_type)

        self.original_key: str | None = flag.key if flag is not None else None
        self.existing_keys: set[str] = {str(key) for key in existing_keys}
        self.key = flag.key if flag is not None else ""
        self.state = definition.state if definition is not None else "ENABLED"
        self.flag_type = flag_type
        self.variants = variants
        self.default_variant = definition.default_variant if definition is not None else "on"
        self.targeting: Expression | None = definition.targeting if definition is not None else None
        self.metadata: dict[str, MetadataValue] | None = (
            dict(definition.metadata) if definition is not None and definition.metadata else None
        )

        self.easy_type: FlagType = flag_type if flag_type in EASY_FLAG_TYPES else "boolean"
        self.easy_on_value = self._variant_text("on") if flag_type == "string" else ""
        self.easy_off_value = self._variant_text("off") if flag_type == "string" else ""
        window = match_time_window(self.targeting)
        self.easy_start: int | float | None = window.start if window is not None else None
        self.easy_end: int | float | None = window.end if window is not None else None

        if definition is None or self.easy_mode_available():
            self.mode: EditorMode = "easy"
        else:
            self.mode = "advanced"

        self.closed = False
        self.json_error: str | None = None
        self.targeting_editor.load(self.targeting)
        self.metadata_editor.load(self.metadata)
        self._sync_to_json()
        self._initial_snapshot = self.snapshot()
        logger.debug(
            "flag_loaded",
            extra={"key": self.original_key, "flag_type": self.flag_type, "mode": self.mode},
        )

    @property
    def is_editing(self) -> bool:
        return self.original_key is not None

    @property
    def variant_names(self) -> list[str]:
        return self.variants.names()

    # --- Mode transitions ---

    def easy_mode_available(self) -> bool:
        if self.flag_type not in EASY_FLAG_TYPES:
            return False
        if not is_empty_targeting(self.targeting) and match_time_window(self.targeting) is None:
            return False
        return self.variants.is_canonical_pair(self.flag_type)

    def set_mode(self, mode: EditorMode) -> bool:
        if mode not in EDITOR_MODES:
            raise ValueError(f"unknown editor mode: {mode}")
        previous = self.mode
        if mode == previous:
            return True

        if previous == "json" and not self._apply_json_to_model():
            logger.info(
                "mode_switch_refused",
                extra={"from_mode": previous, "to_mode": mode, "reason": self.json_error},
            )
            return False

        if mode == "easy":
            if not self.easy_mode_available():
                logger.info(
                    "mode_switch_refused",
                    extra={"from_mode": previous, "to_mode": mode, "reason": "easy_mode_unavailable"},
                )
                return False
            self._sync_advanced_to_easy()
        elif previous == "easy":
            self._sync_easy_to_advanced()

        if mode == "json":
            self._sync_to_json()

        self.mode = mode
        logger.debug("mode_switched", extra={"from_mode": previous, "to_mode": mode})
        return True

    # --- Shared fields ---

    def set_key(self, key: str) -> None:
        self.key = key

    def set_state(self, state: str) -> None:
        if state not in FLAG_STATES:
            raise ValueError(f"unsupported flag state: {state}")
        self.state = state
        if self.mode == "json":
            self._sync_json_state(state)

    def toggle_state(self) -> None:
        self.set_state("DISABLED" if self.state == "ENABLED" else "ENABLED")

    # --- Easy mode ---

    def set_easy_type(self, easy_type: str) -> None:
        if easy_type not in EASY_FLAG_TYPES:
            raise ValueError(f"easy mode supports boolean and string flags, got {easy_type}")
        self.easy_type = easy_type  # type: ignore[assignment]
        self.flag_type = self.easy_type
        if easy_type == "boolean":
            self.variants = VariantSet.for_type("boolean")
        else:
            self.easy_on_value = ""
            self.easy_off_value = ""
            self.variants = VariantSet([VariantRow("on", ""), VariantRow("off", "")])
        self.default_variant = "on"

    def set_easy_string_values(self, on_value: str | None = None, off_value: str | None = None) -> None:
        if on_value is not None:
            self.easy_on_value = on_value
        if off_value is not None:
            self.easy_off_value = off_value
        self.variants = VariantSet([VariantRow("on", self.easy_on_value), VariantRow("off", self.easy_off_value)])

    def set_easy_default(self, name: str) -> None:
        self.default_variant = name

    def set_time_window(
        self,
        start: datetime | int | float | None = None,
        end: datetime | int | float | None = None,
    ) -> None:
        self.easy_start = to_epoch_seconds(start)
        self.easy_end = to_epoch_seconds(end)

    def reset_time_window(self) -> None:
        self.easy_start = None
        self.easy_end = None

    @property
    def easy_start_datetime(self) -> datetime | None:
        return from_epoch_seconds(self.easy_start)

    @property
    def easy_end_datetime(self) -> datetime | None:
        return from_epoch_seconds(self.easy_end)

    # --- Advanced mode ---

    def set_flag_type(self, flag_type: str) -> None:
        self.flag_type = validate_flag_type(flag_type)
        self.variants = VariantSet.for_type(self.flag_type)
        self._repair_default()

    def add_variant(self) -> int:
        return self.variants.add(default_value_for_type(self.flag_type))

    def remove_variant(self, index: int) -> None:
        self.variants.remove(index)
        self._repair_default()

    def rename_variant(self, index: int, name: str) -> None:
        self.variants.rename(index, name)
        self._repair_default()

    def set_variant_value(self, index: int, value: Any) -> None:
        previous = self.variants.rows[index].value
        self.variants.set_value(index, coerce_value(self.flag_type, value, previous))

    def replace_variants(self, rows: Iterable[VariantRow]) -> None:
        self.variants.replace_all(rows)
        self._repair_default()

    def set_default_variant(self, name: str) -> None:
        self.default_variant = name

    def set_targeting(self, targeting: dict[str, Any] | None) -> None:
        if targeting is not None and not isinstance(targeting, dict):
            raise ValueError(TARGETING_NOT_OBJECT_MESSAGE)
        self._replace_targeting(parse_expression(targeting) if targeting else None)

    def set_metadata(self, metadata: dict[str, Any] | None) -> None:
        if metadata and not all(is_metadata_value(value) for value in metadata.values()):
            raise FlagDocumentError(METADATA_VALUE_MESSAGE)
        self.metadata = rows_to_metadata(metadata_to_rows(metadata))
        self.metadata_editor.load(self.metadata)

    # --- JSON mode ---

    def set_json_text(self, text: str) -> None:
        self.raw_json = text
        try:
            json.loads(text)
        except json.JSONDecodeError:
            self.json_error = INVALID_JSON_MESSAGE
            return
        self.json_error = None

    def format_json(self) -> None:
        try:
            parsed = json.loads(self.raw_json)
        except json.JSONDecodeError:
            self.json_error = FORMAT_ERROR_MESSAGE
            return
        self.raw_json = dump_document_text(parsed)
        self.json_error = None

    # --- Validation ---

    def key_error(self) -> str | None:
        if not self.key:
            return KEY_REQUIRED
        if not FLAG_KEY_PATTERN.fullmatch(self.key):
            return KEY_PATTERN_MISMATCH
        if self.key_already_exists():
            return KEY_DUPLICATE
        return None

    def key_already_exists(self) -> bool:
        key = self.key.strip()
        if not key:
            return False
        if self.original_key is not None and self.original_key == key:
            return False
        return key in self.existing_keys

    def is_current_mode_valid(self) -> bool:
        if self.key_error() is not None:
            return False
        if self.mode == "json":
            return True
        # easy saves project the default onto the on/off pair
        if self.mode == "advanced" and self.default_variant and self.default_variant not in self.variant_names:
            return False
        if self.mode == "easy" and self.easy_type == "string":
            return bool(self.easy_on_value.strip())
        return True

    def has_changes(self) -> bool:
        return self.snapshot() != self._initial_snapshot

    def can_save(self) -> bool:
        if self.closed:
            return False
        if not self.is_current_mode_valid():
            return False
        if not self.has_changes():
            return False
        if self.mode == "json":
            return self._is_json_save_valid()
        return len(self.variant_names) > 0

    def snapshot(self) -> str:
        return json_dumps(
            {
                "key": self.key.strip(),
                "state": self.state,
                "flagType": self.flag_type,
                "defaultVariant": self.default_variant,
                "easyType": self.easy_type,
                "easyOnValue": self.easy_on_value,
                "easyOffValue": self.easy_off_value,
                "easyStart": self.easy_start,
                "easyEnd": self.easy_end,
                "variants": self.variants.to_rows(),
                "targeting": None if self.targeting is None else dump_expression(self.targeting),
                "metadata": self.metadata,
                "rawJson": self.raw_json.strip(),
            }
        )

    # --- Save / cancel ---

    def to_definition(self) -> FlagDefinition:
        return FlagDefinition(
            state=self.state,
            variants=self.variants.copy(),
            default_variant=self.default_variant,
            targeting=self.targeting,
            metadata=dict(self.metadata) if self.metadata else None,
        )

    def save(self) -> SaveRequest | None:
        if self.closed:
            logger.info("save_refused", extra={"key": self.key, "reason": "session_closed"})
            return None
        if not self.has_changes():
            logger.debug("save_skipped", extra={"key": self.key, "reason": "no_changes"})
            return None
        if self.mode == "json":
            return self._save_from_json()

        if self.mode == "easy":
            self._sync_easy_to_advanced()
        if not self.is_current_mode_valid():
            logger.info("save_refused", extra={"key": self.key, "reason": self.key_error() or "invalid_fields"})
            return None
        try:
            document = to_document(self.to_definition())
        except FlagDocumentError as exc:
            logger.info("save_refused", extra={"key": self.key, "reason": str(exc)})
            return None
        return self._emit_save(document)

    def cancel(self) -> None:
        self.closed = True
        logger.debug("editor_cancelled", extra={"key": self.original_key})
        if self._on_cancel is not None:
            self._on_cancel()

    def _save_from_json(self) -> SaveRequest | None:
        if self.key_error() is not None:
            logger.info("save_refused", extra={"key": self.key, "reason": self.key_error()})
            return None
        try:
            document = self._json_document()
        except FlagDocumentError as exc:
            self.json_error = str(exc)
            logger.info("save_refused", extra={"key": self.key, "reason": self.json_error})
            return None
        return self._emit_save(document)

    def _emit_save(self, document: dict[str, Any]) -> SaveRequest:
        request = SaveRequest(key=self.key.strip(), document=document, original_key=self.original_key)
        logger.info(
            "flag_saved",
            extra={"key": request.key, "original_key": request.original_key, "mode": self.mode},
        )
        if self._on_save is not None:
            self._on_save(request)
        return request

    # --- Projections ---

    def _sync_easy_to_advanced(self) -> None:
        self.flag_type = self.easy_type
        if self.easy_type == "boolean":
            self.variants = VariantSet.for_type("boolean")
        else:
            self.variants = VariantSet([VariantRow("on", self.easy_on_value), VariantRow("off", self.easy_off_value)])
        if self.default_variant not in ("on", "off"):
            self.default_variant = "on"
        self._replace_targeting(build_time_window(self.easy_start, self.easy_end))

    def _sync_advanced_to_easy(self) -> None:
        self.easy_type = "string" if self.flag_type == "string" else "boolean"
        if self.easy_type == "string":
            on_row = self.variants.find("on")
            off_row = self.variants.find("off")
            source = on_row if on_row is not None else next(iter(self.variants), None)
            if source is not None:
                self.easy_on_value = _as_text(source.value)
            self.easy_off_value = _as_text(off_row.value) if off_row is not None else ""
        if self.default_variant not in ("on", "off"):
            self.default_variant = "on"
        window = match_time_window(self.targeting)
        self.easy_start = window.start if window is not None else None
        self.easy_end = window.end if window is not None else None

    def _sync_to_json(self) -> None:
        self.raw_json = dump_document_text(to_document(self.to_definition(), strict=False))
        self.json_error = None

    def _apply_json_to_model(self) -> bool:
        try:
            definition = parse_document_text(self.raw_json)
        except FlagDocumentError as exc:
            self.json_error = str(exc)
            return False
        self.state = definition.state
        self.variants = definition.variants
        self.flag_type = definition.flag_type
        self.easy_type = self.flag_type if self.flag_type in EASY_FLAG_TYPES else "boolean"
        self.default_variant = definition.default_variant
        self._replace_targeting(definition.targeting)
        self.metadata = definition.metadata
        self.metadata_editor.load(self.metadata)
        self.json_error = None
        return True

    def _sync_json_state(self, state: str) -> None:
        raw = self.raw_json.strip()
        if not raw:
            return
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            self.json_error = INVALID_JSON_MESSAGE
            return
        if not isinstance(parsed, dict):
            return
        parsed["state"] = state
        self.raw_json = dump_document_text(parsed)
        self.json_error = None

    def _json_document(self) -> dict[str, Any]:
        return to_document(parse_document_text(self.raw_json))

    def _is_json_save_valid(self) -> bool:
        if not self.raw_json.strip():
            return False
        try:
            self._json_document()
        except FlagDocumentError:
            return False
        return True

    def _replace_targeting(self, targeting: Expression | None) -> None:
        self.targeting = targeting
        self.targeting_editor.load(targeting)

    def _repair_default(self) -> None:
        self.default_variant = self.variants.repair_default(self.default_variant)

    def _variant_text(self, name: str) -> str:
        row = self.variants.find(name)
        return _as_text(row.value) if row is not None else ""

    # --- Sub-editor callbacks ---

    def _targeting_edited(self, targeting: Expression | None) -> None:
        self.targeting = targeting

    def _metadata_edited(self, metadata: dict[str, MetadataValue] | None) -> None:
        self.metadata = metadata


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value)
