from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from .document import FLAG_KEY_PATTERN, FlagDocumentError, FlagEntry, describe_flag, from_document
from .editor import FlagEditorEngine, SaveRequest
from .store import KeyValueStore

SCHEMA_URL = "https://flagd.dev/schema/v0/flags.json"
PROJECTS_NAMESPACE = "projects"

logger = logging.getLogger(__name__)


class ProjectNotFoundError(LookupError):
    """Raised when a named flag file does not exist."""


class ProjectExistsError(ValueError):
    """Raised when creating a flag file whose name is already taken."""


class InvalidProjectNameError(ValueError):
    """Raised for empty names or names that look like paths."""


def validate_project_name(name: str) -> str:
    candidate = name.strip() if isinstance(name, str) else ""
    if not candidate:
        raise InvalidProjectNameError("Invalid filename: name is required")
    if ".." in candidate or "/" in candidate or "\\" in candidate:
        raise InvalidProjectNameError("Invalid filename: cannot contain path separators or '..'")
    return candidate


def validate_flags(flags: Any) -> dict[str, Any]:
    if not isinstance(flags, dict):
        raise FlagDocumentError("flags must be an object")
    for key, document in flags.items():
        if not FLAG_KEY_PATTERN.fullmatch(key):
            raise FlagDocumentError(f"flag '{key}': invalid key")
        try:
            from_document(document)
        except FlagDocumentError as exc:
            raise FlagDocumentError(f"flag '{key}': {exc}") from exc
    return flags


def build_project_content(flags: dict[str, Any], metadata: dict[str, Any] | None = None) -> dict[str, Any]:
    content: dict[str, Any] = {"$schema": SCHEMA_URL, "flags": validate_flags(flags)}
    if metadata is not None:
        if not isinstance(metadata, dict):
            raise FlagDocumentError("metadata must be an object")
        content["metadata"] = metadata
    return content


class ProjectStore:
    """Named flag files kept in a key-value store under one namespace."""

    def __init__(self, store: KeyValueStore, namespace: str = PROJECTS_NAMESPACE) -> None:
        self.store = store
        self.namespace = namespace

    def list_projects(self) -> list[str]:
        return self.store.keys(self.namespace)

    def exists(self, name: str) -> bool:
        return self.store.get(self.namespace, validate_project_name(name)) is not None

    def get_project(self, name: str) -> dict[str, Any]:
        name = validate_project_name(name)
        content = self.store.get(self.namespace, name)
        if content is None:
            raise ProjectNotFoundError(f"Flag definition '{name}' not found")
        return content

    def create_project(
        self,
        name: str,
        flags: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        name = validate_project_name(name)
        if self.store.get(self.namespace, name) is not None:
            raise ProjectExistsError(f"Flag definition '{name}' already exists")
        content = build_project_content(flags or {}, metadata)
        self.store.set(self.namespace, name, content)
        logger.info("project_created", extra={"project": name, "flag_count": len(content["flags"])})
        return content

    def import_project(self, name: str, content: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(content, dict):
            raise FlagDocumentError("JSON must be an object")
        return self.create_project(name, content.get("flags") or {}, content.get("metadata"))

    def update_project(
        self,
        name: str,
        flags: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        current = self.get_project(name)
        name = validate_project_name(name)
        if metadata is None:
            metadata = current.get("metadata")
        content = build_project_content(flags, metadata)
        self.store.set(self.namespace, name, content)
        logger.info("project_updated", extra={"project": name, "flag_count": len(content["flags"])})
        return content

    def delete_project(self, name: str) -> None:
        self.get_project(name)
        name = validate_project_name(name)
        self.store.delete(self.namespace, name)
        logger.info("project_deleted", extra={"project": name})

    def flag_entries(self, name: str) -> list[FlagEntry]:
        flags = self.get_project(name).get("flags") or {}
        return [FlagEntry.from_document(key, document) for key, document in flags.items()]

    def existing_keys(self, name: str) -> list[str]:
        return list((self.get_project(name).get("flags") or {}).keys())

    def save_flag(self, name: str, key: str, document: dict[str, Any]) -> dict[str, Any]:
        flags = dict(self.get_project(name).get("flags") or {})
        flags[key] = document
        return self.update_project(name, flags)

    def rename_flag(self, name: str, old_key: str, new_key: str, document: dict[str, Any]) -> dict[str, Any]:
        # the renamed flag keeps its position in the file
        flags: dict[str, Any] = {}
        replaced = False
        for key, value in (self.get_project(name).get("flags") or {}).items():
            if key == old_key:
                flags[new_key] = document
                replaced = True
            elif key != new_key:
                flags[key] = value
        if not replaced:
            flags[new_key] = document
        return self.update_project(name, flags)

    def delete_flag(self, name: str, key: str) -> dict[str, Any]:
        flags = dict(self.get_project(name).get("flags") or {})
        if key not in flags:
            raise ProjectNotFoundError(f"Flag '{key}' not found in '{name}'")
        del flags[key]
        return self.update_project(name, flags)

    def apply_save(self, name: str, request: SaveRequest) -> dict[str, Any]:
        if request.is_rename:
            content = self.rename_flag(name, request.original_key, request.key, request.document)  # type: ignore[arg-type]
        else:
            content = self.save_flag(name, request.key, request.document)
        logger.info(
            "flag_persisted",
            extra={"project": name, "key": request.key, "original_key": request.original_key},
        )
        return content

    def open_editor(self, name: str, key: str | None = None) -> FlagEditorEngine:
        """Start an editor session whose saves are written back to ``name``."""
        flags = self.get_project(name).get("flags") or {}
        if key is not None and key not in flags:
            raise ProjectNotFoundError(f"Flag '{key}' not found in '{name}'")
        flag = FlagEntry.from_document(key, flags[key]) if key is not None else None
        other_keys = [existing for existing in flags if existing != key]
        return FlagEditorEngine(flag, other_keys, on_save=lambda request: self.apply_save(name, request))


def check_project_file(path: str | Path) -> list[dict[str, Any]]:
    """Validate every flag of a flag file on disk.

    Returns one report per flag: ``{"key", "error"}`` plus the flag summary
    for valid flags. A file that cannot be read as a flag file yields a single
    report keyed ``<file>``.
    """
    try:
        content = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        return [{"key": "<file>", "error": str(exc)}]
    flags = content.get("flags") if isinstance(content, dict) else None
    if not isinstance(flags, dict):
        return [{"key": "<file>", "error": "flags must be an object"}]

    reports: list[dict[str, Any]] = []
    for key, document in flags.items():
        if not FLAG_KEY_PATTERN.fullmatch(key):
            reports.append({"key": key, "error": "invalid key"})
            continue
        try:
            summary = describe_flag(document)
        except FlagDocumentError as exc:
            reports.append({"key": key, "error": str(exc)})
            continue
        reports.append({"key": key, "error": None, **summary})
    logger.debug("project_file_checked", extra={"path": str(path), "flag_count": len(reports)})
    return reports
