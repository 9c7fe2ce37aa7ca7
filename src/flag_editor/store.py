from __future__ import annotations

import json
from contextlib import closing
from pathlib import Path
from typing import Any, Protocol

from .db import connect, init_db


class KeyValueStore(Protocol):
    def get(self, namespace: str, key: str) -> Any | None: ...

    def set(self, namespace: str, key: str, value: Any) -> None: ...

    def delete(self, namespace: str, key: str) -> None: ...

    def keys(self, namespace: str) -> list[str]: ...


class MemoryKeyValueStore:
    """Process-local store; values are kept as JSON text so callers never share references."""

    def __init__(self) -> None:
        self._entries: dict[str, dict[str, str]] = {}

    def get(self, namespace: str, key: str) -> Any | None:
        raw = self._entries.get(namespace, {}).get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, namespace: str, key: str, value: Any) -> None:
        self._entries.setdefault(namespace, {})[key] = json.dumps(value)

    def delete(self, namespace: str, key: str) -> None:
        self._entries.get(namespace, {}).pop(key, None)

    def keys(self, namespace: str) -> list[str]:
        return sorted(self._entries.get(namespace, {}))


class SqliteKeyValueStore:
    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        init_db(self.db_path)

    def get(self, namespace: str, key: str) -> Any | None:
        with closing(connect(self.db_path)) as conn:
            row = conn.execute(
                "SELECT value FROM kv_entries WHERE namespace = ? AND key = ?",
                (namespace, key),
            ).fetchone()
        return json.loads(row["value"]) if row else None

    def set(self, namespace: str, key: str, value: Any) -> None:
        with closing(connect(self.db_path)) as conn, conn:
            conn.execute(
                """
                INSERT INTO kv_entries(namespace, key, value)
                VALUES (?, ?, ?)
                ON CONFLICT(namespace, key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (namespace, key, json.dumps(value)),
            )

    def delete(self, namespace: str, key: str) -> None:
        with closing(connect(self.db_path)) as conn, conn:
            conn.execute("DELETE FROM kv_entries WHERE namespace = ? AND key = ?", (namespace, key))

    def keys(self, namespace: str) -> list[str]:
        with closing(connect(self.db_path)) as conn:
            rows = conn.execute(
                "SELECT key FROM kv_entries WHERE namespace = ? ORDER BY key",
                (namespace,),
            ).fetchall()
        return [row["key"] for row in rows]
