"""Settings storage: where a share's render request waits for its producer.

``JsonSettingsStore`` persists to a small JSON file under ``data/`` with atomic
writes (temp file then replace), a ``.bak`` copy of the previous snapshot and
0600 permissions. Corrupt files are ignored on load.
"""

from __future__ import annotations

import json
import os
import shutil
import threading
import time
from contextlib import suppress
from pathlib import Path
from typing import Any, Protocol


class SettingsStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


def pending_request_key(destination_id: str) -> str:
    return f"pendingArtifactRequest:{destination_id}"


class MemorySettingsStore:
    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._items: dict[str, Any] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._items.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._items[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._items)


class JsonSettingsStore:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()
        self._items: dict[str, Any] = self._load()

    def _load(self) -> dict[str, Any]:
        p = self.path
        try:
            if not p.exists() or not p.is_file():
                return {}
            obj = json.loads(p.read_text(encoding="utf-8", errors="replace"))
        except (OSError, ValueError):
            return {}
        if not isinstance(obj, dict):
            return {}
        items = obj.get("items")
        return dict(items) if isinstance(items, dict) else {}

    def _save(self) -> None:
        p = self.path
        p.parent.mkdir(parents=True, exist_ok=True)
        payload = {"version": 1, "updatedAt": int(time.time() * 1000), "items": self._items}
        text = json.dumps(payload, ensure_ascii=True, indent=2, sort_keys=True)

        tmp = p.with_suffix(p.suffix + ".tmp")
        bak = p.with_suffix(p.suffix + ".bak")

        if p.exists() and p.is_file():
            # Backup is best-effort.
            with suppress(OSError):
                shutil.copyfile(p, bak)

        tmp.write_text(text, encoding="utf-8")
        with suppress(Exception):
            os.chmod(tmp, 0o600)
        tmp.replace(p)
        with suppress(Exception):
            os.chmod(p, 0o600)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._items.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._items[key] = value
            self._save()

    def delete(self, key: str) -> None:
        with self._lock:
            if key in self._items:
                del self._items[key]
                self._save()

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._items)


__all__ = ["JsonSettingsStore", "MemorySettingsStore", "SettingsStore", "pending_request_key"]
