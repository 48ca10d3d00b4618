from __future__ import annotations

import json
import os
from pathlib import Path


def test_pending_request_key() -> None:
    from relay_servers.compose_relay.settings import pending_request_key

    assert pending_request_key("tab-7") == "pendingArtifactRequest:tab-7"


def test_memory_store_roundtrip() -> None:
    from relay_servers.compose_relay.settings import MemorySettingsStore

    store = MemorySettingsStore({"a": 1})
    store.set("b", {"title": "t"})
    assert store.get("b") == {"title": "t"}
    store.delete("a")
    store.delete("missing")
    assert store.keys() == ["b"]
    assert store.get("a", "dflt") == "dflt"


def test_json_store_persists_atomically(tmp_path: Path) -> None:
    from relay_servers.compose_relay.settings import JsonSettingsStore

    path = tmp_path / "data" / "settings.json"
    store = JsonSettingsStore(path)
    store.set("pendingArtifactRequest:tab-1", {"title": "t"})
    store.set("other", 2)

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw["version"] == 1
    assert raw["items"]["pendingArtifactRequest:tab-1"] == {"title": "t"}
    assert path.with_suffix(".json.bak").exists()
    assert not path.with_suffix(".json.tmp").exists()
    if os.name == "posix":
        assert path.stat().st_mode & 0o777 == 0o600

    reloaded = JsonSettingsStore(path)
    assert reloaded.get("other") == 2
    reloaded.delete("other")
    assert JsonSettingsStore(path).keys() == ["pendingArtifactRequest:tab-1"]


def test_json_store_ignores_corrupt_file(tmp_path: Path) -> None:
    from relay_servers.compose_relay.settings import JsonSettingsStore

    path = tmp_path / "settings.json"
    path.write_text("{not json", encoding="utf-8")
    store = JsonSettingsStore(path)
    assert store.keys() == []
    store.set("k", "v")
    assert JsonSettingsStore(path).get("k") == "v"
