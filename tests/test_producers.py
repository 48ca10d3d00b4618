from __future__ import annotations

import threading
from io import BytesIO

import pytest


def test_card_renderer_outputs_png() -> None:
    from PIL import Image

    from relay_servers.compose_relay.producers import CardRenderer

    data = CardRenderer(width=600, height=338).render(
        {"title": "Reading streak: a very long title that must wrap onto more lines", "current": 3, "total": 4}
    )
    assert data.startswith(b"\x89PNG")
    img = Image.open(BytesIO(data))
    assert img.size == (600, 338)


def test_progress_ratio_sources() -> None:
    from relay_servers.compose_relay.producers import _progress_ratio

    assert _progress_ratio({"progress": 40}) == pytest.approx(0.4)
    assert _progress_ratio({"progress": 250}) == 1.0
    assert _progress_ratio({"current": 1, "total": 4}) == pytest.approx(0.25)
    assert _progress_ratio({"current": 1, "total": 0}) is None
    assert _progress_ratio({"progress": "n/a"}) is None
    assert _progress_ratio({}) is None


def test_pool_renders_stored_request_and_posts_artifact() -> None:
    from relay_servers.compose_relay.producers import ProducerPool
    from relay_servers.compose_relay.settings import MemorySettingsStore, pending_request_key

    from conftest import PNG_BYTES, PNG_DATA_URL

    class Renderer:
        def __init__(self) -> None:
            self.seen: list[dict] = []

        def render(self, request: dict) -> bytes:
            self.seen.append(request)
            return PNG_BYTES

    messages: list[dict] = []
    done = threading.Event()

    def sink(message: dict) -> dict:
        messages.append(message)
        done.set()
        return {"ok": True}

    settings = MemorySettingsStore({pending_request_key("tab-1"): {"title": "t"}})
    renderer = Renderer()
    pool = ProducerPool(settings, renderer, sink=sink)
    try:
        pid = pool.reserve("tab-1")
        assert pool.is_alive(pid)
        assert pool.launch(pid).result(timeout=5.0) == {"ok": True}
        assert done.wait(1.0)
    finally:
        pool.close()

    assert renderer.seen == [{"title": "t"}]
    assert messages == [{"type": "artifact-ready", "payloadRef": PNG_DATA_URL, "producingContextId": pid}]


def test_pool_without_request_fails_the_worker() -> None:
    from relay_servers.compose_relay.producers import ProducerPool
    from relay_servers.compose_relay.settings import MemorySettingsStore

    pool = ProducerPool(MemorySettingsStore(), sink=lambda m: {"ok": True})
    try:
        fut = pool.launch(pool.reserve("tab-1"))
        with pytest.raises(LookupError):
            fut.result(timeout=5.0)
    finally:
        pool.close()


def test_cleanup_drops_handle_and_request() -> None:
    from relay_servers.compose_relay.producers import ProducerPool
    from relay_servers.compose_relay.settings import MemorySettingsStore, pending_request_key

    settings = MemorySettingsStore({pending_request_key("tab-1"): {"title": "t"}})
    pool = ProducerPool(settings)
    try:
        pid = pool.reserve("tab-1")
        assert pool.active() == [pid]
        assert pool.cleanup(pid) is True
        assert pool.cleanup(pid) is False
        assert not pool.is_alive(pid)
        assert settings.keys() == []
        with pytest.raises(KeyError):
            pool.launch(pid)
    finally:
        pool.close()
