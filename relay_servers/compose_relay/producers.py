"""Producing contexts: render workers that turn a share request into an image.

A worker reads its request from the settings store, renders it through an
``ArtifactRenderer`` and posts ``artifact-ready`` back to the orchestrator.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Protocol

from .messaging import ARTIFACT_READY
from .payload import ArtifactPayload
from .settings import SettingsStore, pending_request_key

_LOGGER = logging.getLogger("relay.compose.producers")

_FONT_CANDIDATES = (
    "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
    "/usr/share/fonts/TTF/DejaVuSans-Bold.ttf",
    "/Library/Fonts/Arial Bold.ttf",
)


class ArtifactRenderer(Protocol):
    def render(self, request: dict[str, Any]) -> bytes: ...


def _font(size: int) -> Any:
    from PIL import ImageFont

    for path in _FONT_CANDIDATES:
        try:
            return ImageFont.truetype(path, size)
        except OSError:
            continue
    return ImageFont.load_default()


def _progress_ratio(request: dict[str, Any]) -> float | None:
    raw = request.get("progress")
    if raw is None and request.get("total"):
        try:
            raw = 100.0 * float(request.get("current") or 0) / float(request["total"])
        except (TypeError, ValueError, ZeroDivisionError):
            raw = None
    if raw is None:
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return max(0.0, min(value, 100.0)) / 100.0


class CardRenderer:
    """PNG share card: title, subtitle and an optional progress bar."""

    def __init__(self, width: int = 1200, height: int = 675, *, background: str = "#1d4ed8", accent: str = "#06b6d4"):
        self.width = int(width)
        self.height = int(height)
        self.background = background
        self.accent = accent

    def render(self, request: dict[str, Any]) -> bytes:
        from PIL import Image, ImageDraw

        title = str(request.get("title") or "Untitled")
        subtitle = str(request.get("subtitle") or request.get("author") or "")
        ratio = _progress_ratio(request)

        img = Image.new("RGB", (self.width, self.height), self.background)
        draw = ImageDraw.Draw(img)
        pad = self.width // 15

        draw.rectangle([0, self.height - 24, self.width, self.height], fill=self.accent)

        title_font = _font(64)
        y = pad
        for line in _wrap(draw, title, title_font, self.width - 2 * pad)[:3]:
            draw.text((pad, y), line, fill="white", font=title_font)
            bbox = draw.textbbox((0, 0), line, font=title_font)
            y += (bbox[3] - bbox[1]) + 16

        if subtitle:
            sub_font = _font(36)
            draw.text((pad, y + 12), subtitle, fill="#dbeafe", font=sub_font)

        if ratio is not None:
            bar_top = self.height - pad - 48
            bar_w = self.width - 2 * pad
            draw.rounded_rectangle([pad, bar_top, pad + bar_w, bar_top + 32], radius=16, fill="#1e3a8a")
            if ratio > 0:
                draw.rounded_rectangle(
                    [pad, bar_top, pad + max(32, int(bar_w * ratio)), bar_top + 32], radius=16, fill=self.accent
                )
            label = f"{round(ratio * 100)}%"
            draw.text((pad, bar_top - 52), label, fill="white", font=_font(40))

        buffer = BytesIO()
        img.save(buffer, format="PNG")
        return buffer.getvalue()


def _wrap(draw: Any, text: str, font: Any, max_width: int) -> list[str]:
    words = text.split()
    lines: list[str] = []
    current = ""
    for word in words:
        candidate = f"{current} {word}".strip()
        bbox = draw.textbbox((0, 0), candidate, font=font)
        if current and bbox[2] - bbox[0] > max_width:
            lines.append(current)
            current = word
        else:
            current = candidate
    if current:
        lines.append(current)
    return lines or [text]


@dataclass
class ProducerHandle:
    producer_id: str
    destination_id: str
    future: Future | None = None
    cancelled: bool = False


ArtifactSink = Callable[[dict[str, Any]], dict[str, Any]]


class ProducerPool:
    """Worker pool standing in for producing contexts; ids are stable ``producer-N`` strings."""

    def __init__(
        self,
        settings: SettingsStore,
        renderer: ArtifactRenderer | None = None,
        *,
        max_workers: int = 2,
        sink: ArtifactSink | None = None,
    ) -> None:
        self.settings = settings
        self.renderer: ArtifactRenderer = renderer or CardRenderer()
        self.sink = sink
        self._executor = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="relay-producer")
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._handles: dict[str, ProducerHandle] = {}

    def reserve(self, destination_id: str) -> str:
        with self._lock:
            producer_id = f"producer-{next(self._ids)}"
            self._handles[producer_id] = ProducerHandle(producer_id=producer_id, destination_id=destination_id)
        return producer_id

    def launch(self, producer_id: str) -> Future:
        with self._lock:
            handle = self._handles.get(producer_id)
            if handle is None:
                raise KeyError(f"unknown producer {producer_id}")
            handle.future = self._executor.submit(self._work, handle)
            fut = handle.future
        fut.add_done_callback(lambda f, pid=producer_id: self._report(pid, f))
        return fut

    def _report(self, producer_id: str, fut: Future) -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            _LOGGER.error("%s failed: %s", producer_id, exc)

    def is_alive(self, producer_id: str) -> bool:
        with self._lock:
            handle = self._handles.get(producer_id)
        return handle is not None and not handle.cancelled

    def _work(self, handle: ProducerHandle) -> dict[str, Any]:
        key = pending_request_key(handle.destination_id)
        request = self.settings.get(key)
        if not isinstance(request, dict):
            raise LookupError(f"no pending request stored under {key}")

        image = self.renderer.render(request)
        artifact = ArtifactPayload.from_bytes(image, mime=str(request.get("mime") or "image/png"))
        if handle.cancelled:
            _LOGGER.info("%s cancelled before hand-off", handle.producer_id)
            return {"ok": False, "cancelled": True}

        sink = self.sink
        if sink is None:
            raise RuntimeError("producer pool has no artifact sink")
        _LOGGER.info("%s rendered %s for %s", handle.producer_id, artifact.describe(), handle.destination_id)
        return sink(
            {
                "type": ARTIFACT_READY,
                "payloadRef": artifact.data_url,
                "producingContextId": handle.producer_id,
            }
        )

    def cleanup(self, producer_id: str) -> bool:
        with self._lock:
            handle = self._handles.pop(producer_id, None)
        if handle is None:
            return False
        handle.cancelled = True
        if handle.future is not None:
            handle.future.cancel()
        self.settings.delete(pending_request_key(handle.destination_id))
        return True

    def active(self) -> list[str]:
        with self._lock:
            return sorted(self._handles)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


__all__ = ["ArtifactRenderer", "ArtifactSink", "CardRenderer", "ProducerHandle", "ProducerPool"]
