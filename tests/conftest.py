from __future__ import annotations

import base64
import itertools
import queue
from dataclasses import dataclass, field
from typing import Any

import pytest

# 1x1 transparent PNG.
PNG_BYTES = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)
PNG_DATA_URL = "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode("ascii")


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class FakeAgent:
    """In-Python stand-in for the in-page automation agent."""

    file_input: bool = True
    drop_targets: set[str] = field(default_factory=set)
    paste_targets: set[str] = field(default_factory=set)
    hidden_input_ok: bool = False
    notify_ok: bool = True

    in_progress: bool = False
    completed: bool = False
    pending: str | None = None
    input_files: list[str] = field(default_factory=list)
    overlays_shown: int = 0
    overlay_active: bool = False
    watching: dict[str, Any] | None = None
    calls: list[dict[str, Any]] = field(default_factory=list)

    def steps(self, name: str) -> list[dict[str, Any]]:
        return [c for c in self.calls if c.get("type") == "attach-step" and c.get("step") == name]

    def handle(self, msg: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(dict(msg))
        kind = msg.get("type")
        if kind == "readiness-ping":
            return {"acknowledged": True, "locationInfo": {"href": "https://x.com/compose/post", "readyState": "complete"}, "timestamp": 1}
        if kind == "attach-payload":
            if self.completed:
                return {"ok": True, "alreadyCompleted": True}
            if self.in_progress:
                return {"ok": False, "busy": True, "error": "attachment already in progress"}
            ref = msg.get("payloadRef")
            if not isinstance(ref, str) or not ref.startswith("data:image/"):
                return {"ok": False, "error": "malformed payload: expected data:image/ URL"}
            self.in_progress = True
            self.pending = ref
            return {"ok": True}
        if kind == "attach-step":
            if self.completed:
                return {"ok": True, "alreadyCompleted": True}
            return self._step(msg)
        if kind == "attach-release":
            if msg.get("completed"):
                self.completed = True
            self.in_progress = False
            return {"ok": True, **self.snapshot()}
        if kind == "attach-state":
            return {"ok": True, **self.snapshot()}
        if kind == "fallback-show":
            self.overlay_active = False
            self.overlays_shown += 1
            self.overlay_active = True
            return {"ok": True, "shown": True}
        if kind == "fallback-hide":
            removed = self.overlay_active
            self.overlay_active = False
            self.watching = None
            return {"ok": True, "removed": removed}
        if kind == "fallback-state":
            return {"ok": True, "active": self.overlay_active, "watching": self.watching is not None}
        if kind == "fallback-watch":
            if msg.get("stop"):
                stopped = self.watching is not None
                self.watching = None
                return {"ok": True, "stopped": stopped}
            self.watching = dict(msg)
            return {"ok": True, "watching": True}
        return {"ok": False, "error": f"unknown message type {kind}"}

    def snapshot(self) -> dict[str, Any]:
        return {"inProgress": self.in_progress, "completed": self.completed, "hasPendingData": self.pending is not None}

    def _step(self, msg: dict[str, Any]) -> dict[str, Any]:
        step = msg.get("step")
        if step == "reveal-input":
            return {"ok": self.file_input, "clicked": True}
        if step == "notify-input":
            if not self.input_files:
                return {"ok": False, "error": "file input is empty"}
            return {"ok": self.notify_ok, "files": len(self.input_files)}
        if step == "locate":
            sel = msg.get("selector")
            if sel in self.drop_targets:
                return {"ok": True, "x": 100.0, "y": 200.0}
            return {"ok": False, "error": f"no element for {sel}"}
        if step == "paste":
            target = msg.get("target")
            if target in self.paste_targets:
                return {"ok": True, "target": target}
            return {"ok": False, "error": f"paste target {target} not found"}
        if step == "hidden-input":
            if self.hidden_input_ok:
                return {"ok": True, "propagated": self.file_input}
            return {"ok": False, "error": "hidden input failed"}
        return {"ok": False, "error": f"unknown step {step}"}


@dataclass
class FakeTab:
    url: str
    status: str = "complete"
    agent: FakeAgent | None = None
    agent_template: FakeAgent | None = None
    # Each entry is raised once by call_agent before the agent sees the message.
    failures: list[Exception] = field(default_factory=list)


class FakeSubscription:
    def __init__(self, clock: FakeClock | None = None, step: float = 0.25) -> None:
        self.events: list[dict[str, Any] | None] = []
        self.clock = clock
        self.step = step
        self.closed = False

    def push(self, *events: dict[str, Any] | None) -> None:
        self.events.extend(events)

    def next(self, timeout: float) -> dict[str, Any] | None:
        if self.events:
            event = self.events.pop(0)
            if event is not None:
                return event
        if self.clock is not None:
            self.clock.advance(min(self.step, timeout))
        return None

    def close(self) -> None:
        self.closed = True


class FakeTargetEvents:
    """Browser-level closure feed backed by a real queue so monitor threads block on it."""

    def __init__(self) -> None:
        self.events: queue.Queue[dict[str, Any]] = queue.Queue()
        self.closed = False

    def next(self, timeout: float) -> dict[str, Any] | None:
        try:
            return self.events.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self.closed = True


class FakeHost:
    """Scripted ContextHost: tabs live in a dict, agents are FakeAgent instances."""

    def __init__(self, *, agent_factory: Any = None, clock: FakeClock | None = None) -> None:
        self.tabs: dict[str, FakeTab] = {}
        self.agent_factory = agent_factory or (lambda: FakeAgent(file_input=True))
        self.clock = clock
        self._ids = itertools.count(1)
        self.installs: list[str] = []
        self.intercepts: list[tuple[str, bool]] = []
        self.drops: list[dict[str, Any]] = []
        self.closed: list[str] = []
        self.subscriptions: list[FakeSubscription] = []
        self.target_feeds: list[FakeTargetEvents] = []

    def add_tab(self, url: str = "https://x.com/compose/post", *, agent: FakeAgent | None = None, installed: bool = True) -> str:
        tab_id = f"tab-{next(self._ids)}"
        template = agent or self.agent_factory()
        self.tabs[tab_id] = FakeTab(url=url, agent=template if installed else None, agent_template=template)
        return tab_id

    def open_tab(self, url: str, *, active: bool = True) -> str:
        return self.add_tab(url)

    def close_tab(self, tab_id: str) -> bool:
        self.closed.append(tab_id)
        return self.tabs.pop(tab_id, None) is not None

    def user_closes_tab(self, tab_id: str) -> None:
        self.tabs.pop(tab_id, None)
        for feed in self.target_feeds:
            feed.events.put({"targetId": tab_id})

    def get_tab(self, tab_id: str):
        from relay_servers.compose_relay.browser import TabInfo

        tab = self.tabs.get(tab_id)
        if tab is None:
            return None
        return TabInfo(id=tab_id, url=tab.url, status=tab.status)

    def _tab(self, tab_id: str) -> FakeTab:
        from relay_servers.compose_relay.errors import DestinationGoneError

        tab = self.tabs.get(tab_id)
        if tab is None:
            raise DestinationGoneError(tab_id)
        return tab

    def install_script(self, tab_id: str, source: str) -> dict[str, Any]:
        tab = self._tab(tab_id)
        self.installs.append(tab_id)
        already = tab.agent is not None
        if tab.agent is None:
            tab.agent = tab.agent_template or self.agent_factory()
        return {"ok": True, "already": already}

    def call_agent(self, tab_id: str, message: dict[str, Any], *, timeout: float) -> dict[str, Any]:
        from relay_servers.compose_relay.errors import NoResponderError

        tab = self._tab(tab_id)
        if tab.failures:
            raise tab.failures.pop(0)
        if tab.agent is None:
            raise NoResponderError(tab_id)
        return tab.agent.handle(message)

    def set_file_input(self, tab_id: str, paths: list[str]) -> bool:
        agent = self._tab(tab_id).agent
        if agent is None or not agent.file_input:
            return False
        agent.input_files = list(paths)
        return True

    def intercept_file_chooser(self, tab_id: str, enabled: bool) -> None:
        self._tab(tab_id)
        self.intercepts.append((tab_id, enabled))

    def dispatch_file_drop(self, tab_id: str, x: float, y: float, paths: list[str], *, pacing_s: float = 0.08) -> None:
        self._tab(tab_id)
        self.drops.append({"tab": tab_id, "x": x, "y": y, "paths": list(paths), "pacing": pacing_s})

    def subscribe_binding(self, tab_id: str, name: str) -> FakeSubscription:
        self._tab(tab_id)
        sub = FakeSubscription(self.clock)
        self.subscriptions.append(sub)
        return sub

    def subscribe_target_closed(self) -> FakeTargetEvents:
        feed = FakeTargetEvents()
        self.target_feeds.append(feed)
        return feed

    def close(self) -> None:
        pass


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_host(fake_clock: FakeClock) -> FakeHost:
    return FakeHost(clock=fake_clock)


@pytest.fixture
def relay_config(tmp_path):
    from relay_servers.compose_relay.config import RelayConfig

    return RelayConfig(
        binary_path="chromium",
        profile_path=str(tmp_path / "profile"),
        artifact_dir=str(tmp_path / "artifacts"),
        settings_path=str(tmp_path / "settings.json"),
    )


@pytest.fixture
def png_data_url() -> str:
    return PNG_DATA_URL


@pytest.fixture
def no_sleep():
    slept: list[float] = []

    def _sleep(seconds: float) -> None:
        slept.append(seconds)

    _sleep.calls = slept  # type: ignore[attr-defined]
    return _sleep
