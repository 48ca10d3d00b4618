from __future__ import annotations

import logging
from pathlib import Path

import pytest

from conftest import PNG_BYTES, PNG_DATA_URL, FakeAgent


def _notifier(host, tmp_path: Path, **kwargs):
    from relay_servers.compose_relay.fallback import ManualFallbackNotifier
    from relay_servers.compose_relay.messaging import AgentChannel

    channel = AgentChannel(host)
    kwargs.setdefault("start_watchers", False)
    notifier = ManualFallbackNotifier(host, channel, artifact_dir=str(tmp_path / "artifacts"), clock=host.clock, **kwargs)
    return notifier, channel


def _payload():
    from relay_servers.compose_relay.payload import ArtifactPayload

    return ArtifactPayload.from_bytes(PNG_BYTES)


def _watcher(host, channel, tab: str, on_retry, **kwargs):
    from relay_servers.compose_relay.fallback import AutoRetryWatcher

    kwargs.setdefault("window_s", 15.0)
    return AutoRetryWatcher(host, channel, tab, on_retry, debounce_s=0.4, poll_s=0.25, clock=host.clock, **kwargs)


def test_show_replaces_existing_overlay(fake_host, tmp_path: Path) -> None:
    tab = fake_host.add_tab()
    notifier, channel = _notifier(fake_host, tmp_path)
    try:
        assert notifier.show(tab, _payload()) is True
        assert notifier.show(tab, _payload()) is True
    finally:
        channel.close()

    agent = fake_host.tabs[tab].agent
    assert agent.overlays_shown == 2
    assert agent.overlay_active is True
    shows = [c for c in agent.calls if c["type"] == "fallback-show"]
    assert shows[0]["ttlMs"] == 20_000
    assert shows[0]["payloadRef"] == PNG_DATA_URL
    assert shows[0]["filename"] == "compose-relay-image.png"


def test_show_installs_agent_when_missing(fake_host, tmp_path: Path) -> None:
    tab = fake_host.add_tab(installed=False)
    notifier, channel = _notifier(fake_host, tmp_path)
    try:
        assert notifier.show(tab, _payload()) is True
    finally:
        channel.close()
    assert fake_host.installs == [tab]
    assert fake_host.tabs[tab].agent.overlay_active is True


def test_show_on_closed_tab_saves_artifact(fake_host, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    notifier, channel = _notifier(fake_host, tmp_path)
    caplog.set_level(logging.WARNING, logger="relay.compose.fallback")
    try:
        assert notifier.show("tab-gone", _payload()) is False
    finally:
        channel.close()

    saved = notifier.saved["tab-gone"]
    assert saved.read_bytes() == PNG_BYTES
    assert saved.parent == (tmp_path / "artifacts").absolute()
    assert any("attach it by hand" in r.getMessage() for r in caplog.records)
    assert not notifier.is_active("tab-gone")


def test_overlay_expires_after_ttl(fake_host, fake_clock, tmp_path: Path) -> None:
    tab = fake_host.add_tab()
    notifier, channel = _notifier(fake_host, tmp_path, overlay_ttl_ms=5_000)
    try:
        notifier.show(tab, _payload())
        fake_clock.advance(4.9)
        assert notifier.is_active(tab)
        fake_clock.advance(0.2)
        assert not notifier.is_active(tab)
    finally:
        channel.close()


def test_dismiss_removes_overlay(fake_host, tmp_path: Path) -> None:
    tab = fake_host.add_tab()
    notifier, channel = _notifier(fake_host, tmp_path)
    try:
        notifier.show(tab, _payload())
        assert notifier.dismiss(tab) is True
        assert notifier.dismiss(tab) is False
    finally:
        channel.close()
    assert fake_host.tabs[tab].agent.overlay_active is False


def test_watcher_retries_once_after_quiet_period(fake_host, tmp_path: Path) -> None:
    agent = FakeAgent(pending=PNG_DATA_URL)
    tab = fake_host.add_tab(agent=agent)
    notifier, channel = _notifier(fake_host, tmp_path)
    retries: list[int] = []

    def on_retry() -> bool:
        retries.append(1)
        return True

    try:
        watcher = _watcher(fake_host, channel, tab, on_retry)
        assert watcher.arm() is True
        assert agent.watching is not None
        assert agent.watching["binding"] == watcher.binding
        assert agent.watching["windowMs"] == 15_000

        sub = fake_host.subscriptions[-1]
        sub.push({"mutations": 4}, None, {"mutations": 1})
        watcher.run()
    finally:
        channel.close()

    assert retries == [1]
    assert watcher.signals == 2
    assert watcher.retries == 1
    assert watcher.outcome == "delivered"
    assert sub.closed is True
    assert agent.watching is None


def test_watcher_skips_while_attach_in_progress(fake_host, tmp_path: Path) -> None:
    agent = FakeAgent(pending=PNG_DATA_URL, in_progress=True)
    tab = fake_host.add_tab(agent=agent)
    notifier, channel = _notifier(fake_host, tmp_path)
    retries: list[int] = []
    try:
        watcher = _watcher(fake_host, channel, tab, lambda: bool(retries.append(1)), window_s=2.0)
        watcher.arm()
        fake_host.subscriptions[-1].push({"mutations": 1})
        watcher.run()
    finally:
        channel.close()

    assert retries == []
    assert watcher.signals == 1
    assert watcher.outcome == "expired"


def test_watcher_stops_when_already_completed(fake_host, tmp_path: Path) -> None:
    agent = FakeAgent(pending=PNG_DATA_URL, completed=True)
    tab = fake_host.add_tab(agent=agent)
    notifier, channel = _notifier(fake_host, tmp_path)
    try:
        watcher = _watcher(fake_host, channel, tab, lambda: pytest.fail("no retry after completion"))
        watcher.arm()
        fake_host.subscriptions[-1].push({"mutations": 1})
        watcher.run()
    finally:
        channel.close()
    assert watcher.outcome == "completed"


def test_watcher_expires_without_signals(fake_host, fake_clock, tmp_path: Path) -> None:
    tab = fake_host.add_tab(agent=FakeAgent(pending=PNG_DATA_URL))
    notifier, channel = _notifier(fake_host, tmp_path)
    start = fake_clock()
    try:
        watcher = _watcher(fake_host, channel, tab, lambda: True, window_s=3.0)
        watcher.arm()
        watcher.run()
    finally:
        channel.close()
    assert watcher.outcome == "expired"
    assert watcher.retries == 0
    assert fake_clock() - start == pytest.approx(3.0)


def test_watcher_arm_fails_on_closed_tab(fake_host, tmp_path: Path) -> None:
    notifier, channel = _notifier(fake_host, tmp_path)
    try:
        watcher = _watcher(fake_host, channel, "tab-gone", lambda: True)
        assert watcher.arm() is False
    finally:
        channel.close()


def test_show_with_retry_starts_and_close_stops_watcher(fake_host, tmp_path: Path) -> None:
    agent = FakeAgent()
    tab = fake_host.add_tab(agent=agent)
    notifier, channel = _notifier(fake_host, tmp_path, start_watchers=True, auto_retry_window_ms=2_000)
    try:
        assert notifier.show(tab, _payload(), on_retry=lambda: True) is True
        watcher = notifier.watcher(tab)
        assert watcher is not None
        notifier.close()
        assert notifier.watcher(tab) is None
        assert watcher.outcome in {"expired", "stopped"}
        assert agent.watching is None
    finally:
        channel.close()
