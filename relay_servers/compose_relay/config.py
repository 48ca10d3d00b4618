from __future__ import annotations

import os
import urllib.parse
from dataclasses import dataclass, field
from pathlib import Path


def _repo_root() -> Path:
    # relay_servers/compose_relay/config.py -> repo root is parents[2]
    return Path(__file__).resolve().parents[2]


def _get_local_chromium_path() -> str:
    """Get path to locally installed Chromium in vendor directory."""
    return str(_repo_root() / "vendor" / "chromium" / "chrome")


DEFAULT_BINARY_CANDIDATES: list[str] = [
    _get_local_chromium_path(),
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/usr/local/bin/chromium",
    "/opt/chromium/chromium",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
    "C:\\Program Files\\Chromium\\Application\\chrome.exe",
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/usr/bin/google-chrome",
    "/usr/bin/google-chrome-stable",
    "/opt/google/chrome/chrome",
    "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
    "C:\\Program Files (x86)\\Google\\Chrome\\Application\\chrome.exe",
    # Snap builds ignore --user-data-dir; last resort only.
    "/snap/bin/chromium",
]

DEFAULT_DESTINATION_HOSTS: list[str] = ["x.com", "twitter.com"]

DEFAULT_STATE_DIR = "~/.compose-relay"


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def state_dir() -> Path:
    """Per-user directory for artifacts, settings and launch logs (RELAY_HOME overrides)."""
    return Path(expand_path(os.environ.get("RELAY_HOME") or DEFAULT_STATE_DIR))


def _int_env(name: str, *, default: int, lo: int, hi: int) -> int:
    try:
        val = int(os.environ.get(name) or default)
    except (TypeError, ValueError):
        val = default
    return max(lo, min(val, hi))


def _float_env(name: str, *, default: float, lo: float, hi: float) -> float:
    try:
        val = float(os.environ.get(name) or default)
    except (TypeError, ValueError):
        val = default
    return max(lo, min(val, hi))


@dataclass
class RelayConfig:
    binary_path: str
    profile_path: str
    cdp_port: int = 9222
    mode: str = "launch"
    headless: bool = True
    extra_flags: list[str] = field(default_factory=list)
    cdp_timeout: float = 5.0

    destination_hosts: list[str] = field(default_factory=lambda: list(DEFAULT_DESTINATION_HOSTS))

    # Retry tuning keeps worst-case latency around 13-16s.
    max_attempts: int = 12
    base_delay_ms: int = 600
    delay_increment_ms: int = 150
    max_delay_ms: int = 1500

    ping_timeout: float = 1.5
    max_ping_attempts: int = 3

    overlay_ttl_ms: int = 20_000
    auto_retry_window_ms: int = 15_000

    artifact_dir: str = field(default_factory=lambda: str(state_dir() / "artifacts"))
    settings_path: str = field(default_factory=lambda: str(state_dir() / "settings.json"))

    @staticmethod
    def normalize_mode(raw: str | None) -> str:
        mode = (raw or "").strip().lower()
        if mode in {"attach", "connect", "external"}:
            return "attach"
        return "launch"

    @classmethod
    def detect_binary(cls) -> str:
        env_path = os.environ.get("RELAY_BROWSER_BINARY")
        if env_path:
            return expand_path(env_path)
        for candidate in DEFAULT_BINARY_CANDIDATES:
            path = Path(candidate)
            # vendor/chromium/chrome without +x fails later with "Permission denied".
            if path.exists() and os.access(str(path), os.X_OK):
                return str(path)
        return "google-chrome"

    @classmethod
    def from_env(cls) -> RelayConfig:
        flags_raw = os.environ.get("RELAY_BROWSER_FLAGS", "")
        hosts_raw = os.environ.get("RELAY_DESTINATION_HOSTS", "")
        hosts = [h.strip().lower() for h in hosts_raw.split(",") if h.strip()]
        defaults = cls(binary_path="", profile_path="")
        return cls(
            binary_path=cls.detect_binary(),
            profile_path=expand_path(os.environ.get("RELAY_BROWSER_PROFILE") or str(state_dir() / "browser-profile")),
            cdp_port=_int_env("RELAY_CDP_PORT", default=9222, lo=1, hi=65535),
            mode=cls.normalize_mode(os.environ.get("RELAY_BROWSER_MODE")),
            headless=os.environ.get("RELAY_HEADLESS", "1") != "0",
            extra_flags=[flag for flag in flags_raw.split(",") if flag.strip()],
            cdp_timeout=_float_env("RELAY_CDP_TIMEOUT", default=5.0, lo=0.5, hi=60.0),
            destination_hosts=hosts or list(DEFAULT_DESTINATION_HOSTS),
            max_attempts=_int_env("RELAY_MAX_ATTEMPTS", default=12, lo=1, hi=50),
            base_delay_ms=_int_env("RELAY_BASE_DELAY_MS", default=600, lo=0, hi=30_000),
            delay_increment_ms=_int_env("RELAY_DELAY_INCREMENT_MS", default=150, lo=0, hi=30_000),
            max_delay_ms=_int_env("RELAY_MAX_DELAY_MS", default=1500, lo=0, hi=60_000),
            ping_timeout=_float_env("RELAY_PING_TIMEOUT", default=1.5, lo=0.1, hi=30.0),
            max_ping_attempts=_int_env("RELAY_MAX_PING_ATTEMPTS", default=3, lo=1, hi=10),
            overlay_ttl_ms=_int_env("RELAY_OVERLAY_TTL_MS", default=20_000, lo=1000, hi=300_000),
            auto_retry_window_ms=_int_env("RELAY_AUTO_RETRY_WINDOW_MS", default=15_000, lo=8_000, hi=15_000),
            artifact_dir=expand_path(os.environ.get("RELAY_ARTIFACT_DIR") or defaults.artifact_dir),
            settings_path=expand_path(os.environ.get("RELAY_SETTINGS_PATH") or defaults.settings_path),
        )

    def is_host_allowed(self, host: str) -> bool:
        host = (host or "").strip().lower().rstrip(".")
        if not host:
            return False
        for raw_allowed in self.destination_hosts:
            allowed = (raw_allowed or "").strip().lower().lstrip(".").rstrip(".")
            if not allowed:
                continue
            if host == allowed or host.endswith("." + allowed):
                return True
        return False

    def is_destination_url(self, url: str) -> bool:
        """Return True if the URL can host the compose surface (https + allowlisted host)."""
        try:
            parsed = urllib.parse.urlsplit(str(url or ""))
        except ValueError:
            return False
        if parsed.scheme != "https":
            return False
        return self.is_host_allowed(parsed.hostname or "")


__all__ = ["DEFAULT_BINARY_CANDIDATES", "DEFAULT_DESTINATION_HOSTS", "RelayConfig", "expand_path"]
