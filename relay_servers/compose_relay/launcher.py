"""Browser process management: attach to a running CDP endpoint or spawn one."""

from __future__ import annotations

import contextlib
import logging
import socket
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

from .config import RelayConfig, expand_path, state_dir
from .http_client import HttpClientError, http_get_json

_LOGGER = logging.getLogger("relay.compose.launcher")

LOG_TAIL_CHARS = 4000


@dataclass
class LaunchResult:
    command: list[str] = field(default_factory=list)
    started: bool = False
    message: str = ""
    attached: bool = False
    log_path: str | None = None
    log_tail: str | None = None

    @property
    def ready(self) -> bool:
        return self.started or self.attached


def _launch_log_path() -> Path:
    log_dir = state_dir() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / f"browser_launch_{int(time.time() * 1000)}.log"


def _read_tail(path: Path | None) -> str | None:
    if path is None:
        return None
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    return text[-LOG_TAIL_CHARS:]


class BrowserLauncher:
    def __init__(self, config: RelayConfig | None = None) -> None:
        self.config = config or RelayConfig.from_env()
        self.process: subprocess.Popen | None = None

    @property
    def _port(self) -> int:
        return self.config.cdp_port

    def cdp_ready(self, timeout: float = 0.4) -> bool:
        try:
            http_get_json(f"http://127.0.0.1:{self._port}/json/version", timeout=timeout)
        except HttpClientError:
            return False
        return True

    def _port_available(self, timeout: float = 0.2) -> bool:
        """True when nothing accepts connections on the CDP port."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
            probe.settimeout(timeout)
            try:
                return probe.connect_ex(("127.0.0.1", self._port)) != 0
            except OSError:
                return False

    def build_launch_command(self, extra: list[str] | None = None) -> list[str]:
        cfg = self.config
        cmd = [
            cfg.binary_path,
            f"--remote-debugging-port={self._port}",
            f"--user-data-dir={expand_path(cfg.profile_path)}",
            "--remote-allow-origins=*",
            "--no-first-run",
            "--no-default-browser-check",
            "--headless=new" if cfg.headless else "--window-size=1280,900",
        ]
        # Portable vendor builds need --no-sandbox.
        if "vendor/chromium" in cfg.binary_path:
            cmd.append("--no-sandbox")
        cmd.extend(cfg.extra_flags)
        cmd.extend(extra or [])
        return cmd

    def _attach(self) -> LaunchResult:
        if self.cdp_ready():
            return LaunchResult(message=f"attached to browser on CDP port {self._port}", attached=True)
        if self._port_available():
            return LaunchResult(
                message=f"attach mode: no browser listening on CDP port {self._port} (start it with --remote-debugging-port)"
            )
        return LaunchResult(message=f"attach mode: port {self._port} is in use but CDP is not reachable")

    def _spawn(self, cmd: list[str], log_path: Path | None) -> None:
        with contextlib.suppress(OSError):
            Path(expand_path(self.config.profile_path)).mkdir(parents=True, exist_ok=True)
        log_fh: IO[bytes] | None = open(log_path, "ab", buffering=0) if log_path else None  # noqa: SIM115
        kwargs: dict[str, Any] = {"stdin": subprocess.DEVNULL}
        if log_fh is not None:
            kwargs.update(stdout=log_fh, stderr=log_fh, start_new_session=True)
        else:
            kwargs.update(stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        try:
            self.process = subprocess.Popen(cmd, **kwargs)
        finally:
            if log_fh is not None:
                log_fh.close()

    def ensure_running(self, timeout: float = 5.0) -> LaunchResult:
        if self.config.mode == "attach":
            return self._attach()
        if self.cdp_ready():
            return LaunchResult(message=f"browser already listening on CDP port {self._port}", attached=True)
        if not self._port_available():
            return LaunchResult(message=f"port {self._port} already in use")

        cmd = self.build_launch_command()
        log_path = None if self.config.headless else _launch_log_path()
        try:
            self._spawn(cmd, log_path)
        except OSError as exc:
            return LaunchResult(cmd, message=str(exc), log_path=_str(log_path), log_tail=_read_tail(log_path))

        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.cdp_ready():
                _LOGGER.info("browser launched on CDP port %s", self._port)
                return LaunchResult(cmd, started=True, message="browser launched", log_path=_str(log_path))
            time.sleep(0.1)
        return LaunchResult(cmd, message="browser launch timed out", log_path=_str(log_path), log_tail=_read_tail(log_path))

    def stop(self, *, timeout: float = 2.0) -> bool:
        """Terminate a browser this launcher started; kill it if it lingers."""
        proc = self.process
        if proc is None:
            return False
        if proc.poll() is None:
            with contextlib.suppress(OSError):
                proc.terminate()
            try:
                proc.wait(timeout=max(0.1, float(timeout)))
            except subprocess.TimeoutExpired:
                with contextlib.suppress(OSError):
                    proc.kill()
        self.process = None
        return True


def _str(path: Path | None) -> str | None:
    return str(path) if path is not None else None


__all__ = ["BrowserLauncher", "LaunchResult"]
