"""Readiness probe for destination tabs.

The first attempt only pings; agent installation starts from the second attempt.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from .errors import ChannelError, DestinationGoneError
from .messaging import READINESS_PING, AgentChannel

_LOGGER = logging.getLogger("relay.compose.readiness")


def init_delay_ms(attempt: int) -> int:
    return min(500 + attempt * 300, 1500)


def between_attempts_delay_ms(attempt: int) -> int:
    return min(300 + attempt * 200, 1000)


class ReadinessProbe:
    def __init__(
        self,
        channel: AgentChannel,
        *,
        ping_timeout: float = 1.5,
        max_attempts: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.channel = channel
        self.ping_timeout = float(ping_timeout)
        self.max_attempts = max(1, int(max_attempts))
        self._sleep = sleep

    def ping(self, tab_id: str) -> bool:
        """True only on an explicit acknowledgement. Raises DestinationGoneError if the tab is gone."""
        try:
            reply = self.channel.call(tab_id, {"type": READINESS_PING}, timeout=self.ping_timeout)
        except DestinationGoneError:
            raise
        except ChannelError as exc:
            _LOGGER.debug("ping %s: %s", tab_id, exc.reason)
            return False
        return bool(reply.get("acknowledged"))

    def ensure_ready(self, tab_id: str, max_attempts: int | None = None) -> bool:
        attempts = self.max_attempts if max_attempts is None else max(1, int(max_attempts))
        for attempt in range(attempts):
            if self.ping(tab_id):
                if attempt:
                    _LOGGER.info("destination %s ready after %s attempt(s)", tab_id, attempt + 1)
                return True

            if attempt > 0:
                try:
                    self.channel.install_agent(tab_id)
                except DestinationGoneError:
                    raise
                except Exception as exc:  # noqa: BLE001
                    _LOGGER.info("agent install on %s failed (attempt %s): %s", tab_id, attempt + 1, exc)
                else:
                    self._sleep(init_delay_ms(attempt) / 1000.0)
                    if self.ping(tab_id):
                        _LOGGER.info("destination %s ready after agent install", tab_id)
                        return True

            if attempt < attempts - 1:
                self._sleep(between_attempts_delay_ms(attempt) / 1000.0)

        _LOGGER.warning("destination %s not ready after %s attempts", tab_id, attempts)
        return False


__all__ = ["ReadinessProbe", "between_attempts_delay_ms", "init_delay_ms"]
