"""Bounded linear-backoff reconnect policy."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Protocol

from ventctl.core.model import ReconnectSettings, ReconnectState

LOGGER = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None:
        """Prevent the scheduled callback from running."""


class Scheduler(Protocol):
    """Anything that can run a callback later; asyncio loops qualify."""

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        ...


class ReconnectPolicy:
    """Decide whether and when to retry after a non-teardown disconnect.

    The delay before attempt ``n`` (1-indexed) is ``base_delay_s * n``. Once
    ``max_attempts`` retries have been scheduled, the next disconnect resets the
    counter and reports exhaustion instead of retrying.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        *,
        on_retry: Callable[[int], None],
        on_exhausted: Callable[[], None],
        settings: ReconnectSettings | None = None,
    ) -> None:
        settings = settings or ReconnectSettings()
        if settings.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if settings.base_delay_s <= 0:
            raise ValueError("base_delay_s must be positive")
        self._scheduler = scheduler
        self._on_retry = on_retry
        self._on_exhausted = on_exhausted
        self._max_attempts = settings.max_attempts
        self._base_delay_s = settings.base_delay_s
        self._attempt = 0
        self._timer: TimerHandle | None = None

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def pending(self) -> bool:
        return self._timer is not None

    @property
    def state(self) -> ReconnectState:
        return ReconnectState(
            attempt=self._attempt,
            max_attempts=self._max_attempts,
            base_delay_s=self._base_delay_s,
            pending_timer=self._timer,
        )

    def delay_for(self, attempt: int) -> float:
        if attempt < 1:
            raise ValueError("attempt is 1-indexed")
        return self._base_delay_s * attempt

    def on_disconnected(self, reason: str) -> None:
        if self._timer is not None:
            LOGGER.debug("Reconnect already pending; ignoring disconnect (%s)", reason)
            return

        if self._attempt >= self._max_attempts:
            LOGGER.error(
                "Giving up after %d reconnect attempts (%s)", self._max_attempts, reason
            )
            self._attempt = 0
            self._on_exhausted()
            return

        self._attempt += 1
        delay = self.delay_for(self._attempt)
        LOGGER.info(
            "Reconnect attempt %d/%d in %.1fs (%s)",
            self._attempt,
            self._max_attempts,
            delay,
            reason,
        )
        self._timer = self._scheduler.call_later(delay, self._fire, self._attempt)

    def on_ready(self) -> None:
        self.reset()

    def reset(self) -> None:
        """Cancel any pending retry and start the next failure count from zero."""
        self.cancel()
        self._attempt = 0

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self, attempt: int) -> None:
        self._timer = None
        self._on_retry(attempt)
