"""Transport interfaces."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol


class Transport(Protocol):
    """One connect cycle's link to the peripheral.

    A fresh instance is built for every connect attempt and closed when the
    cycle ends; instances are never reused across cycles.
    """

    async def connect(
        self,
        address: str,
        *,
        on_disconnect: Callable[[], None],
        timeout_s: float = 10.0,
    ) -> None:
        """Open the link. ``on_disconnect`` fires if the link later drops."""

    async def discover(self, service_uuid: str) -> frozenset[str]:
        """Return the characteristic UUIDs exposed by ``service_uuid``."""

    async def start_notify(self, char_uuid: str, handler: Callable[[bytes], None]) -> None:
        """Subscribe ``handler`` to notifications on ``char_uuid``."""

    async def write(self, char_uuid: str, data: bytes, *, response: bool = True) -> None:
        """Write ``data`` to ``char_uuid``."""

    async def close(self) -> None:
        """Release the link. Safe to call more than once."""
