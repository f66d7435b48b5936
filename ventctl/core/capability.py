"""Single runtime capability gate consulted before transport calls."""

from __future__ import annotations

import importlib.util
from typing import Protocol

from ventctl.core.errors import CapabilityError


class CapabilityGate(Protocol):
    def ensure(self, action: str) -> None:
        """Raise CapabilityError when ``action`` cannot be performed."""


class AllowAllGate:
    def ensure(self, action: str) -> None:
        return None


class BleakCapabilityGate:
    """Require the bleak BLE stack before touching the radio."""

    def __init__(self) -> None:
        self._available: bool | None = None

    def ensure(self, action: str) -> None:
        if self._available is None:
            self._available = importlib.util.find_spec("bleak") is not None
        if not self._available:
            raise CapabilityError(
                f"Cannot {action}: BLE transport requires 'bleak'. Install dependency and retry."
            )
