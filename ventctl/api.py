"""Stable public API for building tooling on top of ventctl.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

from collections.abc import Callable

from ventctl.core.capability import CapabilityGate
from ventctl.core.errors import (
    CapabilityError,
    CommandResolutionError,
    DeviceSelectionError,
    NotReadyError,
    PacketIntegrityError,
    ProfileLoadError,
    ProfileValidationError,
    ReconnectExhaustedError,
    TransportConnectError,
    TransportError,
    TransportSendError,
    TransportTimeoutError,
    VentctlError,
)
from ventctl.core.model import (
    Command,
    ConnectionState,
    DeviceIdentity,
    Profile,
    ReconnectSettings,
    SecurePacket,
    SendResult,
    TelemetryEvent,
    TelemetryKind,
)
from ventctl.core.service import VentService
from ventctl.core.session import DeviceSession
from ventctl.notify import Notifier
from ventctl.sync import SyncTarget
from ventctl.transports.base import Transport
from ventctl.transports.ble_gatt import BLEGATTTransport

__all__ = [
    "VentctlError",
    "CapabilityError",
    "CommandResolutionError",
    "DeviceSelectionError",
    "NotReadyError",
    "PacketIntegrityError",
    "ProfileLoadError",
    "ProfileValidationError",
    "ReconnectExhaustedError",
    "TransportError",
    "TransportConnectError",
    "TransportSendError",
    "TransportTimeoutError",
    "Command",
    "ConnectionState",
    "DeviceIdentity",
    "Profile",
    "ReconnectSettings",
    "SecurePacket",
    "SendResult",
    "TelemetryEvent",
    "TelemetryKind",
    "DeviceSession",
    "BLEGATTTransport",
    "Client",
]


class Client:
    """Public client for interacting with ventctl core capabilities.

    A `Client` instance wraps profile loading, packet encoding, and session
    creation behind a stable API intended for third-party tools
    (GUI/TUI/services/scripts).
    """

    def __init__(
        self,
        *,
        transport_factory: Callable[[], Transport] | None = None,
        sync_target: SyncTarget | None = None,
        notifier: Notifier | None = None,
        gate: CapabilityGate | None = None,
    ) -> None:
        self._service = VentService(
            transport_factory=transport_factory,
            sync_target=sync_target,
            notifier=notifier,
            gate=gate,
        )

    @property
    def load_warnings(self) -> tuple[str, ...]:
        return self._service.load_warnings

    @property
    def runtime_warnings(self) -> tuple[str, ...]:
        return self._service.runtime_warnings

    def list_profiles(self) -> list[Profile]:
        return self._service.list_profiles()

    def get_profile(self, profile_id: str | None = None) -> Profile:
        return self._service.get_profile(profile_id)

    def encode(self, command: str, *, profile_id: str | None = None) -> SecurePacket:
        return self._service.encode(command, profile_id=profile_id)

    def open_session(
        self,
        *,
        profile_id: str | None = None,
        address: str | None = None,
    ) -> DeviceSession:
        """Build a session for a profile; connect it with ``async with``."""
        return self._service.create_session(profile_id=profile_id, address=address)

    async def send(
        self,
        command: str,
        *,
        profile_id: str | None = None,
        address: str | None = None,
        ready_timeout_s: float | None = None,
    ) -> SendResult:
        return await self._service.send(
            command,
            profile_id=profile_id,
            address=address,
            ready_timeout_s=ready_timeout_s,
        )
