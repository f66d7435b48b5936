"""Service layer used by CLI and future UI frontends."""

from __future__ import annotations

import asyncio
import importlib.util
from collections.abc import Callable

from ventctl.core.capability import BleakCapabilityGate, CapabilityGate
from ventctl.core.codec import encode, verify
from ventctl.core.errors import (
    CommandResolutionError,
    DeviceSelectionError,
    PacketIntegrityError,
    ReconnectExhaustedError,
    TransportSendError,
)
from ventctl.core.model import (
    Command,
    ConnectionState,
    Profile,
    SecurePacket,
    SendResult,
    TelemetryEvent,
)
from ventctl.core.profile_loader import load_profiles
from ventctl.core.session import DeviceSession
from ventctl.core.state import Transition
from ventctl.core.telemetry import TelemetryDecoder
from ventctl.notify import LoggingNotifier, Notifier
from ventctl.sync import SyncTarget, YamlFileSyncTarget
from ventctl.transports.base import Transport
from ventctl.transports.ble_gatt import BLEGATTTransport

DEFAULT_PROFILE_ID = "rain_window"


class VentService:
    def __init__(
        self,
        *,
        transport_factory: Callable[[], Transport] | None = None,
        sync_target: SyncTarget | None = None,
        notifier: Notifier | None = None,
        gate: CapabilityGate | None = None,
    ) -> None:
        loaded = load_profiles()
        self.profiles = loaded.profiles
        self.load_warnings = loaded.warnings
        self.runtime_warnings = _runtime_warnings()
        self.transport_factory = transport_factory or BLEGATTTransport
        self.sync_target = sync_target if sync_target is not None else YamlFileSyncTarget()
        self.notifier = notifier or LoggingNotifier()
        self.gate = gate or BleakCapabilityGate()

    def list_profiles(self) -> list[Profile]:
        return sorted(self.profiles.values(), key=lambda p: p.id)

    def get_profile(self, profile_id: str | None = None) -> Profile:
        resolved = profile_id or DEFAULT_PROFILE_ID
        profile = self.profiles.get(resolved)
        if profile is None:
            available = ", ".join(sorted(self.profiles)) or "<none>"
            raise DeviceSelectionError(
                f"Unknown profile '{resolved}'. Available: {available}"
            )
        return profile

    def create_session(
        self,
        profile_id: str | None = None,
        address: str | None = None,
    ) -> DeviceSession:
        profile = self.get_profile(profile_id)
        return DeviceSession(
            profile.identity(address),
            transport_factory=self.transport_factory,
            sync_target=self.sync_target,
            notifier=self.notifier,
            gate=self.gate,
            decoder=TelemetryDecoder(profile.vocabulary),
            reconnect=profile.reconnect,
            secret=profile.secret,
            sync_key=profile.sync_key,
            connect_timeout_s=profile.connect_timeout_s,
            write_with_response=profile.write_with_response,
        )

    def encode(self, command: str, profile_id: str | None = None) -> SecurePacket:
        profile = self.get_profile(profile_id)
        return encode(Command.parse(command), profile.secret)

    def inspect(self, frame_hex: str, profile_id: str | None = None) -> Command:
        profile = self.get_profile(profile_id)
        try:
            frame = bytes.fromhex(frame_hex.replace(" ", ""))
        except ValueError:
            raise PacketIntegrityError(f"'{frame_hex}' is not a hex string") from None
        plaintext = verify(frame, profile.secret)
        for command in Command:
            if command.plaintext == plaintext:
                return command
        raise CommandResolutionError(f"Frame decodes to unknown command byte(s) {plaintext.hex()}")

    async def send(
        self,
        command: str,
        profile_id: str | None = None,
        address: str | None = None,
        ready_timeout_s: float | None = None,
    ) -> SendResult:
        resolved = Command.parse(command)
        profile = self.get_profile(profile_id)
        session = self.create_session(profile.id, address)
        async with session:
            await session.wait_ready(ready_timeout_s)
            packet = session.request_command(resolved)
            await session.flush()
            if session.current_state() is not ConnectionState.READY:
                raise TransportSendError(
                    f"Device {session.identity.address} dropped the link while writing {resolved.name.lower()}"
                )
        return SendResult(
            profile_id=profile.id,
            address=session.identity.address,
            command=resolved,
            packet_hex=packet.hex(),
            sync_value=resolved.sync_value,
        )

    async def watch(
        self,
        profile_id: str | None = None,
        address: str | None = None,
        *,
        on_transition: Callable[[Transition], None] | None = None,
        on_telemetry: Callable[[TelemetryEvent], None] | None = None,
        stop: asyncio.Event | None = None,
    ) -> None:
        """Stay connected until ``stop`` is set or reconnection is exhausted."""
        session = self.create_session(profile_id, address)
        exhausted = asyncio.Event()
        session.add_exhaustion_listener(exhausted.set)
        if on_transition is not None:
            session.add_state_listener(on_transition)
        if on_telemetry is not None:
            session.add_telemetry_listener(on_telemetry)

        async with session:
            waiters = [asyncio.ensure_future(exhausted.wait())]
            if stop is not None:
                waiters.append(asyncio.ensure_future(stop.wait()))
            try:
                await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for waiter in waiters:
                    waiter.cancel()

        if exhausted.is_set():
            raise ReconnectExhaustedError(
                f"Lost connection to {session.identity.address}; reconnect attempts exhausted"
            )


def _runtime_warnings() -> tuple[str, ...]:
    warnings: list[str] = []
    if importlib.util.find_spec("bleak") is None:
        warnings.append("Python runtime missing 'bleak'; BLE connect commands will fail.")
    return tuple(warnings)
