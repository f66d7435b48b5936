"""Core data models used across codec, session, loader, and CLI."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from ventctl.core.errors import CommandResolutionError, DeviceSelectionError

if TYPE_CHECKING:
    from ventctl.transports.base import Transport

DEFAULT_SYNC_KEY = "estado_ventana"


class Command(Enum):
    """Window actions understood by the peripheral.

    Each member carries the single plaintext byte sent over the wire and the
    window state the command is expected to produce.
    """

    OPEN = (b"b", "ABIERTA")
    CLOSE = (b"a", "CERRADA")

    def __init__(self, plaintext: bytes, sync_value: str) -> None:
        self.plaintext = plaintext
        self.sync_value = sync_value

    @classmethod
    def parse(cls, text: str) -> Command:
        try:
            return cls[text.strip().upper()]
        except KeyError:
            allowed = ", ".join(member.name.lower() for member in cls)
            raise CommandResolutionError(
                f"Unknown command '{text}'. Allowed: {allowed}"
            ) from None


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SERVICE_DISCOVERY = "service_discovery"
    READY = "ready"
    DISCONNECTING = "disconnecting"


class TelemetryKind(Enum):
    SENSOR_CLOSED = "sensor_closed"
    SENSOR_OPENED = "sensor_opened"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class SecurePacket:
    payload: bytes
    checksum: int

    def to_bytes(self) -> bytes:
        return self.payload + bytes([self.checksum])

    def hex(self) -> str:
        return self.to_bytes().hex()


@dataclass(frozen=True)
class TelemetryEvent:
    kind: TelemetryKind
    text: str


@dataclass(frozen=True)
class DeviceIdentity:
    address: str
    service_uuid: str
    control_char_uuid: str
    telemetry_char_uuid: str

    def __post_init__(self) -> None:
        # GATT stacks report UUIDs in lowercase.
        for name in ("service_uuid", "control_char_uuid", "telemetry_char_uuid"):
            object.__setattr__(self, name, getattr(self, name).strip().lower())


@dataclass(frozen=True)
class ControlHandle:
    """Control characteristic bound for one connect cycle."""

    transport: Transport
    char_uuid: str
    generation: int


@dataclass
class ReconnectState:
    attempt: int
    max_attempts: int
    base_delay_s: float
    pending_timer: Any | None = None


@dataclass(frozen=True)
class ReconnectSettings:
    max_attempts: int = 3
    base_delay_s: float = 3.0


@dataclass(frozen=True)
class Vocabulary:
    closed: tuple[str, ...]
    opened: tuple[str, ...]


@dataclass(frozen=True)
class Profile:
    id: str
    name: str
    service_uuid: str
    control_char_uuid: str
    telemetry_char_uuid: str
    secret: int
    reconnect: ReconnectSettings
    vocabulary: Vocabulary
    sync_key: str
    address: str | None = None
    write_with_response: bool = True
    connect_timeout_s: float = 10.0

    def identity(self, address: str | None = None) -> DeviceIdentity:
        resolved = address or self.address
        if not resolved:
            raise DeviceSelectionError(
                f"Profile '{self.id}' has no default address. Use --address to choose a device."
            )
        return DeviceIdentity(
            address=resolved.upper(),
            service_uuid=self.service_uuid,
            control_char_uuid=self.control_char_uuid,
            telemetry_char_uuid=self.telemetry_char_uuid,
        )


@dataclass(frozen=True)
class SendResult:
    profile_id: str
    address: str
    command: Command
    packet_hex: str
    sync_value: str
