"""Packet framing for window commands.

A frame is the command byte XORed with a shared secret, followed by a one-byte
additive checksum over the obfuscated payload. The XOR step deters casual
tampering only; it provides integrity checking and obfuscation, not
confidentiality.
"""

from __future__ import annotations

from ventctl.core.errors import PacketIntegrityError
from ventctl.core.model import Command, SecurePacket

DEFAULT_SECRET = 0x5A


def _check_secret(secret: int) -> None:
    if not 0 <= secret <= 0xFF:
        raise ValueError(f"secret must fit in one byte, got {secret}")


def obfuscate(data: bytes, secret: int = DEFAULT_SECRET) -> bytes:
    _check_secret(secret)
    return bytes(b ^ secret for b in data)


def checksum(data: bytes) -> int:
    return sum(data) % 256


def encode(command: Command, secret: int = DEFAULT_SECRET) -> SecurePacket:
    payload = obfuscate(command.plaintext, secret)
    return SecurePacket(payload=payload, checksum=checksum(payload))


def verify(frame: bytes, secret: int = DEFAULT_SECRET) -> bytes:
    """Check a wire frame and return the de-obfuscated plaintext."""
    if len(frame) < 2:
        raise PacketIntegrityError(f"Frame must be at least 2 bytes, got {len(frame)}")
    payload, shipped = frame[:-1], frame[-1]
    expected = checksum(payload)
    if expected != shipped:
        raise PacketIntegrityError(
            f"Checksum mismatch: frame carries {shipped:02x}, payload sums to {expected:02x}"
        )
    return obfuscate(payload, secret)
