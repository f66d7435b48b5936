"""BLE GATT transport implementation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from ventctl.core.errors import (
    TransportConnectError,
    TransportSendError,
    TransportTimeoutError,
)

LOGGER = logging.getLogger(__name__)


class BLEGATTTransport:
    def __init__(self) -> None:
        self._client: Any | None = None
        self._notifying: list[str] = []

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    async def connect(
        self,
        address: str,
        *,
        on_disconnect: Callable[[], None],
        timeout_s: float = 10.0,
    ) -> None:
        try:
            from bleak import BleakClient  # type: ignore
        except Exception as exc:  # pragma: no cover - import failure path
            raise TransportConnectError(
                "BLE transport requires 'bleak'. Install dependency and retry."
            ) from exc

        def _disconnected(_: Any) -> None:
            on_disconnect()

        client = BleakClient(address, disconnected_callback=_disconnected, timeout=timeout_s)
        try:
            await client.connect()
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError(f"BLE connect timed out for {address}") from exc
        except Exception as exc:
            raise TransportConnectError(f"BLE connect failed for {address}: {exc}") from exc

        if not client.is_connected:
            raise TransportConnectError(f"BLE connect failed for {address}")
        self._client = client

    async def discover(self, service_uuid: str) -> frozenset[str]:
        client = self._require_client()
        service = client.services.get_service(service_uuid)
        if service is None:
            return frozenset()
        return frozenset(str(char.uuid).lower() for char in service.characteristics)

    async def start_notify(self, char_uuid: str, handler: Callable[[bytes], None]) -> None:
        client = self._require_client()

        def _notify_handler(_: Any, data: bytearray) -> None:
            handler(bytes(data))

        try:
            await client.start_notify(char_uuid, _notify_handler)
        except Exception as exc:
            raise TransportConnectError(
                f"Could not enable notifications on {char_uuid}: {exc}"
            ) from exc
        self._notifying.append(char_uuid)

    async def write(self, char_uuid: str, data: bytes, *, response: bool = True) -> None:
        client = self._require_client()
        try:
            await client.write_gatt_char(char_uuid, data, response=response)
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError(f"BLE write to {char_uuid} timed out") from exc
        except Exception as exc:
            raise TransportSendError(f"BLE GATT write failed: {exc}") from exc

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        notifying, self._notifying = self._notifying, []
        if client.is_connected:
            for char_uuid in notifying:
                try:
                    await client.stop_notify(char_uuid)
                except Exception as exc:
                    LOGGER.debug("stop_notify on %s failed: %s", char_uuid, exc)
        try:
            await client.disconnect()
        except Exception as exc:
            LOGGER.warning("BLE disconnect failed: %s", exc)

    def _require_client(self) -> Any:
        if self._client is None or not self._client.is_connected:
            raise TransportConnectError("BLE transport is not connected")
        return self._client
