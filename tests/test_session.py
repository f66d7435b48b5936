from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from ventctl.core.capability import AllowAllGate
from ventctl.core.errors import (
    CapabilityError,
    NotReadyError,
    ReconnectExhaustedError,
    TransportConnectError,
    TransportSendError,
)
from ventctl.core.model import Command, ConnectionState, DeviceIdentity, ReconnectSettings
from ventctl.core.session import (
    CONNECTION_LOST_TITLE,
    SENSOR_ALERT_TITLE,
    SENSOR_OPENED_BODY,
    SENSOR_OPENED_TITLE,
    DeviceSession,
)
from ventctl.sync import MemorySyncTarget

SERVICE = "12345678-90ab-cdef-1234-567890abcdef"
TELEMETRY = "abcdef01-1234-5678-90ab-cdef12345678"
CONTROL = "abcdef02-1234-5678-90ab-cdef12345678"
IDENTITY = DeviceIdentity(
    address="AA:BB:CC:11:22:33",
    service_uuid=SERVICE,
    control_char_uuid=CONTROL,
    telemetry_char_uuid=TELEMETRY,
)


class FakeTransport:
    def __init__(
        self,
        *,
        fail_connect: bool = False,
        fail_write: bool = False,
        characteristics: frozenset[str] = frozenset({CONTROL, TELEMETRY}),
        hold_connect: asyncio.Event | None = None,
    ) -> None:
        self.fail_connect = fail_connect
        self.fail_write = fail_write
        self.characteristics = characteristics
        self.hold_connect = hold_connect
        self.on_disconnect: Callable[[], None] | None = None
        self.notify_handler: Callable[[bytes], None] | None = None
        self.writes: list[tuple[str, bytes, bool]] = []
        self.closed = False

    async def connect(self, address: str, *, on_disconnect: Callable[[], None], timeout_s: float = 10.0) -> None:
        if self.hold_connect is not None:
            await self.hold_connect.wait()
        if self.fail_connect:
            raise TransportConnectError(f"BLE connect failed for {address}")
        self.on_disconnect = on_disconnect

    async def discover(self, service_uuid: str) -> frozenset[str]:
        assert service_uuid == SERVICE
        return self.characteristics

    async def start_notify(self, char_uuid: str, handler: Callable[[bytes], None]) -> None:
        assert char_uuid == TELEMETRY
        self.notify_handler = handler

    async def write(self, char_uuid: str, data: bytes, *, response: bool = True) -> None:
        if self.fail_write:
            raise TransportSendError("BLE GATT write failed: gatt error")
        self.writes.append((char_uuid, data, response))

    async def close(self) -> None:
        self.closed = True


class FakeTransportFactory:
    def __init__(self, *configs: dict[str, Any]) -> None:
        self.configs = list(configs)
        self.created: list[FakeTransport] = []

    def __call__(self) -> FakeTransport:
        config = self.configs.pop(0) if self.configs else {}
        transport = FakeTransport(**config)
        self.created.append(transport)
        return transport


class FakeTimer:
    def __init__(self, delay: float, callback: Callable[..., Any], args: tuple[Any, ...]) -> None:
        self.delay = delay
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        assert not self.cancelled
        self.callback(*self.args)


class FakeScheduler:
    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> FakeTimer:
        timer = FakeTimer(delay, callback, args)
        self.timers.append(timer)
        return timer


class FakeNotifier:
    def __init__(self) -> None:
        self.alerts: list[tuple[str, str]] = []

    def notify(self, title: str, body: str) -> None:
        self.alerts.append((title, body))


class Harness:
    def __init__(self, *configs: dict[str, Any], identity: DeviceIdentity = IDENTITY) -> None:
        self.factory = FakeTransportFactory(*configs)
        self.scheduler = FakeScheduler()
        self.sync = MemorySyncTarget()
        self.notifier = FakeNotifier()
        self.states: list[ConnectionState] = []
        self.session = DeviceSession(
            identity,
            transport_factory=self.factory,
            sync_target=self.sync,
            notifier=self.notifier,
            gate=AllowAllGate(),
            scheduler=self.scheduler,
            reconnect=ReconnectSettings(max_attempts=3, base_delay_s=2.0),
        )
        self.session.add_state_listener(lambda t: self.states.append(t.target))

    async def connect_ready(self) -> FakeTransport:
        await self.session.connect()
        await self.session.flush()
        assert self.session.current_state() is ConnectionState.READY
        return self.factory.created[-1]


def test_end_to_end_open_command() -> None:
    harness = Harness()

    async def scenario() -> bytes:
        assert harness.session.current_state() is ConnectionState.DISCONNECTED
        transport = await harness.connect_ready()
        packet = harness.session.request_command(Command.OPEN)
        await harness.session.flush()
        assert transport.writes == [(CONTROL, bytes([0x38, 0x38]), True)]
        await harness.session.teardown()
        return packet.to_bytes()

    wire = asyncio.run(scenario())
    assert wire == bytes([0x38, 0x38])
    assert harness.states[:3] == [
        ConnectionState.CONNECTING,
        ConnectionState.SERVICE_DISCOVERY,
        ConnectionState.READY,
    ]
    assert harness.sync.writes == [("estado_ventana", "ABIERTA")]


def test_request_command_while_connecting_is_rejected() -> None:
    hold = asyncio.Event()
    harness = Harness({"hold_connect": hold})

    async def scenario() -> None:
        connecting = asyncio.Event()
        harness.session.add_state_listener(
            lambda t: connecting.set() if t.target is ConnectionState.CONNECTING else None
        )
        await harness.session.connect()
        await connecting.wait()

        with pytest.raises(NotReadyError):
            harness.session.request_command(Command.OPEN)

        hold.set()
        await harness.session.flush()
        await harness.session.teardown()

    asyncio.run(scenario())
    assert harness.factory.created[0].writes == []
    assert harness.sync.writes == []


def test_request_command_before_connect_is_rejected() -> None:
    harness = Harness()
    with pytest.raises(NotReadyError):
        harness.session.request_command(Command.CLOSE)
    assert harness.sync.writes == []


def test_wait_ready_resolves() -> None:
    harness = Harness()

    async def scenario() -> None:
        async with harness.session as session:
            await session.wait_ready(timeout_s=1.0)
            assert session.current_state() is ConnectionState.READY

    asyncio.run(scenario())
    assert harness.factory.created[0].closed


def test_disconnect_from_ready_schedules_exactly_one_retry() -> None:
    harness = Harness()

    async def scenario() -> FakeTransport:
        transport = await harness.connect_ready()
        assert transport.on_disconnect is not None
        transport.on_disconnect()
        transport.on_disconnect()
        await harness.session.flush()
        return transport

    transport = asyncio.run(scenario())
    assert harness.session.current_state() is ConnectionState.DISCONNECTED
    assert transport.closed
    assert [t.delay for t in harness.scheduler.timers] == [2.0]


def test_reconnect_replaces_transport_and_resets_attempts() -> None:
    harness = Harness()

    async def scenario() -> None:
        first = await harness.connect_ready()
        assert first.on_disconnect is not None
        first.on_disconnect()
        await harness.session.flush()
        assert harness.session.reconnect_state.attempt == 1

        harness.scheduler.timers[-1].fire()
        await harness.session.flush()
        assert harness.session.current_state() is ConnectionState.READY
        assert harness.session.reconnect_state.attempt == 0

        # A late callback from the released cycle must not affect the new one.
        first.on_disconnect()
        await harness.session.flush()
        assert harness.session.current_state() is ConnectionState.READY

        harness.session.request_command(Command.CLOSE)
        await harness.session.flush()
        await harness.session.teardown()

    asyncio.run(scenario())
    first, second = harness.factory.created
    assert first.writes == []
    assert second.writes == [(CONTROL, bytes([0x3B, 0x3B]), True)]
    assert len(harness.scheduler.timers) == 1


def test_exhaustion_reports_one_terminal_failure() -> None:
    failing = {"fail_connect": True}
    harness = Harness(failing, failing, failing, failing)

    async def scenario() -> None:
        await harness.session.connect()
        await harness.session.flush()
        waiter = asyncio.ensure_future(harness.session.wait_ready())
        for _ in range(3):
            harness.scheduler.timers[-1].fire()
            await harness.session.flush()
        with pytest.raises(ReconnectExhaustedError):
            await waiter
        await harness.session.teardown()

    asyncio.run(scenario())
    assert [t.delay for t in harness.scheduler.timers] == [2.0, 4.0, 6.0]
    assert [title for title, _ in harness.notifier.alerts] == [CONNECTION_LOST_TITLE]
    assert harness.session.reconnect_state.attempt == 0
    assert all(t.closed for t in harness.factory.created)


def test_manual_connect_after_exhaustion() -> None:
    failing = {"fail_connect": True}
    harness = Harness(failing, failing, failing, failing)

    async def scenario() -> None:
        await harness.session.connect()
        await harness.session.flush()
        for _ in range(3):
            harness.scheduler.timers[-1].fire()
            await harness.session.flush()
        assert harness.session.current_state() is ConnectionState.DISCONNECTED

        await harness.session.connect()
        await harness.session.flush()
        assert harness.session.current_state() is ConnectionState.READY
        await harness.session.teardown()

    asyncio.run(scenario())
    assert len(harness.factory.created) == 5


def test_missing_characteristic_fails_discovery() -> None:
    harness = Harness({"characteristics": frozenset({CONTROL})})

    async def scenario() -> None:
        await harness.session.connect()
        await harness.session.flush()
        await harness.session.teardown()

    asyncio.run(scenario())
    assert harness.states[:3] == [
        ConnectionState.CONNECTING,
        ConnectionState.SERVICE_DISCOVERY,
        ConnectionState.DISCONNECTED,
    ]
    assert harness.factory.created[0].closed
    assert len(harness.scheduler.timers) == 1
    assert harness.scheduler.timers[0].cancelled


def test_write_failure_disconnects_and_retries() -> None:
    harness = Harness({"fail_write": True})

    async def scenario() -> None:
        await harness.connect_ready()
        harness.session.request_command(Command.OPEN)
        await harness.session.flush()
        assert harness.session.current_state() is ConnectionState.DISCONNECTED
        await harness.session.teardown()

    asyncio.run(scenario())
    assert harness.session.current_state() is ConnectionState.DISCONNECTED
    assert harness.sync.writes == [("estado_ventana", "ABIERTA")]
    assert [t.delay for t in harness.scheduler.timers] == [2.0]


def test_teardown_cancels_timer_and_never_reconnects() -> None:
    harness = Harness()

    async def scenario() -> FakeTransport:
        transport = await harness.connect_ready()
        assert transport.on_disconnect is not None
        transport.on_disconnect()
        await harness.session.flush()
        await harness.session.teardown()
        transport.on_disconnect()
        await harness.session.flush()
        return transport

    asyncio.run(scenario())
    assert harness.scheduler.timers[0].cancelled
    assert len(harness.scheduler.timers) == 1
    assert len(harness.factory.created) == 1
    assert harness.session.current_state() is ConnectionState.DISCONNECTED
    assert harness.states[-2:] == [ConnectionState.DISCONNECTING, ConnectionState.DISCONNECTED]


def test_teardown_from_ready_releases_transport() -> None:
    harness = Harness()

    async def scenario() -> FakeTransport:
        transport = await harness.connect_ready()
        await harness.session.teardown()
        await harness.session.teardown()
        return transport

    transport = asyncio.run(scenario())
    assert transport.closed
    assert harness.scheduler.timers == []
    with pytest.raises(NotReadyError):
        harness.session.request_command(Command.OPEN)


def test_sensor_closed_telemetry_syncs_and_alerts() -> None:
    harness = Harness()
    events = []
    harness.session.add_telemetry_listener(events.append)

    async def scenario() -> None:
        transport = await harness.connect_ready()
        assert transport.notify_handler is not None
        transport.notify_handler(b"Ventana CERRADA")
        await harness.session.flush()
        await harness.session.teardown()

    asyncio.run(scenario())
    assert [e.text for e in events] == ["Ventana CERRADA"]
    assert harness.sync.values == {"estado_ventana": "CERRADA"}
    assert harness.notifier.alerts[0][0] == SENSOR_ALERT_TITLE


def test_unrecognized_telemetry_is_only_logged(caplog: pytest.LogCaptureFixture) -> None:
    harness = Harness()

    async def scenario() -> None:
        transport = await harness.connect_ready()
        assert transport.notify_handler is not None
        transport.notify_handler(b"Humedad 80%")
        await harness.session.flush()
        await harness.session.teardown()

    asyncio.run(scenario())
    assert harness.sync.writes == []
    assert harness.notifier.alerts == []
    assert "Unrecognized telemetry" in caplog.text


def test_capability_gate_blocks_connect() -> None:
    class DenyGate:
        def ensure(self, action: str) -> None:
            raise CapabilityError(f"Cannot {action}")

    session = DeviceSession(IDENTITY, transport_factory=FakeTransportFactory(), gate=DenyGate())

    async def scenario() -> None:
        with pytest.raises(CapabilityError):
            await session.connect()
        await session.teardown()

    asyncio.run(scenario())
    assert session.current_state() is ConnectionState.DISCONNECTED


def test_identity_uuids_are_lowercased() -> None:
    identity = DeviceIdentity(
        address="AA:BB:CC:11:22:33",
        service_uuid=SERVICE.upper(),
        control_char_uuid=f" {CONTROL.upper()} ",
        telemetry_char_uuid=TELEMETRY.upper(),
    )
    assert identity == IDENTITY


def test_uppercase_identity_reaches_ready() -> None:
    identity = DeviceIdentity(
        address="AA:BB:CC:11:22:33",
        service_uuid=SERVICE.upper(),
        control_char_uuid=CONTROL.upper(),
        telemetry_char_uuid=TELEMETRY.upper(),
    )
    harness = Harness(identity=identity)

    async def scenario() -> None:
        await harness.connect_ready()
        await harness.session.teardown()

    asyncio.run(scenario())
    assert harness.scheduler.timers == []


def test_discovery_matches_uppercase_characteristics() -> None:
    harness = Harness({"characteristics": frozenset({CONTROL.upper(), TELEMETRY.upper()})})

    async def scenario() -> None:
        await harness.connect_ready()
        await harness.session.teardown()

    asyncio.run(scenario())
    assert harness.scheduler.timers == []


def test_wait_ready_after_exhaustion_fails_immediately() -> None:
    failing = {"fail_connect": True}
    harness = Harness(failing, failing, failing, failing)

    async def scenario() -> None:
        await harness.session.connect()
        await harness.session.flush()
        for _ in range(3):
            harness.scheduler.timers[-1].fire()
            await harness.session.flush()
        assert not harness.session.reconnect_state.pending_timer

        with pytest.raises(ReconnectExhaustedError):
            await harness.session.wait_ready()
        await harness.session.teardown()

    asyncio.run(scenario())


def test_wait_ready_without_connect_fails_immediately() -> None:
    harness = Harness()

    async def scenario() -> None:
        with pytest.raises(NotReadyError):
            await harness.session.wait_ready()

    asyncio.run(scenario())
    assert harness.factory.created == []


def test_wait_ready_waits_through_pending_retry() -> None:
    harness = Harness({"fail_connect": True})

    async def scenario() -> None:
        await harness.session.connect()
        await harness.session.flush()
        waiter = asyncio.ensure_future(harness.session.wait_ready(timeout_s=1.0))
        await asyncio.sleep(0)
        assert not waiter.done()

        harness.scheduler.timers[-1].fire()
        await harness.session.flush()
        await waiter
        await harness.session.teardown()

    asyncio.run(scenario())
    assert len(harness.factory.created) == 2


def test_events_from_superseded_cycle_are_ignored() -> None:
    harness = Harness()
    events = []
    harness.session.add_telemetry_listener(events.append)

    async def scenario() -> None:
        first = await harness.connect_ready()
        assert first.on_disconnect is not None
        assert first.notify_handler is not None
        first.on_disconnect()
        await harness.session.flush()
        harness.scheduler.timers[-1].fire()
        await harness.session.flush()
        assert harness.session.current_state() is ConnectionState.READY
        states_before = list(harness.states)

        first.notify_handler(b"Ventana cerrada")
        first.on_disconnect()
        await harness.session.flush()

        assert harness.states == states_before
        assert harness.session.current_state() is ConnectionState.READY
        await harness.session.teardown()

    asyncio.run(scenario())
    assert events == []
    assert harness.sync.writes == []
    assert harness.notifier.alerts == []
    assert len(harness.scheduler.timers) == 1


def test_sensor_opened_telemetry_syncs_and_alerts() -> None:
    harness = Harness()

    async def scenario() -> None:
        transport = await harness.connect_ready()
        assert transport.notify_handler is not None
        transport.notify_handler(b"Ventana abierta\x00")
        await harness.session.flush()
        await harness.session.teardown()

    asyncio.run(scenario())
    assert harness.sync.writes == [("estado_ventana", "ABIERTA")]
    assert harness.notifier.alerts == [(SENSOR_OPENED_TITLE, SENSOR_OPENED_BODY)]


def test_command_rejected_while_teardown_is_in_progress() -> None:
    harness = Harness()

    async def scenario() -> FakeTransport:
        transport = await harness.connect_ready()
        closing = asyncio.ensure_future(harness.session.teardown())
        await asyncio.sleep(0)
        with pytest.raises(NotReadyError):
            harness.session.request_command(Command.OPEN)
        await closing
        return transport

    transport = asyncio.run(scenario())
    assert transport.writes == []
    assert harness.sync.writes == []


def test_manual_connect_during_backoff_restarts_attempt_count() -> None:
    failing = {"fail_connect": True}
    harness = Harness(failing, failing)

    async def scenario() -> None:
        await harness.session.connect()
        await harness.session.flush()
        assert harness.session.reconnect_state.attempt == 1

        await harness.session.connect()
        await harness.session.flush()
        assert harness.session.reconnect_state.attempt == 1
        await harness.session.teardown()

    asyncio.run(scenario())
    assert [t.delay for t in harness.scheduler.timers] == [2.0, 2.0]
    assert harness.scheduler.timers[0].cancelled
