"""Device session orchestrating codec, state machine, reconnect, and telemetry.

Every transport callback, timer and write completion is turned into a
``SessionEvent`` and pushed onto one ``asyncio.Queue``. A single dispatcher
task drains that queue, so state transitions never run concurrently.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ventctl.core.capability import BleakCapabilityGate, CapabilityGate
from ventctl.core.codec import DEFAULT_SECRET, encode
from ventctl.core.errors import (
    NotReadyError,
    ReconnectExhaustedError,
    TransportConnectError,
    TransportTimeoutError,
)
from ventctl.core.model import (
    DEFAULT_SYNC_KEY,
    Command,
    ConnectionState,
    ControlHandle,
    DeviceIdentity,
    ReconnectSettings,
    ReconnectState,
    SecurePacket,
    TelemetryEvent,
    TelemetryKind,
)
from ventctl.core.reconnect import ReconnectPolicy, Scheduler, TimerHandle
from ventctl.core.state import ConnectionStateMachine, StateEvent, Transition
from ventctl.core.telemetry import TelemetryDecoder
from ventctl.notify import LoggingNotifier, Notifier
from ventctl.sync import MemorySyncTarget, SyncTarget
from ventctl.transports.base import Transport
from ventctl.transports.ble_gatt import BLEGATTTransport

LOGGER = logging.getLogger(__name__)

SENSOR_ALERT_TITLE = "Alerta Lluvia"
SENSOR_CLOSED_BODY = "Ventana cerrada por sensor."
SENSOR_OPENED_TITLE = "Ventana"
SENSOR_OPENED_BODY = "Ventana abierta por sensor."
CONNECTION_LOST_TITLE = "Conexión perdida"
CONNECTION_LOST_BODY = "No se pudo reconectar con el dispositivo."


class SessionEventKind(Enum):
    CONNECT = "connect"
    RECONNECT_DUE = "reconnect_due"
    CONNECTED = "connected"
    CONNECT_FAILED = "connect_failed"
    DISCOVERED = "discovered"
    DISCOVERY_FAILED = "discovery_failed"
    DISCONNECTED = "disconnected"
    NOTIFICATION = "notification"
    WRITE_COMPLETED = "write_completed"
    WRITE_FAILED = "write_failed"
    TEARDOWN = "teardown"


@dataclass(frozen=True)
class SessionEvent:
    kind: SessionEventKind
    generation: int = 0
    reason: str = ""
    payload: bytes = b""
    done: asyncio.Future[None] | None = None


# Events produced by a specific connect cycle; dropped once that cycle is gone.
_CYCLE_EVENTS = frozenset(
    {
        SessionEventKind.CONNECTED,
        SessionEventKind.CONNECT_FAILED,
        SessionEventKind.DISCOVERED,
        SessionEventKind.DISCOVERY_FAILED,
        SessionEventKind.DISCONNECTED,
        SessionEventKind.NOTIFICATION,
        SessionEventKind.WRITE_COMPLETED,
        SessionEventKind.WRITE_FAILED,
    }
)

_FAILURE_EVENTS = {
    SessionEventKind.CONNECT_FAILED: StateEvent.TRANSPORT_FAILED,
    SessionEventKind.DISCOVERY_FAILED: StateEvent.DISCOVERY_FAILED,
    SessionEventKind.DISCONNECTED: StateEvent.TRANSPORT_DISCONNECTED,
    SessionEventKind.WRITE_FAILED: StateEvent.WRITE_FAILED,
}


class _RunningLoopScheduler:
    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback, *args)


class DeviceSession:
    """Single logical connection to one window controller.

    Use ``async with`` (or call ``teardown``) so reconnect timers and the
    transport are always released.
    """

    def __init__(
        self,
        identity: DeviceIdentity,
        *,
        transport_factory: Callable[[], Transport] = BLEGATTTransport,
        sync_target: SyncTarget | None = None,
        notifier: Notifier | None = None,
        gate: CapabilityGate | None = None,
        scheduler: Scheduler | None = None,
        decoder: TelemetryDecoder | None = None,
        reconnect: ReconnectSettings | None = None,
        secret: int = DEFAULT_SECRET,
        sync_key: str = DEFAULT_SYNC_KEY,
        connect_timeout_s: float = 10.0,
        write_with_response: bool = True,
    ) -> None:
        self._identity = identity
        self._transport_factory = transport_factory
        self._sync_target = sync_target if sync_target is not None else MemorySyncTarget()
        self._notifier = notifier or LoggingNotifier()
        self._gate = gate or BleakCapabilityGate()
        self._decoder = decoder or TelemetryDecoder()
        self._secret = secret
        self._sync_key = sync_key
        self._connect_timeout_s = connect_timeout_s
        self._write_with_response = write_with_response

        self._machine = ConnectionStateMachine()
        self._policy = ReconnectPolicy(
            scheduler or _RunningLoopScheduler(),
            on_retry=self._on_retry_due,
            on_exhausted=self._on_exhausted,
            settings=reconnect,
        )

        self._queue: asyncio.Queue[SessionEvent] | None = None
        self._dispatcher: asyncio.Task[None] | None = None
        self._transport: Transport | None = None
        self._cycle_task: asyncio.Task[None] | None = None
        self._writes: set[asyncio.Task[None]] = set()
        self._generation = 0
        self._closing = False
        self._connect_requested = False
        self._exhausted = False
        self._ready_waiters: list[asyncio.Future[None]] = []
        self._telemetry_listeners: list[Callable[[TelemetryEvent], None]] = []
        self._exhaustion_listeners: list[Callable[[], None]] = []

    async def __aenter__(self) -> DeviceSession:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.teardown()

    @property
    def identity(self) -> DeviceIdentity:
        return self._identity

    @property
    def reconnect_state(self) -> ReconnectState:
        return self._policy.state

    def current_state(self) -> ConnectionState:
        return self._machine.state

    def add_state_listener(self, listener: Callable[[Transition], None]) -> None:
        self._machine.add_listener(listener)

    def add_telemetry_listener(self, listener: Callable[[TelemetryEvent], None]) -> None:
        self._telemetry_listeners.append(listener)

    def add_exhaustion_listener(self, listener: Callable[[], None]) -> None:
        self._exhaustion_listeners.append(listener)

    async def connect(self) -> None:
        self._gate.ensure("connect")
        self._closing = False
        self._exhausted = False
        if self._dispatcher is None:
            self._queue = asyncio.Queue()
            self._dispatcher = asyncio.get_running_loop().create_task(self._dispatch(self._queue))
        self._connect_requested = True
        self._post(SessionEvent(SessionEventKind.CONNECT))

    def request_command(self, command: Command) -> SecurePacket:
        """Encode and submit ``command`` without waiting for the write to land.

        Raises NotReadyError, with no side effects, unless the session is READY.
        """
        if self._closing:
            raise NotReadyError(f"Session for {self._identity.address} is closing")
        handle = self._machine.ensure_writable()
        self._gate.ensure("write")
        packet = encode(command, self._secret)
        task = asyncio.get_running_loop().create_task(self._write(handle, packet))
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)
        LOGGER.info("Sent %s as %s to %s", command.name, packet.hex(), self._identity.address)
        self._sync_target.put(self._sync_key, command.sync_value)
        return packet

    async def wait_ready(self, timeout_s: float | None = None) -> None:
        if self._machine.state is ConnectionState.READY:
            return
        if self._idle():
            if self._exhausted:
                raise ReconnectExhaustedError(f"Could not reconnect to {self._identity.address}")
            raise NotReadyError(f"Session for {self._identity.address} is not connecting")
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._ready_waiters.append(waiter)
        try:
            await asyncio.wait_for(waiter, timeout_s)
        except asyncio.TimeoutError:
            raise TransportTimeoutError(
                f"Device {self._identity.address} was not ready within {timeout_s}s"
            ) from None
        finally:
            if waiter in self._ready_waiters:
                self._ready_waiters.remove(waiter)

    async def flush(self) -> None:
        """Wait for submitted writes, the active connect cycle and queued events.

        Pending reconnect timers are not waited on.
        """
        while True:
            # Let callbacks already scheduled on the loop post their events.
            await asyncio.sleep(0)
            pending = self._pending_tasks()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            if self._queue is not None:
                await self._queue.join()
            if not self._pending_tasks() and (self._queue is None or self._queue.empty()):
                return

    async def teardown(self) -> None:
        self._policy.cancel()
        self._closing = True
        self._cancel_cycle()
        for task in list(self._writes):
            task.cancel()

        dispatcher = self._dispatcher
        if dispatcher is None:
            return
        done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._post(SessionEvent(SessionEventKind.TEARDOWN, done=done))
        try:
            await done
        finally:
            self._dispatcher = None
            self._queue = None
            dispatcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await dispatcher

    def _idle(self) -> bool:
        """True when nothing in flight can move the session towards READY."""
        return (
            self._machine.state is ConnectionState.DISCONNECTED
            and not self._connect_requested
            and not self._policy.pending
            and not self._pending_tasks()
        )

    def _pending_tasks(self) -> list[asyncio.Task[None]]:
        tasks = [*self._writes, self._cycle_task]
        return [t for t in tasks if t is not None and not t.done()]

    def _post(self, event: SessionEvent) -> None:
        if self._queue is None:
            LOGGER.debug("Session not running; dropping %s", event.kind.value)
            return
        self._queue.put_nowait(event)

    def _post_threadsafe(self, loop: asyncio.AbstractEventLoop, event: SessionEvent) -> None:
        if loop.is_closed():
            return
        loop.call_soon_threadsafe(self._post, event)

    async def _dispatch(self, queue: asyncio.Queue[SessionEvent]) -> None:
        while True:
            event = await queue.get()
            try:
                await self._handle(event)
            except Exception as exc:
                LOGGER.exception("Failed handling session event %s", event.kind.value)
                if event.done is not None and not event.done.done():
                    event.done.set_exception(exc)
            finally:
                queue.task_done()

    async def _handle(self, event: SessionEvent) -> None:
        kind = event.kind
        if kind is SessionEventKind.TEARDOWN:
            await self._finish_teardown(event)
            return

        if kind in (SessionEventKind.CONNECT, SessionEventKind.RECONNECT_DUE):
            self._connect_requested = False
            if self._closing:
                return
            if kind is SessionEventKind.CONNECT:
                self._policy.reset()
            if self._machine.fire(StateEvent.CONNECT_REQUESTED) is not None:
                self._start_cycle()
            return

        if kind in _CYCLE_EVENTS and event.generation != self._generation:
            LOGGER.debug("Dropping stale %s from cycle %d", kind.value, event.generation)
            return

        if kind is SessionEventKind.CONNECTED:
            if self._machine.fire(StateEvent.TRANSPORT_CONNECTED) is not None:
                self._cycle_task = asyncio.get_running_loop().create_task(
                    self._discover(self._require_transport(), event.generation)
                )
        elif kind is SessionEventKind.DISCOVERED:
            handle = ControlHandle(
                transport=self._require_transport(),
                char_uuid=self._identity.control_char_uuid,
                generation=event.generation,
            )
            if self._machine.fire(StateEvent.DISCOVERY_SUCCEEDED, handle) is not None:
                self._policy.on_ready()
                self._resolve_waiters(None)
        elif kind in _FAILURE_EVENTS:
            await self._fail_cycle(_FAILURE_EVENTS[kind], event.reason)
        elif kind is SessionEventKind.NOTIFICATION:
            self._on_telemetry(event.payload)
        elif kind is SessionEventKind.WRITE_COMPLETED:
            LOGGER.debug("Write acknowledged by transport")

    def _start_cycle(self) -> None:
        self._generation += 1
        transport = self._transport_factory()
        self._transport = transport
        self._cycle_task = asyncio.get_running_loop().create_task(
            self._connect_transport(transport, self._generation)
        )

    def _cancel_cycle(self) -> None:
        task, self._cycle_task = self._cycle_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _require_transport(self) -> Transport:
        if self._transport is None:
            raise TransportConnectError("No transport bound to the current cycle")
        return self._transport

    async def _connect_transport(self, transport: Transport, generation: int) -> None:
        loop = asyncio.get_running_loop()

        def _on_disconnect() -> None:
            self._post_threadsafe(
                loop,
                SessionEvent(SessionEventKind.DISCONNECTED, generation, reason="link lost"),
            )

        try:
            self._gate.ensure("connect")
            await transport.connect(
                self._identity.address,
                on_disconnect=_on_disconnect,
                timeout_s=self._connect_timeout_s,
            )
        except Exception as exc:
            LOGGER.warning("Connect to %s failed: %s", self._identity.address, exc)
            self._post(SessionEvent(SessionEventKind.CONNECT_FAILED, generation, reason=str(exc)))
            return
        self._post(SessionEvent(SessionEventKind.CONNECTED, generation))

    async def _discover(self, transport: Transport, generation: int) -> None:
        loop = asyncio.get_running_loop()

        def _on_notify(data: bytes) -> None:
            self._post_threadsafe(
                loop,
                SessionEvent(SessionEventKind.NOTIFICATION, generation, payload=data),
            )

        identity = self._identity
        try:
            self._gate.ensure("discover services")
            found = {uuid.lower() for uuid in await transport.discover(identity.service_uuid)}
            missing = sorted(
                {identity.control_char_uuid, identity.telemetry_char_uuid} - found
            )
            if missing:
                raise TransportConnectError(
                    f"Service {identity.service_uuid} is missing characteristics: {', '.join(missing)}"
                )
            await transport.start_notify(identity.telemetry_char_uuid, _on_notify)
        except Exception as exc:
            LOGGER.warning("Service discovery on %s failed: %s", identity.address, exc)
            self._post(SessionEvent(SessionEventKind.DISCOVERY_FAILED, generation, reason=str(exc)))
            return
        self._post(SessionEvent(SessionEventKind.DISCOVERED, generation))

    async def _write(self, handle: ControlHandle, packet: SecurePacket) -> None:
        try:
            await handle.transport.write(
                handle.char_uuid,
                packet.to_bytes(),
                response=self._write_with_response,
            )
        except Exception as exc:
            LOGGER.warning("Write of %s failed: %s", packet.hex(), exc)
            self._post(SessionEvent(SessionEventKind.WRITE_FAILED, handle.generation, reason=str(exc)))
            return
        self._post(SessionEvent(SessionEventKind.WRITE_COMPLETED, handle.generation))

    async def _fail_cycle(self, state_event: StateEvent, reason: str) -> None:
        transition = self._machine.fire(state_event)
        if transition is None:
            return
        await self._release_transport()
        if transition.hands_off and not self._closing:
            self._policy.on_disconnected(reason)

    async def _release_transport(self) -> None:
        # Any event still in flight from the released cycle becomes stale.
        self._generation += 1
        self._cancel_cycle()
        transport, self._transport = self._transport, None
        if transport is None:
            return
        try:
            await transport.close()
        except Exception as exc:
            LOGGER.warning("Closing transport for %s failed: %s", self._identity.address, exc)

    async def _finish_teardown(self, event: SessionEvent) -> None:
        self._policy.cancel()
        self._connect_requested = False
        self._machine.fire(StateEvent.TEARDOWN_REQUESTED)
        await self._release_transport()
        self._machine.fire(StateEvent.TEARDOWN_COMPLETED)
        self._resolve_waiters(NotReadyError("Session was torn down"))
        if event.done is not None and not event.done.done():
            event.done.set_result(None)

    def _on_retry_due(self, attempt: int) -> None:
        LOGGER.info("Reconnect attempt %d due for %s", attempt, self._identity.address)
        self._connect_requested = True
        self._post(SessionEvent(SessionEventKind.RECONNECT_DUE))

    def _on_exhausted(self) -> None:
        self._exhausted = True
        self._notifier.notify(CONNECTION_LOST_TITLE, CONNECTION_LOST_BODY)
        self._resolve_waiters(
            ReconnectExhaustedError(f"Could not reconnect to {self._identity.address}")
        )
        for listener in list(self._exhaustion_listeners):
            listener()

    def _on_telemetry(self, payload: bytes) -> None:
        event = self._decoder.decode(payload)
        for listener in list(self._telemetry_listeners):
            listener(event)

        if event.kind is TelemetryKind.SENSOR_CLOSED:
            self._sync_target.put(self._sync_key, Command.CLOSE.sync_value)
            self._notifier.notify(SENSOR_ALERT_TITLE, SENSOR_CLOSED_BODY)
        elif event.kind is TelemetryKind.SENSOR_OPENED:
            self._sync_target.put(self._sync_key, Command.OPEN.sync_value)
            self._notifier.notify(SENSOR_OPENED_TITLE, SENSOR_OPENED_BODY)
        else:
            LOGGER.warning("Unrecognized telemetry from %s: %r", self._identity.address, event.text)

    def _resolve_waiters(self, error: Exception | None) -> None:
        waiters, self._ready_waiters = self._ready_waiters, []
        for waiter in waiters:
            if waiter.done():
                continue
            if error is None:
                waiter.set_result(None)
            else:
                waiter.set_exception(error)
