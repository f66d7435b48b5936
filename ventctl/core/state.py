"""Connection lifecycle state machine."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from ventctl.core.errors import NotReadyError
from ventctl.core.model import ConnectionState, ControlHandle

LOGGER = logging.getLogger(__name__)


class StateEvent(Enum):
    CONNECT_REQUESTED = "connect_requested"
    TRANSPORT_CONNECTED = "transport_connected"
    TRANSPORT_FAILED = "transport_failed"
    DISCOVERY_SUCCEEDED = "discovery_succeeded"
    DISCOVERY_FAILED = "discovery_failed"
    TRANSPORT_DISCONNECTED = "transport_disconnected"
    WRITE_FAILED = "write_failed"
    TEARDOWN_REQUESTED = "teardown_requested"
    TEARDOWN_COMPLETED = "teardown_completed"


_S = ConnectionState
_E = StateEvent

_TRANSITIONS: dict[tuple[ConnectionState, StateEvent], ConnectionState] = {
    (_S.DISCONNECTED, _E.CONNECT_REQUESTED): _S.CONNECTING,
    (_S.CONNECTING, _E.TRANSPORT_CONNECTED): _S.SERVICE_DISCOVERY,
    (_S.CONNECTING, _E.TRANSPORT_FAILED): _S.DISCONNECTED,
    (_S.CONNECTING, _E.TRANSPORT_DISCONNECTED): _S.DISCONNECTED,
    (_S.SERVICE_DISCOVERY, _E.DISCOVERY_SUCCEEDED): _S.READY,
    (_S.SERVICE_DISCOVERY, _E.DISCOVERY_FAILED): _S.DISCONNECTED,
    (_S.SERVICE_DISCOVERY, _E.TRANSPORT_DISCONNECTED): _S.DISCONNECTED,
    (_S.READY, _E.TRANSPORT_DISCONNECTED): _S.DISCONNECTED,
    (_S.READY, _E.WRITE_FAILED): _S.DISCONNECTED,
    (_S.DISCONNECTING, _E.TEARDOWN_COMPLETED): _S.DISCONNECTED,
}
for _state in ConnectionState:
    if _state is not _S.DISCONNECTING:
        _TRANSITIONS[(_state, _E.TEARDOWN_REQUESTED)] = _S.DISCONNECTING

_TEARDOWN_EVENTS = frozenset({_E.TEARDOWN_REQUESTED, _E.TEARDOWN_COMPLETED})


@dataclass(frozen=True)
class Transition:
    source: ConnectionState
    event: StateEvent
    target: ConnectionState

    @property
    def hands_off(self) -> bool:
        """True when the reconnect policy must take over after this transition."""
        return (
            self.target is ConnectionState.DISCONNECTED
            and self.event not in _TEARDOWN_EVENTS
        )


TransitionListener = Callable[[Transition], None]


class ConnectionStateMachine:
    """Owns the live ConnectionState and the bound control handle.

    Not thread-safe: every call must come from the session's dispatcher.
    """

    def __init__(self) -> None:
        self._state = ConnectionState.DISCONNECTED
        self._control: ControlHandle | None = None
        self._listeners: list[TransitionListener] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def control_handle(self) -> ControlHandle | None:
        return self._control

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def can_fire(self, event: StateEvent) -> bool:
        return (self._state, event) in _TRANSITIONS

    def fire(self, event: StateEvent, handle: ControlHandle | None = None) -> Transition | None:
        target = _TRANSITIONS.get((self._state, event))
        if target is None:
            LOGGER.debug("Ignoring %s in state %s", event.value, self._state.value)
            return None

        if target is ConnectionState.READY:
            if handle is None:
                raise ValueError("Entering READY requires a bound control handle")
            self._control = handle
        else:
            self._control = None

        transition = Transition(source=self._state, event=event, target=target)
        self._state = target
        LOGGER.info(
            "Connection %s -> %s (%s)",
            transition.source.value,
            transition.target.value,
            event.value,
        )
        for listener in list(self._listeners):
            listener(transition)
        return transition

    def ensure_writable(self) -> ControlHandle:
        if self._state is not ConnectionState.READY or self._control is None:
            raise NotReadyError(
                f"Cannot send while connection is {self._state.value}; wait for the device to be ready."
            )
        return self._control
