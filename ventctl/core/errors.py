"""Domain-specific errors for ventctl."""


class VentctlError(Exception):
    """Base error for ventctl."""


class ProfileValidationError(VentctlError):
    """Raised when a profile file does not conform to schema or semantics."""


class ProfileLoadError(VentctlError):
    """Raised when loading profile sources fails."""


class DeviceSelectionError(VentctlError):
    """Raised when no device address can be resolved for a session."""


class CommandResolutionError(VentctlError):
    """Raised when a command name cannot be mapped to a known command."""


class CapabilityError(VentctlError):
    """Raised when the runtime lacks what a transport call needs."""


class NotReadyError(VentctlError):
    """Raised when a command is requested outside the Ready state."""


class PacketIntegrityError(VentctlError):
    """Raised when a frame's checksum does not match its payload."""


class ReconnectExhaustedError(VentctlError):
    """Raised to waiters when every reconnect attempt of a cycle failed."""


class TransportError(VentctlError):
    """Base transport error."""


class TransportConnectError(TransportError):
    """Raised on BLE connect or discovery failures."""


class TransportSendError(TransportError):
    """Raised when payload sending fails."""


class TransportTimeoutError(TransportError):
    """Raised when a transport operation times out."""
