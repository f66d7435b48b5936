"""Classification of plain-text notifications from the window controller."""

from __future__ import annotations

from ventctl.core.model import TelemetryEvent, TelemetryKind, Vocabulary

DEFAULT_VOCABULARY = Vocabulary(
    closed=("cerrada", "closed"),
    opened=("abierta", "open"),
)


class TelemetryDecoder:
    """Best-effort keyword matcher; closed keywords win over open ones."""

    def __init__(self, vocabulary: Vocabulary = DEFAULT_VOCABULARY) -> None:
        self._closed = tuple(word.lower() for word in vocabulary.closed)
        self._opened = tuple(word.lower() for word in vocabulary.opened)

    def decode(self, raw: bytes | str) -> TelemetryEvent:
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        text = text.strip("\x00").strip()
        lowered = text.lower()
        if any(word in lowered for word in self._closed):
            return TelemetryEvent(kind=TelemetryKind.SENSOR_CLOSED, text=text)
        if any(word in lowered for word in self._opened):
            return TelemetryEvent(kind=TelemetryKind.SENSOR_OPENED, text=text)
        return TelemetryEvent(kind=TelemetryKind.UNRECOGNIZED, text=text)
