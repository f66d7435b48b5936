"""User-facing alert sinks."""

from __future__ import annotations

import logging
from typing import Protocol

import typer

LOGGER = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, title: str, body: str) -> None:
        """Present an alert to the user."""


class LoggingNotifier:
    def notify(self, title: str, body: str) -> None:
        LOGGER.warning("%s: %s", title, body)


class EchoNotifier:
    def notify(self, title: str, body: str) -> None:
        typer.echo(f"[{title}] {body}", err=True)

