"""Sync targets that mirror the last-known window state."""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from pathlib import Path
from typing import Protocol

import yaml

LOGGER = logging.getLogger(__name__)


class SyncTarget(Protocol):
    def put(self, key: str, value: str) -> None:
        """Record ``value`` under ``key``. Best-effort; must not block on delivery."""


class MemorySyncTarget:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.writes: list[tuple[str, str]] = []

    def put(self, key: str, value: str) -> None:
        self.values[key] = value
        self.writes.append((key, value))


def default_state_path() -> Path:
    xdg_data = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return xdg_data / "ventctl/state.yaml"


class YamlFileSyncTarget:
    """Keep last-known values in a small YAML document on disk.

    Values are cached in memory. Inside a running event loop the file is
    rewritten on the loop's default executor, so ``put`` never blocks the
    caller. Write failures are logged and dropped.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or default_state_path()
        self._values = self.read()
        self._lock = threading.Lock()
        self._version = 0
        self._written_version = 0

    def read(self) -> dict[str, str]:
        try:
            loaded = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, yaml.YAMLError) as exc:
            LOGGER.warning("Could not read sync state %s: %s", self.path, exc)
            return {}
        if not isinstance(loaded, dict):
            return {}
        return {str(k): str(v) for k, v in loaded.items()}

    def put(self, key: str, value: str) -> None:
        self._values[key] = value
        self._version += 1
        snapshot = dict(self._values)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write(snapshot, self._version)
            return
        loop.run_in_executor(None, self._write, snapshot, self._version)

    def _write(self, values: dict[str, str], version: int) -> None:
        with self._lock:
            # Executor threads may finish out of order; never write an older snapshot.
            if version <= self._written_version:
                return
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path = self.path.with_suffix(".tmp")
                tmp_path.write_text(yaml.safe_dump(values, sort_keys=True), encoding="utf-8")
                tmp_path.replace(self.path)
            except OSError as exc:
                LOGGER.warning("Could not persist sync state to %s: %s", self.path, exc)
                return
            self._written_version = version
