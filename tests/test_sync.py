from __future__ import annotations

import asyncio
import threading
from pathlib import Path

import pytest

from ventctl.sync import MemorySyncTarget, YamlFileSyncTarget, default_state_path


def test_memory_target_records_writes() -> None:
    target = MemorySyncTarget()
    target.put("estado_ventana", "ABIERTA")
    target.put("estado_ventana", "CERRADA")
    assert target.values == {"estado_ventana": "CERRADA"}
    assert target.writes == [("estado_ventana", "ABIERTA"), ("estado_ventana", "CERRADA")]


def test_default_path_follows_xdg(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path))
    assert default_state_path() == tmp_path / "ventctl" / "state.yaml"


def test_yaml_target_persists_last_value(tmp_path: Path) -> None:
    path = tmp_path / "state" / "state.yaml"
    target = YamlFileSyncTarget(path)
    target.put("estado_ventana", "ABIERTA")
    target.put("estado_ventana", "CERRADA")
    assert YamlFileSyncTarget(path).read() == {"estado_ventana": "CERRADA"}


def test_yaml_target_write_failure_is_logged(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    target = YamlFileSyncTarget(blocker / "state.yaml")
    target.put("estado_ventana", "ABIERTA")
    assert "Could not persist" in caplog.text


def test_yaml_target_ignores_corrupt_file(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    path = tmp_path / "state.yaml"
    path.write_text("estado_ventana: [unclosed", encoding="utf-8")
    target = YamlFileSyncTarget(path)
    assert target.read() == {}
    assert "Could not read sync state" in caplog.text


def test_yaml_target_writes_off_the_event_loop(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "state.yaml"
    target = YamlFileSyncTarget(path)
    writer_threads: list[int] = []
    write = target._write

    def recording_write(values: dict[str, str], version: int) -> None:
        writer_threads.append(threading.get_ident())
        write(values, version)

    monkeypatch.setattr(target, "_write", recording_write)

    async def scenario() -> None:
        target.put("estado_ventana", "ABIERTA")
        target.put("estado_ventana", "CERRADA")

    asyncio.run(scenario())
    assert len(writer_threads) == 2
    assert threading.get_ident() not in writer_threads
    assert YamlFileSyncTarget(path).read() == {"estado_ventana": "CERRADA"}


def test_yaml_target_skips_outdated_snapshot(tmp_path: Path) -> None:
    path = tmp_path / "state.yaml"
    target = YamlFileSyncTarget(path)
    target._write({"estado_ventana": "CERRADA"}, 2)
    target._write({"estado_ventana": "ABIERTA"}, 1)
    assert target.read() == {"estado_ventana": "CERRADA"}


def test_yaml_target_keeps_existing_keys(tmp_path: Path) -> None:
    path = tmp_path / "state.yaml"
    path.write_text("otro: valor\n", encoding="utf-8")
    target = YamlFileSyncTarget(path)
    target.put("estado_ventana", "ABIERTA")
    assert target.read() == {"estado_ventana": "ABIERTA", "otro": "valor"}
