"""Typer CLI entrypoint."""

from __future__ import annotations

import asyncio
import logging

import typer

from ventctl.core.errors import VentctlError
from ventctl.core.model import TelemetryEvent
from ventctl.core.service import VentService
from ventctl.core.state import Transition
from ventctl.notify import EchoNotifier

app = typer.Typer(help="BLE control for rain-sensing window controllers")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log connection activity"),
) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_service() -> VentService:
    service = VentService(notifier=EchoNotifier())
    for warning in getattr(service, "load_warnings", ()):
        typer.echo(f"Warning: {warning}", err=True)
    for warning in getattr(service, "runtime_warnings", ()):
        typer.echo(f"Warning: {warning}", err=True)
    return service


@app.command("profiles")
def list_profiles() -> None:
    """List available device profiles."""
    try:
        service = _build_service()
        profiles = service.list_profiles()
        if not profiles:
            typer.echo("No profiles loaded")
            raise typer.Exit(code=1)

        for profile in profiles:
            typer.echo(f"{profile.id}: {profile.name}")
            typer.echo(f"  service: {profile.service_uuid}")
            typer.echo(f"  control: {profile.control_char_uuid}")
            typer.echo(f"  telemetry: {profile.telemetry_char_uuid}")
            if profile.address:
                typer.echo(f"  address: {profile.address}")
    except VentctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("encode")
def encode_command(
    command: str,
    profile: str | None = typer.Option(None, "--profile", help="Profile ID"),
) -> None:
    """Print the wire frame for COMMAND (open or close)."""
    try:
        service = _build_service()
        packet = service.encode(command, profile_id=profile)
        typer.echo(packet.hex())
    except VentctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("inspect")
def inspect_frame(
    frame: str,
    profile: str | None = typer.Option(None, "--profile", help="Profile ID"),
) -> None:
    """Verify a hex FRAME and print the command it carries."""
    try:
        service = _build_service()
        command = service.inspect(frame, profile_id=profile)
        typer.echo(f"{frame}: {command.name.lower()}")
    except VentctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("send")
def send_command(
    command: str,
    address: str | None = typer.Option(None, "--address", help="Device MAC or platform UUID"),
    profile: str | None = typer.Option(None, "--profile", help="Profile ID"),
    timeout: float = typer.Option(30.0, "--timeout", help="Seconds to wait for the device"),
) -> None:
    """Connect, send COMMAND (open or close), and disconnect."""
    try:
        service = _build_service()
        result = asyncio.run(
            service.send(command, profile_id=profile, address=address, ready_timeout_s=timeout)
        )
        typer.echo(
            f"Sent {result.command.name.lower()} to {result.address} "
            f"({result.profile_id}) packet={result.packet_hex}"
        )
    except VentctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("watch")
def watch_device(
    address: str | None = typer.Option(None, "--address", help="Device MAC or platform UUID"),
    profile: str | None = typer.Option(None, "--profile", help="Profile ID"),
) -> None:
    """Stay connected and print state changes and telemetry until interrupted."""

    def _on_transition(transition: Transition) -> None:
        typer.echo(f"state: {transition.source.value} -> {transition.target.value}")

    def _on_telemetry(event: TelemetryEvent) -> None:
        typer.echo(f"telemetry: {event.kind.value} {event.text!r}")

    try:
        service = _build_service()
        asyncio.run(
            service.watch(
                profile_id=profile,
                address=address,
                on_transition=_on_transition,
                on_telemetry=_on_telemetry,
            )
        )
    except KeyboardInterrupt:
        typer.echo("Stopped")
    except VentctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


def run() -> None:
    app()


if __name__ == "__main__":
    run()
