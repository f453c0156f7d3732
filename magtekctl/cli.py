"""Typer CLI entrypoint."""

from __future__ import annotations

import json
import logging

import typer

from magtekctl.core.card_assembler import decode_report
from magtekctl.core.errors import ErrorKind, MagtekctlError
from magtekctl.core.model import CardRecord
from magtekctl.core.service import ReaderService

app = typer.Typer(help="Magnetic stripe card reader control over USB HID")


@app.callback()
def main(
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Increase log verbosity"),
) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _build_service(transport: str | None = None) -> ReaderService:
    service = ReaderService(transport_name=transport)
    for warning in getattr(service, "load_warnings", ()):
        typer.echo(f"Warning: {warning}", err=True)
    return service


def _echo_card(card: CardRecord, as_json: bool) -> None:
    if as_json:
        typer.echo(json.dumps(card.to_dict()))
        return
    valid = "yes" if card.is_valid_payment_card else "no"
    typer.echo(
        f"Swipe {card.timestamp.isoformat()}: pan={card.masked_account_number or '-'} "
        f"brand={card.card_brand or '-'} exp={card.expiration_date or '-'} valid={valid}"
    )
    if card.cardholder_name:
        typer.echo(f"  name: {card.cardholder_name}")
    for track in card.tracks:
        if track.decoded:
            typer.echo(f"  track {track.track_number}: decoded")
        else:
            typer.echo(f"  track {track.track_number}: failed ({track.failure_reason})")


@app.command("profiles")
def list_profiles() -> None:
    """List reader profiles and the products they match."""
    try:
        service = _build_service()
        profiles = service.list_profiles()
        if not profiles:
            typer.echo("No profiles loaded")
            raise typer.Exit(code=1)

        for profile in profiles:
            typer.echo(f"{profile.id}: {profile.name} (vendor 0x{profile.vendor_id:04x})")
            for product_id, name in sorted(profile.products.items()):
                typer.echo(f"  0x{product_id:04x}: {name}")
    except MagtekctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("devices")
def list_devices(
    transport: str | None = typer.Option(None, "--transport", help="hidapi or libusb"),
) -> None:
    """List attached card readers."""
    try:
        service = _build_service(transport)
        devices = service.get_connected_devices()
        if not devices:
            typer.echo("No card readers found")
            return

        for device in devices:
            line = f"{device.device_id} {device.display_name} path={device.device_path}"
            if device.product_string:
                line += f" product=\"{device.product_string}\""
            typer.echo(line)
    except MagtekctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("listen")
def listen(
    device: str | None = typer.Option(None, "--device", help="Device id, serial or partial name"),
    count: int = typer.Option(0, "--count", min=0, help="Stop after N swipes (0 = run until interrupted)"),
    timeout: float | None = typer.Option(None, "--timeout", min=0.0, help="Seconds to wait for each swipe"),
    as_json: bool = typer.Option(False, "--json", help="Print each swipe as JSON"),
    transport: str | None = typer.Option(None, "--transport", help="hidapi or libusb"),
) -> None:
    """Connect to a reader and print card swipes."""

    def _on_error(kind: ErrorKind, message: str) -> None:
        typer.echo(f"Error [{kind.value}]: {message}", err=True)

    try:
        service = _build_service(transport)
        with service:
            target = service.resolve_device(device)
            service.on_error(_on_error)
            cards = service.card_stream(timeout)
            if not service.connect(target.device_id):
                typer.echo(f"Error: could not connect to {target.device_id}", err=True)
                raise typer.Exit(code=1)
            typer.echo(f"Listening on {target.display_name} ({target.device_id})", err=True)

            seen = 0
            for card in cards:
                _echo_card(card, as_json)
                seen += 1
                if count and seen >= count:
                    break
    except KeyboardInterrupt:
        typer.echo("Stopped", err=True)
    except MagtekctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("decode")
def decode(
    report_hex: str = typer.Argument(..., help="Captured input report as hex"),
    as_json: bool = typer.Option(False, "--json", help="Print the card as JSON"),
) -> None:
    """Decode a captured input report without a reader attached."""
    try:
        data = bytes.fromhex(report_hex.replace(" ", "").replace(":", ""))
    except ValueError:
        typer.echo("Error: report must be hex encoded", err=True)
        raise typer.Exit(code=1) from None

    card = decode_report(data)
    if not card.tracks:
        typer.echo("No track data found in report", err=True)
        raise typer.Exit(code=1)
    _echo_card(card, as_json)


def run() -> None:
    app()


if __name__ == "__main__":
    run()
