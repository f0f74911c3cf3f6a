"""
picoboot-loader CLI

Command-line interface for flashing UF2 images over PICOBOOT.
"""

import sys
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from rich.progress import Progress, BarColumn, TextColumn

from picoboot_loader.protocol import (
    DEFAULT_REBOOT_DELAY_MS,
    BootselTouchError,
    describe_device,
    enter_bootsel,
    find_devices,
    list_pico_ports,
)
from picoboot_loader.devices import default_filters, list_families
from picoboot_loader.core.parsing import (
    parse_address as _parse_address_core,
    parse_size as _parse_size_core,
)
from picoboot_loader.core.safety import (
    WritePermissionError,
    CONFIRMATION_TOKEN,
    create_cli_safety_context,
)
from picoboot_loader.core.results import OperationResult
from picoboot_loader.core.actions import (
    device_info as core_device_info,
    erase_region as core_erase_region,
    flash_uf2 as core_flash_uf2,
    inspect_uf2 as core_inspect_uf2,
    reboot_device as core_reboot_device,
)

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(rich_tracebacks=True)],
)
logger = logging.getLogger("picoboot_loader")

# Setup Rich console
console = Console()

app = typer.Typer(help="Flash UF2 firmware onto RP2040/RP2350 boards in BOOTSEL mode")


def print_header(text: str) -> None:
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    console.print(f"⚠️  {text}", style="yellow")


def print_error(text: str) -> None:
    console.print(f"❌ {text}", style="red")


def parse_address(value: str) -> int:
    """
    Parse a flash address.

    CLI wrapper around core.parsing.parse_address that converts
    ValueError to typer.BadParameter.
    """
    try:
        address = _parse_address_core(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))
    if address is None:
        raise typer.BadParameter("Address is required")
    return address


def parse_size(value: str) -> int:
    """CLI wrapper around core.parsing.parse_size."""
    try:
        return _parse_size_core(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def _report(result: OperationResult, output_json: bool = False) -> None:
    """Print a result and exit non-zero on failure."""
    if output_json:
        console.print_json(json.dumps(result.to_dict()))
    else:
        for warning in result.warnings:
            print_warning(warning)
        if result.ok:
            print_success(result.to_summary())
        else:
            print_error(result.to_summary())
    if not result.ok:
        raise typer.Exit(code=1)


def _safety_context(write: bool, dry_run: bool, confirm: Optional[str]):
    ctx = create_cli_safety_context(write, dry_run=dry_run, confirmation_token=confirm)
    if ctx.interactive:
        ctx.prompt_confirmation = lambda msg: typer.prompt(msg, default="")

        def _show(details: dict) -> None:
            console.print(f"  Target: {details.get('target_region', '-')}")
            console.print(f"  Bytes:  {details.get('bytes_length', 0):,}")

        ctx.show_details = _show
    return ctx


def _denied(e: WritePermissionError) -> None:
    print_error(e.reason)
    if "explicit permission" in e.reason:
        console.print("Flashing leaves the board unbootable until a full image is written.")
        console.print(f"Re-run with --write (and --confirm {CONFIRMATION_TOKEN} when scripting).")
    raise typer.Exit(code=1)


@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log packet traffic"),
) -> None:
    """Global options."""
    if verbose:
        logger.setLevel(logging.DEBUG)


@app.command()
def devices() -> None:
    """List attached BOOTSEL devices, RP2 serial ports and known families."""
    print_header("RP2 Devices")

    found = find_devices(default_filters())
    if found:
        table = Table(title="BOOTSEL Devices")
        table.add_column("Bus/Addr", style="cyan")
        table.add_column("VID:PID", style="magenta")
        table.add_column("Product", style="green")
        table.add_column("Serial", style="yellow")
        for dev in found:
            info = describe_device(dev)
            table.add_row(
                f"{info.bus}/{info.address}",
                f"{info.vendor_id:04X}:{info.product_id:04X}",
                info.product or "-",
                info.serial_number or "-",
            )
        console.print(table)
    else:
        print_warning("No device in BOOTSEL mode found")

    ports = list_pico_ports()
    if ports:
        console.print(f"Serial ports (use 'touch' to enter BOOTSEL): {', '.join(ports)}")

    table = Table(title="Known Families")
    table.add_column("Family", style="cyan")
    table.add_column("VID:PID", style="magenta")
    table.add_column("Product match", style="green")
    table.add_column("Notes", style="dim")
    for config in list_families():
        table.add_row(
            config.name,
            f"{config.vendor_id:04X}:{config.product_id:04X}",
            config.product_match,
            "; ".join(config.notes),
        )
    console.print(table)


@app.command()
def info(
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Show identification of the connected BOOTSEL device."""
    _report(core_device_info(), output_json)


@app.command()
def inspect(
    image: Path = typer.Argument(..., help="UF2 file to inspect"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Summarize a UF2 file (blocks, address range, sectors, families)."""
    _report(core_inspect_uf2(str(image)), output_json)


@app.command()
def load(
    image: Path = typer.Argument(..., help="UF2 file to flash"),
    write: bool = typer.Option(False, "--write", help="Actually erase and write flash"),
    confirm: Optional[str] = typer.Option(
        None, "--confirm", help=f"Non-interactive confirmation token ('{CONFIRMATION_TOKEN}')"
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Validate the image only"),
    no_reboot: bool = typer.Option(False, "--no-reboot", help="Stay in BOOTSEL after loading"),
    delay: int = typer.Option(DEFAULT_REBOOT_DELAY_MS, "--delay", help="Reboot delay in ms (non-zero)"),
    strict: bool = typer.Option(False, "--strict", help="Reject blocks with bad UF2 magic"),
    touch: Optional[str] = typer.Option(
        None, "--touch", "-t", help="Serial port to 1200-baud touch into BOOTSEL first"
    ),
) -> None:
    """Erase, write and reboot: flash a UF2 image onto the device."""
    if delay <= 0:
        raise typer.BadParameter("Reboot delay must be non-zero", param_hint="--delay")

    print_header(f"Load {image.name}")
    ctx = _safety_context(write, dry_run, confirm)

    with Progress(
        TextColumn("[{task.description}]"),
        BarColumn(),
        TextColumn("[{task.percentage:.0f}%]"),
        console=console,
    ) as progress:
        task = progress.add_task("Flashing...", total=1.0)
        try:
            result = core_flash_uf2(
                str(image),
                ctx,
                reboot=not no_reboot,
                reboot_delay_ms=delay,
                strict=strict,
                touch_port=touch,
                progress_cb=lambda fraction: progress.update(task, completed=fraction),
            )
        except WritePermissionError as e:
            progress.stop()
            _denied(e)

    _report(result)


@app.command()
def erase(
    address: str = typer.Argument(..., help="Sector-aligned start address (e.g. 0x10000000)"),
    size: str = typer.Argument(..., help="Sector-multiple size (e.g. 4k, 0x10000)"),
    write: bool = typer.Option(False, "--write", help="Actually erase flash"),
    confirm: Optional[str] = typer.Option(None, "--confirm", help="Non-interactive confirmation token"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be erased"),
) -> None:
    """Erase a range of flash sectors."""
    start = parse_address(address)
    length = parse_size(size)
    ctx = _safety_context(write, dry_run, confirm)
    try:
        result = core_erase_region(start, length, ctx)
    except WritePermissionError as e:
        _denied(e)
    _report(result)


@app.command()
def reboot(
    delay: int = typer.Option(DEFAULT_REBOOT_DELAY_MS, "--delay", help="Reboot delay in ms (non-zero)"),
) -> None:
    """Reboot the BOOTSEL device into its flash image."""
    if delay <= 0:
        raise typer.BadParameter("Reboot delay must be non-zero", param_hint="--delay")
    _report(core_reboot_device(delay_ms=delay))


@app.command()
def touch(
    port: str = typer.Argument(..., help="Serial port of the running board"),
) -> None:
    """Reset a running board into BOOTSEL with a 1200-baud touch."""
    try:
        enter_bootsel(port)
    except BootselTouchError as e:
        print_error(str(e))
        raise typer.Exit(code=1)
    print_success(f"Touched {port}; the board should re-enumerate in BOOTSEL mode")


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(1)


if __name__ == "__main__":
    main()
