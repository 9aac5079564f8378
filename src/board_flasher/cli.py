"""
Board Flasher CLI

Command-line front end: upload firmware, list boards and ports, and
compute the checksums the bootloaders report.
"""

import dataclasses
import hashlib
import json
import logging
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table

from board_flasher import __version__
from board_flasher.core.messages import MessageLevel, WarningItem, result_to_warnings
from board_flasher.core.orchestrator import upload as run_upload
from board_flasher.core.parsing import parse_baud, parse_board, parse_offset
from board_flasher.core.results import UploadResult
from board_flasher.exchange_log import Exchange, ExchangeLog
from board_flasher.firmware import FirmwareImage, chunk_image, load_firmware
from board_flasher.models import ProtocolFamily, list_boards
from board_flasher.protocol.errors import TransportError
from board_flasher.protocol.framing import crc16_ccitt
from board_flasher.protocol.transport import (
    SerialChannel,
    list_serial_ports,
    perform_1200bps_touch,
)

logger = logging.getLogger("board_flasher")

# Setup Rich consoles; logs go to stderr so --json output stays clean
console = Console()
err_console = Console(stderr=True)

app = typer.Typer(help="🔧 Board Flasher - firmware upload over SAM-BA, STK500 and esptool")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, console=err_console)],
        force=True,
    )


@app.callback()
def _main_options(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging (wire bytes)"),
) -> None:
    _configure_logging(verbose)


def print_header(text: str) -> None:
    """Print fancy header."""
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    """Print success message."""
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    """Print warning message."""
    console.print(f"⚠️  {text}", style="yellow")


def print_error(text: str) -> None:
    """Print error message."""
    console.print(f"❌ {text}", style="red")


def print_structured_warning(warning: WarningItem, verbose: bool = False) -> None:
    """Print a structured warning with optional remediation."""
    if warning.level == MessageLevel.ERROR:
        style = "red"
        icon = "❌"
    elif warning.level == MessageLevel.WARN:
        style = "yellow"
        icon = "⚠️"
    else:
        style = "blue"
        icon = "ℹ️"

    console.print(f"{icon} [{warning.code.value}] {warning.title}", style=style)
    if verbose and warning.detail:
        console.print(f"   {warning.detail}", style="dim")
    if verbose and warning.remediation:
        console.print(f"   → {warning.remediation}", style="cyan")


def _parse_or_exit(parser, value, param: str):
    try:
        return parser(value)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint=param)


def _load_or_exit(path: Path) -> FirmwareImage:
    try:
        return load_firmware(path)
    except (OSError, ValueError) as e:
        print_error(f"Cannot load firmware: {e}")
        raise typer.Exit(1)


def _show_plan(image: FirmwareImage, board) -> None:
    table = Table(title="Upload Plan")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")

    chunks = chunk_image(image, board.page_size, board.flash_base)
    table.add_row("Board", f"{board.name} ({board.fqbn})")
    table.add_row("Protocol", board.family.value)
    table.add_row("Baud rate", str(board.baud_rate))
    table.add_row("Image", f"{image.name} ({image.size:,} bytes)")
    table.add_row("Flash base", f"0x{board.flash_base:08X}")
    table.add_row("Chunks", f"{len(chunks)} x {board.page_size} bytes (last {len(chunks[-1].data)})")
    table.add_row("1200-baud touch", "yes" if board.requires_1200bps_touch else "no")
    console.print(table)


def _link_address_warning(image: FirmwareImage, board) -> Optional[str]:
    """Warn when a HEX file was linked for a different flash address."""
    if image.load_address is None:
        return None
    expected = board.flash_base + board.bootloader_offset
    if image.load_address == expected:
        return None
    return (
        f"{image.name} is linked at 0x{image.load_address:X} but {board.name} "
        f"programs from 0x{expected:X}; check --board and --flash-base"
    )


def _upload_in_worker(image, board, channel, log, on_progress, cancel) -> UploadResult:
    """
    Run the upload on a worker thread so Ctrl-C in the main thread can
    request cancellation at the next chunk boundary.
    """
    with ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(run_upload, image, board, channel, on_progress, cancel=cancel, log=log)
        while True:
            try:
                return future.result(timeout=0.1)
            except FutureTimeout:
                continue
            except KeyboardInterrupt:
                if not cancel.is_set():
                    print_warning("Cancelling after the current chunk...")
                    cancel.set()


def _write_log(log: ExchangeLog, path: Path) -> None:
    path.write_text("\n".join(log.to_lines()) + "\n", encoding="utf-8")
    console.print(f"[dim]Exchange log written to {path}[/dim]")


@app.command()
def upload(
    firmware: Path = typer.Argument(..., help="Firmware file (.bin or Intel .hex)"),
    port: Optional[str] = typer.Option(None, "--port", "-p", help="Serial port (e.g., /dev/ttyACM0)"),
    board_name: str = typer.Option(..., "--board", "-b", help="Board name or FQBN (see 'boards')"),
    baud: Optional[str] = typer.Option(None, "--baud", help="Override bootloader baud rate"),
    flash_base: Optional[str] = typer.Option(
        None, "--flash-base", help="Override flash base: decimal, hex (0x2000), or suffix (2000h)"
    ),
    no_touch: bool = typer.Option(False, "--no-touch", help="Skip the 1200-baud touch"),
    no_reset: bool = typer.Option(False, "--no-reset", help="Skip the ESP DTR/RTS reset sequence"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the upload plan without touching the port"),
    trace: bool = typer.Option(False, "--trace", help="Print every protocol exchange as it happens"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Write the exchange log to a file"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output result as JSON for scripting"),
) -> None:
    """Upload firmware to a board in bootloader mode."""
    board = _parse_or_exit(parse_board, board_name, "--board")
    baud_rate = _parse_or_exit(parse_baud, baud, "--baud")
    base = _parse_or_exit(parse_offset, flash_base, "--flash-base")
    if baud_rate is not None:
        board = dataclasses.replace(board, baud_rate=baud_rate)
    if base is not None:
        board = dataclasses.replace(board, flash_base=base)

    image = _load_or_exit(firmware)
    link_warning = _link_address_warning(image, board)

    if not output_json:
        print_header(f"Upload {image.name} to {board.name}")
        _show_plan(image, board)
        if link_warning:
            print_warning(link_warning)
    elif link_warning:
        logger.warning(link_warning)

    if dry_run:
        print_success("Dry run complete: nothing written")
        return
    if port is None:
        raise typer.BadParameter("--port is required unless --dry-run is given", param_hint="--port")

    listener = None
    if trace:
        def listener(entry: Exchange) -> None:
            err_console.print(entry.to_line(), style="dim", markup=False, highlight=False)
    log = ExchangeLog(listener=listener)
    cancel = threading.Event()

    try:
        if board.requires_1200bps_touch and not no_touch:
            perform_1200bps_touch(port)
        channel = SerialChannel(port, board.baud_rate)
        channel.open()
    except TransportError as e:
        print_error(str(e))
        raise typer.Exit(1)

    try:
        if board.family is ProtocolFamily.ESPTOOL and not no_reset:
            channel.pulse_esp_bootloader()

        if output_json:
            result = _upload_in_worker(image, board, channel, log, None, cancel)
        else:
            with Progress(
                TextColumn("[{task.description}]"),
                BarColumn(),
                TextColumn("[{task.percentage:.0f}%]"),
                console=console,
            ) as progress:
                task = progress.add_task("Writing flash...", total=image.size)

                def on_progress(done: int, total: int, elapsed: float) -> None:
                    progress.update(task, completed=done, description=f"Writing flash {elapsed:.1f}s")

                result = _upload_in_worker(image, board, channel, log, on_progress, cancel)

        if result.ok and board.family is ProtocolFamily.ESPTOOL and not no_reset:
            channel.hard_reset()
    except TransportError as e:
        print_error(str(e))
        raise typer.Exit(1)
    finally:
        channel.close()
        if log_file is not None:
            _write_log(log, log_file)

    if output_json:
        console.print_json(json.dumps(result.to_dict()))
    else:
        console.print(result.to_summary(), markup=False, highlight=False)
        for warning in result_to_warnings(result):
            print_structured_warning(warning, verbose=not result.ok)
        if result.ok:
            print_success(f"Uploaded {result.bytes_written:,} bytes in {result.duration:.1f}s")

    if not result.ok:
        raise typer.Exit(1)


@app.command()
def boards(
    family: Optional[str] = typer.Option(None, "--family", "-f", help="Filter: sam-ba, stk500, esptool"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON for scripting"),
) -> None:
    """List supported boards and their bootloader settings."""
    selected = list_boards()
    if family is not None:
        try:
            wanted = ProtocolFamily(family.strip().lower())
        except ValueError:
            raise typer.BadParameter(
                f"Unknown family '{family}'. Use one of: "
                + ", ".join(f.value for f in ProtocolFamily),
                param_hint="--family",
            )
        selected = [b for b in selected if b.family is wanted]

    if output_json:
        console.print_json(json.dumps([b.to_dict() for b in selected]))
        return

    print_header("Supported Boards")
    table = Table(title="Boards")
    table.add_column("Name", style="cyan")
    table.add_column("FQBN", style="magenta")
    table.add_column("Protocol", style="green")
    table.add_column("Baud", style="yellow")
    table.add_column("Flash base", style="blue")
    table.add_column("Page", style="dim")
    table.add_column("Touch", style="dim")

    for board in selected:
        table.add_row(
            board.name,
            board.fqbn,
            board.family.value,
            str(board.baud_rate),
            f"0x{board.flash_base:X}",
            str(board.page_size),
            "yes" if board.requires_1200bps_touch else "-",
        )
    console.print(table)


@app.command()
def ports() -> None:
    """List available serial ports."""
    print_header("Available Serial Ports")

    ports_list = list_serial_ports()
    if not ports_list:
        print_warning("No serial ports found")
        return

    table = Table(title="Serial Ports")
    table.add_column("Port", style="cyan")
    table.add_column("Description", style="green")
    table.add_column("Hardware ID", style="magenta")

    for device, description, hwid in ports_list:
        table.add_row(device, description or "-", hwid or "-")
    console.print(table)


@app.command()
def checksum(
    firmware: Path = typer.Argument(..., help="Firmware file (.bin or Intel .hex)"),
    board_name: Optional[str] = typer.Option(None, "--board", "-b", help="Show chunking for this board"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON for scripting"),
) -> None:
    """Compute the CRC16 (SAM-BA) and MD5 (esptool) a bootloader should report."""
    image = _load_or_exit(firmware)
    board = _parse_or_exit(parse_board, board_name, "--board") if board_name else None

    info = {
        "file": image.name,
        "size": image.size,
        "crc16": f"0x{crc16_ccitt(image.data):04X}",
        "md5": hashlib.md5(image.data).hexdigest(),
    }
    if image.load_address is not None:
        info["load_address"] = f"0x{image.load_address:08X}"
    if board is not None:
        info["board"] = board.name
        info["chunks"] = len(chunk_image(image, board.page_size, board.flash_base))

    if output_json:
        console.print_json(json.dumps(info))
        return

    table = Table(title=f"Checksums: {image.name}")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    for key, value in info.items():
        table.add_row(key, str(value))
    console.print(table)


@app.command()
def version() -> None:
    """Show version."""
    console.print(f"board-flasher {__version__}")


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"\n[red bold]Fatal error:[/red bold] {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
