"""
Dropshare - Command line demo.

Created by orpheus497

Shares one file between two in-process peers over the loopback transport:
the sharing peer accepts, the receiving peer connects, authenticates the
session, requests the file and writes it to the output directory.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text

from . import __version__
from .config import Config, default_config_path
from .connection_fsm import ConnectionStatus
from .constants import LOG_DATE_FORMAT, LOG_FORMAT
from .errors import DropshareError, FileTransferError
from .file_transfer import save_received_file
from .manager import SessionManager
from .transport import LoopbackNetwork

DEMO_TIMEOUT = 30.0  # seconds to wait for each demo phase
POLL_INTERVAL = 0.05

console = Console()
logger = logging.getLogger("dropshare")


def setup_logging(level: str, log_file: Optional[str] = None) -> None:
    """Route all dropshare loggers through rich, and optionally to a file."""
    handler = RichHandler(console=console, show_path=False, rich_tracebacks=True)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s", datefmt=LOG_DATE_FORMAT))
    logger.handlers = [handler]

    if log_file:
        file_handler = logging.FileHandler(Path(log_file).expanduser())
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
        logger.addHandler(file_handler)

    logger.setLevel(level.upper())
    logger.propagate = False


def format_size(size: float) -> str:
    for unit in ["B", "KB", "MB", "GB"]:
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def render_progress(name: str, total_size: int, percentage: float) -> Text:
    text = Text()
    text.append("▶ ", style="bold")
    text.append(f"{name} ", style="cyan")
    text.append(f"{percentage:.1f}% ", style="green")
    text.append(f"of {format_size(total_size)}", style="dim")
    return text


def render_peers(manager: SessionManager) -> Table:
    table = Table(title=f"Peers of {manager.name}")
    table.add_column("Peer")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Verified")
    for peer in manager.connected_peers:
        table.add_row(
            peer["peer_id"],
            peer["name"] or "-",
            peer["status"],
            "yes" if peer["verified"] else "no",
        )
    return table


async def wait_for(condition, timeout: float = DEMO_TIMEOUT) -> bool:
    """Poll ``condition`` until it holds or the timeout expires."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(POLL_INTERVAL)
    return True


async def run_demo(file_path: Path, output_dir: Path, config: Config) -> int:
    """Run the two-peer demo. Returns the process exit code."""
    received: Dict[str, Path] = {}
    failures: List[str] = []

    def on_file_received(peer_id: str, name: str, data: bytes) -> None:
        try:
            received[name] = save_received_file(output_dir, name, data)
        except FileTransferError as e:
            failures.append(e.message)

    def on_transfer_failed(peer_id: str, file_id: str, error: DropshareError) -> None:
        failures.append(error.message)

    network = LoopbackNetwork()
    sharer = SessionManager(network.create_transport("sharer"), config)
    receiver = SessionManager(
        network.create_transport("receiver"),
        config,
        on_file_received=on_file_received,
        on_transfer_failed=on_transfer_failed,
    )

    try:
        entries = sharer.begin_sharing([file_path])
        entry = entries[0]
        console.print(f"[bold]{sharer.name}[/bold] is sharing [cyan]{entry.name}[/cyan]")

        receiver.connect_to_peer(sharer.local_peer_id)
        connected = await wait_for(
            lambda: receiver.connection_status(sharer.local_peer_id) == ConnectionStatus.CONNECTED
            and sharer.local_peer_id in receiver.received_manifests
        )
        console.print(render_peers(receiver))
        if not connected:
            console.print("[red]Handshake did not complete[/red]")
            return 1

        if not receiver.request_file(entry.id):
            console.print("[red]File request could not be sent[/red]")
            return 1

        last_shown: Optional[int] = None
        done = False
        loop = asyncio.get_running_loop()
        deadline = loop.time() + DEMO_TIMEOUT
        while loop.time() < deadline:
            done = entry.name in received or bool(failures)
            if done:
                break
            percentage = receiver.download_progress.get(entry.id, 0.0)
            if last_shown is None or int(percentage) // 10 != last_shown:
                last_shown = int(percentage) // 10
                console.print(render_progress(entry.name, entry.size, percentage))
            await asyncio.sleep(POLL_INTERVAL)

        if failures:
            console.print(f"[red]Transfer failed:[/red] {failures[0]}")
            return 1
        if not done:
            console.print("[red]Transfer timed out[/red]")
            return 1

        console.print(render_progress(entry.name, entry.size, 100.0))
        console.print(f"[green]✓[/green] Saved to {received[entry.name]}")
        return 0
    finally:
        await receiver.shutdown()
        await sharer.shutdown()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the Dropshare demo. Returns the process exit code."""
    parser = argparse.ArgumentParser(
        description="Dropshare - Encrypted peer-to-peer file sharing demo",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  dropshare report.pdf                   # Share report.pdf between two local peers
  dropshare report.pdf --output-dir out  # Write the received copy to ./out
  dropshare report.pdf --mutual          # Authenticate both peers
  dropshare --init-config                # Write ~/.dropshare/config.toml
  dropshare --mutual --save-config       # Make mutual authentication the default

Created by orpheus497
        """,
    )

    parser.add_argument("--version", action="version", version=f"Dropshare {__version__}")

    parser.add_argument("file", type=str, nargs="?", help="File to share")

    parser.add_argument(
        "--output-dir",
        type=str,
        default=None,
        help="Directory for the received copy (default: transfer.download_dir)",
    )

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Configuration file (default: ~/.dropshare/config.toml)",
    )

    parser.add_argument(
        "--mutual",
        action="store_true",
        help="Require both peers to prove their identity",
    )

    parser.add_argument("--log-file", type=str, default=None, help="Also write logs to this file")

    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write an example configuration file and exit",
    )

    parser.add_argument(
        "--save-config",
        action="store_true",
        help="Save the effective configuration (including --mutual) before running",
    )

    args = parser.parse_args(argv)

    config_path = Path(args.config).expanduser() if args.config else None

    if args.init_config:
        target = config_path or default_config_path()
        if target.exists():
            console.print(f"[red]{target} already exists[/red]")
            return 2
        try:
            Config.create_example(target)
        except DropshareError as e:
            console.print(f"[red]{e}[/red]")
            return 2
        console.print(f"[green]✓[/green] Wrote example configuration to {target}")
        return 0

    if not args.file and not args.save_config:
        parser.error("a file to share is required")

    try:
        config = Config(config_path)
    except DropshareError as e:
        console.print(f"[red]{e}[/red]")
        return 2

    if args.mutual:
        config.set("security", "mutual_authentication", True)

    if args.save_config:
        try:
            saved = config.save()
        except DropshareError as e:
            console.print(f"[red]{e}[/red]")
            return 2
        console.print(f"[green]✓[/green] Saved configuration to {saved}")
        if not args.file:
            return 0

    setup_logging("DEBUG" if args.debug else config.get("logging", "level"), args.log_file)

    file_path = Path(args.file).expanduser()
    output_dir = Path(args.output_dir or config.get("transfer", "download_dir")).expanduser()

    try:
        return asyncio.run(run_demo(file_path, output_dir, config))
    except DropshareError as e:
        console.print(f"[red]{e}[/red]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
