#!/usr/bin/env python3
"""
pocscan - Main Launcher
Entry point that checks the environment and serves the task API:
1. Verifies the nuclei binary and the data/template directories
2. Starts the FastAPI backend under uvicorn
"""

import asyncio
import os
import shutil
import signal
import sys
from pathlib import Path

from rich.console import Console

from pocscan.config import EngineConfig, get_config
from pocscan.log import setup_logging

console = Console()


BANNER = r"""
   ___  ___   ___  ___  ___  __ _  _ __
  | _ \/ _ \ / __|/ __|/ __|/ _` || '_ \
  |  _/ (_) | (__ \__ \ (__| (_| || | | |
  |_|  \___/ \___||___/\___|\__,_||_| |_|

            pocscan v0.1.0
            nuclei task runner
"""


def check_nuclei(config: EngineConfig) -> bool:
    """Verify the nuclei binary can be executed."""
    resolved = shutil.which(config.nuclei_path)
    if not resolved:
        console.print(f"[red]✗ nuclei binary not found: {config.nuclei_path}[/red]")
        console.print("[yellow]  Install nuclei or set POCSCAN_NUCLEI_BIN.[/yellow]")
        return False
    console.print(f"[green]✓ nuclei found ({resolved})[/green]")
    return True


def check_templates(config: EngineConfig):
    """Warn when the template root holds no YAML templates."""
    templates_dir = Path(config.templates_dir)
    has_templates = any(templates_dir.rglob("*.yaml")) or any(templates_dir.rglob("*.yml"))
    if not has_templates:
        console.print(f"[yellow]! No templates under {templates_dir}[/yellow]")
        console.print("[dim]  Tasks can still reference absolute template paths.[/dim]")
        return
    console.print("[green]✓ Template directory found[/green]")


def check_dirs(config: EngineConfig) -> bool:
    try:
        config.ensure_dirs()
    except OSError as e:
        console.print(f"[red]✗ Cannot create data directories under {config.data_dir}: {e}[/red]")
        return False
    if not os.access(config.data_dir, os.W_OK):
        console.print(f"[red]✗ Data directory is not writable: {config.data_dir}[/red]")
        return False
    console.print("[green]✓ Directories initialized[/green]")
    return True


async def start_backend(config: EngineConfig):
    """Build the uvicorn server for the FastAPI backend."""
    import uvicorn

    uv_config = uvicorn.Config(
        "pocscan.api:app",
        host=config.api.host,
        port=config.api.port,
        log_level="warning",
        reload=False,
    )
    return uvicorn.Server(uv_config)


async def main():
    """Main entry point."""
    console.print(BANNER, style="bold cyan")

    config = get_config()
    setup_logging(config.logs_dir, os.environ.get("POCSCAN_LOG_LEVEL", "INFO"))

    # Preflight checks
    console.print("\n[bold]Preflight Checks[/bold]")
    console.print("─" * 40)
    if not check_dirs(config):
        sys.exit(1)
    if not check_nuclei(config):
        console.print("[yellow]  Scans will fail until nuclei is available.[/yellow]")
    check_templates(config)

    # Show configuration
    console.print("\n[bold]Configuration[/bold]")
    console.print("─" * 40)
    console.print(f"  API Server:  http://{config.api.host}:{config.api.port}")
    console.print(f"  Data:        {config.data_dir}")
    console.print(f"  Templates:   {config.templates_dir}")
    console.print(f"  Timeout:     {config.scan_timeout_s:g}s per scan")
    console.print(f"  Staging:     above {config.staging_threshold} templates")

    console.print("\n[bold]Starting Services[/bold]")
    console.print("─" * 40)

    server = await start_backend(config)
    console.print("[bold green]═══ pocscan is ready ═══[/bold green]")
    console.print("[dim]Press Ctrl+C to shutdown[/dim]\n")

    try:
        await server.serve()
    except asyncio.CancelledError:
        server.should_exit = True


def run():
    """Entry point with signal handling."""
    loop = asyncio.new_event_loop()

    def signal_handler(sig, frame):
        console.print("\n[yellow]Received shutdown signal...[/yellow]")
        for task in asyncio.all_tasks(loop):
            task.cancel()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        loop.run_until_complete(main())
    except (KeyboardInterrupt, SystemExit):
        console.print("\n[yellow]Goodbye![/yellow]")
    finally:
        loop.close()


if __name__ == "__main__":
    run()
