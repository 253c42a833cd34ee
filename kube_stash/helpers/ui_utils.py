"""
CLI Utilities for Kube-Stash

Rich-based helpers for CLI output plus run_command(), the tracked
subprocess wrapper every external command goes through.
"""

import subprocess
from typing import Any, List, Optional, Sequence, Union

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from .logging import get_logger

console = Console()
logger = get_logger(__name__)


class SubprocessError(Exception):
    """External command exited non-zero."""

    def __init__(self, cmd: Union[str, Sequence[str]], returncode: Any, stderr: str = ""):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr or ""
        cmd_str = cmd if isinstance(cmd, str) else " ".join(str(c) for c in cmd)
        super().__init__(f"Command failed ({returncode}): {cmd_str}: {self.stderr.strip()}")


def run_command(
    cmd: List[str],
    description: str,
    timeout: Optional[float] = None,
    check: bool = True,
    input: Optional[str] = None,
) -> subprocess.CompletedProcess:
    """
    Run an external command with subprocess tracking.

    The child is registered with SafeExitManager while it runs so an
    operator abort (SIGINT/SIGTERM) terminates it instead of leaving it wedged.

    Args:
        cmd: Command and arguments
        description: Short text for debug logging
        timeout: Seconds before the child is killed (None = no limit)
        check: Raise SubprocessError on non-zero exit
        input: Optional text fed to stdin

    Returns:
        CompletedProcess with text stdout/stderr

    Raises:
        SubprocessError: Non-zero exit and check=True
        subprocess.TimeoutExpired: Timeout reached (child is killed)
        FileNotFoundError: Binary not found
    """
    from ..cores.safe_exit_manager import SafeExitManager

    logger.debug(f"{description}: {' '.join(cmd)}")
    proc = subprocess.Popen(
        cmd,
        stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    safe_exit = SafeExitManager.get_instance()
    cleanup_id = safe_exit.register_process(proc.pid, cmd[0] if cmd else "?")
    try:
        stdout, stderr = proc.communicate(input=input, timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.communicate()
        raise
    finally:
        safe_exit.unregister_process(cleanup_id)

    result = subprocess.CompletedProcess(cmd, proc.returncode, stdout, stderr)
    if check and proc.returncode != 0:
        raise SubprocessError(cmd, proc.returncode, stderr)
    return result


def print_header(title: str, subtitle: str = ""):
    """Print styled header with optional subtitle"""
    content = f"[bold cyan]{title}[/bold cyan]"
    if subtitle:
        content += f"\n[dim]{subtitle}[/dim]"

    panel = Panel(content, border_style="cyan")
    console.print(panel)


def print_success(message: str):
    """Print success message with green checkmark"""
    console.print(f"[green]✓[/green] {escape(message)}")


def print_error(message: str):
    """Print error message with red X"""
    console.print(f"[red]✗[/red] {escape(message)}")


def print_warning(message: str):
    """Print warning message with yellow warning symbol"""
    console.print(f"[yellow]⚠[/yellow]  {escape(message)}")


def print_info(message: str):
    """Print info message with cyan arrow"""
    console.print(f"[cyan]→[/cyan] {escape(message)}")


def create_table(title: str, columns: List[tuple]) -> Table:
    """
    Create a styled Rich table

    Args:
        title: Table title
        columns: List of (name, style, width) tuples

    Returns:
        Rich Table instance
    """
    table = Table(title=title, show_header=True, header_style="bold cyan")
    for name, style, width in columns:
        table.add_column(name, style=style, width=width)
    return table


def prompt_confirm(message: str, default: bool = False) -> bool:
    """Prompt user for yes/no confirmation"""
    return Confirm.ask(message, default=default)


def format_bytes(size: Optional[int]) -> str:
    """Human-readable byte size (du -h style)."""
    if size is None:
        return "-"
    value = float(size)
    for unit in ("B", "K", "M", "G", "T"):
        if value < 1024 or unit == "T":
            return f"{value:.0f}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1024
    return f"{size}B"
