"""Rich Formatting Utilities for Beautiful CLI Output"""

from datetime import datetime

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from jobqueue.jobs.schemas import JobRecord, QueueStats

console = Console()


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    """Print warning message with yellow styling"""
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    """Print info message with blue styling"""
    console.print(f"[blue]ℹ {message}[/blue]")


def create_stats_panel(stats: QueueStats) -> Panel:
    """Create formatted panel for queue statistics"""
    content = f"""
📊 [bold blue]Queue Statistics[/bold blue]

• Pending: [yellow]{stats.pending}[/yellow]
• Processing: [cyan]{stats.processing}[/cyan]
• Completed: [green]{stats.completed}[/green]
• Failed: [red]{stats.failed}[/red]
• Total: [blue]{stats.total}[/blue]
"""

    return Panel(content, title="Job Queue", border_style="green")


def create_failed_jobs_table(jobs: list[JobRecord]) -> Table:
    """Create a formatted table for dead-lettered jobs"""
    table = Table(title="Failed Jobs", box=box.ROUNDED)

    table.add_column("ID", justify="left", style="cyan", no_wrap=True)
    table.add_column("Type", justify="left", style="magenta")
    table.add_column("Attempts", justify="center", style="yellow")
    table.add_column("Failed At", justify="center", style="white")
    table.add_column("Error", justify="left", style="red")

    for job in jobs:
        table.add_row(
            str(job.id),
            job.type,
            f"{job.attempts}/{job.max_retries + 1}",
            _format_time(job.completed_at),
            _truncate(job.error or job.last_error or "-"),
        )

    return table


def _format_time(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S")


def _truncate(text: str, limit: int = 60) -> str:
    return text[:limit] + "..." if len(text) > limit else text
