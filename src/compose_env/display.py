"""Rich-based terminal display for the ``compose-env`` command line.

Uses a module-level :class:`~rich.console.Console` so that all output of
one invocation shares the same formatting.
"""

from __future__ import annotations

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from src.compose_env.discovery import Discovery
from src.compose_env.exceptions import ComposeEnvError, EnvironmentNotReadyError

# ---------------------------------------------------------------------------
# Module-level Console singleton
# ---------------------------------------------------------------------------

_console = Console()


def print_discovery(discovery: Discovery, project: str, mode: str) -> None:
    """Print the resolved endpoint of every service as a table.

    Parameters
    ----------
    discovery:
        A populated Discovery table.
    project:
        Compose project name shown in the title.
    mode:
        Run mode shown in the title.
    """
    table = Table(
        title=f"{project} ({mode})", show_header=True, header_style="bold magenta"
    )
    table.add_column("Service", style="cyan", min_width=16)
    table.add_column("Host", min_width=12)
    table.add_column("Ports", min_width=20)

    for service, endpoint in sorted(discovery.snapshot().items()):
        ports = ", ".join(
            f"{declared} → {published}" for declared, published in endpoint.ports.items()
        )
        table.add_row(service, endpoint.host, ports or "-")

    _console.print(table)


def print_status(project: str, running: bool) -> None:
    status = "[green]RUNNING[/green]" if running else "[dim]STOPPED[/dim]"
    _console.print(f"Project [bold]{project}[/bold]: {status}")


def print_message(message: str) -> None:
    _console.print(message)


def print_error(exc: ComposeEnvError) -> None:
    """Print an error panel; readiness failures list each pending service."""
    body = Text()
    body.append(f"{type(exc).__name__}\n", style="bold red")
    if isinstance(exc, EnvironmentNotReadyError):
        body.append(f"Not ready after {exc.elapsed:.1f}s\n")
        for verdict in exc.verdicts:
            style = "green" if verdict.is_ready else "yellow"
            body.append(f"  {verdict.describe()}\n", style=style)
    else:
        body.append(str(exc))

    _console.print(
        Panel(body, title="[bold]Environment Error[/bold]", border_style="red", expand=False)
    )
