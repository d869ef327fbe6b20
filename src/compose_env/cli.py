"""Command line for managing persistent compose test environments.

``compose-env up`` starts an environment from a YAML descriptor and leaves
it running so that later test runs can reuse it
(``try_find_existing_environment``); ``down`` removes it and ``status``
reports whether it is running.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer

from src.compose_env.compose_file import effective_compose_path, find_compose_file
from src.compose_env.descriptor import EnvironmentDescriptor, load_descriptor
from src.compose_env.display import print_discovery, print_error, print_message, print_status
from src.compose_env.exceptions import ComposeEnvError
from src.compose_env.logging import setup_logging
from src.compose_env.orchestrator import ComposeEnvironment
from src.compose_env.runtime import DockerComposeRuntime
from src.compose_env.settings import RuntimeSettings

app = typer.Typer(
    name="compose-env",
    help="Start, inspect and stop docker-compose test environments.",
    no_args_is_help=True,
)

DescriptorArg = typer.Argument(
    ..., exists=True, dir_okay=False, readable=True, help="Environment descriptor YAML."
)


def _runtime_for(descriptor: EnvironmentDescriptor, descriptor_path: Path, settings: RuntimeSettings) -> tuple[DockerComposeRuntime, Path]:
    compose_file = find_compose_file(descriptor.compose_file_name, descriptor_path.parent)
    project = descriptor.resolve_project_name(compose_file)
    return DockerComposeRuntime(project, docker_binary=settings.docker_binary), compose_file


@app.command()
def up(
    descriptor_path: Path = DescriptorArg,
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Override start_timeout (seconds)."),
    log_level: str = typer.Option("info", "--log-level", help="Log level."),
) -> None:
    """Start the environment and leave it running.

    Ports are allocated deterministically so that later runs of the same
    descriptor find and reuse the environment.
    """
    settings = RuntimeSettings()
    overrides: dict = {"down_on_complete": False, "try_find_existing_environment": True}
    if timeout is not None:
        overrides["start_timeout"] = timeout
    try:
        descriptor = load_descriptor(descriptor_path, **overrides)
        environment = ComposeEnvironment(
            descriptor, settings=settings, search_from=descriptor_path.parent
        )
        setup_logging(descriptor.project_name or descriptor_path.stem, log_level)
        discovery = asyncio.run(environment.start())
    except ComposeEnvError as exc:
        print_error(exc)
        raise typer.Exit(code=1)

    mode = environment.mode.value if environment.mode else "unknown"
    print_discovery(discovery, environment.project_name, mode)


@app.command()
def down(
    descriptor_path: Path = DescriptorArg,
    log_level: str = typer.Option("info", "--log-level", help="Log level."),
) -> None:
    """Stop and remove a running environment."""
    settings = RuntimeSettings()
    try:
        descriptor = load_descriptor(descriptor_path)
        runtime, compose_file = _runtime_for(descriptor, descriptor_path, settings)
        setup_logging(runtime.project_name, log_level)
        asyncio.run(runtime.down(None, descriptor.stop_timeout))
    except ComposeEnvError as exc:
        print_error(exc)
        raise typer.Exit(code=1)

    effective_compose_path(compose_file, runtime.project_name).unlink(missing_ok=True)
    print_message(f"Project [bold]{runtime.project_name}[/bold] removed")


@app.command()
def status(descriptor_path: Path = DescriptorArg) -> None:
    """Report whether the environment is running."""
    settings = RuntimeSettings()
    try:
        descriptor = load_descriptor(descriptor_path)
        runtime, _ = _runtime_for(descriptor, descriptor_path, settings)
        running = asyncio.run(runtime.is_running())
    except ComposeEnvError as exc:
        print_error(exc)
        raise typer.Exit(code=1)

    print_status(runtime.project_name, running)


if __name__ == "__main__":
    app()
