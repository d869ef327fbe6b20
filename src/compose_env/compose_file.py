"""Locating, loading and writing docker-compose files."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml

from src.compose_env.constants import EFFECTIVE_COMPOSE_SUFFIX
from src.compose_env.exceptions import ConfigurationError


def find_compose_file(name: str | Path, start: Path | str | None = None) -> Path:
    """Locate a compose file by name.

    Absolute paths are used as-is.  Otherwise *name* is looked up relative
    to *start* (default: the current directory) and then each of its
    parent directories in turn.

    Args:
        name: File name or relative path of the compose file.
        start: Directory the search begins in.

    Returns:
        Absolute path of the first match.

    Raises:
        ConfigurationError: If no matching file exists.
    """
    candidate = Path(name)
    if candidate.is_absolute():
        if candidate.is_file():
            return candidate
        raise ConfigurationError(f"Compose file not found: {candidate}")

    directory = Path(start).resolve() if start is not None else Path.cwd().resolve()
    for folder in (directory, *directory.parents):
        path = folder / candidate
        if path.is_file():
            return path
    raise ConfigurationError(
        f"Compose file '{name}' not found in {directory} or any parent directory"
    )


def load_compose(path: Path | str) -> dict[str, Any]:
    """Parse a compose file and check it has a ``services`` mapping.

    Raises:
        ConfigurationError: If the file is unreadable or malformed.
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise ConfigurationError(f"Cannot read compose file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Compose file {path} is not valid YAML: {exc}") from exc

    if not isinstance(data, dict) or not isinstance(data.get("services"), dict):
        raise ConfigurationError(f"Compose file {path} has no 'services' mapping")
    for name, service in data["services"].items():
        if service is None:
            data["services"][name] = {}
        elif not isinstance(service, dict):
            raise ConfigurationError(f"Service '{name}' in {path} is not a mapping")
    return data


def effective_compose_path(source: Path, project_name: str) -> Path:
    """Path of the transformed file, beside *source* so relative paths hold."""
    return source.with_name(f"{source.stem}.{project_name}{EFFECTIVE_COMPOSE_SUFFIX}")


def write_compose(definition: dict[str, Any], path: Path | str) -> Path:
    """Write *definition* as YAML atomically (temp file, then rename).

    Returns:
        The path written.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(definition, f, default_flow_style=False, sort_keys=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(str(tmp_path), str(path))
    except BaseException:
        # Clean up temp file on any failure
        if tmp_path.exists():
            tmp_path.unlink()
        raise
    return path
