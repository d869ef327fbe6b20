"""Docker Compose runtime.

Invokes the ``docker compose`` CLI to bring a definition up and down,
detect a running project, read published port bindings and fetch logs.
All subprocess calls capture stdout and stderr.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import subprocess
from pathlib import Path

from src.compose_env.exceptions import LaunchError, TeardownError

logger = logging.getLogger(__name__)

# Timeout for short inspection commands (ps, port, logs)
INSPECT_TIMEOUT = 30.0
# Return code reported when a command exceeds its timeout
TIMED_OUT_RETURNCODE = -1


class DockerComposeRuntime:
    """Runs ``docker compose`` commands for one project."""

    def __init__(
        self,
        project_name: str,
        docker_binary: str = "docker",
        compose_file: Path | str | None = None,
    ) -> None:
        self.project_name = project_name
        self.docker_binary = docker_binary
        self.compose_file = Path(compose_file) if compose_file is not None else None

    def _compose_cmd(self, compose_file: Path | None, *args: str) -> list[str]:
        cmd = [self.docker_binary, "compose", "-p", self.project_name]
        compose_file = compose_file or self.compose_file
        if compose_file is not None:
            cmd.extend(["-f", str(compose_file)])
        cmd.extend(args)
        return cmd

    def _run_sync(self, cmd: list[str], timeout: float | None) -> tuple[int, str, str]:
        """Run a command synchronously.

        A timeout is reported as return code ``-1`` with the reason in
        stderr, and a missing binary as ``127``, so callers deal with a
        single result shape.

        Returns:
            Tuple of (return_code, stdout, stderr).
        """
        logger.debug("Running: %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return (TIMED_OUT_RETURNCODE, "", f"command timed out after {timeout}s: {' '.join(cmd)}")
        except FileNotFoundError as exc:
            return (127, "", str(exc))
        return (result.returncode, result.stdout, result.stderr)

    async def _run(self, cmd: list[str], timeout: float | None = INSPECT_TIMEOUT) -> tuple[int, str, str]:
        """Async wrapper around :meth:`_run_sync`.

        Delegates to ``loop.run_in_executor`` with a dedicated
        ``ThreadPoolExecutor`` so the event loop keeps serving readiness
        checks while the subprocess runs.  The executor is shut down without
        waiting, so cancelling the call never blocks the loop on a command
        that is still running.
        """
        loop = asyncio.get_running_loop()
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        try:
            return await loop.run_in_executor(pool, lambda: self._run_sync(cmd, timeout))
        finally:
            pool.shutdown(wait=False)

    async def up(self, compose_file: Path, timeout: float, build: bool = False) -> None:
        """Start all services via ``docker compose up -d``.

        Raises:
            LaunchError: If the command fails or exceeds *timeout*.
        """
        args = ["up", "-d", "--remove-orphans"]
        if not build:
            args.append("--no-build")
        rc, _, stderr = await self._run(self._compose_cmd(compose_file, *args), timeout)
        if rc != 0:
            logger.error("Failed to start project %s: %s", self.project_name, stderr.strip())
            raise LaunchError(rc, stderr)
        logger.info("Project %s is up", self.project_name)

    async def down(self, compose_file: Path | None, timeout: float) -> None:
        """Stop and remove all services via ``docker compose down``.

        Raises:
            TeardownError: If the command fails or exceeds *timeout*.
        """
        stop_seconds = max(int(timeout) - 1, 1)
        rc, _, stderr = await self._run(
            self._compose_cmd(compose_file, "down", "--remove-orphans", "-t", str(stop_seconds)),
            timeout,
        )
        if rc != 0:
            raise TeardownError(rc, stderr)
        logger.info("Project %s is down", self.project_name)

    async def is_running(self) -> bool:
        """Return True if any container labelled with the project is running."""
        rc, out, stderr = await self._run(
            [
                self.docker_binary, "ps", "-q",
                "--filter", f"label=com.docker.compose.project={self.project_name}",
            ]
        )
        if rc != 0:
            logger.warning("Cannot list containers of %s: %s", self.project_name, stderr.strip())
            return False
        return bool(out.strip())

    async def get_port(self, service: str, container_port: int) -> int | None:
        """Return the host port published for *service*'s *container_port*.

        Returns:
            The host port, or None if nothing is published.
        """
        rc, out, _ = await self._run(self._compose_cmd(None, "port", service, str(container_port)))
        host_port = out.strip().splitlines()[0].strip() if out.strip() else ""
        if rc != 0 or not host_port:
            return None
        # Format is usually 0.0.0.0:PORT or [::]:PORT
        try:
            return int(host_port.rsplit(":", 1)[-1])
        except ValueError:
            logger.warning("Unexpected port output for %s:%d: %r", service, container_port, host_port)
            return None

    async def logs(self, service: str | None = None) -> str:
        """Retrieve the log output of one service, or of the whole project."""
        args = ["logs", "--no-color"]
        if service:
            args.append(service)
        rc, out, stderr = await self._run(self._compose_cmd(None, *args))
        if rc != 0:
            logger.debug("Cannot read logs of %s: %s", service or self.project_name, stderr.strip())
            return ""
        return out or stderr
