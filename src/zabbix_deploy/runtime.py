"""
Stack runtime adapter.

Everything that touches docker goes through StackRuntime so the rendering,
verification and management logic can be exercised without containers.
"""

import os
import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, IO, List, Mapping, Optional, Sequence

from .errors import RuntimeCommandError
from .stack import SERVICES

logger = logging.getLogger(__name__)

# Seconds allowed for docker inspect and log tail reads
INSPECT_TIMEOUT = 30


def get_compose_cmd() -> List[str]:
    """Get the correct docker compose command for this system.

    Some systems have 'docker compose' (plugin), others have 'docker-compose' (standalone).
    """
    for cmd in (["docker", "compose"], ["docker-compose"]):
        try:
            result = subprocess.run(cmd + ["version"], capture_output=True, text=True)
        except OSError:
            continue
        if result.returncode == 0:
            return cmd

    # Default to docker compose, will fail with clear error
    return ["docker", "compose"]


class StackRuntime(ABC):
    """Lifecycle operations on the rendered stack."""

    @abstractmethod
    def apply(self):
        """Create or update all services (up -d)."""

    @abstractmethod
    def start(self):
        """Start the stack."""

    @abstractmethod
    def stop(self):
        """Stop and remove the stack's containers."""

    @abstractmethod
    def restart(self):
        """Restart all services."""

    @abstractmethod
    def pull(self):
        """Pull newer images for all services."""

    @abstractmethod
    def status(self) -> Dict[str, str]:
        """Service name -> container state ('running', 'exited', 'missing', ...)."""

    @abstractmethod
    def logs(self, service: Optional[str] = None, follow: bool = True) -> int:
        """Stream logs to the terminal. Returns the exit code."""

    @abstractmethod
    def logs_tail(self, lines: int = 50) -> str:
        """Return the last lines of every service's log."""

    @abstractmethod
    def exec(
        self,
        service: str,
        command: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        interactive: bool = False,
        stdout: Optional[IO] = None,
    ) -> int:
        """Run a command inside a service container. Returns the exit code."""


class DockerComposeRuntime(StackRuntime):
    """StackRuntime backed by docker compose in the install directory."""

    def __init__(self, project_dir: Path, compose_cmd: Optional[List[str]] = None):
        self.project_dir = Path(project_dir)
        self._compose_cmd = compose_cmd

    @property
    def compose_cmd(self) -> List[str]:
        if self._compose_cmd is None:
            self._compose_cmd = get_compose_cmd()
            logger.debug("Using: %s", " ".join(self._compose_cmd))
        return self._compose_cmd

    def _run(self, cmd: List[str], **kwargs) -> subprocess.CompletedProcess:
        """subprocess.run in the project directory; launch failures become RuntimeCommandError."""
        logger.debug("Running: %s (cwd=%s)", " ".join(cmd), self.project_dir)
        try:
            return subprocess.run(cmd, cwd=self.project_dir, **kwargs)
        except subprocess.TimeoutExpired:
            raise RuntimeCommandError(cmd, -1, f"timed out after {kwargs.get('timeout')}s")
        except OSError as e:
            raise RuntimeCommandError(cmd, -1, str(e))

    def _compose(self, *args: str, timeout: Optional[int] = None) -> str:
        cmd = self.compose_cmd + list(args)
        result = self._run(cmd, capture_output=True, text=True, timeout=timeout)
        # docker compose writes progress to stderr even on success
        if result.returncode != 0:
            raise RuntimeCommandError(cmd, result.returncode, result.stderr or result.stdout)
        return result.stdout

    def apply(self):
        self._compose("up", "-d")

    def start(self):
        self._compose("up", "-d")

    def stop(self):
        self._compose("down")

    def restart(self):
        self._compose("restart")

    def pull(self):
        self._compose("pull")

    def status(self) -> Dict[str, str]:
        states = {}
        for service, container in SERVICES.items():
            result = self._run(
                ["docker", "inspect", "-f", "{{.State.Status}}", container],
                capture_output=True, text=True, timeout=INSPECT_TIMEOUT
            )
            if result.returncode == 0:
                states[service] = result.stdout.strip()
            else:
                states[service] = "missing"
        return states

    def logs(self, service: Optional[str] = None, follow: bool = True) -> int:
        cmd = self.compose_cmd + ["logs"]
        if follow:
            cmd.append("-f")
        if service:
            cmd.append(service)
        try:
            return self._run(cmd).returncode
        except KeyboardInterrupt:
            return 0

    def logs_tail(self, lines: int = 50) -> str:
        try:
            result = self._run(
                self.compose_cmd + ["logs", "--no-color", "--tail", str(lines)],
                capture_output=True, text=True, timeout=INSPECT_TIMEOUT
            )
        except RuntimeCommandError as e:
            # Only used to explain another failure
            logger.warning("Could not read container logs: %s", e.message)
            return e.message
        return (result.stdout + result.stderr).strip()

    def exec(
        self,
        service: str,
        command: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        interactive: bool = False,
        stdout: Optional[IO] = None,
    ) -> int:
        cmd = self.compose_cmd + ["exec"]
        if not interactive:
            cmd.append("-T")
        # Values are passed by name so they stay out of the process list
        for key in (env or {}):
            cmd.extend(["-e", key])
        cmd.append(service)
        cmd.extend(command)

        process_env = dict(os.environ)
        process_env.update(env or {})
        return self._run(cmd, env=process_env, stdout=stdout).returncode
