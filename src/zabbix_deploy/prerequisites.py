"""
Zabbix Deploy Prerequisites Installer
Checks privileges and memory, installs Docker, compose, nginx and certbot.
"""

import subprocess
import shutil
import os
import logging
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import questionary
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.panel import Panel

from .errors import PrerequisiteError, PrivilegeError, ResourceWarningDeclined

console = Console()
logger = logging.getLogger(__name__)


class PrerequisitesInstaller:
    """Install all required system dependencies."""

    def __init__(self, meminfo: Path = Path("/proc/meminfo")):
        self.is_root = os.geteuid() == 0
        self.distro = self._detect_distro()
        self.meminfo = meminfo

    def _detect_distro(self) -> str:
        """Detect Linux distribution."""
        try:
            with open("/etc/os-release") as f:
                content = f.read().lower()
                if "ubuntu" in content or "debian" in content:
                    return "debian"
                elif "centos" in content or "rhel" in content or "rocky" in content:
                    return "rhel"
        except OSError:
            pass
        return "unknown"

    def _run_cmd(
        self,
        cmd: List[str],
        timeout: int = 300,
        check: bool = True
    ) -> Tuple[bool, str]:
        """Run a command and return success status + output."""
        logger.debug("Running: %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout
            )
            output = result.stdout + result.stderr
            if check and result.returncode != 0:
                return False, output
            return True, output
        except subprocess.TimeoutExpired:
            return False, "Command timed out"
        except OSError as e:
            return False, str(e)

    def check_root(self):
        """Raise PrivilegeError unless running as root."""
        if not self.is_root:
            raise PrivilegeError(
                "This command requires root privileges. Run with: sudo zabbix-deploy install"
            )

    # ============ Memory ============

    def total_memory_mb(self) -> int:
        """Total RAM in MB from /proc/meminfo (0 if unreadable)."""
        try:
            for line in self.meminfo.read_text().splitlines():
                if line.startswith("MemTotal:"):
                    return int(line.split()[1]) // 1024
        except (OSError, ValueError, IndexError):
            logger.warning("Could not read %s", self.meminfo)
        return 0

    def check_memory(
        self,
        min_mb: int,
        confirm: Optional[Callable[[str], Optional[bool]]] = None,
    ):
        """Warn below min_mb and let the operator decide whether to continue."""
        total = self.total_memory_mb()
        if total == 0 or total >= min_mb:
            return

        console.print(
            f"[yellow]⚠[/yellow] Zabbix recommends at least {min_mb // 1024}GB RAM. "
            f"Current: {total}MB"
        )
        if confirm is None:
            confirm = lambda message: questionary.confirm(message, default=False).ask()
        if not confirm("Do you want to continue anyway?"):
            raise ResourceWarningDeclined(f"Aborted: only {total}MB RAM available")
        logger.info("Continuing with %sMB RAM (below %sMB)", total, min_mb)

    # ============ Docker ============

    def is_docker_installed(self) -> bool:
        """Check if Docker is installed."""
        return shutil.which("docker") is not None

    def is_docker_running(self) -> bool:
        """Check if Docker daemon is running."""
        success, _ = self._run_cmd(["docker", "info"], check=False)
        return success

    def ensure_docker(self) -> bool:
        """Install Docker using the official script."""
        if self.is_docker_installed():
            if not self.is_docker_running():
                console.print("[dim]Docker installed but not running, starting...[/dim]")
                self._run_cmd(["systemctl", "start", "docker"])
                self._run_cmd(["systemctl", "enable", "docker"])
            console.print("[green]✓[/green] Docker already installed")
            return True

        with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"), console=console) as progress:
            task = progress.add_task("Installing Docker...", total=None)

            success, output = self._run_cmd([
                "bash", "-c",
                "curl -fsSL https://get.docker.com | sh"
            ], timeout=600)

            if not success:
                progress.update(task, description="[red]✗[/red] Docker installation failed")
                console.print(f"[dim]{output[:200]}[/dim]")
                return False

            progress.update(task, description="[green]✓[/green] Docker installed")

        self._run_cmd(["systemctl", "start", "docker"])
        self._run_cmd(["systemctl", "enable", "docker"])
        return True

    def has_compose(self) -> bool:
        """Check if docker compose (plugin) or docker-compose is available."""
        success, _ = self._run_cmd(["docker", "compose", "version"], check=False)
        if success:
            return True
        return shutil.which("docker-compose") is not None

    def ensure_compose(self) -> bool:
        """Install the docker compose plugin if missing."""
        if self.has_compose():
            console.print("[green]✓[/green] Docker Compose available")
            return True

        console.print("[cyan]Installing Docker Compose...[/cyan]")
        if self.distro == "debian":
            success, _ = self._run_cmd([
                "apt-get", "install", "-y", "-qq", "docker-compose-plugin"
            ])
        elif self.distro == "rhel":
            success, _ = self._run_cmd([
                "yum", "install", "-y", "docker-compose-plugin"
            ])
        else:
            console.print("[yellow]⚠[/yellow] Please install Docker Compose manually")
            return False
        return success and self.has_compose()

    # ============ Nginx ============

    def is_nginx_installed(self) -> bool:
        """Check if nginx is installed."""
        return shutil.which("nginx") is not None

    def ensure_nginx(self) -> bool:
        """Install nginx for reverse proxy."""
        if self.is_nginx_installed():
            console.print("[green]✓[/green] nginx already installed")
            return True

        console.print("[cyan]Installing nginx...[/cyan]")

        if self.distro == "debian":
            self._run_cmd(["apt-get", "update", "-qq"])
            success, _ = self._run_cmd([
                "apt-get", "install", "-y", "-qq", "nginx"
            ])
        elif self.distro == "rhel":
            success, _ = self._run_cmd([
                "yum", "install", "-y", "nginx"
            ])
        else:
            console.print("[yellow]⚠[/yellow] Please install nginx manually")
            return False

        if success:
            self._run_cmd(["systemctl", "start", "nginx"])
            self._run_cmd(["systemctl", "enable", "nginx"])
            console.print("[green]✓[/green] nginx installed")
        return success

    # ============ Certbot ============

    def is_certbot_installed(self) -> bool:
        """Check if certbot is installed."""
        return shutil.which("certbot") is not None

    def ensure_certbot(self) -> bool:
        """Install certbot for Let's Encrypt."""
        if self.is_certbot_installed():
            console.print("[green]✓[/green] certbot already installed")
            return True

        console.print("[cyan]Installing certbot...[/cyan]")

        if self.distro == "debian":
            success, _ = self._run_cmd([
                "apt-get", "install", "-y", "-qq", "certbot"
            ])
        elif self.distro == "rhel":
            success, _ = self._run_cmd([
                "yum", "install", "-y", "certbot"
            ])
        else:
            console.print("[yellow]⚠[/yellow] Please install certbot manually")
            return False

        if success:
            console.print("[green]✓[/green] certbot installed")
        return success

    # ============ Master Install ============

    def install_all(
        self,
        min_memory_mb: int = 2048,
        confirm: Optional[Callable[[str], Optional[bool]]] = None,
    ):
        """Check privileges and resources, then install every missing tool."""
        console.print(Panel(
            "[bold]Checking Prerequisites[/bold]",
            border_style="cyan"
        ))

        self.check_root()
        self.check_memory(min_memory_mb, confirm=confirm)

        steps = [
            ("Docker", self.ensure_docker),
            ("Docker Compose", self.ensure_compose),
            ("nginx", self.ensure_nginx),
            ("certbot", self.ensure_certbot),
        ]
        missing = [name for name, ensure in steps if not ensure()]
        if missing:
            raise PrerequisiteError(f"Could not install: {', '.join(missing)}")

        console.print("\n[green]✓[/green] Prerequisites ready")
