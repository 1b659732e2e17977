"""
Zabbix Deploy Installer
Runs the provisioning steps in order with the collected configuration.
"""

import os
import fcntl
import logging
from dataclasses import replace
from pathlib import Path
from typing import Callable, Optional

import questionary
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .certificates import CertificateIssuer
from .config import InstallerSettings, ProvisioningConfig, read_env_file
from .errors import ConfigError, InstallLockedError
from .manage import write_management_script
from .ports import PortNegotiator
from .prerequisites import PrerequisitesInstaller
from .proxy import NginxConfigurator
from .runtime import DockerComposeRuntime, StackRuntime
from .stack import StackRenderer
from .verifier import BringUpVerifier, VerificationResult
from .wizard import ConfigWizard, show_review

console = Console()
logger = logging.getLogger(__name__)


class InstallLock:
    """Exclusive, non-blocking lock on <install_dir>/.install.lock."""

    def __init__(self, path: Path):
        self.path = path
        self._fd = None

    def __enter__(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = open(self.path, "a+")
        try:
            fcntl.flock(fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            fd.seek(0)
            holder = fd.read().strip() or None
            fd.close()
            raise InstallLockedError(self.path, holder)
        fd.seek(0)
        fd.truncate()
        fd.write(str(os.getpid()))
        fd.flush()
        self._fd = fd
        return self

    def __exit__(self, exc_type, exc, tb):
        if self._fd:
            fcntl.flock(self._fd.fileno(), fcntl.LOCK_UN)
            self._fd.close()
            self._fd = None
        return False


class Installer:
    """
    Orchestrates the complete installation.

    Collaborators are injectable; the defaults talk to the real host.
    """

    def __init__(
        self,
        settings: InstallerSettings,
        prerequisites: Optional[PrerequisitesInstaller] = None,
        wizard: Optional[ConfigWizard] = None,
        negotiator_factory: Optional[Callable[[], PortNegotiator]] = None,
        runtime: Optional[StackRuntime] = None,
        verifier_factory: Optional[Callable[[StackRuntime], BringUpVerifier]] = None,
        proxy: Optional[NginxConfigurator] = None,
        issuer: Optional[CertificateIssuer] = None,
        confirm: Optional[Callable[[str], Optional[bool]]] = None,
    ):
        self.settings = settings
        self.prerequisites = prerequisites or PrerequisitesInstaller()
        self.wizard = wizard or ConfigWizard(settings)
        self.negotiator_factory = negotiator_factory or (
            lambda: PortNegotiator(search_limit=settings.port_search_limit)
        )
        self.runtime = runtime or DockerComposeRuntime(settings.install_dir)
        self.verifier_factory = verifier_factory or (
            lambda rt: BringUpVerifier(rt, settings)
        )
        self.proxy = proxy or NginxConfigurator(settings)
        self.issuer = issuer or CertificateIssuer(settings)
        self.confirm = confirm or (
            lambda message: questionary.confirm(message, default=True).ask()
        )

    def run(self) -> ProvisioningConfig:
        """Run every step; any DeployError aborts the installation."""
        console.print(Panel(
            "[bold cyan]Zabbix Installation[/bold cyan]\n"
            "[yellow]Network Monitoring Platform[/yellow]\n\n"
            "This will:\n"
            "  1. Install prerequisites (Docker, nginx, certbot)\n"
            "  2. Ask for domain, email and database passwords\n"
            "  3. Start MySQL, Zabbix server, web UI and agent\n"
            "  4. Configure nginx with a Let's Encrypt certificate\n"
            "  5. Create the manage-zabbix script",
            border_style="cyan"
        ))

        self.prerequisites.install_all(self.settings.min_memory_mb)

        with InstallLock(self.settings.install_dir / ".install.lock"):
            config = self.configure()

            console.print("\n[bold]Deploying Zabbix stack[/bold]\n")
            StackRenderer(self.settings).render(config)
            self.verify(config)

            console.print("\n[bold]Configuring HTTPS[/bold]\n")
            self.proxy.apply_challenge(config)
            self.issuer.issue(config.domain, config.email)
            self.proxy.apply_secured(config)

            script = write_management_script(self.settings.install_dir)
            console.print(f"[green]✓[/green] Management script: {script}")

        show_summary(config, self.settings)
        return config

    def configure(self) -> ProvisioningConfig:
        """Reuse a previous installation's .env, or collect a fresh configuration."""
        previous = self.load_previous()
        if previous is not None:
            console.print(
                f"[yellow]⚠[/yellow] Existing installation found for [cyan]{previous.domain}[/cyan] "
                f"in {self.settings.install_dir}"
            )
            if self.confirm("Reuse the existing configuration (upgrade in place)?"):
                logger.info("Reusing configuration from %s", self.settings.env_file)
                show_review(previous)
                return previous
            console.print("[dim]Existing configuration will be overwritten.[/dim]")

        config = self.wizard.collect()
        ports = self.negotiator_factory().negotiate_all()
        config = replace(config, ports=ports)

        console.print("[green]✓[/green] Configuration complete!")
        show_review(config)
        return config

    def load_previous(self) -> Optional[ProvisioningConfig]:
        if not self.settings.env_file.exists():
            return None
        try:
            return ProvisioningConfig.from_env(read_env_file(self.settings.env_file))
        except ConfigError as e:
            logger.warning("Ignoring unreadable %s: %s", self.settings.env_file, e)
            return None

    def verify(self, config: ProvisioningConfig) -> VerificationResult:
        return self.verifier_factory(self.runtime).verify(config)


def show_summary(config: ProvisioningConfig, settings: InstallerSettings):
    """Show access information and management commands."""
    console.print()
    console.print(Panel(
        "[bold green]✓ Zabbix installation completed![/bold green]",
        border_style="green"
    ))

    table = Table(title="Access Information", show_header=False)
    table.add_column("", style="dim")
    table.add_column("")
    table.add_row("URL", f"https://{config.domain}")
    table.add_row("Username", "Admin")
    table.add_row("Password", "zabbix")
    table.add_row("Server Port", str(config.ports.server))
    table.add_row("Configuration", str(settings.install_dir))
    console.print(table)

    script = settings.management_script
    console.print("\n[bold]Management Commands:[/bold]")
    for command in ("start", "stop", "restart", "logs [service]", "status", "backup", "update", "mysql"):
        console.print(f"  [cyan]{script} {command}[/cyan]")

    console.print("\n[bold]Next Steps:[/bold]")
    console.print(f"  1. Access Zabbix at [cyan]https://{config.domain}[/cyan]")
    console.print("  2. Login with Admin/zabbix")
    console.print("  3. Change default password immediately")
    console.print("  4. Configure monitoring hosts and templates")
    console.print()


def run_install(settings: Optional[InstallerSettings] = None) -> ProvisioningConfig:
    """Load settings and run the installer."""
    return Installer(settings or InstallerSettings.load()).run()
