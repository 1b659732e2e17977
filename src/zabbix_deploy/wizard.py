"""
Zabbix Deploy Configuration Wizard
Collects the domain, email and database credentials in one pass.
"""

import re
import logging
from typing import Callable, Optional

import questionary
from questionary import Style
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import InstallerSettings, Ports, ProvisioningConfig
from .errors import InstallAborted, ValidationError

console = Console()
logger = logging.getLogger(__name__)

custom_style = Style([
    ('qmark', 'fg:cyan bold'),
    ('question', 'bold'),
    ('answer', 'fg:cyan'),
    ('pointer', 'fg:cyan bold'),
    ('highlighted', 'fg:cyan bold'),
    ('selected', 'fg:green'),
])

_HOSTNAME = re.compile(
    r"^(?=.{1,253}$)([a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]{2,63}$"
)

# (kind, message) -> answer, None when cancelled
Asker = Callable[[str, str], Optional[str]]


def questionary_ask(kind: str, message: str) -> Optional[str]:
    if kind == "password":
        return questionary.password(message, style=custom_style).ask()
    return questionary.text(message, style=custom_style).ask()


def validate_domain(value: str) -> Optional[str]:
    if not value:
        return "Domain cannot be empty"
    if not _HOSTNAME.match(value):
        return f"'{value}' is not a valid domain name"
    return None


def validate_email(value: str) -> Optional[str]:
    if not value:
        return "Email cannot be empty"
    if "@" not in value or value.startswith("@") or value.endswith("@"):
        return f"'{value}' is not a valid email address"
    return None


def validate_secret(label: str) -> Callable[[str], Optional[str]]:
    def _validate(value: str) -> Optional[str]:
        if not value:
            return f"{label} cannot be empty"
        # Stored single-quoted in .env
        if "'" in value or "\\" in value or "\n" in value:
            return f"{label} cannot contain single quotes, backslashes or newlines"
        return None
    return _validate


class ConfigWizard:
    """Interactive collection of the provisioning configuration."""

    def __init__(self, settings: InstallerSettings, ask: Optional[Asker] = None):
        self.settings = settings
        self.ask = ask or questionary_ask

    def prompt(
        self,
        message: str,
        validate: Callable[[str], Optional[str]],
        kind: str = "text",
    ) -> str:
        """Ask until the answer validates, at most max_prompt_attempts times."""
        attempts = self.settings.max_prompt_attempts
        for attempt in range(1, attempts + 1):
            answer = self.ask(kind, message)
            if answer is None:
                raise InstallAborted("Installation cancelled")
            answer = answer.strip()
            error = validate(answer)
            if error is None:
                return answer
            console.print(f"[red]✗[/red] {error}")
            logger.debug("Invalid answer for %r (attempt %s/%s)", message, attempt, attempts)
        raise ValidationError(f"No valid answer after {attempts} attempts: {message}")

    def collect(self, ports: Optional[Ports] = None) -> ProvisioningConfig:
        console.print(Panel(
            "[bold]Configuration Setup[/bold]\n\n"
            "Zabbix will be served at https://<domain>/ with a Let's Encrypt certificate.\n"
            "[dim]The domain's DNS must already point to this server.[/dim]",
            border_style="blue"
        ))

        domain = self.prompt(
            "Enter domain for Zabbix (e.g., zabbix.yourdomain.com):", validate_domain
        )
        email = self.prompt("Enter email for SSL certificate:", validate_email)
        root_password = self.prompt(
            "Enter MySQL root password:", validate_secret("MySQL root password"), kind="password"
        )
        zabbix_password = self.prompt(
            "Enter Zabbix database password:",
            validate_secret("Zabbix database password"),
            kind="password",
        )

        return ProvisioningConfig(
            domain=domain,
            email=email,
            mysql_root_password=root_password,
            mysql_password=zabbix_password,
            ports=ports or Ports(),
        )


def show_review(config: ProvisioningConfig):
    """Print the collected configuration with secrets masked."""
    table = Table(title="Configuration", show_header=False)
    table.add_column("", style="dim")
    table.add_column("")

    table.add_row("Domain", config.domain)
    table.add_row("Email", config.email)
    table.add_row("Web Port", str(config.ports.web))
    table.add_row("Server Port", str(config.ports.server))
    table.add_row("MySQL Port", f"127.0.0.1:{config.ports.mysql}")
    table.add_row("MySQL root password", "********")
    table.add_row("Zabbix DB password", "********")

    console.print(table)
