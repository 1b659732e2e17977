"""
Zabbix Deploy CLI - installer entry point and management commands
"""

import sys
import logging

import click
from rich.console import Console
from rich.panel import Panel
from rich.markup import escape as rich_escape

from . import __version__, get_version_info
from .config import InstallerSettings
from .errors import BringUpError, DeployError
from .installer import Installer
from .manage import main as manage_group

console = Console()


@click.group()
@click.version_option(version=__version__, prog_name="zabbix-deploy", message=get_version_info())
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def main(verbose: bool):
    """
    Zabbix Deploy - Dockerized Zabbix with nginx and Let's Encrypt

    \b
    QUICK START:

        sudo zabbix-deploy install           # Interactive installation
        zabbix-deploy manage status          # Check the stack
        zabbix-deploy manage logs web        # Follow web UI logs
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@click.command()
def install():
    """
    Install Zabbix with Docker, nginx and Let's Encrypt.

    Asks for the domain, certificate email and database passwords, then
    starts the stack, configures HTTPS and writes manage-zabbix into the
    install directory.

    \b
    EXAMPLE:
        sudo zabbix-deploy install
    """
    try:
        settings = InstallerSettings.load()
        Installer(settings).run()
    except BringUpError as e:
        console.print(f"[red]Error:[/red] {rich_escape(e.message)}")
        if e.log_tail:
            console.print(Panel(rich_escape(e.log_tail), title="Recent container logs", border_style="red"))
        sys.exit(1)
    except DeployError as e:
        console.print(f"[red]Error:[/red] {rich_escape(e.message)}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)


# Register commands
main.add_command(install)
main.add_command(manage_group, name="manage")


if __name__ == "__main__":
    main()
