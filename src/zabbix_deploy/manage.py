"""
Day-2 management of an installed Zabbix stack.

The command table is a click group; the generated manage-zabbix script in
the install directory runs it with that directory as the target. Every
command reads .env when it runs, so nothing secret is baked into the
script.

    manage-zabbix start|stop|restart
    manage-zabbix logs [server|web|mysql|agent]
    manage-zabbix status
    manage-zabbix backup
    manage-zabbix update
    manage-zabbix mysql
"""

import os
import sys
import logging
import tarfile
from datetime import datetime
from functools import wraps
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import click
from rich.console import Console
from rich.markup import escape as rich_escape
from rich.table import Table

from . import __version__
from .config import InstallerSettings, read_env_file
from .errors import BackupError, DeployError
from .runtime import DockerComposeRuntime, StackRuntime
from .stack import SERVICES, check_consistency

console = Console()
logger = logging.getLogger(__name__)

# Short names accepted by `logs` -> compose service
LOG_TARGETS = {
    "server": "zabbix-server",
    "srv": "zabbix-server",
    "web": "zabbix-web",
    "www": "zabbix-web",
    "mysql": "mysql-server",
    "db": "mysql-server",
    "agent": "zabbix-agent",
}

SCRIPT_NAME = "manage-zabbix"

SCRIPT_TEMPLATE = '''#!{python}
# Zabbix stack management, generated by zabbix-deploy {version}.
# Usage: {name} {{start|stop|restart|logs [service]|status|backup|update|mysql}}
import sys
from pathlib import Path

from zabbix_deploy.manage import main

if __name__ == "__main__":
    main(prog_name=Path(sys.argv[0]).name, obj=Path(__file__).resolve().parent)
'''


def write_management_script(install_dir: Path, python: Optional[str] = None) -> Path:
    """Write the executable manage-zabbix script into the install directory."""
    path = Path(install_dir) / SCRIPT_NAME
    path.write_text(SCRIPT_TEMPLATE.format(
        python=python or sys.executable,
        version=__version__,
        name=SCRIPT_NAME,
    ))
    os.chmod(path, 0o755)
    logger.info("Wrote %s", path)
    return path


class StackManager:
    """Operations against the stack rendered in install_dir."""

    def __init__(
        self,
        install_dir: Path,
        runtime: Optional[StackRuntime] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.install_dir = Path(install_dir)
        self.runtime = runtime or DockerComposeRuntime(self.install_dir)
        self.clock = clock

    @property
    def env_file(self) -> Path:
        return self.install_dir / ".env"

    @property
    def compose_file(self) -> Path:
        return self.install_dir / "docker-compose.yml"

    def env(self) -> Dict[str, Optional[str]]:
        return read_env_file(self.env_file)

    def start(self):
        self.runtime.start()

    def stop(self):
        self.runtime.stop()

    def restart(self):
        self.runtime.restart()

    def update(self):
        """Pull newer images and recreate containers; bind-mounted data stays."""
        self.runtime.pull()
        self.runtime.apply()

    def logs(self, service: Optional[str] = None) -> int:
        return self.runtime.logs(service, follow=True)

    def status(self) -> Tuple[Dict[str, str], str, str, List[str]]:
        """Service states, public URL, server port and .env/descriptor drift."""
        env = self.env()
        problems = []
        if self.compose_file.exists():
            problems = check_consistency(self.compose_file.read_text(), env)
        else:
            problems.append(f"{self.compose_file} not found")
        url = f"https://{env.get('ZABBIX_DOMAIN')}/"
        return self.runtime.status(), url, env.get("ZABBIX_SERVER_PORT") or "", problems

    def _backup_names(self) -> Tuple[Path, Path]:
        backup_dir = self.install_dir / "backups"
        backup_dir.mkdir(parents=True, exist_ok=True)

        stamp = self.clock().strftime("%Y%m%d_%H%M%S_%f")
        candidate, n = stamp, 0
        while (backup_dir / f"zabbix-backup-{candidate}.tar.gz").exists():
            n += 1
            candidate = f"{stamp}_{n}"
        return (
            self.install_dir / f"zabbix_backup_{candidate}.sql",
            backup_dir / f"zabbix-backup-{candidate}.tar.gz",
        )

    def backup(self) -> Path:
        """Dump the database and archive it with mysql-data. Returns the archive path."""
        env = self.env()
        root_password = env.get("MYSQL_ROOT_PASSWORD")
        if not root_password:
            raise BackupError("MYSQL_ROOT_PASSWORD missing from .env")

        dump, archive = self._backup_names()
        try:
            with open(dump, "wb") as f:
                code = self.runtime.exec(
                    "mysql-server",
                    ["mysqldump", "--single-transaction", "-u", "root", "zabbix"],
                    env={"MYSQL_PWD": root_password},
                    stdout=f,
                )
            if code != 0:
                raise BackupError(f"mysqldump exited with {code}")

            try:
                with tarfile.open(archive, "w:gz") as tar:
                    tar.add(dump, arcname=dump.name)
                    data_dir = self.install_dir / "mysql-data"
                    if data_dir.exists():
                        tar.add(data_dir, arcname="mysql-data")
            except (OSError, tarfile.TarError) as e:
                if archive.exists():
                    archive.unlink()
                raise BackupError(f"Could not write {archive}: {e}")
        finally:
            if dump.exists():
                dump.unlink()

        logger.info("Backup written to %s", archive)
        return archive

    def db_shell(self) -> int:
        env = self.env()
        return self.runtime.exec(
            "mysql-server",
            ["mysql", "-u", "root", "zabbix"],
            env={"MYSQL_PWD": env.get("MYSQL_ROOT_PASSWORD") or ""},
            interactive=True,
        )


def reports_errors(func):
    """Print DeployErrors as a diagnostic and exit 1."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DeployError as e:
            console.print(f"[red]Error:[/red] {rich_escape(e.message)}")
            sys.exit(1)
    return wrapper


@click.group(name="manage")
@click.option(
    "--dir", "install_dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Installation directory (default: the configured install_dir)",
)
@click.pass_context
def main(ctx, install_dir: Optional[Path]):
    """
    Manage the Zabbix Docker stack.

    \b
    COMMANDS:
        start | stop | restart     Stack lifecycle
        logs [service]             Follow logs (server, web, mysql, agent)
        status                     Container state and access URL
        backup                     Database dump + data archive
        update                     Pull new images and recreate
        mysql                      MySQL shell as root
    """
    if isinstance(ctx.obj, StackManager):
        return
    if install_dir is None:
        if isinstance(ctx.obj, Path):
            install_dir = ctx.obj
        else:
            install_dir = reports_errors(InstallerSettings.load)().install_dir
    ctx.obj = StackManager(install_dir)


@main.command()
@click.pass_obj
@reports_errors
def start(manager: StackManager):
    """Start the Zabbix stack."""
    console.print("Starting Zabbix stack...")
    manager.start()
    console.print("[green]✓[/green] Zabbix stack started")


@main.command()
@click.pass_obj
@reports_errors
def stop(manager: StackManager):
    """Stop the Zabbix stack."""
    console.print("Stopping Zabbix stack...")
    manager.stop()
    console.print("[green]✓[/green] Zabbix stack stopped")


@main.command()
@click.pass_obj
@reports_errors
def restart(manager: StackManager):
    """Restart all Zabbix services."""
    console.print("Restarting Zabbix stack...")
    manager.restart()
    console.print("[green]✓[/green] Zabbix stack restarted")


@main.command()
@click.argument("service", required=False, type=click.Choice(sorted(LOG_TARGETS)))
@click.pass_obj
@reports_errors
def logs(manager: StackManager, service: Optional[str]):
    """
    Follow container logs.

    SERVICE can be server, web, mysql or agent (aliases: srv, www, db).
    Without SERVICE, all logs are shown.
    """
    target = LOG_TARGETS[service] if service else None
    if target is None:
        console.print("Showing all logs...")
    code = manager.logs(target)
    if code:
        sys.exit(code)


@main.command()
@click.pass_obj
@reports_errors
def status(manager: StackManager):
    """Show container state and service URLs."""
    states, url, server_port, problems = manager.status()

    table = Table(title="Zabbix stack status")
    table.add_column("Service", style="cyan")
    table.add_column("Container")
    table.add_column("State")
    for service, container in SERVICES.items():
        state = states.get(service, "missing")
        if state == "running":
            state_str = "[green]running ✓[/green]"
        elif state in ("exited", "dead", "missing"):
            state_str = f"[red]{state}[/red]"
        else:
            state_str = f"[yellow]{state}[/yellow]"
        table.add_row(service, container, state_str)
    console.print(table)

    console.print("\n[bold]Service URLs:[/bold]")
    console.print(f"  Zabbix Web: [cyan]{url}[/cyan]")
    console.print(f"  Server Port: [cyan]{server_port}[/cyan]")

    for problem in problems:
        console.print(f"[yellow]⚠[/yellow] {problem}")


@main.command()
@click.pass_obj
@reports_errors
def backup(manager: StackManager):
    """Dump the zabbix database and archive it with mysql-data."""
    console.print("Creating backup...")
    archive = manager.backup()
    console.print(f"[green]✓[/green] Backup created: {archive}")


@main.command()
@click.pass_obj
@reports_errors
def update(manager: StackManager):
    """Pull newer images and re-apply the stack."""
    console.print("Updating Zabbix stack...")
    manager.update()
    console.print("[green]✓[/green] Zabbix stack updated")


@main.command("mysql")
@click.pass_obj
@reports_errors
def mysql_shell(manager: StackManager):
    """Open a MySQL shell on the zabbix database."""
    console.print("Connecting to MySQL...")
    code = manager.db_shell()
    if code:
        sys.exit(code)
