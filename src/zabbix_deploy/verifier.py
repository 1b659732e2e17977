"""
Starts the rendered stack and waits until it is actually usable.
"""

import time
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import requests
from rich.console import Console

from .config import InstallerSettings, ProvisioningConfig
from .errors import BringUpError
from .runtime import StackRuntime

console = Console()
logger = logging.getLogger(__name__)

# The agent is optional: monitoring works without it
REQUIRED_SERVICES = ("mysql-server", "zabbix-server", "zabbix-web")

# Zabbix web answers 200 (login page) or 302 (redirect to setup/login)
RESPONDING_CODES = (200, 302)

LOG_TAIL_LINES = 50


def probe_web(port: int, timeout: float = 5.0) -> int:
    """HTTP status of the local web UI, 0 if it does not answer."""
    try:
        response = requests.get(
            f"http://127.0.0.1:{port}/", timeout=timeout, allow_redirects=False
        )
        return response.status_code
    except requests.RequestException as e:
        logger.debug("Web probe on port %s failed: %s", port, e)
        return 0


@dataclass
class VerificationResult:
    states: Dict[str, str]
    web_status: int

    @property
    def responding(self) -> bool:
        return self.web_status in RESPONDING_CODES


def services_running(states: Dict[str, str]) -> bool:
    return all(states.get(name) == "running" for name in REQUIRED_SERVICES)


class BringUpVerifier:
    """
    Starts the stack and decides whether the deployment is healthy.

    In "poll" mode it checks container state and the web UI with capped
    exponential backoff until both are ready or readiness_timeout passes.
    In "fixed" mode it sleeps settle_delay and checks once.
    """

    def __init__(
        self,
        runtime: StackRuntime,
        settings: InstallerSettings,
        probe: Optional[Callable[[int], int]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.runtime = runtime
        self.settings = settings
        self.probe = probe or probe_web
        self.sleep = sleep
        self.clock = clock

    def verify(self, config: ProvisioningConfig) -> VerificationResult:
        console.print("[cyan]Starting Zabbix stack...[/cyan]")
        self.runtime.apply()

        if self.settings.readiness == "fixed":
            states, web_status = self._settle(config)
        else:
            states, web_status = self._poll(config)

        if not services_running(states):
            console.print("[red]✗[/red] Some Zabbix services failed to start")
            raise BringUpError(states, self.runtime.logs_tail(LOG_TAIL_LINES))

        result = VerificationResult(states=states, web_status=web_status)
        console.print("[green]✓[/green] Zabbix stack is running")
        if result.responding:
            console.print(f"[green]✓[/green] Zabbix web interface is responding locally ({web_status})")
        else:
            logger.warning("Web UI on port %s answered %s", config.ports.web, web_status)
            console.print(
                f"[yellow]⚠[/yellow] Zabbix web interface response: {web_status:03d} "
                "(may need more time to initialize)"
            )
        return result

    def _settle(self, config: ProvisioningConfig):
        """Fixed-delay fallback when no readiness signal is wanted."""
        console.print(
            f"[yellow]Waiting {self.settings.settle_delay}s for database initialization...[/yellow]"
        )
        self.sleep(self.settings.settle_delay)
        states = self.runtime.status()
        web_status = self.probe(config.ports.web) if services_running(states) else 0
        return states, web_status

    def _poll(self, config: ProvisioningConfig):
        console.print(
            "[yellow]Waiting for database initialization "
            "(this may take several minutes)...[/yellow]"
        )
        deadline = self.clock() + self.settings.readiness_timeout
        delay = self.settings.poll_initial_delay

        while True:
            states = self.runtime.status()
            web_status = 0
            if services_running(states):
                web_status = self.probe(config.ports.web)
                if web_status in RESPONDING_CODES:
                    return states, web_status

            remaining = deadline - self.clock()
            if remaining <= 0:
                logger.info("Readiness timeout after %ss", self.settings.readiness_timeout)
                return states, web_status

            waiting = [name for name in REQUIRED_SERVICES if states.get(name) != "running"]
            logger.debug(
                "Not ready (waiting: %s, web: %s), retrying in %ss",
                ", ".join(waiting) or "web", web_status, delay,
            )
            self.sleep(min(delay, remaining))
            delay = min(delay * 2, self.settings.poll_max_delay)
