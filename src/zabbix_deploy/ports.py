"""
Port conflict resolution for the published stack ports.
"""

import re
import shutil
import logging
import subprocess
from typing import Callable, Optional, Set

from .config import Ports
from .errors import PortExhaustedError

logger = logging.getLogger(__name__)

MAX_PORT = 65535

# Local address column of ss/netstat output: 0.0.0.0:8080, [::]:8080, *:8080
_LOCAL_PORT = re.compile(r":(\d+)$")


def parse_listening_ports(output: str) -> Set[int]:
    """Extract local listening ports from `ss -tln` or `netstat -tln` output."""
    ports = set()
    for line in output.splitlines():
        parts = line.split()
        if not parts or parts[0] in ("State", "Netid", "Proto", "Active"):
            continue
        # ss: State Recv-Q Send-Q Local Peer / netstat: Proto Recv-Q Send-Q Local Foreign State
        local = parts[3] if len(parts) > 3 else ""
        match = _LOCAL_PORT.search(local)
        if match:
            ports.add(int(match.group(1)))
    return ports


def listening_ports() -> Set[int]:
    """Ports with a listening TCP socket on this host."""
    for cmd in (["ss", "-H", "-tln"], ["netstat", "-tln"]):
        if shutil.which(cmd[0]) is None:
            continue
        result = subprocess.run(cmd, capture_output=True, text=True)
        if result.returncode == 0:
            return parse_listening_ports(result.stdout)
        logger.debug("%s failed: %s", cmd[0], result.stderr.strip())
    logger.warning("Neither ss nor netstat available; assuming all ports are free")
    return set()


class PortNegotiator:
    """
    Finds the first free port at or above each default.

    Ports handed out earlier in the same run count as taken, so two
    services never land on the same incremented port.
    """

    def __init__(
        self,
        in_use: Optional[Callable[[int], bool]] = None,
        search_limit: int = 100,
    ):
        if in_use is None:
            busy = listening_ports()
            in_use = busy.__contains__
        self.in_use = in_use
        self.search_limit = search_limit
        self.claimed: Set[int] = set()

    def negotiate(self, default: int) -> int:
        """Claim and return the smallest free port >= default."""
        last = min(default + self.search_limit - 1, MAX_PORT)
        for port in range(default, last + 1):
            if port in self.claimed or self.in_use(port):
                continue
            self.claimed.add(port)
            if port != default:
                logger.info("Port %s in use, using %s", default, port)
            return port
        raise PortExhaustedError(
            f"No free port between {default} and {last}; free a port or "
            f"raise port_search_limit"
        )

    def negotiate_all(self, defaults: Ports = Ports()) -> Ports:
        """Negotiate web, server and database ports in that order."""
        return Ports(
            web=self.negotiate(defaults.web),
            server=self.negotiate(defaults.server),
            mysql=self.negotiate(defaults.mysql),
        )
