"""
Let's Encrypt certificate issuance through certbot's webroot plugin.
"""

import logging
import subprocess
from pathlib import Path
from typing import Callable, List, Optional

from rich.console import Console

from .config import InstallerSettings
from .errors import CertificateError

console = Console()
logger = logging.getLogger(__name__)


def _default_run(cmd: List[str]) -> subprocess.CompletedProcess:
    logger.debug("Running: %s", " ".join(cmd))
    return subprocess.run(cmd, capture_output=True, text=True, timeout=300)


class CertificateIssuer:
    """Obtains a certificate for the domain served by the challenge vhost."""

    def __init__(
        self,
        settings: InstallerSettings,
        run: Optional[Callable[[List[str]], subprocess.CompletedProcess]] = None,
    ):
        self.settings = settings
        self.run = run or _default_run

    def cert_paths(self, domain: str):
        live = self.settings.letsencrypt_live_dir / domain
        return live / "fullchain.pem", live / "privkey.pem"

    def has_valid_certificate(self, domain: str) -> bool:
        """True if a certificate exists and is valid for at least another day."""
        cert_path, key_path = self.cert_paths(domain)
        if not (cert_path.exists() and key_path.exists()):
            return False
        result = self.run(
            ["openssl", "x509", "-in", str(cert_path), "-noout", "-checkend", "86400"]
        )
        return result.returncode == 0

    def issue(self, domain: str, email: str) -> Path:
        """Make sure a valid certificate exists; returns the fullchain path."""
        cert_path, _ = self.cert_paths(domain)

        if self.has_valid_certificate(domain):
            console.print(f"[green]✓[/green] Found existing Let's Encrypt certificate for {domain}")
            return cert_path

        console.print("[cyan]Obtaining SSL certificate...[/cyan]")
        cmd = [
            "certbot", "certonly", "--webroot",
            "-w", str(self.settings.acme_webroot),
            "-d", domain,
            "--email", email,
            "--agree-tos",
            "--non-interactive",
        ]
        try:
            result = self.run(cmd)
        except subprocess.TimeoutExpired:
            raise CertificateError(f"certbot timed out for {domain}")

        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            raise CertificateError(
                f"certbot could not obtain a certificate for {domain}. "
                f"Check that DNS points to this server and port 80 is open.\n{detail[-500:]}"
            )

        console.print("[green]✓[/green] Let's Encrypt certificate obtained")
        return cert_path
