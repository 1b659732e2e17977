"""
nginx virtual host for the Zabbix web UI.

The host goes through two phases per domain:

    CHALLENGE  port 80 only, serves ACME challenges, redirects the rest
    SECURED    port 80 redirect + port 443 TLS proxy to the web UI

Each phase's file replaces the previous one. A file that fails `nginx -t`
is rolled back before nginx is reloaded, so the running configuration is
always one that passed validation.
"""

import os
import logging
import subprocess
import tempfile
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from rich.console import Console

from .config import InstallerSettings, ProvisioningConfig
from .errors import ProxyValidationError, RuntimeCommandError

console = Console()
logger = logging.getLogger(__name__)

ACME_LOCATION = "/.well-known/acme-challenge/"


class VhostPhase(Enum):
    """Lifecycle phase of a domain's virtual host."""
    CHALLENGE = "challenge"
    SECURED = "secured"


def render_challenge_vhost(domain: str, webroot: Path) -> str:
    """Port 80 only: ACME challenge directory plus redirect to HTTPS."""
    return f"""server {{
    listen 80;
    server_name {domain};

    location {ACME_LOCATION} {{
        root {webroot};
    }}

    location / {{
        return 301 https://$server_name$request_uri;
    }}
}}
"""


def _proxy_headers(indent: str = "        ") -> str:
    headers = [
        "proxy_set_header Host $http_host;",
        "proxy_set_header X-Real-IP $remote_addr;",
        "proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;",
        "proxy_set_header X-Forwarded-Proto $scheme;",
        "proxy_set_header X-Forwarded-Host $server_name;",
    ]
    return "\n".join(indent + line for line in headers)


def render_secured_vhost(domain: str, web_port: int, cert_dir: Path, webroot: Path) -> str:
    """Port 80 redirect and port 443 TLS termination in front of the web UI."""
    upstream = f"http://127.0.0.1:{web_port}"
    live = cert_dir / domain
    return f"""server {{
    listen 80;
    server_name {domain};

    location {ACME_LOCATION} {{
        root {webroot};
    }}

    location / {{
        return 301 https://$server_name$request_uri;
    }}
}}

server {{
    listen 443 ssl http2;
    server_name {domain};

    ssl_certificate {live}/fullchain.pem;
    ssl_certificate_key {live}/privkey.pem;

    ssl_protocols TLSv1.2 TLSv1.3;
    ssl_prefer_server_ciphers off;
    ssl_session_timeout 1d;

    add_header Strict-Transport-Security "max-age=31536000" always;
    add_header X-Content-Type-Options nosniff;
    add_header X-Frame-Options SAMEORIGIN;
    add_header X-XSS-Protection "1; mode=block";

    access_log /var/log/nginx/{domain}_access.log;
    error_log /var/log/nginx/{domain}_error.log;

    client_max_body_size 100M;
    proxy_connect_timeout 300s;
    proxy_send_timeout 300s;
    proxy_read_timeout 300s;

    location / {{
        proxy_pass {upstream};
{_proxy_headers()}
        proxy_redirect off;

        proxy_buffering off;
        proxy_request_buffering off;
    }}

    location ~ \\.php$ {{
        proxy_pass {upstream};
{_proxy_headers()}
        proxy_redirect off;

        proxy_read_timeout 300s;
        proxy_send_timeout 300s;
    }}

    location ~* \\.(css|js|png|jpg|jpeg|gif|ico|svg)$ {{
        proxy_pass {upstream};
        proxy_set_header Host $http_host;

        expires 1d;
        add_header Cache-Control "public";
    }}
}}
"""


def _default_run(cmd: List[str]) -> subprocess.CompletedProcess:
    logger.debug("Running: %s", " ".join(cmd))
    return subprocess.run(cmd, capture_output=True, text=True)


def _atomic_write(path: Path, content: str):
    """Replace path in one rename so nginx never sees a half-written file."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.chmod(tmp, 0o644)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def _restore_enabled(enabled: Path, old_link: Optional[str], old_file: Optional[str]):
    """Put sites-enabled/<domain> back the way apply() found it."""
    enabled.unlink()
    if old_link is not None:
        enabled.symlink_to(old_link)
    elif old_file is not None:
        enabled.write_text(old_file)


class NginxConfigurator:
    """Writes, validates and activates a domain's virtual host."""

    def __init__(
        self,
        settings: InstallerSettings,
        run: Optional[Callable[[List[str]], subprocess.CompletedProcess]] = None,
    ):
        self.settings = settings
        self.run = run or _default_run

    def available_path(self, domain: str) -> Path:
        return self.settings.nginx_sites_available / domain

    def enabled_path(self, domain: str) -> Path:
        return self.settings.nginx_sites_enabled / domain

    def current_phase(self, domain: str) -> Optional[VhostPhase]:
        """Phase of the file currently on disk, None if there is none."""
        path = self.available_path(domain)
        if not path.exists():
            return None
        if "listen 443" in path.read_text():
            return VhostPhase.SECURED
        return VhostPhase.CHALLENGE

    def apply(self, domain: str, content: str, phase: VhostPhase):
        """Install content as the domain's vhost, or keep the old one if nginx rejects it."""
        available = self.available_path(domain)
        enabled = self.enabled_path(domain)
        available.parent.mkdir(parents=True, exist_ok=True)
        enabled.parent.mkdir(parents=True, exist_ok=True)

        previous = available.read_text() if available.exists() else None
        _atomic_write(available, content)

        created_link = False
        old_link = old_file = None
        if not (enabled.is_symlink() and enabled.resolve() == available.resolve()):
            if enabled.is_symlink():
                old_link = os.readlink(enabled)
                enabled.unlink()
            elif enabled.exists():
                old_file = enabled.read_text()
                enabled.unlink()
            enabled.symlink_to(available)
            created_link = True

        result = self.run(["nginx", "-t"])
        if result.returncode != 0:
            output = (result.stderr or "") + (result.stdout or "")
            if previous is None:
                available.unlink()
            else:
                _atomic_write(available, previous)
            if created_link:
                _restore_enabled(enabled, old_link, old_file)
            logger.error("nginx -t rejected %s phase for %s", phase.value, domain)
            raise ProxyValidationError(domain, output)

        reload_cmd = ["systemctl", "reload", "nginx"]
        result = self.run(reload_cmd)
        if result.returncode != 0:
            raise RuntimeCommandError(reload_cmd, result.returncode, result.stderr or "")

        logger.info("Activated %s vhost for %s", phase.value, domain)

    def apply_challenge(self, config: ProvisioningConfig):
        console.print("[cyan]Configuring nginx (HTTP)...[/cyan]")
        webroot = self.settings.acme_webroot
        webroot.mkdir(parents=True, exist_ok=True)
        self.apply(
            config.domain,
            render_challenge_vhost(config.domain, webroot),
            VhostPhase.CHALLENGE,
        )
        console.print("[green]✓[/green] nginx serving ACME challenges")

    def apply_secured(self, config: ProvisioningConfig):
        console.print("[cyan]Configuring nginx (HTTPS)...[/cyan]")
        self.apply(
            config.domain,
            render_secured_vhost(
                config.domain,
                config.ports.web,
                self.settings.letsencrypt_live_dir,
                self.settings.acme_webroot,
            ),
            VhostPhase.SECURED,
        )
        console.print("[green]✓[/green] nginx configured with SSL")
