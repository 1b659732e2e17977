"""
Zabbix Deploy Configuration

ProvisioningConfig holds everything collected from the operator. It is
built once, frozen, and passed to every step; nothing mutates it later.

InstallerSettings holds tunables (paths, images, timeouts) loaded from an
optional YAML file with ZABBIX_DEPLOY_* environment overrides.
"""

import os
import re
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
from dataclasses import dataclass, field, fields, replace

import yaml
from dotenv import dotenv_values

from .errors import ConfigError

logger = logging.getLogger(__name__)

SETTINGS_FILE = Path("/etc/zabbix-deploy/config.yaml")
ENV_PREFIX = "ZABBIX_DEPLOY_"

# Env file keys, in the order they are written
ENV_KEYS = (
    "ZABBIX_DOMAIN",
    "ZABBIX_WEB_PORT",
    "ZABBIX_SERVER_PORT",
    "MYSQL_PORT",
    "MYSQL_ROOT_PASSWORD",
    "MYSQL_PASSWORD",
    "SSL_EMAIL",
)

_SAFE_ENV_VALUE = re.compile(r"^[^\s#'\"$\\`]*$")

# python-dotenv still decodes \\ and \' inside single quotes, compose does not
_UNQUOTABLE = ("'", "\\", "\n")


@dataclass(frozen=True)
class Ports:
    """Host ports published by the stack."""
    web: int = 8080
    server: int = 10051
    mysql: int = 3306


@dataclass(frozen=True)
class ProvisioningConfig:
    """
    Everything one installation run needs.
    Collected once, never modified afterwards.
    """
    domain: str
    email: str
    mysql_root_password: str
    mysql_password: str
    ports: Ports = field(default_factory=Ports)

    def to_env(self) -> Dict[str, str]:
        """Env file mapping, in ENV_KEYS order."""
        return {
            "ZABBIX_DOMAIN": self.domain,
            "ZABBIX_WEB_PORT": str(self.ports.web),
            "ZABBIX_SERVER_PORT": str(self.ports.server),
            "MYSQL_PORT": str(self.ports.mysql),
            "MYSQL_ROOT_PASSWORD": self.mysql_root_password,
            "MYSQL_PASSWORD": self.mysql_password,
            "SSL_EMAIL": self.email,
        }

    @classmethod
    def from_env(cls, env: Mapping[str, Optional[str]]) -> "ProvisioningConfig":
        """Rebuild configuration from a persisted env file."""
        missing = [key for key in ENV_KEYS if not env.get(key)]
        if missing:
            raise ConfigError(f"Env file is missing: {', '.join(missing)}")

        def _port(key: str) -> int:
            try:
                return int(env[key])
            except ValueError:
                raise ConfigError(f"{key} is not a port number: {env[key]!r}")

        return cls(
            domain=env["ZABBIX_DOMAIN"],
            email=env["SSL_EMAIL"],
            mysql_root_password=env["MYSQL_ROOT_PASSWORD"],
            mysql_password=env["MYSQL_PASSWORD"],
            ports=Ports(
                web=_port("ZABBIX_WEB_PORT"),
                server=_port("ZABBIX_SERVER_PORT"),
                mysql=_port("MYSQL_PORT"),
            ),
        )


def format_env_value(value: str) -> str:
    """Quote a value for a compose .env file.

    Single quotes make compose and python-dotenv read the value literally,
    so '$' in a password is not interpolated.
    """
    if _SAFE_ENV_VALUE.match(value):
        return value
    if any(ch in value for ch in _UNQUOTABLE):
        raise ConfigError(
            "Values containing single quotes, backslashes or newlines cannot be stored in .env"
        )
    return f"'{value}'"


def render_env_file(values: Mapping[str, str]) -> str:
    return "".join(f"{key}={format_env_value(str(value))}\n" for key, value in values.items())


def write_env_file(path: Path, values: Mapping[str, str]) -> Path:
    """Write KEY=value lines and restrict the file to root."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_env_file(values))
    # Contains database passwords
    os.chmod(path, 0o600)
    return path


def read_env_file(path: Path) -> Dict[str, Optional[str]]:
    """Read a .env file written by write_env_file."""
    if not path.exists():
        raise ConfigError(f"{path} not found. Run 'sudo zabbix-deploy install' first.")
    return dict(dotenv_values(path, interpolate=False))


@dataclass
class InstallerSettings:
    """Tunable installer settings (no secrets)."""
    install_dir: Path = Path("/opt/zabbix-docker")
    nginx_sites_available: Path = Path("/etc/nginx/sites-available")
    nginx_sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    acme_webroot: Path = Path("/var/www/html")
    letsencrypt_live_dir: Path = Path("/etc/letsencrypt/live")

    zabbix_version: str = "alpine-6.4-latest"
    mysql_image: str = "mysql:8.0"
    timezone: str = "UTC"

    min_memory_mb: int = 2048

    # "poll" waits for a real readiness signal, "fixed" sleeps settle_delay
    readiness: str = "poll"
    settle_delay: int = 120
    readiness_timeout: int = 600
    poll_initial_delay: int = 2
    poll_max_delay: int = 30

    max_prompt_attempts: int = 5
    port_search_limit: int = 100

    @property
    def compose_file(self) -> Path:
        return self.install_dir / "docker-compose.yml"

    @property
    def env_file(self) -> Path:
        return self.install_dir / ".env"

    @property
    def management_script(self) -> Path:
        return self.install_dir / "manage-zabbix"

    @classmethod
    def load(
        cls,
        path: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "InstallerSettings":
        """Load defaults, then the YAML file, then environment overrides."""
        environ = os.environ if environ is None else environ
        if path is None:
            path = Path(environ.get(f"{ENV_PREFIX}CONFIG", SETTINGS_FILE))

        values: Dict[str, Any] = {}
        if path.exists():
            try:
                with open(path) as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Cannot parse {path}: {e}")
            if not isinstance(data, dict):
                raise ConfigError(f"{path} must contain a mapping")
            values.update(data)
            logger.debug("Loaded installer settings from %s", path)

        known = {f.name: f for f in fields(cls)}
        for name in list(values):
            if name not in known:
                logger.warning("Ignoring unknown setting %r in %s", name, path)
                values.pop(name)

        for name in known:
            env_value = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if env_value is not None:
                values[name] = env_value

        settings = cls()
        updates = {name: _coerce(name, known[name].type, value) for name, value in values.items()}
        settings = replace(settings, **updates)
        settings.validate()
        return settings

    def validate(self):
        if self.readiness not in ("poll", "fixed"):
            raise ConfigError(f"readiness must be 'poll' or 'fixed', got {self.readiness!r}")
        for name in ("settle_delay", "readiness_timeout", "poll_initial_delay",
                     "poll_max_delay", "max_prompt_attempts", "port_search_limit"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")


def _coerce(name: str, annotation: Any, value: Any) -> Any:
    """Convert a YAML or environment value to the field's type."""
    kind = annotation if isinstance(annotation, type) else {
        "Path": Path, "int": int, "str": str,
    }.get(str(annotation), str)
    try:
        if kind is int:
            return int(value)
        if kind is Path:
            return Path(str(value))
        return str(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid value for {name}: {value!r}")
