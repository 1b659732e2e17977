"""
Zabbix Deploy Stack Renderer

Renders docker-compose.yml and .env for the four-service Zabbix stack.
Rendering is deterministic: the same ProvisioningConfig always produces
byte-identical files, which makes re-running the installer safe.
"""

import re
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set, TYPE_CHECKING
from dataclasses import dataclass

import yaml

from .config import ProvisioningConfig, render_env_file, write_env_file
from .errors import RenderError

if TYPE_CHECKING:
    from .config import InstallerSettings

logger = logging.getLogger(__name__)

# Compose service name -> container name
SERVICES = {
    "mysql-server": "zabbix-mysql",
    "zabbix-server": "zabbix-server",
    "zabbix-web": "zabbix-web",
    "zabbix-agent": "zabbix-agent",
}

NETWORK_NAME = "zabbix-network"

# Bind-mount sources; docker fails to start a container whose source is missing
DATA_DIRS = ("mysql-data", "zabbix-scripts", "zabbix-modules", "zabbix-enc")

# Service -> (env key holding the host port, container port, host bind address)
PUBLISHED_PORTS = {
    "mysql-server": ("MYSQL_PORT", 3306, "127.0.0.1"),
    "zabbix-server": ("ZABBIX_SERVER_PORT", 10051, None),
    "zabbix-web": ("ZABBIX_WEB_PORT", 8080, "127.0.0.1"),
}

# Environment variables whose value must name another service
SERVICE_REFERENCES = ("DB_SERVER_HOST", "ZBX_SERVER_HOST")

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


@dataclass
class RenderedStack:
    """Paths written by StackRenderer."""
    compose_file: Path
    env_file: Path
    data_dirs: List[Path]


def _port_mapping(host_port: int, container_port: int, bind: Optional[str]) -> str:
    if bind:
        return f"{bind}:{host_port}:{container_port}"
    return f"{host_port}:{container_port}"


def build_descriptor(config: ProvisioningConfig, settings: "InstallerSettings") -> Dict[str, Any]:
    """Build the compose document. Credentials stay as ${VAR} placeholders."""
    env = config.to_env()

    def ports_for(service: str) -> List[str]:
        key, container_port, bind = PUBLISHED_PORTS[service]
        return [_port_mapping(int(env[key]), container_port, bind)]

    zabbix_tag = settings.zabbix_version
    db_env = [
        "MYSQL_DATABASE=zabbix",
        "MYSQL_USER=zabbix",
        "MYSQL_PASSWORD=${MYSQL_PASSWORD}",
        "MYSQL_ROOT_PASSWORD=${MYSQL_ROOT_PASSWORD}",
    ]

    return {
        "version": "3.8",
        "services": {
            "mysql-server": {
                "image": settings.mysql_image,
                "container_name": SERVICES["mysql-server"],
                "restart": "unless-stopped",
                "ports": ports_for("mysql-server"),
                "environment": [
                    "MYSQL_ROOT_PASSWORD=${MYSQL_ROOT_PASSWORD}",
                    "MYSQL_DATABASE=zabbix",
                    "MYSQL_USER=zabbix",
                    "MYSQL_PASSWORD=${MYSQL_PASSWORD}",
                    "MYSQL_CHARACTER_SET_SERVER=utf8",
                    "MYSQL_COLLATION_SERVER=utf8_bin",
                ],
                "volumes": ["./mysql-data:/var/lib/mysql"],
                "networks": [NETWORK_NAME],
                "command": [
                    "mysqld",
                    "--character-set-server=utf8",
                    "--collation-server=utf8_bin",
                    "--default-authentication-plugin=mysql_native_password",
                ],
            },
            "zabbix-server": {
                "image": f"zabbix/zabbix-server-mysql:{zabbix_tag}",
                "container_name": SERVICES["zabbix-server"],
                "restart": "unless-stopped",
                "ports": ports_for("zabbix-server"),
                "environment": ["DB_SERVER_HOST=mysql-server"] + db_env + [
                    "ZBX_ENABLE_SNMP_TRAPS=true",
                    "ZBX_STARTPREPROCESSORS=3",
                    "ZBX_STARTPOLLERSUNREACHABLE=1",
                    "ZBX_STARTTRAPPERS=5",
                    "ZBX_STARTPINGERS=1",
                    "ZBX_STARTDISCOVERERS=1",
                    "ZBX_STARTHTTPPOLLERS=1",
                ],
                "volumes": [
                    "./zabbix-scripts:/usr/lib/zabbix/alertscripts:ro",
                    "./zabbix-modules:/var/lib/zabbix/modules:ro",
                    "./zabbix-enc:/var/lib/zabbix/enc:ro",
                ],
                "depends_on": ["mysql-server"],
                "networks": [NETWORK_NAME],
            },
            "zabbix-web": {
                "image": f"zabbix/zabbix-web-apache-mysql:{zabbix_tag}",
                "container_name": SERVICES["zabbix-web"],
                "restart": "unless-stopped",
                "ports": ports_for("zabbix-web"),
                "environment": [
                    "ZBX_SERVER_HOST=zabbix-server",
                    "DB_SERVER_HOST=mysql-server",
                ] + db_env + [
                    f"PHP_TZ={settings.timezone}",
                    "ZBX_SERVER_NAME=Zabbix Server",
                ],
                "depends_on": ["mysql-server", "zabbix-server"],
                "networks": [NETWORK_NAME],
            },
            "zabbix-agent": {
                "image": f"zabbix/zabbix-agent:{zabbix_tag}",
                "container_name": SERVICES["zabbix-agent"],
                "restart": "unless-stopped",
                "privileged": True,
                "pid": "host",
                "environment": [
                    "ZBX_HOSTNAME=zabbix-server",
                    "ZBX_SERVER_HOST=zabbix-server",
                    "ZBX_SERVER_PORT=10051",
                    "ZBX_PASSIVE_ALLOW=true",
                    "ZBX_ACTIVE_ALLOW=true",
                ],
                "volumes": [
                    "/proc:/proc:ro",
                    "/sys:/sys:ro",
                    "/dev:/dev:ro",
                    "/var/run/docker.sock:/var/run/docker.sock:ro",
                ],
                "depends_on": ["zabbix-server"],
                "networks": [NETWORK_NAME],
            },
        },
        "networks": {
            NETWORK_NAME: {"driver": "bridge"},
        },
    }


def dump_descriptor(descriptor: Dict[str, Any]) -> str:
    return yaml.safe_dump(descriptor, default_flow_style=False, sort_keys=False)


def render_descriptor(config: ProvisioningConfig, settings: "InstallerSettings") -> str:
    """docker-compose.yml content."""
    return dump_descriptor(build_descriptor(config, settings))


def render_env(config: ProvisioningConfig) -> str:
    """.env content."""
    return render_env_file(config.to_env())


def placeholders(text: str) -> Set[str]:
    """Names of every ${VAR} placeholder in a rendered file."""
    return set(_PLACEHOLDER.findall(text))


def check_references(descriptor: Dict[str, Any]) -> List[str]:
    """Find references to services or networks the descriptor does not declare."""
    problems = []
    services = descriptor.get("services", {})
    networks = descriptor.get("networks", {}) or {}

    for name, service in services.items():
        for dep in service.get("depends_on", []):
            if dep not in services:
                problems.append(f"{name}: depends_on unknown service '{dep}'")
        for net in service.get("networks", []):
            if net not in networks:
                problems.append(f"{name}: uses undeclared network '{net}'")
        for entry in service.get("environment", []):
            key, _, value = entry.partition("=")
            if key in SERVICE_REFERENCES and value not in services:
                problems.append(f"{name}: {key} points to unknown service '{value}'")
    return problems


def check_consistency(descriptor_text: str, env: Mapping[str, Optional[str]]) -> List[str]:
    """Compare a rendered descriptor with the env file that belongs to it."""
    problems = [
        f"placeholder ${{{name}}} has no value in .env"
        for name in sorted(placeholders(descriptor_text))
        if not env.get(name)
    ]

    try:
        descriptor = yaml.safe_load(descriptor_text) or {}
    except yaml.YAMLError as e:
        return problems + [f"docker-compose.yml is not valid YAML: {e}"]

    services = descriptor.get("services", {})
    for service, (key, container_port, bind) in PUBLISHED_PORTS.items():
        if not env.get(key):
            continue
        expected = _port_mapping(int(env[key]), container_port, bind)
        published = services.get(service, {}).get("ports", [])
        if expected not in published:
            problems.append(
                f"{service} publishes {', '.join(published) or 'nothing'} "
                f"but .env says {key}={env[key]}"
            )
    return problems


class StackRenderer:
    """Writes the stack files into the install directory."""

    def __init__(self, settings: "InstallerSettings"):
        self.settings = settings

    def render(self, config: ProvisioningConfig) -> RenderedStack:
        install_dir = self.settings.install_dir

        descriptor = build_descriptor(config, self.settings)
        problems = check_references(descriptor)
        if problems:
            raise RenderError("Invalid stack definition: " + "; ".join(problems))

        # Mount sources must exist before the first 'up'
        data_dirs = []
        for name in DATA_DIRS:
            path = install_dir / name
            path.mkdir(parents=True, exist_ok=True)
            data_dirs.append(path)

        compose_file = self.settings.compose_file
        compose_file.write_text(dump_descriptor(descriptor))
        env_file = write_env_file(self.settings.env_file, config.to_env())

        logger.info("Rendered %s and %s", compose_file, env_file)
        return RenderedStack(compose_file=compose_file, env_file=env_file, data_dirs=data_dirs)
