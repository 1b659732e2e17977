"""
Zabbix Deploy - Dockerized Zabbix with nginx and Let's Encrypt

Installs a complete Zabbix monitoring stack on one host:
- MySQL 8.0 database
- Zabbix server, web UI and agent containers
- nginx reverse proxy with a Let's Encrypt certificate
- manage-zabbix script for start/stop/logs/backup/update

Quick Start:
    pip install zabbix-deploy
    sudo zabbix-deploy install
"""

import platform

__version__ = "1.0.0"
__author__ = "DefendX1"


def get_version_info() -> str:
    """Version string shown by --version."""
    return f"zabbix-deploy {__version__} (Python {platform.python_version()})"


# Export main classes for programmatic use
from .config import InstallerSettings, Ports, ProvisioningConfig
from .installer import Installer, run_install
from .manage import StackManager, write_management_script
from .ports import PortNegotiator
from .stack import StackRenderer

__all__ = [
    "InstallerSettings",
    "Ports",
    "ProvisioningConfig",
    "Installer",
    "StackManager",
    "StackRenderer",
    "PortNegotiator",
    "run_install",
    "write_management_script",
]
