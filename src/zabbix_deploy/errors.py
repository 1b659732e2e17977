"""
Zabbix Deploy error types.

Every fatal condition in the installer is a DeployError subclass; the CLI
prints the message and exits non-zero.
"""

from typing import Dict, Optional


class DeployError(Exception):
    """Base class for installer and management errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class PrivilegeError(DeployError):
    """Not running as root."""


class PrerequisiteError(DeployError):
    """A required tool is missing and could not be installed."""


class ResourceWarningDeclined(DeployError):
    """Operator declined to continue below the recommended resources."""


class ValidationError(DeployError):
    """Input still invalid after the maximum number of attempts."""


class InstallAborted(DeployError):
    """A prompt was cancelled."""


class ConfigError(DeployError):
    """Invalid settings file or env file."""


class PortExhaustedError(DeployError):
    """No free port inside the search window."""


class RenderError(DeployError):
    """Rendered stack references something it does not declare."""


class RuntimeCommandError(DeployError):
    """An external command returned non-zero."""

    def __init__(self, command, returncode: int, output: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        detail = output.strip()[-500:] if output else ""
        message = f"'{' '.join(self.command)}' exited with {returncode}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class BringUpError(DeployError):
    """Required services are not running after start."""

    def __init__(self, states: Dict[str, str], log_tail: str = ""):
        self.states = dict(states)
        self.log_tail = log_tail
        failed = ", ".join(
            f"{name} ({state})" for name, state in sorted(self.states.items())
            if state != "running"
        )
        super().__init__(f"Some Zabbix services failed to start: {failed}")


class ProxyValidationError(DeployError):
    """nginx -t rejected the new virtual host; the previous one is still active."""

    def __init__(self, domain: str, output: str = ""):
        self.domain = domain
        self.output = output
        super().__init__(
            f"nginx rejected the configuration for {domain}; previous configuration kept"
            + (f"\n{output.strip()}" if output else "")
        )


class CertificateError(DeployError):
    """certbot could not obtain a certificate."""


class BackupError(DeployError):
    """Database dump or archive creation failed."""


class InstallLockedError(DeployError):
    """Another installer run holds the lock."""

    def __init__(self, lock_path, holder: Optional[str] = None):
        self.lock_path = lock_path
        self.holder = holder
        who = f" (pid {holder})" if holder else ""
        super().__init__(f"Another installation is already running{who}: {lock_path}")
