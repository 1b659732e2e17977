"""Pytest configuration and fixtures."""

import subprocess
from pathlib import Path

import pytest

from zabbix_deploy.config import InstallerSettings, ProvisioningConfig
from zabbix_deploy.runtime import StackRuntime
from zabbix_deploy.stack import SERVICES

ALL_RUNNING = {name: "running" for name in SERVICES}


class FakeRuntime(StackRuntime):
    """Records every call instead of talking to docker.

    states may be a single mapping or a list consumed one status() call
    at a time (the last entry repeats).
    """

    def __init__(self, states=None, exec_code=0, dump=b"-- MySQL dump\n", tail="zabbix-server | started"):
        self.calls = []
        self._states = states if states is not None else dict(ALL_RUNNING)
        self.exec_code = exec_code
        self.dump = dump
        self.tail = tail

    def apply(self):
        self.calls.append(("apply",))

    def start(self):
        self.calls.append(("start",))

    def stop(self):
        self.calls.append(("stop",))

    def restart(self):
        self.calls.append(("restart",))

    def pull(self):
        self.calls.append(("pull",))

    def status(self):
        self.calls.append(("status",))
        if isinstance(self._states, list):
            if len(self._states) > 1:
                return dict(self._states.pop(0))
            return dict(self._states[0])
        return dict(self._states)

    def logs(self, service=None, follow=True):
        self.calls.append(("logs", service))
        return 0

    def logs_tail(self, lines=50):
        self.calls.append(("logs_tail", lines))
        return self.tail

    def exec(self, service, command, env=None, interactive=False, stdout=None):
        self.calls.append(("exec", service, list(command), dict(env or {})))
        if stdout is not None and self.exec_code == 0:
            stdout.write(self.dump)
        return self.exec_code

    def names(self):
        return [call[0] for call in self.calls]


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class CommandRecorder:
    """Stand-in for subprocess.run; returncode per program name."""

    def __init__(self, codes=None, stderr=""):
        self.codes = codes or {}
        self.stderr = stderr
        self.commands = []

    def __call__(self, cmd):
        self.commands.append(list(cmd))
        code = self.codes.get(" ".join(cmd[:2]), self.codes.get(cmd[0], 0))
        return subprocess.CompletedProcess(cmd, code, stdout="", stderr=self.stderr if code else "")

    def programs(self):
        return [cmd[0] for cmd in self.commands]


@pytest.fixture
def settings(tmp_path: Path) -> InstallerSettings:
    """Installer settings rooted in a temporary directory."""
    return InstallerSettings(
        install_dir=tmp_path / "opt" / "zabbix-docker",
        nginx_sites_available=tmp_path / "nginx" / "sites-available",
        nginx_sites_enabled=tmp_path / "nginx" / "sites-enabled",
        acme_webroot=tmp_path / "www",
        letsencrypt_live_dir=tmp_path / "letsencrypt" / "live",
        readiness_timeout=10,
        settle_delay=5,
        poll_initial_delay=1,
        poll_max_delay=4,
        max_prompt_attempts=3,
    )


@pytest.fixture
def config() -> ProvisioningConfig:
    return ProvisioningConfig(
        domain="mon.example.com",
        email="ops@example.com",
        mysql_root_password="R1!",
        mysql_password="A1!",
    )


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    """Keep rich from wrapping long temporary paths in captured output."""
    from zabbix_deploy import cli, installer, manage
    for module in (cli, installer, manage):
        monkeypatch.setattr(module.console, "width", 200)
