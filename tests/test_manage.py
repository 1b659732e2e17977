"""Tests for the manage-zabbix command table."""

import os
import tarfile
from datetime import datetime

import pytest
from click.testing import CliRunner

from conftest import ALL_RUNNING, FakeRuntime
from zabbix_deploy.errors import BackupError
from zabbix_deploy.manage import (
    LOG_TARGETS,
    SCRIPT_NAME,
    StackManager,
    main,
    write_management_script,
)
from zabbix_deploy.runtime import DockerComposeRuntime
from zabbix_deploy.stack import StackRenderer

FIXED_TIME = datetime(2024, 5, 1, 12, 30, 0)


@pytest.fixture
def installed(settings, config):
    """Install directory with rendered stack files."""
    StackRenderer(settings).render(config)
    return settings.install_dir


@pytest.fixture
def manager(installed, runtime):
    return StackManager(installed, runtime=runtime, clock=lambda: FIXED_TIME)


@pytest.fixture
def invoke(manager):
    runner = CliRunner()

    def _invoke(*args):
        return runner.invoke(main, list(args), obj=manager)
    return _invoke


class TestLifecycle:

    @pytest.mark.parametrize("command,call", [
        ("start", "start"),
        ("stop", "stop"),
        ("restart", "restart"),
    ])
    def test_lifecycle_commands(self, invoke, runtime, command, call):
        result = invoke(command)
        assert result.exit_code == 0, result.output
        assert runtime.names() == [call]

    def test_update_pulls_then_applies(self, invoke, runtime):
        result = invoke("update")
        assert result.exit_code == 0, result.output
        assert runtime.names() == ["pull", "apply"]

    def test_unknown_command(self, invoke, runtime):
        result = invoke("frobnicate")
        assert result.exit_code != 0
        assert runtime.calls == []


class TestLogs:

    @pytest.mark.parametrize("target,service", [
        ("web", "zabbix-web"),
        ("server", "zabbix-server"),
        ("mysql", "mysql-server"),
        ("agent", "zabbix-agent"),
    ])
    def test_service_aliases(self, invoke, runtime, target, service):
        result = invoke("logs", target)
        assert result.exit_code == 0, result.output
        assert runtime.calls == [("logs", service)]

    def test_aliases_are_distinct(self):
        for primary in ("web", "server", "mysql", "agent"):
            others = {LOG_TARGETS[name] for name in ("web", "server", "mysql", "agent") if name != primary}
            assert LOG_TARGETS[primary] not in others

    def test_all_logs(self, invoke, runtime):
        result = invoke("logs")
        assert result.exit_code == 0, result.output
        assert runtime.calls == [("logs", None)]

    def test_unknown_target_is_usage_error(self, invoke, runtime):
        result = invoke("logs", "bogus")
        assert result.exit_code == 2
        assert runtime.calls == []


class TestStatus:

    def test_shows_states_and_url(self, invoke):
        result = invoke("status")
        assert result.exit_code == 0, result.output
        assert "https://mon.example.com/" in result.output
        assert "10051" in result.output
        assert "zabbix-web" in result.output

    def test_reports_drift(self, invoke, installed):
        env_file = installed / ".env"
        env_file.write_text(env_file.read_text().replace("ZABBIX_WEB_PORT=8080", "ZABBIX_WEB_PORT=8082"))

        result = invoke("status")
        assert result.exit_code == 0, result.output
        assert "ZABBIX_WEB_PORT=8082" in result.output

    def test_missing_env_file(self, tmp_path, runtime):
        manager = StackManager(tmp_path / "empty", runtime=runtime)
        result = CliRunner().invoke(main, ["status"], obj=manager)
        assert result.exit_code == 1
        assert "zabbix-deploy install" in result.output

    def test_status_values(self, manager):
        states, url, server_port, problems = manager.status()
        assert states == ALL_RUNNING
        assert url == "https://mon.example.com/"
        assert server_port == "10051"
        assert problems == []


class TestBackup:

    def test_archive_contains_dump(self, manager, runtime, installed):
        archive = manager.backup()

        assert archive.parent == installed / "backups"
        assert archive.name == "zabbix-backup-20240501_123000_000000.tar.gz"
        with tarfile.open(archive) as tar:
            names = tar.getnames()
        assert "zabbix_backup_20240501_123000_000000.sql" in names
        assert "mysql-data" in names

        _, service, command, env = runtime.calls[0]
        assert service == "mysql-server"
        assert command[0] == "mysqldump"
        assert env == {"MYSQL_PWD": "R1!"}

    def test_dump_removed_after_archiving(self, manager, installed):
        manager.backup()
        assert list(installed.glob("*.sql")) == []

    def test_same_second_backups_do_not_collide(self, manager):
        first = manager.backup()
        second = manager.backup()
        assert first != second
        assert first.exists()
        assert second.exists()

    def test_failed_dump(self, installed):
        manager = StackManager(installed, runtime=FakeRuntime(exec_code=2), clock=lambda: FIXED_TIME)

        with pytest.raises(BackupError):
            manager.backup()
        assert list((installed / "backups").iterdir()) == []
        assert list(installed.glob("*.sql")) == []

    def test_backup_command(self, invoke, installed):
        result = invoke("backup")
        assert result.exit_code == 0, result.output
        assert len(list((installed / "backups").glob("*.tar.gz"))) == 1

    def test_backup_command_failure_exits_1(self, installed):
        manager = StackManager(installed, runtime=FakeRuntime(exec_code=2), clock=lambda: FIXED_TIME)
        result = CliRunner().invoke(main, ["backup"], obj=manager)
        assert result.exit_code == 1
        assert "mysqldump exited with 2" in result.output


class TestMysqlShell:

    def test_interactive_exec_as_root(self, invoke, runtime):
        result = invoke("mysql")
        assert result.exit_code == 0, result.output
        _, service, command, env = runtime.calls[0]
        assert service == "mysql-server"
        assert command == ["mysql", "-u", "root", "zabbix"]
        assert env == {"MYSQL_PWD": "R1!"}


class TestManagementScript:

    def test_script_is_executable(self, tmp_path):
        path = write_management_script(tmp_path, python="/usr/bin/python3")

        assert path == tmp_path / SCRIPT_NAME
        assert os.access(path, os.X_OK)
        text = path.read_text()
        assert text.startswith("#!/usr/bin/python3\n")
        assert "from zabbix_deploy.manage import main" in text

    def test_script_holds_no_secrets(self, installed):
        path = write_management_script(installed)
        assert "R1!" not in path.read_text()
        assert "A1!" not in path.read_text()


class TestOperatorErrors:

    def test_bad_settings_reported_without_traceback(self, monkeypatch, tmp_path):
        monkeypatch.setenv("ZABBIX_DEPLOY_CONFIG", str(tmp_path / "absent.yaml"))
        monkeypatch.setenv("ZABBIX_DEPLOY_READINESS", "sometimes")

        result = CliRunner().invoke(main, ["status"])

        assert result.exit_code == 1
        assert "readiness" in result.output
        assert "Traceback" not in result.output

    def test_missing_docker_reported(self, installed):
        manager = StackManager(
            installed,
            runtime=DockerComposeRuntime(installed, compose_cmd=[str(installed / "no-such-docker")]),
        )

        result = CliRunner().invoke(main, ["stop"], obj=manager)

        assert result.exit_code == 1
        assert "Error:" in result.output
        assert "no-such-docker" in result.output
