"""Tests for docker-compose.yml and .env rendering."""

import stat
from dataclasses import replace

import pytest
import yaml

from zabbix_deploy.config import ENV_KEYS, Ports, read_env_file
from zabbix_deploy.stack import (
    DATA_DIRS,
    NETWORK_NAME,
    SERVICES,
    StackRenderer,
    build_descriptor,
    check_consistency,
    check_references,
    placeholders,
    render_descriptor,
    render_env,
)


class TestDescriptor:

    def test_rendering_is_deterministic(self, config, settings):
        assert render_descriptor(config, settings) == render_descriptor(config, settings)
        assert render_env(config) == render_env(config)

    def test_four_services_on_one_network(self, config, settings):
        descriptor = build_descriptor(config, settings)
        assert list(descriptor["services"]) == list(SERVICES)
        assert descriptor["networks"] == {NETWORK_NAME: {"driver": "bridge"}}
        for service in descriptor["services"].values():
            assert service["networks"] == [NETWORK_NAME]
            assert service["restart"] == "unless-stopped"

    def test_default_port_publishing(self, config, settings):
        services = yaml.safe_load(render_descriptor(config, settings))["services"]
        assert services["zabbix-web"]["ports"] == ["127.0.0.1:8080:8080"]
        assert services["zabbix-server"]["ports"] == ["10051:10051"]
        assert services["mysql-server"]["ports"] == ["127.0.0.1:3306:3306"]
        assert "ports" not in services["zabbix-agent"]

    def test_negotiated_web_port_in_both_files(self, config, settings):
        config = replace(config, ports=Ports(web=8081))
        services = yaml.safe_load(render_descriptor(config, settings))["services"]
        assert services["zabbix-web"]["ports"] == ["127.0.0.1:8081:8080"]
        assert "ZABBIX_WEB_PORT=8081\n" in render_env(config)

    def test_passwords_are_placeholders(self, config, settings):
        text = render_descriptor(config, settings)
        assert "R1!" not in text
        assert "A1!" not in text
        assert placeholders(text) == {"MYSQL_PASSWORD", "MYSQL_ROOT_PASSWORD"}

    def test_every_placeholder_has_env_key(self, config, settings):
        text = render_descriptor(config, settings)
        assert placeholders(text) <= set(config.to_env())

    def test_images_follow_settings(self, config, settings):
        settings = replace(settings, zabbix_version="alpine-7.0-latest")
        services = build_descriptor(config, settings)["services"]
        assert services["mysql-server"]["image"] == "mysql:8.0"
        assert services["zabbix-server"]["image"] == "zabbix/zabbix-server-mysql:alpine-7.0-latest"
        assert services["zabbix-web"]["image"] == "zabbix/zabbix-web-apache-mysql:alpine-7.0-latest"
        assert services["zabbix-agent"]["image"] == "zabbix/zabbix-agent:alpine-7.0-latest"

    def test_timezone_passed_to_web(self, config, settings):
        settings = replace(settings, timezone="Africa/Johannesburg")
        web = build_descriptor(config, settings)["services"]["zabbix-web"]
        assert "PHP_TZ=Africa/Johannesburg" in web["environment"]


class TestEnv:

    def test_env_has_seven_keys(self, config):
        lines = render_env(config).splitlines()
        assert [line.split("=", 1)[0] for line in lines] == list(ENV_KEYS)

    def test_env_values(self, config):
        text = render_env(config)
        assert "ZABBIX_DOMAIN=mon.example.com\n" in text
        assert "ZABBIX_SERVER_PORT=10051\n" in text
        assert "MYSQL_PORT=3306\n" in text
        assert "SSL_EMAIL=ops@example.com\n" in text


class TestChecks:

    def test_rendered_descriptor_has_no_dangling_references(self, config, settings):
        assert check_references(build_descriptor(config, settings)) == []

    def test_unknown_dependency_reported(self, config, settings):
        descriptor = build_descriptor(config, settings)
        descriptor["services"]["zabbix-web"]["depends_on"].append("redis")
        problems = check_references(descriptor)
        assert any("redis" in problem for problem in problems)

    def test_unknown_database_host_reported(self, config, settings):
        descriptor = build_descriptor(config, settings)
        env = descriptor["services"]["zabbix-server"]["environment"]
        env[env.index("DB_SERVER_HOST=mysql-server")] = "DB_SERVER_HOST=postgres"
        problems = check_references(descriptor)
        assert problems == ["zabbix-server: DB_SERVER_HOST points to unknown service 'postgres'"]

    def test_undeclared_network_reported(self, config, settings):
        descriptor = build_descriptor(config, settings)
        descriptor["networks"] = {}
        assert len(check_references(descriptor)) == len(SERVICES)

    def test_consistent_files(self, config, settings):
        assert check_consistency(render_descriptor(config, settings), config.to_env()) == []

    def test_port_drift_detected(self, config, settings):
        env = config.to_env()
        env["ZABBIX_WEB_PORT"] = "8082"
        problems = check_consistency(render_descriptor(config, settings), env)
        assert len(problems) == 1
        assert "ZABBIX_WEB_PORT=8082" in problems[0]

    def test_missing_secret_detected(self, config, settings):
        env = config.to_env()
        env["MYSQL_PASSWORD"] = ""
        problems = check_consistency(render_descriptor(config, settings), env)
        assert problems == ["placeholder ${MYSQL_PASSWORD} has no value in .env"]


class TestStackRenderer:

    def test_writes_files_and_data_dirs(self, config, settings):
        rendered = StackRenderer(settings).render(config)

        assert rendered.compose_file == settings.compose_file
        assert rendered.compose_file.read_text() == render_descriptor(config, settings)
        assert read_env_file(rendered.env_file) == config.to_env()
        assert stat.S_IMODE(rendered.env_file.stat().st_mode) == 0o600
        for name in DATA_DIRS:
            assert (settings.install_dir / name).is_dir()

    def test_rerender_is_identical(self, config, settings):
        renderer = StackRenderer(settings)
        first = renderer.render(config).compose_file.read_bytes()
        second = renderer.render(config).compose_file.read_bytes()
        assert first == second

    @pytest.mark.parametrize("web_port", [8080, 8081])
    def test_written_files_agree(self, config, settings, web_port):
        config = replace(config, ports=Ports(web=web_port))
        rendered = StackRenderer(settings).render(config)
        env = read_env_file(rendered.env_file)
        assert check_consistency(rendered.compose_file.read_text(), env) == []
