"""Tests for the command-line interface."""

import json
import pytest
from unittest.mock import AsyncMock, patch

import yaml
from click.testing import CliRunner

from fleet_autoscaler.cli import cli
from fleet_autoscaler.core.types import InstanceDescriptor


@pytest.fixture
def runner(monkeypatch):
    """CLI runner with logging setup stubbed out."""
    monkeypatch.delenv('FLEET_AUTOSCALER_SERVICE_NAME', raising=False)
    monkeypatch.delenv('FLEET_AUTOSCALER_MAX_INSTANCES', raising=False)
    with patch("fleet_autoscaler.cli.setup_logging") as setup:
        runner = CliRunner()
        runner.setup_logging = setup
        yield runner


class TestShowConfig:
    """Test the show-config command."""

    def test_yaml_defaults(self, runner):
        result = runner.invoke(cli, ['show-config'])

        assert result.exit_code == 0
        data = yaml.safe_load(result.output)
        assert data['service_name'] == "app"
        assert data['max_instances'] == 10

    def test_json_from_file(self, runner, tmp_path):
        path = tmp_path / "autoscaler.yaml"
        path.write_text("service_name: checkout\nlog_level: warning\n")

        result = runner.invoke(cli, ['-c', str(path), '-l', 'ERROR', 'show-config', '--format', 'json'])

        assert result.exit_code == 0
        assert json.loads(result.output)['service_name'] == "checkout"
        assert runner.setup_logging.call_args.kwargs['log_level'] == "ERROR"

    def test_invalid_config(self, runner, tmp_path):
        path = tmp_path / "autoscaler.yaml"
        path.write_text("min_instances: 0\n")

        result = runner.invoke(cli, ['-c', str(path), 'show-config'])

        assert result.exit_code == 1
        assert "Invalid autoscaling configuration" in result.output


class TestStatus:
    """Test the status command."""

    def test_status_json(self, runner):
        instance = InstanceDescriptor(id="fleet-app-0", url="http://localhost:3000", port=3000,
                                      index=0, healthy=True, status="running")
        with patch("fleet_autoscaler.orchestration.docker_orchestrator.DockerContainerOrchestrator.health_check",
                   new=AsyncMock(return_value={'status': 'healthy', 'details': {}})), \
                patch("fleet_autoscaler.orchestration.docker_orchestrator.DockerContainerOrchestrator.get_running_instances",
                      new=AsyncMock(return_value=[instance])):
            result = runner.invoke(cli, ['status', '--json'])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data['orchestrator']['status'] == "healthy"
        assert data['instances'][0]['id'] == "fleet-app-0"

    def test_status_unreachable_runtime(self, runner):
        with patch("fleet_autoscaler.orchestration.docker_orchestrator.DockerContainerOrchestrator.health_check",
                   new=AsyncMock(return_value={'status': 'unhealthy', 'error': "daemon down"})):
            result = runner.invoke(cli, ['status'])

        assert result.exit_code == 0
        assert "Orchestrator: unhealthy" in result.output
        assert "daemon down" in result.output
        assert "Running instances of 'app': 0" in result.output


def test_version(runner):
    result = runner.invoke(cli, ['--version'])
    assert "0.1.0" in result.output
