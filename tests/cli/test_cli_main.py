"""Tests for the Typer command line interface."""

import pytest
from typer.testing import CliRunner

from policysim import __version__
from policysim.cli import main as cli_module
from policysim.cli.config import ConfigurationLoader
from policysim.cli.main import app
from policysim.cli.runner import ExitCode
from policysim.policy.models import OutputMode
from policysim.reporting.exports import ExportFormat


runner = CliRunner()


class RecordingRunner:
    """Stands in for SimulationRunner and records the configuration it receives."""

    configs = []
    exit_code = ExitCode.BLOCKED

    def __init__(self, config):
        RecordingRunner.configs.append(config)

    def run(self):
        return RecordingRunner.exit_code


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    """Run every command from an empty directory with no POLICYSIM_ variables."""
    for suffix in ConfigurationLoader.ENV_MAPPING:
        monkeypatch.delenv(f"{ConfigurationLoader.ENV_PREFIX}{suffix}", raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli_module, "SimulationRunner", RecordingRunner)
    monkeypatch.setattr(cli_module, "configure_logging", lambda verbose, quiet: None)
    RecordingRunner.configs = []
    RecordingRunner.exit_code = ExitCode.BLOCKED
    return tmp_path


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert f"policysim v{__version__}" in result.output


class TestSimulateCommand:

    def test_runs_with_cli_flags(self, tmp_path):
        result = runner.invoke(app, [
            "simulate", "-s", "sub-1", "-t", "corp", "--source", "legacy",
            "--mode", "all", "--resource-types", "Microsoft.Storage/storageAccounts",
            "--parallel", "-w", "3", "--export-format", "XLSX", "-o", str(tmp_path / "out"),
        ])

        assert result.exit_code == ExitCode.BLOCKED
        config = RecordingRunner.configs[0]
        assert config.azure.subscription_id == "sub-1"
        assert config.azure.target_group == "corp"
        assert config.azure.source_group == "legacy"
        assert config.output.mode == OutputMode.ALL
        assert config.output.export_format == ExportFormat.XLSX
        assert config.filters.resource_types == ["Microsoft.Storage/storageAccounts"]
        assert config.execution.parallel is True
        assert config.execution.max_workers == 3
        assert config.loaded_from[-1] == "CLI flags"

    def test_exit_code_follows_runner(self):
        RecordingRunner.exit_code = ExitCode.SUCCESS
        result = runner.invoke(app, ["simulate", "-s", "sub-1", "-t", "corp"])
        assert result.exit_code == 0

    def test_missing_targets_is_config_error(self):
        result = runner.invoke(app, ["simulate", "-t", "corp"])

        assert result.exit_code == ExitCode.CONFIG_ERROR
        assert "Subscription ID is required" in result.output
        assert RecordingRunner.configs == []

    def test_invalid_mode(self):
        result = runner.invoke(app, ["simulate", "-s", "sub-1", "-t", "corp", "--mode", "everything"])
        assert result.exit_code == ExitCode.CONFIG_ERROR
        assert "Invalid mode" in result.output

    def test_invalid_export_format(self):
        result = runner.invoke(app, ["simulate", "-s", "sub-1", "-t", "corp", "--export-format", "pdf"])
        assert result.exit_code == ExitCode.CONFIG_ERROR

    def test_missing_config_file(self, tmp_path):
        result = runner.invoke(app, ["simulate", "-c", str(tmp_path / "absent.yaml")])
        assert result.exit_code == ExitCode.CONFIG_ERROR
        assert "Configuration error" in result.output

    def test_config_file_with_cli_override(self, tmp_path):
        config_path = tmp_path / "run.yaml"
        config_path.write_text("azure:\n  subscription_id: sub-file\n  target_group: file-group\n", encoding="utf-8")

        result = runner.invoke(app, ["simulate", "-c", str(config_path), "-t", "cli-group"])

        assert result.exit_code == ExitCode.BLOCKED
        config = RecordingRunner.configs[0]
        assert config.azure.subscription_id == "sub-file"
        assert config.azure.target_group == "cli-group"

    def test_auto_discovered_config(self, isolated):
        (isolated / "policysim.yaml").write_text(
            "azure:\n  subscription_id: sub-auto\n  target_group: auto\n", encoding="utf-8"
        )
        result = runner.invoke(app, ["simulate"])

        assert result.exit_code == ExitCode.BLOCKED
        assert RecordingRunner.configs[0].azure.target_group == "auto"

    def test_print_config(self):
        result = runner.invoke(app, ["simulate", "-t", "corp", "--print-config"])

        assert result.exit_code == 0
        assert "# Effective configuration" in result.output
        assert "target_group: corp" in result.output
        assert RecordingRunner.configs == []


class TestValidateConfigCommand:

    def test_valid_file(self, tmp_path):
        config_path = tmp_path / "ok.yaml"
        config_path.write_text("output:\n  mode: compliant-only\n", encoding="utf-8")

        result = runner.invoke(app, ["validate-config", str(config_path), "--verbose"])

        assert result.exit_code == 0
        assert "is valid" in result.output
        assert "Output Mode: compliant-only" in result.output

    def test_missing_file(self, tmp_path):
        result = runner.invoke(app, ["validate-config", str(tmp_path / "nope.yaml")])
        assert result.exit_code == ExitCode.CONFIG_ERROR

    def test_invalid_values(self, tmp_path):
        config_path = tmp_path / "bad.yaml"
        config_path.write_text("output:\n  summary_format: html\n", encoding="utf-8")

        result = runner.invoke(app, ["validate-config", str(config_path)])

        assert result.exit_code == ExitCode.CONFIG_ERROR
        assert "Configuration validation failed" in result.output

    def test_semantic_errors(self, tmp_path):
        config_path = tmp_path / "conflict.yaml"
        config_path.write_text("output:\n  verbose: true\n  quiet: true\n", encoding="utf-8")

        result = runner.invoke(app, ["validate-config", str(config_path)])

        assert result.exit_code == ExitCode.CONFIG_ERROR
        assert "Cannot use both verbose and quiet modes" in result.output
