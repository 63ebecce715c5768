"""Tests for the click CLI commands."""

from pathlib import Path

import pytest
from click.testing import CliRunner

from sender_categorizer.cli import cli
from sender_categorizer.config import CONFIG_PATH_ENV


@pytest.fixture
def cli_config(temp_config_dir: Path, data_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Config pointing the database at the temp data directory."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(
        f"""
schema_version: 1

database:
  path: "{(data_dir / "cli.db").as_posix()}"

default_categories:
  - name: "Newsletter"
  - name: "Receipt"
  - name: "Personal"
"""
    )
    monkeypatch.setenv(CONFIG_PATH_ENV, str(config_path))
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    return config_path


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


class TestValidateConfig:
    def test_valid_config(self, runner: CliRunner, config_file: Path) -> None:
        result = runner.invoke(cli, ["validate-config", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "Configuration valid" in result.output

    def test_missing_config(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(cli, ["validate-config", "-c", str(tmp_path / "nope.yaml")])

        assert result.exit_code == 1
        assert "Load error" in result.output


class TestSetupCommands:
    def test_user_and_category_setup(self, runner: CliRunner, cli_config: Path) -> None:
        result = runner.invoke(cli, ["add-user", "--user", "me", "--email", "me@example.com"])
        assert result.exit_code == 0, result.output
        assert "run login" in result.output

        result = runner.invoke(cli, ["seed-categories", "--user", "me"])
        assert result.exit_code == 0, result.output
        assert "3 categories created" in result.output

        result = runner.invoke(cli, ["seed-categories", "--user", "me"])
        assert "0 categories created, 3 already present" in result.output

        result = runner.invoke(cli, ["add-category", "--user", "me", "Work"])
        assert result.exit_code == 0, result.output

        result = runner.invoke(cli, ["add-category", "--user", "me", "work"])
        assert result.exit_code == 1

        result = runner.invoke(cli, ["categories", "--user", "me"])
        assert result.exit_code == 0
        for name in ("Newsletter", "Receipt", "Personal", "Work"):
            assert name in result.output

        result = runner.invoke(cli, ["delete-category", "--user", "me", "Work"])
        assert result.exit_code == 0
        result = runner.invoke(cli, ["delete-category", "--user", "me", "Work"])
        assert result.exit_code == 1

    def test_uncategorize_unknown_sender(self, runner: CliRunner, cli_config: Path) -> None:
        runner.invoke(cli, ["add-user", "--user", "me", "--email", "me@example.com"])

        result = runner.invoke(cli, ["uncategorize", "--user", "me", "x@corp.example"])

        assert result.exit_code == 1
        assert "has not been seen" in result.output


class TestCategorizeCommand:
    def test_reports_typed_error(self, runner: CliRunner, cli_config: Path) -> None:
        runner.invoke(cli, ["add-user", "--user", "me", "--email", "me@example.com"])
        runner.invoke(cli, ["seed-categories", "--user", "me"])

        result = runner.invoke(cli, ["categorize", "--user", "me"])

        assert result.exit_code == 1
        assert "access_denied" in result.output

    def test_config_error_exits(
        self, runner: CliRunner, temp_config_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv(CONFIG_PATH_ENV, str(temp_config_dir / "missing.yaml"))

        result = runner.invoke(cli, ["categories", "--user", "me"])

        assert result.exit_code == 1
        assert "Config error" in result.output
