"""
Tests for CLI commands.

Uses typer's CliRunner to test CLI commands without actual execution.
"""

import pytest
from typer.testing import CliRunner

from csvferry.cli.main import app
from csvferry.config.settings import ENV_OVERRIDES

runner = CliRunner()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ENV_OVERRIDES:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def templates(tmp_path):
    directory = tmp_path / "templates"
    directory.mkdir()
    (directory / "anthropometry_template.csv").write_text("id,height,weight\n")
    (directory / "vitals_template.csv").write_text("id,hr\n")
    return directory


class TestVersion:
    """Tests for --version flag."""

    def test_version_flag(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert "csvferry version" in result.output

    def test_version_short_flag(self):
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert "csvferry version" in result.output


class TestHelp:
    """Tests for help output."""

    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        assert result.exit_code == 0
        assert "watch" in result.output
        assert "templates" in result.output

    def test_watch_help(self):
        result = runner.invoke(app, ["watch", "--help"])
        assert result.exit_code == 0
        assert "--project-dir" in result.output


class TestTemplates:
    """Tests for 'csvferry templates'."""

    def test_lists_tables(self, templates, tmp_path):
        result = runner.invoke(app, ["templates", "-t", str(templates), "-d", str(tmp_path)])
        assert result.exit_code == 0
        assert "anthropometry" in result.output
        assert "vitals" in result.output

    def test_template_dir_from_env(self, templates, tmp_path, monkeypatch):
        monkeypatch.setenv("TEMPLATE_DIR", str(templates))
        result = runner.invoke(app, ["templates", "-d", str(tmp_path)])
        assert result.exit_code == 0
        assert "vitals" in result.output

    def test_no_template_dir(self, tmp_path):
        result = runner.invoke(app, ["templates", "-d", str(tmp_path)])
        assert result.exit_code == 1
        assert "No template directory" in result.output

    def test_empty_template_dir(self, tmp_path):
        result = runner.invoke(app, ["templates", "-t", str(tmp_path), "-d", str(tmp_path)])
        assert result.exit_code == 1
        assert "No valid templates" in result.output


class TestMatch:
    """Tests for 'csvferry match'."""

    def test_all_matched(self, templates, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "a.csv").write_text("id,hr\n1,60\n")
        result = runner.invoke(app, ["match", "a.csv", "-t", str(templates), "-d", str(tmp_path)])
        assert result.exit_code == 0
        assert "vitals" in result.output

    def test_unmatched_exits_2(self, templates, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "a.csv").write_text("id,hr\n")
        (tmp_path / "b.csv").write_text("hr,id\n")
        result = runner.invoke(app, ["match", "a.csv", "b.csv", "-t", str(templates), "-d", str(tmp_path)])
        assert result.exit_code == 2
        assert "vitals" in result.output
        assert "b.csv" in result.output


class TestWatch:
    """Tests for 'csvferry watch' startup failures."""

    def test_missing_configuration(self, tmp_path):
        result = runner.invoke(app, ["watch", "-d", str(tmp_path)])
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_missing_source_directory(self, templates, tmp_path):
        (tmp_path / "config.yaml").write_text(
            "watch:\n"
            f"  source_dir: {tmp_path / 'missing'}\n"
            "templates:\n"
            f"  dir: {templates}\n"
            "remote:\n"
            "  host: ingest\n"
            "  user: bob\n"
            "  dir: /srv\n"
            "logging:\n"
            "  console_enabled: false\n"
        )
        result = runner.invoke(app, ["watch", "-d", str(tmp_path)])
        assert result.exit_code == 1
        assert "not a directory" in result.output
