"""
Tests for the command line interface.
"""

import textwrap

import pytest
from typer.testing import CliRunner

from reposync.checkpoint import SQLiteCheckpointStore
from reposync.cli import app
from reposync.models import CheckpointEntry, CheckpointStatus

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in ("GH_TOKEN", "GH_ORGANIZATION", "METADATA_DB_PATH", "LOG_FILE_PATH", "EMBEDDING_PROVIDER"):
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / "reposync.yaml"
    path.write_text(textwrap.dedent(f"""
        github:
          token: ghp_test
          organization: acme
        checkpoints:
          path: {tmp_path / "metadata.db"}
        logging:
          file: {tmp_path / "logs" / "reposync.log"}
        projects:
          - id: docs
            name: Docs
    """))
    return path


class TestCli:
    def test_validate_ok(self, config_file):
        result = runner.invoke(app, ["validate", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "Configuration is valid" in result.output

    def test_validate_reports_errors(self, config_file, tmp_path):
        broken = tmp_path / "broken.yaml"
        broken.write_text("processing:\n  max_workers: 0\n")

        result = runner.invoke(app, ["validate", "--config", str(broken)])

        assert result.exit_code == 1
        assert "max_workers must be at least 1" in result.output

    def test_validate_missing_file(self, tmp_path):
        result = runner.invoke(app, ["validate", "--config", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 1

    def test_sync_requires_target(self, config_file):
        result = runner.invoke(app, ["sync", "--config", str(config_file)])
        assert result.exit_code == 1

    def test_checkpoints_table(self, config_file, tmp_path):
        store = SQLiteCheckpointStore(tmp_path / "metadata.db")
        store.save(CheckpointEntry(
            project_id="docs",
            repository="acme/docs",
            path="guide.md",
            revision="abcdef123456",
            chunk_count=4,
            status=CheckpointStatus.SYNCED,
        ))

        result = runner.invoke(app, ["checkpoints", "--project", "docs", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "guide.md" in result.output
        assert "1 files" in result.output

    def test_checkpoints_unknown_project(self, config_file):
        result = runner.invoke(app, ["checkpoints", "--project", "nope", "--config", str(config_file)])
        assert result.exit_code == 1

    def test_status(self, config_file):
        result = runner.invoke(app, ["status", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "docs" in result.output
