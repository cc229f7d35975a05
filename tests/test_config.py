"""
Tests for configuration loading, environment overrides and validation.
"""

import textwrap

import pytest

from reposync.config import DEFAULT_PROJECT_ID, Config
from reposync.models import DiffStrategy
from reposync.utils import ConfigError

ENV_VARS = [
    "GH_TOKEN", "GH_ORGANIZATION", "GH_FILTER_KEYWORD", "ALLOWED_FILE_EXTENSIONS",
    "EXCLUDE_PATTERNS", "MAX_WORKERS", "EMBEDDING_BATCH_SIZE", "UPSERT_BATCH_SIZE",
    "MAX_CHUNK_SIZE", "CHUNK_OVERLAP", "METADATA_DB_PATH", "QDRANT_HOST", "QDRANT_PORT",
    "QDRANT_API_KEY", "EMBEDDING_PROVIDER", "EMBEDDING_MODEL", "AZURE_OPENAI_API_KEY",
    "AZURE_OPENAI_ENDPOINT", "AZURE_OPENAI_EMBEDDINGS_DEPLOYMENT", "AZURE_OPENAI_API_VERSION",
    "SLACK_WEBHOOK_URL", "SCHEDULE_TIME", "SCHEDULE_TIMEZONE", "SERVER_HOST", "SERVER_PORT",
    "LOG_LEVEL", "LOG_FILE_PATH",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def _write(tmp_path, text):
    path = tmp_path / "reposync.yaml"
    path.write_text(textwrap.dedent(text))
    return path


class TestConfigLoad:
    def test_projects_from_yaml(self, tmp_path):
        path = _write(tmp_path, """
            github:
              token: ghp_test
              organization: acme
            processing:
              allowed_extensions: [".md"]
              max_workers: 3
              lock_lease_seconds: 600
            projects:
              - id: docs
                name: Documentation
                filter_keyword: docs
              - id: handbook
                organization: acme-hr
                namespace: hr_handbook
                diff_strategy: per_file
                enabled: false
                exclude_patterns: ["drafts/"]
        """)

        config = Config.load(path, env_file=None)

        docs, handbook = config.projects
        assert docs.name == "Documentation"
        assert docs.organization == "acme"
        assert docs.namespace == "reposync_docs"
        assert docs.allowed_extensions == (".md",)
        assert docs.diff_strategy == DiffStrategy.REPOSITORY
        assert handbook.organization == "acme-hr"
        assert handbook.namespace == "hr_handbook"
        assert handbook.diff_strategy == DiffStrategy.PER_FILE
        assert handbook.exclude_patterns == ("drafts/",)
        assert not handbook.enabled
        assert config.processing.max_workers == 3
        assert config.processing.lock_lease_seconds == 600
        assert [p.id for p in config.get_enabled_projects()] == ["docs"]
        assert config.get_project("missing") is None

    def test_default_project_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("GH_TOKEN", "ghp_env")
        monkeypatch.setenv("GH_ORGANIZATION", "acme")
        monkeypatch.setenv("GH_FILTER_KEYWORD", "docs")
        monkeypatch.setenv("ALLOWED_FILE_EXTENSIONS", ".md, .txt")

        config = Config.load(env_file=None)

        (project,) = config.projects
        assert project.id == DEFAULT_PROJECT_ID
        assert project.organization == "acme"
        assert project.filter_keyword == "docs"
        assert project.allowed_extensions == (".md", ".txt")
        assert config.github.token == "ghp_env"

    def test_environment_overrides_yaml(self, tmp_path, monkeypatch):
        path = _write(tmp_path, """
            qdrant:
              host: qdrant.internal
              port: 6333
            scheduler:
              time: "06:30"
        """)
        monkeypatch.setenv("QDRANT_PORT", "7333")
        monkeypatch.setenv("SCHEDULE_TIME", "09:15")
        monkeypatch.setenv("MAX_WORKERS", "not-a-number")
        monkeypatch.setenv("METADATA_DB_PATH", "/tmp/checkpoints.db")

        config = Config.load(path, env_file=None)

        assert config.qdrant.host == "qdrant.internal"
        assert config.qdrant.port == 7333
        assert config.scheduler.time == "09:15"
        assert config.processing.max_workers == 5
        assert config.checkpoints.path == "/tmp/checkpoints.db"

    def test_defaults(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)

        config = Config.load(env_file=None)

        assert config.server.port == 9090
        assert config.checkpoints.path == "./data/metadata.db"
        assert config.processing.max_chunk_size == 1000
        assert config.processing.chunk_overlap == 200
        assert config.embedding.azure_deployment == "text-embedding-ada-002"

    def test_explicit_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            Config.load(tmp_path / "nope.yaml", env_file=None)

    def test_invalid_yaml(self, tmp_path):
        path = _write(tmp_path, "projects: [unclosed\n")
        with pytest.raises(ConfigError):
            Config.load(path, env_file=None)

    def test_unknown_diff_strategy(self, tmp_path):
        path = _write(tmp_path, """
            projects:
              - id: docs
                organization: acme
                diff_strategy: by_magic
        """)
        with pytest.raises(ConfigError):
            Config.load(path, env_file=None)


class TestConfigValidate:
    def _config(self, tmp_path, text):
        return Config.load(_write(tmp_path, text), env_file=None)

    def test_valid(self, tmp_path):
        config = self._config(tmp_path, """
            github:
              token: ghp_test
              organization: acme
        """)
        assert config.validate() == []

    def test_missing_token_and_organization(self, tmp_path):
        errors = self._config(tmp_path, "{}").validate()

        assert "GH_TOKEN is required" in errors
        assert any("missing organization" in e for e in errors)

    def test_duplicate_ids_and_namespaces(self, tmp_path):
        config = self._config(tmp_path, """
            github:
              token: ghp_test
            projects:
              - id: docs
                organization: acme
              - id: docs
                organization: acme
                namespace: shared
              - id: blog
                organization: acme
                namespace: shared
        """)
        errors = config.validate()

        assert "Duplicate project id: docs" in errors
        assert any("shared" in e for e in errors)

    def test_processing_bounds(self, tmp_path):
        config = self._config(tmp_path, """
            github:
              token: ghp_test
              organization: acme
            processing:
              max_workers: 0
              max_chunk_size: 500
              chunk_overlap: 500
              lock_lease_seconds: 0
        """)
        errors = config.validate()

        assert "max_workers must be at least 1" in errors
        assert "chunk_overlap must be smaller than max_chunk_size" in errors
        assert "lock_lease_seconds must be positive" in errors

    def test_azure_requires_credentials(self, tmp_path):
        config = self._config(tmp_path, """
            github:
              token: ghp_test
              organization: acme
            embedding:
              provider: azure
        """)
        errors = config.validate()

        assert "AZURE_OPENAI_API_KEY is required" in errors
        assert "AZURE_OPENAI_ENDPOINT is required" in errors

    def test_bad_schedule_time(self, tmp_path):
        config = self._config(tmp_path, """
            github:
              token: ghp_test
              organization: acme
            scheduler:
              time: "25:00"
        """)
        assert any("Invalid schedule time" in e for e in config.validate())
