"""
Configuration management for RepoSync.

Loads settings from reposync.yaml, then applies environment variable
overrides (a .env file in the working directory is loaded first). With no
YAML file, configuration comes from the environment alone.

Projects are listed under ``projects``. When that section is absent a single
``default`` project is built from the ``github`` section.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from loguru import logger

from .models import DiffStrategy, Project
from .utils import ConfigError

DEFAULT_EXTENSIONS = [".md", ".rst", ".txt", ".yaml", ".yml", ".json"]
DEFAULT_EXCLUDES = ["node_modules", "__pycache__", ".git", "dist", "build"]
DEFAULT_PROJECT_ID = "default"


def _parse_csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _env_int(name: str, current: int) -> int:
    value = os.getenv(name)
    if not value:
        return current
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={value!r}")
        return current


@dataclass
class GitHubConfig:
    """GitHub access and default discovery scope."""
    token: str = ""
    organization: str = ""
    filter_keyword: str = ""
    api_url: str = "https://api.github.com"
    max_retries: int = 3


@dataclass
class ProcessingConfig:
    """Filtering, chunking and concurrency settings."""
    allowed_extensions: list[str] = field(default_factory=lambda: list(DEFAULT_EXTENSIONS))
    exclude_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDES))
    max_workers: int = 5
    embedding_batch_size: int = 100
    upsert_batch_size: int = 100
    max_chunk_size: int = 1000
    chunk_overlap: int = 200
    lock_timeout_seconds: float = 0.0
    lock_lease_seconds: float = 3600.0
    diff_strategy: str = DiffStrategy.REPOSITORY.value


@dataclass
class CheckpointConfig:
    """SQLite checkpoint store settings."""
    path: str = "./data/metadata.db"
    vacuum_on_startup: bool = False


@dataclass
class QdrantConfig:
    """Qdrant vector database settings."""
    host: str = "localhost"
    port: int = 6333
    api_key: str = ""
    distance: str = "COSINE"

    @property
    def rest_url(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass
class EmbeddingConfig:
    """Vectorizer selection: ``local`` (sentence-transformers) or ``azure``."""
    provider: str = "local"
    model: str = "nomic-ai/nomic-embed-text-v1.5"
    azure_api_key: str = ""
    azure_endpoint: str = ""
    azure_deployment: str = "text-embedding-ada-002"
    azure_api_version: str = "2023-05-15"
    dimension: int = 1536  # azure only; local models report their own


@dataclass
class NotificationConfig:
    slack_webhook_url: str = ""


@dataclass
class SchedulerConfig:
    """Daily sync schedule."""
    time: str = "08:00"
    timezone: str = "UTC"


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 9090


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    file: str = "./logs/reposync.log"
    max_size_mb: int = 50
    backup_count: int = 5


@dataclass
class Config:
    """
    Main configuration container.

    Also serves as the project catalog for the engine.
    """
    projects: list[Project] = field(default_factory=list)
    github: GitHubConfig = field(default_factory=GitHubConfig)
    processing: ProcessingConfig = field(default_factory=ProcessingConfig)
    checkpoints: CheckpointConfig = field(default_factory=CheckpointConfig)
    qdrant: QdrantConfig = field(default_factory=QdrantConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    notification: NotificationConfig = field(default_factory=NotificationConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, config_path: str | Path | None = None, env_file: str | None = ".env") -> "Config":
        """
        Load configuration from YAML file and environment.

        Args:
            config_path: Path to reposync.yaml. If None, default locations are
                tried and a missing file is not an error.
            env_file: .env file to load before reading the environment.

        Returns:
            Config instance with loaded settings.

        Raises:
            ConfigError: If an explicit config_path does not exist or the
                file is not valid YAML.
        """
        if env_file:
            load_dotenv(env_file)

        if config_path is None:
            candidates = [
                Path("reposync.yaml"),
                Path("/etc/reposync/reposync.yaml"),
            ]
            config_path = next((c for c in candidates if c.exists()), None)
            if config_path is None:
                logger.info("No reposync.yaml found, using environment configuration")
                return cls._from_dict({})

        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        logger.info(f"Loading config from {config_path}")

        try:
            with open(config_path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create Config from dictionary."""
        config = cls()

        if "github" in data:
            gh = data["github"]
            config.github = GitHubConfig(
                token=gh.get("token", config.github.token),
                organization=gh.get("organization", config.github.organization),
                filter_keyword=gh.get("filter_keyword", config.github.filter_keyword),
                api_url=gh.get("api_url", config.github.api_url),
                max_retries=gh.get("max_retries", config.github.max_retries),
            )

        if "processing" in data:
            proc = data["processing"]
            config.processing = ProcessingConfig(
                allowed_extensions=proc.get("allowed_extensions", config.processing.allowed_extensions),
                exclude_patterns=proc.get("exclude_patterns", config.processing.exclude_patterns),
                max_workers=proc.get("max_workers", config.processing.max_workers),
                embedding_batch_size=proc.get("embedding_batch_size", config.processing.embedding_batch_size),
                upsert_batch_size=proc.get("upsert_batch_size", config.processing.upsert_batch_size),
                max_chunk_size=proc.get("max_chunk_size", config.processing.max_chunk_size),
                chunk_overlap=proc.get("chunk_overlap", config.processing.chunk_overlap),
                lock_timeout_seconds=proc.get("lock_timeout_seconds", config.processing.lock_timeout_seconds),
                lock_lease_seconds=proc.get("lock_lease_seconds", config.processing.lock_lease_seconds),
                diff_strategy=proc.get("diff_strategy", config.processing.diff_strategy),
            )

        if "checkpoints" in data:
            cp = data["checkpoints"]
            config.checkpoints = CheckpointConfig(
                path=cp.get("path", config.checkpoints.path),
                vacuum_on_startup=cp.get("vacuum_on_startup", config.checkpoints.vacuum_on_startup),
            )

        if "qdrant" in data:
            qd = data["qdrant"]
            config.qdrant = QdrantConfig(
                host=qd.get("host", config.qdrant.host),
                port=qd.get("port", config.qdrant.port),
                api_key=qd.get("api_key", config.qdrant.api_key),
                distance=qd.get("distance", config.qdrant.distance),
            )

        if "embedding" in data:
            emb = data["embedding"]
            config.embedding = EmbeddingConfig(
                provider=emb.get("provider", config.embedding.provider),
                model=emb.get("model", config.embedding.model),
                azure_api_key=emb.get("azure_api_key", config.embedding.azure_api_key),
                azure_endpoint=emb.get("azure_endpoint", config.embedding.azure_endpoint),
                azure_deployment=emb.get("azure_deployment", config.embedding.azure_deployment),
                azure_api_version=emb.get("azure_api_version", config.embedding.azure_api_version),
                dimension=emb.get("dimension", config.embedding.dimension),
            )

        if "notification" in data:
            config.notification = NotificationConfig(
                slack_webhook_url=data["notification"].get("slack_webhook_url", ""),
            )

        if "scheduler" in data:
            sched = data["scheduler"]
            config.scheduler = SchedulerConfig(
                time=str(sched.get("time", config.scheduler.time)),
                timezone=sched.get("timezone", config.scheduler.timezone),
            )

        if "server" in data:
            srv = data["server"]
            config.server = ServerConfig(
                host=srv.get("host", config.server.host),
                port=srv.get("port", config.server.port),
            )

        if "logging" in data:
            log_cfg = data["logging"]
            config.logging = LoggingConfig(
                level=log_cfg.get("level", config.logging.level),
                file=log_cfg.get("file", config.logging.file),
                max_size_mb=log_cfg.get("max_size_mb", config.logging.max_size_mb),
                backup_count=log_cfg.get("backup_count", config.logging.backup_count),
            )

        # Apply environment variable overrides
        config._apply_env_overrides()

        if data.get("projects"):
            config.projects = [config._parse_project(p) for p in data["projects"]]
        else:
            config.projects = [config._default_project()]

        return config

    def _parse_project(self, data: dict[str, Any]) -> Project:
        if "id" not in data:
            raise ConfigError(f"Project entry without id: {data}")
        project_id = str(data["id"])
        strategy = data.get("diff_strategy", self.processing.diff_strategy)
        try:
            diff_strategy = DiffStrategy(strategy)
        except ValueError as e:
            raise ConfigError(f"Project '{project_id}' has unknown diff_strategy {strategy!r}") from e

        return Project(
            id=project_id,
            name=data.get("name", project_id),
            organization=data.get("organization", self.github.organization),
            filter_keyword=data.get("filter_keyword", ""),
            namespace=data.get("namespace", ""),
            enabled=bool(data.get("enabled", True)),
            allowed_extensions=tuple(data.get("allowed_extensions", self.processing.allowed_extensions)),
            exclude_patterns=tuple(data.get("exclude_patterns", self.processing.exclude_patterns)),
            diff_strategy=diff_strategy,
        )

    def _default_project(self) -> Project:
        return self._parse_project({
            "id": DEFAULT_PROJECT_ID,
            "name": self.github.organization or DEFAULT_PROJECT_ID,
            "organization": self.github.organization,
            "filter_keyword": self.github.filter_keyword,
        })

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides to configuration."""
        # GitHub
        self.github.token = os.getenv("GH_TOKEN", self.github.token)
        self.github.organization = os.getenv("GH_ORGANIZATION", self.github.organization)
        self.github.filter_keyword = os.getenv("GH_FILTER_KEYWORD", self.github.filter_keyword)

        # Processing
        if os.getenv("ALLOWED_FILE_EXTENSIONS"):
            self.processing.allowed_extensions = _parse_csv(os.getenv("ALLOWED_FILE_EXTENSIONS"))
        if os.getenv("EXCLUDE_PATTERNS"):
            self.processing.exclude_patterns = _parse_csv(os.getenv("EXCLUDE_PATTERNS"))
        self.processing.max_workers = _env_int("MAX_WORKERS", self.processing.max_workers)
        self.processing.embedding_batch_size = _env_int(
            "EMBEDDING_BATCH_SIZE", self.processing.embedding_batch_size
        )
        self.processing.upsert_batch_size = _env_int("UPSERT_BATCH_SIZE", self.processing.upsert_batch_size)
        self.processing.max_chunk_size = _env_int("MAX_CHUNK_SIZE", self.processing.max_chunk_size)
        self.processing.chunk_overlap = _env_int("CHUNK_OVERLAP", self.processing.chunk_overlap)

        # Checkpoint store
        self.checkpoints.path = os.getenv("METADATA_DB_PATH", self.checkpoints.path)

        # Qdrant
        self.qdrant.host = os.getenv("QDRANT_HOST", self.qdrant.host)
        self.qdrant.port = _env_int("QDRANT_PORT", self.qdrant.port)
        self.qdrant.api_key = os.getenv("QDRANT_API_KEY", self.qdrant.api_key)

        # Embeddings
        self.embedding.provider = os.getenv("EMBEDDING_PROVIDER", self.embedding.provider)
        self.embedding.model = os.getenv("EMBEDDING_MODEL", self.embedding.model)
        self.embedding.azure_api_key = os.getenv("AZURE_OPENAI_API_KEY", self.embedding.azure_api_key)
        self.embedding.azure_endpoint = os.getenv("AZURE_OPENAI_ENDPOINT", self.embedding.azure_endpoint)
        self.embedding.azure_deployment = os.getenv(
            "AZURE_OPENAI_EMBEDDINGS_DEPLOYMENT", self.embedding.azure_deployment
        )
        self.embedding.azure_api_version = os.getenv(
            "AZURE_OPENAI_API_VERSION", self.embedding.azure_api_version
        )

        # Notification, scheduling, server, logging
        self.notification.slack_webhook_url = os.getenv(
            "SLACK_WEBHOOK_URL", self.notification.slack_webhook_url
        )
        self.scheduler.time = os.getenv("SCHEDULE_TIME", self.scheduler.time)
        self.scheduler.timezone = os.getenv("SCHEDULE_TIMEZONE", self.scheduler.timezone)
        self.server.host = os.getenv("SERVER_HOST", self.server.host)
        self.server.port = _env_int("SERVER_PORT", self.server.port)
        self.logging.level = os.getenv("LOG_LEVEL", self.logging.level)
        self.logging.file = os.getenv("LOG_FILE_PATH", self.logging.file)

    # =========================================================================
    # Project Catalog
    # =========================================================================

    def get_project(self, project_id: str) -> Optional[Project]:
        """Get a project by id."""
        for project in self.projects:
            if project.id == project_id:
                return project
        return None

    def get_enabled_projects(self) -> list[Project]:
        """Return only enabled projects."""
        return [p for p in self.projects if p.enabled]

    def validate(self) -> list[str]:
        """
        Validate configuration and return list of errors.
        Empty list means configuration is valid.
        """
        errors = []

        if not self.projects:
            errors.append("No projects configured")

        seen_ids = set()
        seen_namespaces = set()
        for project in self.projects:
            if project.id in seen_ids:
                errors.append(f"Duplicate project id: {project.id}")
            seen_ids.add(project.id)

            if project.namespace in seen_namespaces:
                errors.append(f"Namespace '{project.namespace}' is shared by several projects")
            seen_namespaces.add(project.namespace)

            if not project.organization:
                errors.append(f"Project '{project.id}' missing organization (GH_ORGANIZATION)")

        if not self.github.token:
            errors.append("GH_TOKEN is required")

        # Processing
        if self.processing.max_workers < 1:
            errors.append("max_workers must be at least 1")
        if self.processing.max_chunk_size < 100:
            errors.append("max_chunk_size must be at least 100")
        if self.processing.chunk_overlap < 0:
            errors.append("chunk_overlap cannot be negative")
        if self.processing.chunk_overlap >= self.processing.max_chunk_size:
            errors.append("chunk_overlap must be smaller than max_chunk_size")
        if self.processing.embedding_batch_size < 1:
            errors.append("embedding_batch_size must be at least 1")
        if self.processing.upsert_batch_size < 1:
            errors.append("upsert_batch_size must be at least 1")
        if self.processing.lock_lease_seconds <= 0:
            errors.append("lock_lease_seconds must be positive")

        # Embeddings
        if self.embedding.provider not in ("local", "azure"):
            errors.append(f"Unknown embedding provider: {self.embedding.provider}")
        if self.embedding.provider == "azure":
            if not self.embedding.azure_api_key:
                errors.append("AZURE_OPENAI_API_KEY is required")
            if not self.embedding.azure_endpoint:
                errors.append("AZURE_OPENAI_ENDPOINT is required")

        # Scheduler
        parts = self.scheduler.time.split(":")
        if len(parts) != 2 or not all(p.isdigit() for p in parts) \
                or not (0 <= int(parts[0]) < 24 and 0 <= int(parts[1]) < 60):
            errors.append(f"Invalid schedule time: {self.scheduler.time} (expected HH:MM)")

        return errors
