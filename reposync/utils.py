"""
Logging and error handling utilities for RepoSync.

Provides:
- Structured logging with rotation
- Exception hierarchy used to classify sync failures
- Retry decorator with exponential backoff
- Performance timing context managers
- Health checks for the external services
"""

from __future__ import annotations

import functools
import random
import sqlite3
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

import httpx
from loguru import logger


# =============================================================================
# Logging Setup
# =============================================================================

# Custom format for pretty console output
CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{module}</magenta>:<cyan>{function}</cyan> | "
    "<level>{message}</level>"
)

# Detailed format for file logs
FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
    "{level: <8} | "
    "{name}:{function}:{line} | "
    "{extra} | "
    "{message}"
)

# Simple format for verbose mode
VERBOSE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<level>{message}</level>"
)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = "./logs/reposync.log",
    max_size_mb: int = 50,
    backup_count: int = 5,
    log_format: Optional[str] = None,
    verbose: bool = False,
) -> None:
    """
    Configure logging for RepoSync entry points.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Path to log file. None disables the file sink.
        max_size_mb: Maximum log file size before rotation.
        backup_count: Number of rotated log files to keep.
        log_format: Custom console format string.
        verbose: If True, use simplified verbose format.
    """
    logger.remove()

    if log_format is None:
        log_format = VERBOSE_FORMAT if verbose else CONSOLE_FORMAT

    logger.add(
        sys.stderr,
        format=log_format,
        level=level.upper(),
        colorize=True,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        logger.add(
            str(log_path),
            format=FILE_FORMAT,
            level="DEBUG",  # Always log everything to file
            rotation=f"{max_size_mb} MB",
            retention=backup_count,
            compression="zip",
            enqueue=True,  # Thread-safe
        )

    logger.info(f"Logging configured: level={level}, file={log_file}")


# =============================================================================
# Custom Exceptions
# =============================================================================

class RepoSyncError(Exception):
    """Base exception for RepoSync errors."""
    pass


class FatalSyncError(RepoSyncError):
    """Error that aborts a whole sync run."""
    pass


class ProjectNotFoundError(FatalSyncError):
    """Requested project does not exist."""
    def __init__(self, project_id: str):
        super().__init__(f"Project not found: {project_id}")
        self.project_id = project_id


class ProjectDisabledError(FatalSyncError):
    """Requested project exists but is disabled."""
    def __init__(self, project_id: str):
        super().__init__(f"Project is disabled: {project_id}")
        self.project_id = project_id


class RunLockError(FatalSyncError):
    """Another run already holds the project's run lock."""
    def __init__(self, project_id: str):
        super().__init__(f"Sync already running for project: {project_id}")
        self.project_id = project_id


class DiscoveryError(FatalSyncError):
    """Repository discovery failed."""
    pass


class GitHubAPIError(RepoSyncError):
    """Error interacting with GitHub API."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GitHubAuthError(GitHubAPIError, FatalSyncError):
    """GitHub rejected the credentials; nothing downstream can succeed."""
    pass


class ChunkingError(RepoSyncError):
    """Error splitting a file into chunks."""
    def __init__(self, message: str, file_path: Optional[str] = None):
        super().__init__(message)
        self.file_path = file_path


class EmbeddingError(RepoSyncError):
    """Error generating embeddings."""
    pass


class IndexWriteError(RepoSyncError):
    """Error writing to or deleting from the vector index."""
    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


class CheckpointError(RepoSyncError):
    """Error with checkpoint store operations."""
    pass


class NotificationError(RepoSyncError):
    """Error delivering a notification."""
    pass


class ConfigError(RepoSyncError):
    """Error with configuration."""
    pass


class IllegalTransitionError(RepoSyncError):
    """Run state machine was asked for a transition it does not allow."""
    pass


# =============================================================================
# Retry Decorator
# =============================================================================

T = TypeVar('T')


def retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential: bool = True,
    exceptions: tuple = (Exception,),
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator for retrying failed operations with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts.
        base_delay: Initial delay between retries (seconds).
        max_delay: Maximum delay between retries (seconds).
        exponential: If True, use exponential backoff; otherwise, constant delay.
        exceptions: Tuple of exception types to catch and retry.

    Returns:
        Decorated function.
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            for attempt in range(max_attempts):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts - 1:
                        raise

                    if exponential:
                        delay = base_delay * (2 ** attempt)
                        delay = delay * (0.5 + random.random())  # jitter
                        delay = min(delay, max_delay)
                    else:
                        delay = base_delay

                    logger.warning(
                        f"Attempt {attempt + 1}/{max_attempts} failed: {e}. "
                        f"Retrying in {delay:.2f}s"
                    )
                    time.sleep(delay)

            raise RuntimeError("retry loop exited without result")

        return wrapper
    return decorator


# =============================================================================
# Performance Timing
# =============================================================================

class Timer:
    """Simple timer for measuring elapsed time."""

    def __init__(self, name: str = "Timer"):
        self.name = name
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None
        self.elapsed: float = 0.0

    def start(self) -> "Timer":
        """Start the timer."""
        self.start_time = time.perf_counter()
        self.end_time = None
        self.elapsed = 0.0
        return self

    def stop(self) -> float:
        """Stop the timer and return elapsed time."""
        if self.start_time is None:
            raise RuntimeError("Timer not started")

        self.end_time = time.perf_counter()
        self.elapsed = self.end_time - self.start_time
        return self.elapsed

    def __enter__(self) -> "Timer":
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()


# =============================================================================
# Health Check Utilities
# =============================================================================

@dataclass
class HealthStatus:
    """Health check status."""
    healthy: bool
    component: str
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "component": self.component,
            "status": "healthy" if self.healthy else "unhealthy",
            "message": self.message,
            "details": self.details,
        }


def check_qdrant_health(host: str, port: int) -> HealthStatus:
    """Check Qdrant health."""
    try:
        response = httpx.get(f"http://{host}:{port}/readyz", timeout=5.0)
        response.raise_for_status()
        return HealthStatus(
            healthy=True,
            component="qdrant",
            message="Qdrant is ready",
        )
    except httpx.HTTPError as e:
        return HealthStatus(
            healthy=False,
            component="qdrant",
            message=str(e),
        )


def check_github_connectivity(base_url: str = "https://api.github.com") -> HealthStatus:
    """Check GitHub API connectivity."""
    try:
        response = httpx.get(base_url, timeout=5.0)
        response.raise_for_status()
        return HealthStatus(
            healthy=True,
            component="github",
            message="GitHub API is reachable",
        )
    except httpx.HTTPError as e:
        return HealthStatus(
            healthy=False,
            component="github",
            message=str(e),
        )


def check_checkpoint_db_health(db_path: str) -> HealthStatus:
    """Check that the SQLite checkpoint database can be opened."""
    try:
        conn = sqlite3.connect(db_path)
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
        return HealthStatus(
            healthy=True,
            component="checkpoints",
            message="Checkpoint database is accessible",
        )
    except sqlite3.Error as e:
        return HealthStatus(
            healthy=False,
            component="checkpoints",
            message=str(e),
        )
