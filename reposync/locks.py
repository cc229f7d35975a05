"""
Per-project run locks.

Two runs for the same project would race on the same checkpoint rows, so
they are serialized. Runs for different projects proceed concurrently.

The in-process lock settles contention between threads of one process.
When a lease store is given, holding a project's lock also means holding its
lease row in the checkpoint database, which excludes runs started by other
processes (the scheduler, the HTTP server, a manual CLI sync). A lease
expires after ``lease_seconds`` unless renewed, so a crashed process does
not block a project forever.
"""

from __future__ import annotations

import os
import socket
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

from loguru import logger

from .interfaces import RunLeaseStore
from .utils import CheckpointError, RunLockError


class RunLockRegistry:
    """One lock per project id, created on first use."""

    POLL_INTERVAL = 0.5

    def __init__(self, leases: Optional[RunLeaseStore] = None, lease_seconds: float = 3600.0):
        """
        Args:
            leases: Shared lease store. None keeps locking inside this process.
            lease_seconds: Lease lifetime between renewals.
        """
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self.leases = leases
        self.lease_seconds = lease_seconds
        self.owner = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

    def _lock_for(self, project_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(project_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[project_id] = lock
            return lock

    def acquire(self, project_id: str, timeout: Optional[float] = None) -> bool:
        """
        Try to take a project's run lock.

        Args:
            project_id: Project to lock.
            timeout: Seconds to wait. None or 0 means do not wait.

        Returns:
            True if the lock was acquired.
        """
        deadline = time.monotonic() + timeout if timeout else None
        lock = self._lock_for(project_id)
        acquired = lock.acquire(timeout=timeout) if timeout else lock.acquire(blocking=False)
        if not acquired:
            return False
        if self.leases is None:
            return True

        try:
            while not self.leases.acquire_run_lease(project_id, self.owner, self.lease_seconds):
                remaining = deadline - time.monotonic() if deadline is not None else 0.0
                if remaining <= 0:
                    logger.info(f"Run lease for {project_id} is held by another process")
                    lock.release()
                    return False
                time.sleep(min(self.POLL_INTERVAL, remaining))
        except Exception:
            lock.release()
            raise
        return True

    def renew(self, project_id: str) -> bool:
        """Extend the lease of a held project. False means the lease was lost."""
        if self.leases is None:
            return True
        return self.leases.renew_run_lease(project_id, self.owner, self.lease_seconds)

    def release(self, project_id: str) -> None:
        lock = self._lock_for(project_id)
        try:
            if self.leases is not None:
                self.leases.release_run_lease(project_id, self.owner)
        except CheckpointError as e:
            # The lease runs out on its own
            logger.warning(f"Failed to release run lease for {project_id}: {e}")
        finally:
            lock.release()

    def is_locked(self, project_id: str) -> bool:
        return self._lock_for(project_id).locked()

    @contextmanager
    def hold(self, project_id: str, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold a project's run lock for the body, raising RunLockError if busy."""
        if not self.acquire(project_id, timeout):
            raise RunLockError(project_id)
        try:
            yield
        finally:
            self.release(project_id)
