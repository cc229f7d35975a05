"""
GitHub change detector over the REST API.

Uses GitHub REST API with token authentication:
- Unauthenticated: 60 requests/hour
- Authenticated: 5000 requests/hour

Endpoints:
  - GET /orgs/{org}/repos - List organization repositories (paginated)
  - GET /repos/{owner}/{repo}/commits/{branch} - Get latest commit
  - GET /repos/{owner}/{repo}/compare/{base}...{head} - Files changed between commits
  - GET /repos/{owner}/{repo}/git/trees/{sha}?recursive=1 - Get file tree
  - GET /repos/{owner}/{repo}/contents/{path} - Get file content
"""

from __future__ import annotations

import base64
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from urllib.parse import quote

import httpx
from loguru import logger

from .models import ChangeKind, ChangeRecord, FileListing, Repository
from .utils import FatalSyncError, GitHubAPIError, GitHubAuthError


@dataclass
class CommitInfo:
    """Information about a git commit."""
    sha: str
    message: str
    author: str
    committed_at: datetime
    tree_sha: str


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class GitHubClient:
    """
    GitHub REST API client implementing the change detector contract.

    Rejected credentials (401, or 403 on the organization listing) raise
    GitHubAuthError, which aborts a sync run. Every other failure raises
    GitHubAPIError after retries are exhausted, and a file whose content
    cannot be fetched comes back as a record with ``error`` set.
    """

    BASE_URL = "https://api.github.com"
    PER_PAGE = 100

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: str = BASE_URL,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize GitHub client.

        Args:
            token: GitHub personal access token.
            base_url: API root, overridable for GitHub Enterprise.
            max_retries: Maximum number of attempts per request.
            base_delay: Initial delay between retries (seconds).
            max_delay: Maximum delay between retries (seconds).
            timeout: Request timeout (seconds).
            transport: Optional httpx transport, used by tests.
        """
        self.token = token
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.max_delay = max_delay

        headers = {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": "reposync/1.0",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
            logger.info("Using authenticated GitHub API (5000 req/hour limit)")
        else:
            logger.warning("No GitHub token provided - using unauthenticated API (60 req/hour limit)")

        self._client = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

        self._rate_limit_remaining: Optional[int] = None
        self._rate_limit_reset: Optional[datetime] = None

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "GitHubClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # =========================================================================
    # Change Detector
    # =========================================================================

    def list_repositories(self, organization: str, keyword: str = "") -> list[Repository]:
        """
        List an organization's repositories whose name contains keyword.

        Matching is case-insensitive. An empty keyword matches everything.
        """
        needle = keyword.lower()
        repositories: list[Repository] = []

        for item in self._paginate(f"/orgs/{organization}/repos", {"type": "all"}, forbidden_is_fatal=True):
            if needle and needle not in item["name"].lower():
                continue
            repositories.append(Repository(
                id=item["id"],
                name=item["name"],
                full_name=item["full_name"],
                owner=item.get("owner", {}).get("login", organization),
                default_branch=item.get("default_branch") or "main",
                updated_at=_parse_timestamp(item.get("updated_at")),
                private=bool(item.get("private", False)),
            ))

        logger.info(f"Found {len(repositories)} repositories matching keyword '{keyword}'")
        return repositories

    def diff(
        self,
        repository: Repository,
        prior_revision: Optional[str],
        include: Optional[Callable[[str], bool]] = None,
    ) -> list[ChangeRecord]:
        """
        Files changed on the default branch since prior_revision.

        No prior revision returns every file as added. A prior revision equal
        to the current head returns an empty list. Renames are reported as a
        removal of the old path plus an addition of the new one. Paths
        rejected by include are reported without fetching their content.
        """
        head = self.get_latest_commit(repository)
        repository.head_revision = head.sha

        if not prior_revision:
            return self._all_files(repository, head, include)

        if prior_revision == head.sha:
            logger.info(f"No changes detected for {repository.full_name} (commit: {head.sha[:8]})")
            return []

        endpoint = f"/repos/{repository.full_name}/compare/{prior_revision}...{head.sha}"
        data = self._request_with_retry("GET", endpoint).json()

        files = data.get("files", [])
        if len(files) >= 300:
            # The compare API caps the file list at 300 entries
            logger.warning(
                f"{repository.full_name}: comparison truncated at {len(files)} files, "
                "falling back to a full listing"
            )
            return self._all_files(repository, head, include)

        changes: list[ChangeRecord] = []
        for file_obj in files:
            path = file_obj["filename"]
            status = file_obj.get("status", "modified")

            if status in ("removed", "deleted"):
                changes.append(self._removal(repository, path, head))
                continue

            if status == "renamed" and file_obj.get("previous_filename"):
                changes.append(self._removal(repository, file_obj["previous_filename"], head))
                kind = ChangeKind.ADDED
            elif status in ("added", "copied"):
                kind = ChangeKind.ADDED
            else:
                kind = ChangeKind.MODIFIED

            record = self._change(repository, path, head, kind, include)
            if record is not None:
                changes.append(record)

        logger.info(f"Found {len(changes)} changed files in {repository.full_name}")
        return changes

    def list_files(self, repository: Repository) -> list[FileListing]:
        """Every blob on the default branch with its blob sha."""
        head = self.get_latest_commit(repository)
        repository.head_revision = head.sha

        return [
            FileListing(path=entry["path"], revision=entry["sha"], size=entry.get("size") or 0)
            for entry in self._tree(repository, head.sha)
            if entry.get("type") == "blob"
        ]

    def fetch_file(self, repository: Repository, path: str) -> Optional[ChangeRecord]:
        """Current content of one file, or None if it no longer exists."""
        if not repository.head_revision:
            repository.head_revision = self.get_latest_commit(repository).sha
        return self._fetch(repository, path, repository.head_revision, ChangeKind.MODIFIED, None)

    # =========================================================================
    # Public API
    # =========================================================================

    def get_latest_commit(self, repository: Repository) -> CommitInfo:
        """Get the latest commit on the repository's default branch."""
        endpoint = f"/repos/{repository.full_name}/commits/{repository.default_branch}"
        data = self._request_with_retry("GET", endpoint).json()
        return CommitInfo(
            sha=data["sha"],
            message=data["commit"]["message"],
            author=data["commit"]["author"]["name"],
            committed_at=_parse_timestamp(data["commit"]["author"]["date"]),
            tree_sha=data["commit"]["tree"]["sha"],
        )

    def get_file_content(self, repository: Repository, path: str, ref: str) -> Optional[str]:
        """
        Get decoded file content.

        Returns:
            File text, or None if the path does not exist at ref.
        """
        endpoint = f"/repos/{repository.full_name}/contents/{quote(path)}"
        try:
            response = self._request_with_retry("GET", endpoint, params={"ref": ref})
        except GitHubAPIError as e:
            if e.status_code == 404:
                logger.debug(f"File not found: {path}")
                return None
            raise

        data = response.json()
        if isinstance(data, list):
            logger.warning(f"Path is a directory: {path}")
            return None

        content = data.get("content", "")
        if data.get("encoding") == "base64":
            content = base64.b64decode(content).decode("utf-8", errors="replace")
        return content

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _all_files(
        self,
        repository: Repository,
        head: CommitInfo,
        include: Optional[Callable[[str], bool]] = None,
    ) -> list[ChangeRecord]:
        files: list[ChangeRecord] = []
        for entry in self._tree(repository, head.sha):
            if entry.get("type") != "blob":
                continue
            record = self._change(repository, entry["path"], head, ChangeKind.ADDED, include)
            if record is not None:
                files.append(record)

        logger.info(f"Found {len(files)} total files in {repository.full_name}")
        return files

    def _tree(self, repository: Repository, sha: str) -> list[dict[str, Any]]:
        endpoint = f"/repos/{repository.full_name}/git/trees/{sha}"
        data = self._request_with_retry("GET", endpoint, params={"recursive": "1"}).json()
        if data.get("truncated"):
            logger.warning(f"File tree of {repository.full_name} is truncated by GitHub")
        return data.get("tree", [])

    def _change(
        self,
        repository: Repository,
        path: str,
        head: CommitInfo,
        kind: ChangeKind,
        include: Optional[Callable[[str], bool]],
    ) -> Optional[ChangeRecord]:
        if include is not None and not include(path):
            return ChangeRecord(
                repository=repository.full_name,
                path=path,
                kind=kind,
                revision=head.sha,
                last_modified=head.committed_at,
            )
        return self._fetch(repository, path, head.sha, kind, head.committed_at)

    def _fetch(
        self,
        repository: Repository,
        path: str,
        ref: str,
        kind: ChangeKind,
        last_modified: Optional[datetime],
    ) -> Optional[ChangeRecord]:
        """Content of one file as a change record, or None if it does not exist."""
        try:
            content = self.get_file_content(repository, path, ref)
        except FatalSyncError:
            raise
        except GitHubAPIError as e:
            logger.warning(f"Could not fetch {repository.full_name}/{path}: {e}")
            return ChangeRecord(
                repository=repository.full_name,
                path=path,
                kind=kind,
                revision=ref,
                last_modified=last_modified,
                error=str(e),
            )
        if content is None:
            return None
        return ChangeRecord(
            repository=repository.full_name,
            path=path,
            kind=kind,
            content=content,
            revision=ref,
            last_modified=last_modified or datetime.now(timezone.utc),
            size=len(content.encode("utf-8")),
        )

    @staticmethod
    def _removal(repository: Repository, path: str, head: CommitInfo) -> ChangeRecord:
        return ChangeRecord(
            repository=repository.full_name,
            path=path,
            kind=ChangeKind.REMOVED,
            revision=head.sha,
            last_modified=head.committed_at,
        )

    def _paginate(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        forbidden_is_fatal: bool = False,
    ) -> list[dict[str, Any]]:
        """Collect every page of a list endpoint."""
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            page_params = {**(params or {}), "per_page": self.PER_PAGE, "page": page}
            response = self._request_with_retry(
                "GET", endpoint, params=page_params, forbidden_is_fatal=forbidden_is_fatal
            )
            batch = response.json()
            items.extend(batch)
            if "next" not in response.links or not batch:
                break
            page += 1
        return items

    def _request_with_retry(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        forbidden_is_fatal: bool = False,
    ) -> httpx.Response:
        """
        Make HTTP request with exponential backoff retry.

        Args:
            method: HTTP method.
            endpoint: API endpoint path.
            params: Optional query parameters.
            forbidden_is_fatal: Treat a 403 as rejected credentials. Only
                set for calls every run depends on; elsewhere a 403 is
                scoped to one repository or file.

        Returns:
            Successful response.

        Raises:
            GitHubAuthError: Credentials were rejected (401, or 403 with
                forbidden_is_fatal).
            GitHubAPIError: Non-retryable status, or all retries failed.
        """
        last_error: Optional[str] = None
        last_status: Optional[int] = None

        for attempt in range(self.max_retries):
            try:
                response = self._client.request(method, endpoint, params=params)
            except httpx.RequestError as e:
                last_error = str(e)
                wait_time = self._calculate_backoff(attempt)
                logger.warning(f"Request error {e}, retrying in {wait_time:.1f}s")
                time.sleep(wait_time)
                continue

            self._update_rate_limit(response)
            status = response.status_code

            # Handle rate limit exceeded
            if status in (403, 429) and response.headers.get("X-RateLimit-Remaining") == "0":
                reset_time = response.headers.get("X-RateLimit-Reset")
                wait_time = self.base_delay
                if reset_time:
                    wait_time = max(int(reset_time) - int(time.time()), self.base_delay)
                wait_time = min(wait_time, self.max_delay)
                logger.warning(f"Rate limit exceeded, waiting {wait_time}s")
                last_error, last_status = "rate limit exceeded", status
                time.sleep(wait_time)
                continue

            # Secondary rate limit
            retry_after = response.headers.get("Retry-After")
            if status in (403, 429) and retry_after:
                wait_time = float(retry_after) if retry_after.isdigit() else self.base_delay
                wait_time = min(max(wait_time, self.base_delay), self.max_delay)
                logger.warning(f"Secondary rate limit on {endpoint}, waiting {wait_time}s")
                last_error, last_status = "secondary rate limit", status
                time.sleep(wait_time)
                continue

            if status == 401 or (status == 403 and forbidden_is_fatal):
                raise GitHubAuthError(
                    f"GitHub rejected credentials for {endpoint} ({status})",
                    status_code=status,
                )

            # Handle server errors (retryable)
            if status >= 500:
                last_error, last_status = f"server error {status}", status
                wait_time = self._calculate_backoff(attempt)
                logger.warning(f"Server error {status}, retrying in {wait_time:.1f}s")
                time.sleep(wait_time)
                continue

            if status >= 400:
                raise GitHubAPIError(
                    f"GitHub request {method} {endpoint} failed with {status}",
                    status_code=status,
                )
            return response

        logger.error(f"All {self.max_retries} retries failed for {endpoint}")
        raise GitHubAPIError(
            f"GitHub request {method} {endpoint} failed after {self.max_retries} attempts: {last_error}",
            status_code=last_status,
        )

    def _calculate_backoff(self, attempt: int) -> float:
        """Calculate exponential backoff delay."""
        delay = self.base_delay * (2 ** attempt)
        # Add jitter
        delay = delay * (0.5 + random.random())
        return min(delay, self.max_delay)

    def _update_rate_limit(self, response: httpx.Response) -> None:
        """Update rate limit tracking from response headers."""
        remaining = response.headers.get("X-RateLimit-Remaining")
        reset = response.headers.get("X-RateLimit-Reset")
        limit = response.headers.get("X-RateLimit-Limit")

        if remaining:
            self._rate_limit_remaining = int(remaining)
            if self._rate_limit_remaining < 10:
                logger.warning(f"Rate limit low: {self._rate_limit_remaining}/{limit} requests remaining")
            elif self._rate_limit_remaining < 50:
                logger.info(f"Rate limit: {self._rate_limit_remaining}/{limit} requests remaining")

        if reset:
            self._rate_limit_reset = datetime.fromtimestamp(int(reset), tz=timezone.utc)
