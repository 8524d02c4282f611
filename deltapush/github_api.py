from __future__ import annotations

import base64
import logging
import time
from typing import Any, Callable, TypeVar
from urllib.parse import quote

import requests

from deltapush.config import APP_NAME, DEFAULT_API_URL, RepoRef
from deltapush.errors import (
    AccessDeniedError,
    AuthenticationError,
    EmptyRepositoryError,
    GitHubAPIError,
    NotFoundError,
    RateLimitError,
    RefConflictError,
    RepositoryNotFoundError,
    TransientAPIError,
)
from deltapush.models import CommitResult


logger = logging.getLogger(APP_NAME)

DEFAULT_HTML_URL = "https://github.com"
DEFAULT_TIMEOUT_SECONDS = 30.0
API_VERSION = "2022-11-28"
T = TypeVar("T")


def encode_blob_payload(content: bytes, is_binary: bool) -> tuple[str, str]:
    """Pick the wire encoding for a blob; the stored bytes are identical either way."""
    if not is_binary:
        try:
            return content.decode("utf-8"), "utf-8"
        except UnicodeDecodeError:
            pass
    return base64.b64encode(content).decode("ascii"), "base64"


def _retry_transient(
    func: Callable[[], T],
    *,
    operation: str,
    max_attempts: int = 3,
    base_delay_seconds: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    attempt = 1
    while True:
        try:
            return func()
        except TransientAPIError as exc:
            if attempt >= max_attempts:
                raise
            sleep_seconds = base_delay_seconds * (2 ** (attempt - 1))
            logger.debug(
                "%s failed (%s); retrying in %.1fs (attempt %d/%d)",
                operation,
                exc,
                sleep_seconds,
                attempt + 1,
                max_attempts,
            )
            sleep(sleep_seconds)
            attempt += 1


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or response.reason or ""
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return response.text[:200]


def _raise_for_response(response: requests.Response, operation: str) -> None:
    status = response.status_code
    if status < 400:
        return

    message = _error_message(response)
    detail = f"{operation}: HTTP {status} {message}".strip()
    lowered = message.lower()

    if status == 401:
        raise AuthenticationError(f"GitHub rejected the token ({detail})", status=status)
    if status == 429 or (
        status == 403
        and (response.headers.get("X-RateLimit-Remaining") == "0" or "rate limit" in lowered)
    ):
        reset_header = response.headers.get("X-RateLimit-Reset")
        reset_at = int(reset_header) if reset_header and reset_header.isdigit() else None
        raise RateLimitError(f"GitHub rate limit hit ({detail})", status=status, reset_at=reset_at)
    if status == 403:
        raise AccessDeniedError(detail, status=status)
    if status == 404:
        raise NotFoundError(detail, status=status)
    if status == 409 and "empty" in lowered:
        raise EmptyRepositoryError(detail, status=status)
    if status == 422 and ("fast forward" in lowered or "already exists" in lowered):
        raise RefConflictError(detail, status=status)
    if status >= 500:
        raise TransientAPIError(detail, status=status)
    raise GitHubAPIError(detail, status=status)


class GitHubClient:
    """Thin client over the GitHub Git Data API for a single repository."""

    def __init__(
        self,
        token: str,
        repo: RepoRef,
        *,
        api_url: str = DEFAULT_API_URL,
        html_url: str = DEFAULT_HTML_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
        session: requests.Session | None = None,
    ) -> None:
        self.repo = repo
        self.api_url = api_url.rstrip("/")
        self.html_url = html_url.rstrip("/")
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds

        # Retries happen in `_retry_transient` only; the transport sends each request once.
        if session is None:
            session = requests.Session()
        session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": API_VERSION,
                "User-Agent": APP_NAME,
            }
        )
        self.session = session

    def __enter__(self) -> "GitHubClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.session.close()

    @property
    def _repo_path(self) -> str:
        return f"/repos/{quote(self.repo.owner)}/{quote(self.repo.name)}"

    def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self.api_url}{path}"

        def _call() -> Any:
            try:
                response = self.session.request(
                    method,
                    url,
                    json=json,
                    params=params,
                    timeout=self.timeout,
                )
            except (requests.ConnectionError, requests.Timeout) as exc:
                raise TransientAPIError(f"{operation}: {exc}") from exc
            _raise_for_response(response, operation)
            if response.status_code == 204 or not response.content:
                return {}
            return response.json()

        return _retry_transient(
            _call,
            operation=operation,
            max_attempts=self.max_attempts,
            base_delay_seconds=self.base_delay_seconds,
        )

    def get_authenticated_user(self) -> str:
        payload = self._request("GET", "/user", operation="get_user")
        return str(payload.get("login", ""))

    def get_repository(self) -> dict[str, Any]:
        try:
            return self._request("GET", self._repo_path, operation="get_repository")
        except NotFoundError as exc:
            raise RepositoryNotFoundError(
                f"Repository {self.repo.full_name} not found or not accessible with this token",
                status=exc.status,
            ) from exc

    def get_branch_head(self, branch: str) -> str | None:
        """Commit sha the branch points at, or None when the branch does not exist yet."""
        try:
            payload = self._request(
                "GET",
                f"{self._repo_path}/git/ref/heads/{quote(branch, safe='/')}",
                operation=f"get_ref:{branch}",
            )
        except (NotFoundError, EmptyRepositoryError):
            return None
        return str(payload["object"]["sha"])

    def get_commit_tree_sha(self, commit_sha: str) -> str:
        payload = self._request(
            "GET",
            f"{self._repo_path}/git/commits/{commit_sha}",
            operation=f"get_commit:{commit_sha}",
        )
        return str(payload["tree"]["sha"])

    def get_tree(self, tree_sha: str, *, recursive: bool = False) -> tuple[list[dict[str, Any]], bool]:
        payload = self._request(
            "GET",
            f"{self._repo_path}/git/trees/{tree_sha}",
            operation=f"get_tree:{tree_sha}",
            params={"recursive": "1"} if recursive else None,
        )
        return list(payload.get("tree") or []), bool(payload.get("truncated", False))

    def create_blob(self, content: bytes, *, is_binary: bool) -> str:
        text, encoding = encode_blob_payload(content, is_binary)
        payload = self._request(
            "POST",
            f"{self._repo_path}/git/blobs",
            operation="create_blob",
            json={"content": text, "encoding": encoding},
        )
        return str(payload["sha"])

    def create_tree(self, entries: list[dict[str, Any]], *, base_tree: str | None = None) -> str:
        body: dict[str, Any] = {"tree": entries}
        if base_tree:
            body["base_tree"] = base_tree
        payload = self._request(
            "POST",
            f"{self._repo_path}/git/trees",
            operation="create_tree",
            json=body,
        )
        return str(payload["sha"])

    def create_commit(self, message: str, tree_sha: str, parents: list[str]) -> CommitResult:
        payload = self._request(
            "POST",
            f"{self._repo_path}/git/commits",
            operation="create_commit",
            json={"message": message, "tree": tree_sha, "parents": parents},
        )
        sha = str(payload["sha"])
        return CommitResult(commit_sha=sha, commit_url=self.commit_url(sha))

    def update_ref(self, branch: str, commit_sha: str) -> None:
        self._request(
            "PATCH",
            f"{self._repo_path}/git/refs/heads/{quote(branch, safe='/')}",
            operation=f"update_ref:{branch}",
            json={"sha": commit_sha, "force": False},
        )

    def create_ref(self, branch: str, commit_sha: str) -> None:
        self._request(
            "POST",
            f"{self._repo_path}/git/refs",
            operation=f"create_ref:{branch}",
            json={"ref": f"refs/heads/{branch}", "sha": commit_sha},
        )

    def commit_url(self, commit_sha: str) -> str:
        return f"{self.html_url}/{self.repo.full_name}/commit/{commit_sha}"
