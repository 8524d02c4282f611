from __future__ import annotations


class DeltaPushError(RuntimeError):
    """Base class for every error the sync engine raises on purpose."""

    kind = "error"
    retryable = False


class ConfigurationError(DeltaPushError):
    kind = "configuration"


class EmptySourceError(DeltaPushError):
    kind = "empty-source"


class RetriesExhaustedError(DeltaPushError):
    kind = "ref-conflict"


class GitHubAPIError(DeltaPushError):
    kind = "api"

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class AuthenticationError(GitHubAPIError):
    kind = "authentication"


class AccessDeniedError(GitHubAPIError):
    kind = "access-denied"


class RepositoryNotFoundError(GitHubAPIError):
    kind = "repository-not-found"


class NotFoundError(GitHubAPIError):
    kind = "not-found"


class EmptyRepositoryError(GitHubAPIError):
    kind = "empty-repository"


class RateLimitError(GitHubAPIError):
    kind = "rate-limit"

    def __init__(self, message: str, *, status: int | None = None, reset_at: int | None = None) -> None:
        super().__init__(message, status=status)
        self.reset_at = reset_at


class TransientAPIError(GitHubAPIError):
    kind = "transient"
    retryable = True


class RefConflictError(GitHubAPIError):
    kind = "ref-conflict"
    retryable = True


class RemovalRejectedError(GitHubAPIError):
    """The tree endpoint refused the requested path removals."""

    kind = "removal-rejected"


FATAL_ERRORS = (
    AuthenticationError,
    AccessDeniedError,
    RepositoryNotFoundError,
    ConfigurationError,
)
