"""Exception taxonomy for the audit pipeline and the repository origin."""

from typing import Optional


class AuditError(Exception):
    """Base exception for pipeline failures."""

    code = "AUDIT_ERROR"
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code)


class PlanningFailure(AuditError):
    """The planner produced no usable tasks."""

    code = "PLANNING_FAILURE"
    retryable = True


class InvalidFilePaths(AuditError):
    """None of a task's files exist in the snapshot."""

    code = "INVALID_FILE_PATHS"


class FileFetchFailed(AuditError):
    """Every file fetch for a task failed."""

    code = "FILE_FETCH_FAILED"


class MalformedModelOutput(AuditError):
    """Reasoning service output could not be parsed as structured data."""

    code = "MALFORMED_MODEL_OUTPUT"
    retryable = True

    def __init__(self, message: str = "", raw: Optional[str] = None):
        super().__init__(message)
        self.raw = raw


class DependencyUnavailable(AuditError):
    """An external dependency is unavailable (circuit open or retries exhausted)."""

    code = "DEPENDENCY_UNAVAILABLE"
    retryable = True

    def __init__(self, dependency: str, message: str = ""):
        super().__init__(message or f"{dependency} unavailable")
        self.dependency = dependency


class SnapshotStale(AuditError):
    """The repository snapshot is expired or its credential is stale."""

    code = "SNAPSHOT_STALE"


class SnapshotInvalid(AuditError):
    """The repository snapshot does not exist or cannot be used."""

    code = "SNAPSHOT_INVALID"


class SnapshotResolutionError(AuditError):
    """The repository could not be resolved into a snapshot."""

    code = "GITHUB_ERROR"

    def __init__(self, message: str, error_code: str, requires_auth: bool = False):
        super().__init__(message)
        self.error_code = error_code
        self.requires_auth = requires_auth


class JobConflict(AuditError):
    """An audit is already in progress for this snapshot."""

    code = "JOB_CONFLICT"

    def __init__(self, existing_job_id: str, status: str):
        super().__init__("An audit is already in progress for this repository")
        self.existing_job_id = existing_job_id
        self.status = status


# ─── Repository origin ──────────────────────────────────

class GithubError(Exception):
    """Base exception for repository origin failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class GithubNotFoundError(GithubError):
    """Raised when the owner, repository or path does not exist (or is hidden)."""


class GithubAuthError(GithubError):
    """Raised when the credential is missing, invalid or lacks access."""


class GithubRateLimitError(GithubError):
    """Raised when the upstream service enforces a rate limit."""

    def __init__(self, message: str, retry_after: int | float | None = None, status_code: Optional[int] = None):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class GithubRetryableError(GithubError):
    """Raised for transient issues where retrying later may succeed."""
