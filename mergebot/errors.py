"""Error taxonomy for merge runs."""

from typing import Optional


class MergeBotError(Exception):
    """Base exception for every error surfaced by a run."""

    code = "MERGEBOT_ERROR"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        self.message = message
        if code:
            self.code = code
        super().__init__(message)


class ConfigurationError(MergeBotError):
    """Settings or trigger identifiers are missing or invalid."""

    code = "CONFIGURATION_ERROR"


class UpstreamQueryError(MergeBotError):
    """A read-side REST or GraphQL request failed."""

    code = "UPSTREAM_QUERY_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamMutationError(MergeBotError):
    """Posting a comment or a commit status failed."""

    code = "UPSTREAM_MUTATION_ERROR"

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamEnqueueError(MergeBotError):
    """The test queue rejected or never received the enqueue request."""

    code = "UPSTREAM_ENQUEUE_ERROR"


class AlreadyMergedError(MergeBotError):
    code = "ALREADY_MERGED"

    def __init__(self, message: str = "head has already been merged") -> None:
        super().__init__(message)


class BranchNotFoundError(MergeBotError):
    code = "BRANCH_NOT_FOUND"


class ConflictError(MergeBotError):
    """Head and base cannot be merged without manual conflict resolution."""

    code = "CONFLICT"

    def __init__(self, head: str, base: str, detail: str = "") -> None:
        self.head = head
        self.base = base
        message = (
            f"Merge conflict between {head} and {base}. "
            f"Rebase {head} onto {base} (or update it from {base}), resolve the conflicts and try again."
        )
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class MergeFailedError(MergeBotError):
    """Unclassified merge failure, or a merge that never became visible."""

    code = "MERGE_FAILED"

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PRNotFoundForCommitError(MergeBotError):
    code = "PR_NOT_FOUND_FOR_COMMIT"

    def __init__(self, sha: str) -> None:
        self.sha = sha
        super().__init__(f"No pull request is associated with commit {sha}")


class UnsupportedActionError(MergeBotError):
    code = "UNSUPPORTED_ACTION"

    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(f"Unsupported workflow action: {action!r}")


class MergeInProgressError(MergeBotError):
    """Another run currently holds the merge lock for this pull request."""

    code = "MERGE_IN_PROGRESS"


class LockUnavailableError(MergeBotError):
    code = "LOCK_UNAVAILABLE"
