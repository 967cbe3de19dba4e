from enum import Enum
from typing import Any, Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from .errors import UnsupportedActionError


class MergeableState(str, Enum):
    CLEAN = "clean"
    BLOCKED = "blocked"
    BEHIND = "behind"
    DIRTY = "dirty"
    UNKNOWN = "unknown"


class ReviewDecision(str, Enum):
    APPROVED = "APPROVED"
    CHANGES_REQUESTED = "CHANGES_REQUESTED"
    REVIEW_REQUIRED = "REVIEW_REQUIRED"


class PRState(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"
    MERGED = "MERGED"


class CheckState(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    PENDING = "PENDING"


# statusCheckRollup can report states outside the three the evaluator knows
_CHECK_STATE_ALIASES = {"ERROR": "FAILURE", "EXPECTED": "PENDING"}


def _normalize_mergeable_state(v: Any) -> Any:
    if isinstance(v, MergeableState):
        return v
    if v is None:
        return MergeableState.UNKNOWN
    value = str(v).lower()
    if value in MergeableState._value2member_map_:
        return value
    return MergeableState.UNKNOWN


def _normalize_check_state(v: Any) -> Any:
    if v is None or isinstance(v, CheckState):
        return v
    value = str(v).upper()
    return _CHECK_STATE_ALIASES.get(value, value)


def _normalize_pr_state(v: Any) -> Any:
    if isinstance(v, PRState) or v is None:
        return v
    return str(v).upper()


class EligibilityFields(BaseModel):
    """The review/merge fields re-read through one GraphQL query."""

    model_config = ConfigDict(frozen=True)

    merged: bool
    state: PRState
    review_decision: Optional[ReviewDecision] = None
    last_commit_check_state: Optional[CheckState] = None

    @field_validator("state", mode="before")
    @classmethod
    def fold_state(cls, v: Any) -> Any:
        return _normalize_pr_state(v)

    @field_validator("last_commit_check_state", mode="before")
    @classmethod
    def fold_check_state(cls, v: Any) -> Any:
        return _normalize_check_state(v)


class PullRequestSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    number: int
    title: str = ""
    head_ref: str
    head_sha: str
    base_ref: Optional[str] = None
    merged: bool = False
    # GitHub reports null while mergeability is still being computed
    mergeable: Optional[bool] = None
    mergeable_state: MergeableState = MergeableState.UNKNOWN
    review_decision: Optional[ReviewDecision] = None
    state: PRState = PRState.OPEN
    last_commit_check_state: Optional[CheckState] = None

    @field_validator("mergeable_state", mode="before")
    @classmethod
    def fold_mergeable_state(cls, v: Any) -> Any:
        return _normalize_mergeable_state(v)

    @field_validator("state", mode="before")
    @classmethod
    def fold_state(cls, v: Any) -> Any:
        return _normalize_pr_state(v)

    @field_validator("last_commit_check_state", mode="before")
    @classmethod
    def fold_check_state(cls, v: Any) -> Any:
        return _normalize_check_state(v)

    @classmethod
    def from_rest(cls, pr: dict) -> "PullRequestSnapshot":
        """Build a snapshot from a REST ``GET /pulls/{number}`` payload."""
        merged = bool(pr.get("merged"))
        if merged:
            state = PRState.MERGED
        else:
            state = PRState.OPEN if pr.get("state") == "open" else PRState.CLOSED
        head = pr.get("head") or {}
        return cls(
            number=int(pr["number"]),
            title=pr.get("title") or "",
            head_ref=head.get("ref") or "",
            head_sha=head.get("sha") or "",
            base_ref=(pr.get("base") or {}).get("ref"),
            merged=merged,
            mergeable=pr.get("mergeable"),
            mergeable_state=pr.get("mergeable_state"),
            state=state,
        )

    def with_fields(self, fields: EligibilityFields) -> "PullRequestSnapshot":
        return self.model_copy(
            update={
                "merged": fields.merged,
                "state": fields.state,
                "review_decision": fields.review_decision,
                "last_commit_check_state": fields.last_commit_check_state,
            }
        )


class Problem(str, Enum):
    # Declaration order is the evaluation order
    ALREADY_MERGED = "AlreadyMerged"
    OUT_OF_DATE = "OutOfDate"
    CONFLICT = "Conflict"
    NOT_OPEN = "NotOpen"
    NOT_APPROVED = "NotApproved"
    FAILING_CHECKS = "FailingChecks"
    NOT_MERGEABLE = "NotMergeable"


class EligibilityResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    eligible: bool
    problems: Tuple[Problem, ...] = ()

    @model_validator(mode="after")
    def verdict_matches_problems(self) -> "EligibilityResult":
        if self.eligible != (len(self.problems) == 0):
            raise ValueError("eligible must be true exactly when there are no problems")
        return self


class WorkflowAction(str, Enum):
    INIT = "prinit"
    REQUEST_TEST = "merge-it"
    FORCE_MERGE = "merge-now"
    COMMIT_MERGE = "merge-pr"

    @classmethod
    def parse(cls, name: Optional[str]) -> "WorkflowAction":
        try:
            return cls((name or "").strip())
        except ValueError:
            raise UnsupportedActionError(name or "") from None


class MergeErrorKind(str, Enum):
    ALREADY_MERGED = "already_merged"
    BRANCH_NOT_FOUND = "branch_not_found"
    CONFLICT = "conflict"
    MERGE_FAILED = "merge_failed"


class MergeOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    succeeded: bool
    error_kind: Optional[MergeErrorKind] = None


class Trigger(BaseModel):
    """Identifiers pulled out of the triggering CI event."""

    model_config = ConfigDict(frozen=True)

    number: Optional[int] = None
    sha: Optional[str] = None
    sender: Optional[str] = None


class DispatchResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: str
    number: Optional[int] = None
    succeeded: bool
    error: Optional[str] = None
