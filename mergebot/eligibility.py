import logging
from typing import List, Tuple

from .metrics import eligibility_evaluations_total, eligibility_problems_total
from .models import (
    CheckState,
    EligibilityResult,
    MergeableState,
    PRState,
    Problem,
    PullRequestSnapshot,
    ReviewDecision,
)

logger = logging.getLogger(__name__)

MERGEABLE_STATES = (MergeableState.BLOCKED, MergeableState.CLEAN)


def _is_mergeable(pr: PullRequestSnapshot) -> bool:
    # Re-checked positively so an unmapped mergeable_state never slips through
    return (
        pr.mergeable is True
        and pr.mergeable_state in MERGEABLE_STATES
        and pr.state == PRState.OPEN
        and pr.review_decision == ReviewDecision.APPROVED
        and pr.last_commit_check_state != CheckState.FAILURE
    )


def evaluate(pr: PullRequestSnapshot) -> EligibilityResult:
    """Evaluate the fixed rule set against one snapshot.

    Rules run in a fixed order and accumulate. A merged PR short-circuits to
    ``AlreadyMerged``; its other fields no longer mean anything. If the
    positive check fails without any named rule firing (e.g. an ``unknown``
    mergeable state), ``NotMergeable`` is reported so a non-eligible verdict
    always carries at least one problem.
    """
    if pr.merged:
        problems: List[Problem] = [Problem.ALREADY_MERGED]
    else:
        problems = []
        if pr.mergeable_state == MergeableState.BEHIND:
            problems.append(Problem.OUT_OF_DATE)
        if pr.mergeable_state == MergeableState.DIRTY:
            problems.append(Problem.CONFLICT)
        if pr.state != PRState.OPEN:
            problems.append(Problem.NOT_OPEN)
        if pr.review_decision != ReviewDecision.APPROVED:
            problems.append(Problem.NOT_APPROVED)
        # A missing rollup counts as pending, which does not block
        if pr.last_commit_check_state == CheckState.FAILURE:
            problems.append(Problem.FAILING_CHECKS)
        if not problems and not _is_mergeable(pr):
            problems.append(Problem.NOT_MERGEABLE)

    eligible = not problems and _is_mergeable(pr)
    result = EligibilityResult(eligible=eligible, problems=tuple(problems))
    logger.debug(
        "eligibility: pr=%s eligible=%s problems=%s mergeable=%s mergeable_state=%s state=%s review=%s checks=%s",
        pr.number,
        result.eligible,
        [p.value for p in result.problems],
        pr.mergeable,
        pr.mergeable_state.value,
        pr.state.value,
        pr.review_decision.value if pr.review_decision else None,
        pr.last_commit_check_state.value if pr.last_commit_check_state else None,
    )
    return result


async def fetch_and_evaluate(gh, number: int) -> Tuple[PullRequestSnapshot, EligibilityResult]:
    """Read a fresh snapshot (REST + one GraphQL query) and evaluate it."""
    snapshot = await gh.get_pull_request(number)
    fields = await gh.query_eligibility_fields(number)
    snapshot = snapshot.with_fields(fields)
    result = evaluate(snapshot)
    eligibility_evaluations_total.labels(result="eligible" if result.eligible else "blocked").inc()
    for problem in result.problems:
        eligibility_problems_total.labels(problem=problem.value).inc()
    return snapshot, result
