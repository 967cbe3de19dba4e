"""Comment texts posted on pull requests."""

from .models import Problem

INIT_COMMENT = (
    "Manual merging is disabled. To start merging process use the slash command */merge-it* "
    "in a new comment. That will trigger testing pipeline and merging."
)

PROBLEM_COMMENTS = {
    Problem.ALREADY_MERGED: "This pull request has already been merged.",
    Problem.OUT_OF_DATE: "The branch is out of date with `{base}`. Update it from `{base}` and try again.",
    Problem.CONFLICT: "The branch has conflicts with `{base}`. Resolve them and try again.",
    Problem.NOT_OPEN: "This pull request is not open.",
    Problem.NOT_APPROVED: "This pull request has not been approved yet.",
    Problem.FAILING_CHECKS: "Checks on the latest commit are failing.",
    Problem.NOT_MERGEABLE: (
        "GitHub does not report this pull request as mergeable yet. "
        "Wait for mergeability to be computed and try again."
    ),
}


def problem_comment(problem: Problem, base: str) -> str:
    return PROBLEM_COMMENTS[problem].format(base=base)


def queued_comment(number: int, trigger_branch: str, base: str) -> str:
    return (
        f"Pull request #{number} was queued for testing on `{trigger_branch}`. "
        f"It will be merged into `{base}` once the pipeline passes."
    )


def merged_comment(number: int, base: str) -> str:
    return f"Pull request #{number} was squash-merged into `{base}`."


def already_merged_comment(number: int) -> str:
    return f"Pull request #{number} had already been merged; nothing to do."


def error_comment(message: str) -> str:
    return f"Automated merge failed: {message}"


def merge_title(title: str, number: int) -> str:
    return f"{title or f'PR #{number}'} (#{number})"


def merge_message(number: int) -> str:
    return f"Auto-merged by mergebot for PR #{number}"
