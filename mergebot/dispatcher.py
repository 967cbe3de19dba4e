import logging
from typing import Optional

from . import messages
from .config import Settings
from .eligibility import fetch_and_evaluate
from .errors import ConfigurationError, MergeBotError, PRNotFoundForCommitError
from .executor import MergeExecutor
from .metrics import comments_posted_total, dispatch_runs_total
from .models import DispatchResult, MergeErrorKind, Trigger, WorkflowAction
from .resolver import resolve_pr_for_commit

logger = logging.getLogger(__name__)


class Dispatcher:
    """Runs one workflow action to completion and reports the outcome on the PR.

    Every error raised below this point is caught in ``run``: it is posted as a
    comment when a PR number is known and returned as a failed result. Nothing
    is retried here.
    """

    def __init__(self, settings: Settings, gh, pipeline, lock):
        self.settings = settings
        self.gh = gh
        self.pipeline = pipeline
        self.executor = MergeExecutor(settings, gh, lock)

    async def run(self, action_name: str, trigger: Trigger) -> DispatchResult:
        number = trigger.number
        try:
            action = WorkflowAction.parse(action_name)
            logger.info("Running action %s (pr=%s sha=%s)", action.value, number, trigger.sha)
            if action is WorkflowAction.COMMIT_MERGE:
                number = await self._resolve(trigger)
                await self._force_merge(number)
            else:
                number = self._require_number(action, number)
                if action is WorkflowAction.INIT:
                    await self._init(number)
                elif action is WorkflowAction.REQUEST_TEST:
                    await self._request_test(number)
                else:
                    await self._force_merge(number)
        except Exception as e:
            error = str(e) or type(e).__name__
            if isinstance(e, MergeBotError):
                logger.error("Action %s failed for PR %s: [%s] %s", action_name, number, e.code, error)
            else:
                logger.exception("Action %s failed for PR %s", action_name, number)
            if number is not None:
                await self._report_error(number, error)
            dispatch_runs_total.labels(action=action_name or "none", result="failure").inc()
            return DispatchResult(action=action_name, number=number, succeeded=False, error=error)
        dispatch_runs_total.labels(action=action.value, result="success").inc()
        return DispatchResult(action=action.value, number=number, succeeded=True)

    @staticmethod
    def _require_number(action: WorkflowAction, number: Optional[int]) -> int:
        if number is None:
            raise ConfigurationError(f"Action {action.value} requires a pull request number")
        return number

    async def _comment(self, number: int, body: str, kind: str) -> None:
        await self.gh.create_comment(number, body)
        comments_posted_total.labels(kind=kind).inc()

    async def _report_error(self, number: int, error: str) -> None:
        try:
            await self._comment(number, messages.error_comment(error), "error")
        except Exception:
            # Reporting is best effort; the run is already marked failed
            logger.exception("Could not post the error comment on PR #%s", number)

    async def _resolve(self, trigger: Trigger) -> int:
        if not trigger.sha:
            raise ConfigurationError("Action merge-pr requires a commit SHA")
        number = await resolve_pr_for_commit(self.gh, trigger.sha)
        if number is None:
            raise PRNotFoundForCommitError(trigger.sha)
        logger.info("Commit %s resolved to PR #%s", trigger.sha, number)
        return number

    async def _init(self, number: int) -> None:
        pr = await self.gh.get_pull_request(number)
        await self.gh.set_commit_status(pr.head_sha, "pending", "Waiting for /merge-it")
        await self._comment(number, messages.INIT_COMMENT, "init")

    async def _report_problems(self, number: int, problems) -> None:
        # One comment per problem so each can be resolved on its own
        for problem in problems:
            await self._comment(
                number, messages.problem_comment(problem, self.settings.base_branch), f"problem:{problem.value}"
            )

    async def _request_test(self, number: int) -> None:
        _, result = await fetch_and_evaluate(self.gh, number)
        if not result.eligible:
            await self._report_problems(number, result.problems)
            return
        await self.pipeline.enqueue(number)
        await self._comment(
            number,
            messages.queued_comment(number, self.settings.trigger_branch, self.settings.base_branch),
            "queued",
        )

    async def _force_merge(self, number: int) -> None:
        _, result = await fetch_and_evaluate(self.gh, number)
        if not result.eligible:
            await self._report_problems(number, result.problems)
            return
        outcome = await self.executor.merge(number)
        if outcome.succeeded:
            await self._comment(number, messages.merged_comment(number, self.settings.base_branch), "merged")
        elif outcome.error_kind is MergeErrorKind.ALREADY_MERGED:
            await self._comment(number, messages.already_merged_comment(number), "already_merged")
