import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

from .config import Settings
from .eligibility import fetch_and_evaluate
from .errors import (
    AlreadyMergedError,
    BranchNotFoundError,
    ConflictError,
    LockUnavailableError,
    MergeBotError,
    MergeFailedError,
    UpstreamMutationError,
)
from .messages import merge_message, merge_title
from .metrics import (
    consistency_wait_seconds,
    merge_attempts_total,
    merges_failed_total,
    merges_success_total,
)
from .models import CheckState, MergeableState, MergeErrorKind, MergeOutcome, PullRequestSnapshot

logger = logging.getLogger(__name__)

MERGE_METHOD = "squash"

T = TypeVar("T")


def classify_merge_failure(status_code: int, message: str, head: str, base: str) -> MergeBotError:
    """Map a platform merge failure to the error taxonomy."""
    if status_code == 204:
        return AlreadyMergedError()
    if status_code == 404:
        return BranchNotFoundError(f"Branch not found while merging {head} into {base}: {message}")
    if status_code == 409:
        return ConflictError(head, base, message)
    return MergeFailedError(f"Merging {head} into {base} failed: {status_code} {message}", status_code=status_code)


_KIND_BY_ERROR = {
    AlreadyMergedError: MergeErrorKind.ALREADY_MERGED,
    BranchNotFoundError: MergeErrorKind.BRANCH_NOT_FOUND,
    ConflictError: MergeErrorKind.CONFLICT,
    MergeFailedError: MergeErrorKind.MERGE_FAILED,
}


def error_kind(error: MergeBotError) -> MergeErrorKind:
    return _KIND_BY_ERROR.get(type(error), MergeErrorKind.MERGE_FAILED)


async def poll_until(
    fetch: Callable[[], Awaitable[T]],
    predicate: Callable[[T], bool],
    settings: Settings,
    phase: str,
    number: int,
    heartbeat: Optional[Callable[[], Awaitable[None]]] = None,
    timeout: Optional[float] = None,
) -> T:
    """Re-read until ``predicate`` holds, backing off exponentially up to a hard timeout."""
    if timeout is None:
        timeout = settings.consistency_timeout_seconds
    start = time.monotonic()
    deadline = start + timeout
    attempt = 0
    while True:
        attempt += 1
        value = await fetch()
        if predicate(value):
            consistency_wait_seconds.labels(phase=phase).observe(time.monotonic() - start)
            return value
        now = time.monotonic()
        if now >= deadline:
            raise MergeFailedError(f"GitHub did not reflect the {phase} of PR #{number} within {timeout:g}s")
        if heartbeat is not None:
            await heartbeat()
        delay = min(settings.backoff_delay(attempt), deadline - now)
        logger.debug("consistency.wait: phase=%s pr=%s attempt=%s sleep_seconds=%.2f", phase, number, attempt, delay)
        await asyncio.sleep(delay)


class MergeExecutor:
    def __init__(self, settings: Settings, gh, lock):
        self.settings = settings
        self.gh = gh
        self.lock = lock

    async def merge(self, number: int) -> MergeOutcome:
        await self.lock.acquire(number)
        try:
            return await self._merge_locked(number)
        finally:
            await self.lock.release(number)

    def _heartbeat(self, number: int) -> Callable[[], Awaitable[None]]:
        async def beat() -> None:
            try:
                held = await self.lock.refresh(number)
            except LockUnavailableError as e:
                logger.warning("Could not refresh merge lock for PR #%s: %s", number, e)
                return
            if not held:
                logger.warning("Lost merge lock for PR #%s while waiting", number)

        return beat

    def _already_merged(self, number: int) -> MergeOutcome:
        logger.info("PR #%s is already merged; skipping", number)
        merges_failed_total.labels(reason=MergeErrorKind.ALREADY_MERGED.value).inc()
        return MergeOutcome(succeeded=False, error_kind=MergeErrorKind.ALREADY_MERGED)

    async def _wait_for_merge(self, number: int) -> PullRequestSnapshot:
        return await poll_until(
            lambda: self.gh.get_pull_request(number),
            lambda p: p.merged,
            self.settings,
            phase="merge",
            number=number,
            heartbeat=self._heartbeat(number),
        )

    async def _merge_locked(self, number: int) -> MergeOutcome:
        # Time may have passed since eligibility was checked
        pr = await self.gh.get_pull_request(number)
        if pr.merged:
            return self._already_merged(number)
        head, base = pr.head_ref, self.settings.base_branch

        if self.settings.sync_base_branch:
            pr = await self._sync_base(pr)
            if pr.merged:
                return self._already_merged(number)

        # Our own earlier pending status would otherwise block required-check gating
        await self.gh.set_commit_status(pr.head_sha, "success", "Merging via mergebot")

        logger.debug("Merging PR #%s (%s into %s) with method=%s", number, head, base, MERGE_METHOD)
        try:
            status, message = await self.gh.squash_merge_pull_request(
                number, merge_title(pr.title, number), merge_message(number)
            )
        except UpstreamMutationError as e:
            # The request may have reached GitHub before the connection dropped
            merge_attempts_total.labels(method=MERGE_METHOD, result="error").inc()
            logger.warning("Merge request for PR #%s got no response (%s); checking whether it landed", number, e)
            try:
                await self._wait_for_merge(number)
            except MergeFailedError:
                merges_failed_total.labels(reason=MergeErrorKind.MERGE_FAILED.value).inc()
                raise MergeFailedError(f"Merging {head} into {base} failed: {e}") from e
            merges_success_total.labels(method=MERGE_METHOD).inc()
            logger.info("Merged PR #%s into %s", number, base)
            return MergeOutcome(succeeded=True)
        if status != 200:
            error = classify_merge_failure(status, message, head, base)
            merge_attempts_total.labels(method=MERGE_METHOD, result="error").inc()
            if isinstance(error, AlreadyMergedError):
                return self._already_merged(number)
            merges_failed_total.labels(reason=error_kind(error).value).inc()
            logger.debug("Merge failure for PR #%s: %s", number, error)
            raise error
        merge_attempts_total.labels(method=MERGE_METHOD, result="success").inc()

        await self._wait_for_merge(number)
        merges_success_total.labels(method=MERGE_METHOD).inc()
        logger.info("Merged PR #%s into %s", number, base)
        return MergeOutcome(succeeded=True)

    async def _sync_base(self, pr: PullRequestSnapshot) -> PullRequestSnapshot:
        """Merge the base branch into the PR head, then wait for GitHub and CI to catch up.

        The synced head is a new, untested commit: it must finish its checks and
        pass evaluation again before it may be marked successful and merged.
        """
        base = self.settings.base_branch
        try:
            status, message = await self.gh.merge_branch(pr.head_ref, base, f"Merge {base} into {pr.head_ref}")
        except UpstreamMutationError as e:
            raise MergeFailedError(f"Syncing {base} into {pr.head_ref} failed: {e}") from e
        if status != 201:
            error = classify_merge_failure(status, message, pr.head_ref, base)
            if isinstance(error, AlreadyMergedError):
                # Nothing to merge: the head already contains the base
                return pr
            raise error

        logger.debug("Synced %s into %s for PR #%s; waiting for new head", base, pr.head_ref, pr.number)
        heartbeat = self._heartbeat(pr.number)
        synced = await poll_until(
            lambda: self.gh.get_pull_request(pr.number),
            lambda p: p.merged or (p.head_sha != pr.head_sha and p.mergeable_state != MergeableState.UNKNOWN),
            self.settings,
            phase="sync",
            number=pr.number,
            heartbeat=heartbeat,
        )
        if synced.merged:
            return synced

        logger.debug("Waiting for checks on synced head %s of PR #%s", synced.head_sha, pr.number)
        checked, result = await poll_until(
            lambda: fetch_and_evaluate(self.gh, pr.number),
            lambda fetched: fetched[0].merged or fetched[0].last_commit_check_state != CheckState.PENDING,
            self.settings,
            phase="checks",
            number=pr.number,
            heartbeat=heartbeat,
            timeout=self.settings.checks_timeout_seconds,
        )
        if checked.merged:
            return checked
        if checked.head_sha != synced.head_sha:
            raise MergeFailedError(
                f"The head of PR #{pr.number} moved to {checked.head_sha} while waiting for checks on {synced.head_sha}"
            )
        if not result.eligible:
            problems = ", ".join(p.value for p in result.problems)
            raise MergeFailedError(f"PR #{pr.number} is not mergeable after syncing {base}: {problems}")
        return checked
