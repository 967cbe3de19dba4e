import asyncio
import json
import logging
import sys
from typing import Any, Dict, Optional

from .config import Settings
from .dispatcher import Dispatcher
from .errors import ConfigurationError
from .github import GitHubClient
from .lock import PullRequestLock
from .metrics import push_metrics
from .models import DispatchResult, Trigger
from .pipeline import PipelineTrigger

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    # httpx logs every request at INFO; our client already logs at DEBUG
    logging.getLogger("httpx").setLevel(logging.WARNING)


def load_event(path: str) -> Dict[str, Any]:
    if not path:
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Could not read the workflow event from {path}: {e}") from e


def extract_trigger(payload: Dict[str, Any], sha: str = "", pr_number: Optional[int] = None) -> Trigger:
    """Pull the PR number and commit SHA out of a workflow event payload."""
    number = pr_number
    if number is None:
        # pull_request / pull_request_target carry the PR directly; issue_comment carries the issue
        for key in ("pull_request", "issue"):
            num = (payload.get(key) or {}).get("number")
            if num:
                number = int(num)
                break
    if number is None and payload.get("number"):
        number = int(payload["number"])
    # status and check_suite events name the commit they report on
    event_sha = payload.get("sha") or (payload.get("check_suite") or {}).get("head_sha")
    return Trigger(
        number=number,
        sha=event_sha or sha or None,
        sender=(payload.get("sender") or {}).get("login"),
    )


async def run(settings: Settings, trigger: Trigger) -> DispatchResult:
    lock = PullRequestLock(settings)
    try:
        async with GitHubClient(settings) as gh:
            dispatcher = Dispatcher(settings, gh, PipelineTrigger(settings), lock)
            return await dispatcher.run(settings.action, trigger)
    finally:
        await lock.aclose()


def report_failure(message: str) -> None:
    # Workflow command understood by the GitHub Actions runner
    print(f"::error::{message}", flush=True)


def main() -> int:
    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        configure_logging()
        logger.error("Invalid configuration: %s", e)
        report_failure(str(e))
        return 1
    configure_logging(settings.log_level)
    try:
        trigger = extract_trigger(load_event(settings.event_path), settings.sha, settings.pr_number)
    except ConfigurationError as e:
        report_failure(str(e))
        return 1

    result = asyncio.run(run(settings, trigger))
    push_metrics(settings.pushgateway_url)
    if not result.succeeded:
        report_failure(result.error or f"Action {result.action} failed")
        return 1
    logger.info("Action %s completed for PR #%s", result.action, result.number)
    return 0


if __name__ == "__main__":
    sys.exit(main())
