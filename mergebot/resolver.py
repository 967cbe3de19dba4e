import logging
from typing import Optional

from .errors import UpstreamQueryError

logger = logging.getLogger(__name__)


async def resolve_pr_for_commit(gh, sha: str) -> Optional[int]:
    """Map a commit SHA to the first PR GitHub associates with it, or None.

    GitHub's ordering is kept as-is so repeated runs pick the same PR. A failed
    lookup is reported as not found.
    """
    try:
        numbers = await gh.find_associated_prs(sha)
    except UpstreamQueryError as e:
        logger.warning("Lookup of PRs for commit %s failed: %s", sha, e)
        return None
    if not numbers:
        logger.debug("No PRs associated with commit %s", sha)
        return None
    if len(numbers) > 1:
        logger.info("Commit %s is associated with PRs %s; using #%s", sha, numbers, numbers[0])
    return numbers[0]
