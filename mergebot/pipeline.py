import logging
import time
from typing import Any, Dict, Optional

import httpx

from .config import Settings
from .errors import UpstreamEnqueueError
from .metrics import enqueue_requests_total

logger = logging.getLogger(__name__)


class PipelineTrigger:
    """Hands an eligible PR to the external test queue. Fire and forget."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self._transport = transport

    def payload(self, number: int) -> Dict[str, Any]:
        owner, repo = self.settings.owner_repo
        return {
            "owner": owner,
            "repo": repo,
            "pr": number,
            "testBranch": self.settings.trigger_branch,
            "baseBranch": self.settings.base_branch,
        }

    async def enqueue(self, number: int) -> bool:
        url = self.settings.queue_url
        if not url:
            enqueue_requests_total.labels(result="unconfigured").inc()
            raise UpstreamEnqueueError("No queue URL is configured (INPUT_QUEUE_URL)")
        body = self.payload(number)
        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=30, transport=self._transport) as client:
                resp = await client.post(url, json=body)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            enqueue_requests_total.labels(result="exc").inc()
            raise UpstreamEnqueueError(f"Failed to reach the test queue: {e}") from e
        logger.debug(
            "queue.response: pr=%s status=%s duration_ms=%d",
            number,
            resp.status_code,
            int((time.perf_counter() - start) * 1000),
        )
        if not resp.is_success:
            enqueue_requests_total.labels(result="error").inc()
            raise UpstreamEnqueueError(f"Test queue rejected PR #{number}: {resp.status_code} {resp.text[:200]}")
        enqueue_requests_total.labels(result="success").inc()
        logger.info("Enqueued PR #%s for testing on %s", number, self.settings.trigger_branch)
        return True
