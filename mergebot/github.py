import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx
from pydantic import ValidationError

from .config import Settings
from .errors import UpstreamMutationError, UpstreamQueryError
from .metrics import (
    github_api_latency_seconds,
    github_api_requests_total,
    github_rate_limit_remaining,
    github_rate_limit_reset,
)
from .models import EligibilityFields, PullRequestSnapshot

logger = logging.getLogger(__name__)

ELIGIBILITY_QUERY = """
query EligibilityFields($owner: String!, $name: String!, $number: Int!) {
  repository(owner: $owner, name: $name) {
    pullRequest(number: $number) {
      merged
      state
      reviewDecision
      commits(last: 1) {
        nodes {
          commit {
            statusCheckRollup {
              state
            }
          }
        }
      }
    }
  }
}
"""


def _safe_url(url: str) -> str:
    try:
        u = httpx.URL(url)
        # remove query to avoid leaking params
        return str(u.copy_with(query=None))
    except Exception:
        return url.split("?", 1)[0]


def _param_keys(d: Optional[Dict[str, Any]]) -> List[str]:
    return sorted((d or {}).keys())


def _error_message(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return resp.text
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return resp.text


class GitHubClient:
    """Thin async wrapper over the GitHub REST and GraphQL APIs for one repository."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.owner, self.repo = settings.owner_repo
        self.base_url = settings.github_api_url.rstrip("/")
        self._client = httpx.AsyncClient(
            headers={
                "Authorization": f"token {settings.github_token}",
                "Accept": "application/vnd.github+json",
                "User-Agent": f"mergebot/{settings.service_version}",
            },
            timeout=60,
            transport=transport,
        )

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self, method: str, path: str, params: Optional[Dict[str, Any]] = None, data: Optional[Any] = None
    ) -> httpx.Response:
        url = path if path.startswith("http") else f"{self.base_url}/{path.lstrip('/')}"
        endpoint = f"{method.upper()} {httpx.URL(url).path}"
        # Merges and writes are never replayed; GraphQL reads are
        idempotent = (
            method.upper() in ("GET", "PUT") and not endpoint.endswith("/merge")
        ) or url == self.settings.github_graphql_url

        def should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
            if exc is not None:
                return idempotent
            if resp is None:
                return False
            if resp.status_code >= 500:
                return idempotent
            if resp.status_code in (429, 403) and idempotent:
                return resp.status_code == 429 or resp.headers.get("X-RateLimit-Remaining") == "0"
            return False

        attempts = 0
        while True:
            attempts += 1
            start = time.perf_counter()
            exc: Optional[Exception] = None
            resp: Optional[httpx.Response] = None
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(
                    "github.request: method=%s path=%s params=%s attempt=%s",
                    method.upper(),
                    _safe_url(url),
                    _param_keys(params),
                    attempts,
                )
            try:
                resp = await self._client.request(method, url, params=params, json=data)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                exc = e
            duration = time.perf_counter() - start
            status_label = str(resp.status_code) if resp is not None else "exc"
            github_api_latency_seconds.labels(endpoint=endpoint).observe(duration)
            github_api_requests_total.labels(endpoint=endpoint, status=status_label).inc()
            if resp is not None:
                self._record_rate_limit(resp)
            if logger.isEnabledFor(logging.DEBUG):
                if resp is not None:
                    logger.debug(
                        "github.response: method=%s path=%s status=%s duration_ms=%d rl_remaining=%s rl_reset=%s attempt=%s",
                        method.upper(),
                        _safe_url(url),
                        resp.status_code,
                        int(duration * 1000),
                        resp.headers.get("X-RateLimit-Remaining"),
                        resp.headers.get("X-RateLimit-Reset"),
                        attempts,
                    )
                else:
                    logger.debug(
                        "github.response_error: method=%s path=%s error=%s duration_ms=%d attempt=%s",
                        method.upper(),
                        _safe_url(url),
                        exc,
                        int(duration * 1000),
                        attempts,
                    )
            if not should_retry(resp, exc) or attempts >= self.settings.max_attempts:
                if exc is not None:
                    raise exc
                return resp  # type: ignore
            sleep_s = self._retry_delay(resp, attempts)
            logger.debug(
                "github.retry: method=%s path=%s sleep_seconds=%s attempt=%s",
                method.upper(),
                _safe_url(url),
                sleep_s,
                attempts,
            )
            await asyncio.sleep(sleep_s)

    async def _read(self, method: str, path: str, what: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise UpstreamQueryError(f"{what} failed: {e!r}") from e

    async def _write(self, method: str, path: str, what: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise UpstreamMutationError(f"{what} failed: {e!r}") from e

    def _retry_delay(self, resp: Optional[httpx.Response], attempts: int) -> float:
        delay = self.settings.backoff_delay(attempts)
        retry_after = resp.headers.get("Retry-After") if resp is not None else None
        if retry_after:
            try:
                delay = min(max(delay, float(retry_after)), self.settings.max_backoff_seconds)
            except ValueError:
                pass
        return delay

    def _record_rate_limit(self, resp: httpx.Response) -> None:
        remaining = resp.headers.get("X-RateLimit-Remaining")
        reset = resp.headers.get("X-RateLimit-Reset")
        if remaining is not None and remaining.isdigit():
            github_rate_limit_remaining.set(int(remaining))
        if reset is not None and reset.isdigit():
            github_rate_limit_reset.set(int(reset))

    async def graphql(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        r = await self._read(
            "POST", self.settings.github_graphql_url, "GraphQL request", data={"query": query, "variables": variables}
        )
        if r.status_code != 200:
            raise UpstreamQueryError(
                f"GraphQL request failed: {r.status_code} {_error_message(r)}", status_code=r.status_code
            )
        try:
            payload = r.json()
        except ValueError as e:
            raise UpstreamQueryError(f"GraphQL response is not JSON: {e}", status_code=r.status_code) from e
        if payload.get("errors"):
            messages = "; ".join(str(e.get("message", e)) for e in payload["errors"])
            raise UpstreamQueryError(f"GraphQL errors: {messages}", status_code=r.status_code)
        return payload.get("data") or {}

    # --- Reads ---
    async def get_pull_request(self, number: int) -> PullRequestSnapshot:
        r = await self._read("GET", f"/repos/{self.owner}/{self.repo}/pulls/{number}", f"Fetching PR #{number}")
        if r.status_code != 200:
            raise UpstreamQueryError(
                f"Failed to fetch PR #{number}: {r.status_code} {_error_message(r)}", status_code=r.status_code
            )
        try:
            return PullRequestSnapshot.from_rest(r.json())
        except (ValueError, KeyError) as e:
            # pydantic's ValidationError is a ValueError
            raise UpstreamQueryError(f"Malformed payload for PR #{number}: {e}", status_code=r.status_code) from e

    async def query_eligibility_fields(self, number: int) -> EligibilityFields:
        data = await self.graphql(
            ELIGIBILITY_QUERY, {"owner": self.owner, "name": self.repo, "number": int(number)}
        )
        pr = (data.get("repository") or {}).get("pullRequest")
        if not pr:
            raise UpstreamQueryError(f"PR #{number} not found in {self.owner}/{self.repo}")
        nodes = (pr.get("commits") or {}).get("nodes") or []
        check_state = None
        if nodes:
            rollup = ((nodes[-1] or {}).get("commit") or {}).get("statusCheckRollup")
            if rollup:
                check_state = rollup.get("state")
        try:
            return EligibilityFields(
                merged=bool(pr.get("merged")),
                state=pr.get("state"),
                review_decision=pr.get("reviewDecision"),
                last_commit_check_state=check_state,
            )
        except ValidationError as e:
            raise UpstreamQueryError(f"Unexpected eligibility fields for PR #{number}: {e}") from e

    async def find_associated_prs(self, sha: str) -> List[int]:
        """List numbers of pull requests associated with a commit, in GitHub's order."""
        r = await self._read(
            "GET", f"/repos/{self.owner}/{self.repo}/commits/{sha}/pulls", f"Listing PRs for commit {sha}"
        )
        if r.status_code != 200:
            raise UpstreamQueryError(
                f"Failed to list PRs for commit {sha}: {r.status_code} {_error_message(r)}",
                status_code=r.status_code,
            )
        try:
            payload = r.json() or []
        except ValueError as e:
            raise UpstreamQueryError(f"Malformed PR list for commit {sha}: {e}", status_code=r.status_code) from e
        numbers: List[int] = []
        for pr in payload:
            num = pr.get("number")
            if num:
                numbers.append(int(num))
        return numbers

    # --- Mutations ---
    async def create_comment(self, issue_number: int, body: str) -> None:
        r = await self._write(
            "POST",
            f"/repos/{self.owner}/{self.repo}/issues/{issue_number}/comments",
            f"Commenting on #{issue_number}",
            data={"body": body},
        )
        if r.status_code not in (200, 201):
            raise UpstreamMutationError(
                f"Failed to comment on #{issue_number}: {r.status_code} {_error_message(r)}",
                status_code=r.status_code,
            )

    async def set_commit_status(self, sha: str, state: str, description: str = "") -> None:
        data = {"state": state, "context": self.settings.status_context}
        if description:
            data["description"] = description[:140]
        r = await self._write(
            "POST", f"/repos/{self.owner}/{self.repo}/statuses/{sha}", f"Setting status {state} on {sha}", data=data
        )
        if r.status_code not in (200, 201):
            raise UpstreamMutationError(
                f"Failed to set status {state} on {sha}: {r.status_code} {_error_message(r)}",
                status_code=r.status_code,
            )

    async def squash_merge_pull_request(self, number: int, title: str, message: str) -> Tuple[int, str]:
        """Squash-merge a PR; returns the raw status code and platform message for classification.

        A transport failure raises ``UpstreamMutationError``; the merge may still have landed.
        """
        data = {"merge_method": "squash", "commit_title": title, "commit_message": message}
        r = await self._write(
            "PUT", f"/repos/{self.owner}/{self.repo}/pulls/{number}/merge", f"Merging PR #{number}", data=data
        )
        return r.status_code, _error_message(r)

    async def merge_branch(self, base: str, head: str, message: str) -> Tuple[int, str]:
        """Merge ``head`` into ``base`` (the merges API); returns status code and message."""
        data = {"base": base, "head": head, "commit_message": message}
        r = await self._write(
            "POST", f"/repos/{self.owner}/{self.repo}/merges", f"Merging {head} into {base}", data=data
        )
        return r.status_code, _error_message(r) if r.status_code != 204 else ""
