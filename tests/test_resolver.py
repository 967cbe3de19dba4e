import asyncio

import httpx

from mergebot.errors import UpstreamQueryError
from mergebot.github import GitHubClient
from mergebot.resolver import resolve_pr_for_commit


class FakeGH:
    def __init__(self, numbers=None, error=None):
        self.numbers = numbers or []
        self.error = error
        self.calls = []

    async def find_associated_prs(self, sha):
        self.calls.append(sha)
        if self.error:
            raise self.error
        return list(self.numbers)


def test_returns_first_associated_pr():
    gh = FakeGH([12, 9, 30])
    assert asyncio.run(resolve_pr_for_commit(gh, "abc123")) == 12
    # same answer every time
    assert asyncio.run(resolve_pr_for_commit(gh, "abc123")) == 12
    assert gh.calls == ["abc123", "abc123"]


def test_single_pr():
    assert asyncio.run(resolve_pr_for_commit(FakeGH([4]), "abc123")) == 4


def test_no_associated_pr_is_not_found():
    assert asyncio.run(resolve_pr_for_commit(FakeGH([]), "abc123")) is None


def test_failed_lookup_is_not_found():
    gh = FakeGH(error=UpstreamQueryError("Failed to list PRs", status_code=502))
    assert asyncio.run(resolve_pr_for_commit(gh, "abc123")) is None


def test_unreachable_api_is_not_found(settings):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async def go():
        async with GitHubClient(settings, transport=httpx.MockTransport(handler)) as gh:
            return await resolve_pr_for_commit(gh, "deadbeef")

    assert asyncio.run(go()) is None
