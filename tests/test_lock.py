import asyncio

import fakeredis
import pytest
import redis

from mergebot.errors import LockUnavailableError, MergeInProgressError
from mergebot.lock import PullRequestLock


@pytest.fixture
def fake_redis(monkeypatch):
    fr = fakeredis.FakeAsyncRedis(decode_responses=True)
    monkeypatch.setattr("redis.asyncio.Redis.from_url", lambda url, decode_responses=True: fr)
    return fr


def test_second_run_cannot_take_the_same_pr(settings, fake_redis):
    async def go():
        first = PullRequestLock(settings, worker_id="run-1")
        second = PullRequestLock(settings, worker_id="run-2")

        await first.acquire(7)
        assert await fake_redis.get("automerge:lock:octo/repo:7") == "run-1"
        assert await fake_redis.ttl("automerge:lock:octo/repo:7") > 0

        with pytest.raises(MergeInProgressError):
            await second.acquire(7)
        # other PRs are independent
        await second.acquire(8)

    asyncio.run(go())


def test_release_only_by_owner(settings, fake_redis):
    async def go():
        first = PullRequestLock(settings, worker_id="run-1")
        second = PullRequestLock(settings, worker_id="run-2")
        await first.acquire(7)

        await second.release(7)
        assert await fake_redis.get("automerge:lock:octo/repo:7") == "run-1"
        assert await second.refresh(7) is False

        assert await first.refresh(7) is True
        await first.release(7)
        assert await fake_redis.get("automerge:lock:octo/repo:7") is None
        await second.acquire(7)

    asyncio.run(go())


class BrokenRedis:
    async def set(self, *args, **kwargs):
        raise redis.ConnectionError("connection refused")

    async def eval(self, *args, **kwargs):
        raise redis.ConnectionError("connection refused")


def test_unreachable_store_raises_lock_unavailable(settings, monkeypatch):
    monkeypatch.setattr("redis.asyncio.Redis.from_url", lambda url, decode_responses=True: BrokenRedis())
    lock = PullRequestLock(settings)
    with pytest.raises(LockUnavailableError):
        asyncio.run(lock.acquire(7))
    with pytest.raises(LockUnavailableError):
        asyncio.run(lock.refresh(7))


def test_release_failure_is_only_logged(settings, monkeypatch):
    monkeypatch.setattr("redis.asyncio.Redis.from_url", lambda url, decode_responses=True: BrokenRedis())
    asyncio.run(PullRequestLock(settings).release(7))
