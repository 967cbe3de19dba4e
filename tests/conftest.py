import pytest

from mergebot.config import Settings


@pytest.fixture
def settings():
    return Settings(
        github_token="test-token",
        repository="octo/repo",
        action="merge-now",
        trigger_branch="merge-queue",
        base_branch="main",
        queue_url="https://queue.example.com/enqueue",
        backoff_base_seconds=0,
        max_backoff_seconds=0,
        consistency_timeout_seconds=1,
    )
