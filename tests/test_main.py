import json

import pytest

from mergebot import main as mainmod
from mergebot.config import Settings
from mergebot.errors import ConfigurationError
from mergebot.main import extract_trigger
from mergebot.models import DispatchResult


def test_extract_trigger_from_pull_request_event():
    payload = {
        "action": "opened",
        "pull_request": {"number": 42, "head": {"sha": "headsha"}},
        "sender": {"login": "octocat"},
    }
    trigger = extract_trigger(payload, sha="mergesha")
    assert trigger.number == 42
    assert trigger.sha == "mergesha"
    assert trigger.sender == "octocat"


def test_extract_trigger_from_issue_comment_event():
    payload = {"action": "created", "issue": {"number": 7, "pull_request": {}}, "comment": {"body": "/merge-it"}}
    assert extract_trigger(payload).number == 7


def test_extract_trigger_from_status_and_check_suite_events():
    assert extract_trigger({"sha": "abc123"}, sha="other").sha == "abc123"
    trigger = extract_trigger({"check_suite": {"head_sha": "ba819a5e"}}, sha="other")
    assert trigger.sha == "ba819a5e"
    assert trigger.number is None


def test_explicit_pr_number_wins():
    assert extract_trigger({"pull_request": {"number": 1}}, pr_number=5).number == 5


def test_settings_from_env():
    s = Settings.from_env(
        {
            "INPUT_GITHUB_TOKEN": "tok",
            "GITHUB_REPOSITORY": "octo/repo",
            "INPUT_ACTION": "merge-it",
            "INPUT_TRIGGER_BRANCH": "staging",
            "INPUT_BASE_BRANCH": "develop",
            "INPUT_PR_NUMBER": "12",
            "INPUT_SYNC_BASE_BRANCH": "true",
            "GITHUB_API_URL": "https://ghe.example.com/api/v3/",
        }
    )
    assert s.owner_repo == ("octo", "repo")
    assert s.action == "merge-it"
    assert s.trigger_branch == "staging"
    assert s.base_branch == "develop"
    assert s.pr_number == 12
    assert s.sync_base_branch is True
    assert s.github_api_url == "https://ghe.example.com/api/v3"
    assert s.github_graphql_url == "https://ghe.example.com/api/v3/graphql"
    assert s.redis_key("lock", "octo/repo", "12") == "automerge:lock:octo/repo:12"


def test_settings_are_immutable():
    s = Settings.from_env({"GITHUB_TOKEN": "tok", "GITHUB_REPOSITORY": "octo/repo"})
    with pytest.raises(Exception):
        s.base_branch = "other"


@pytest.mark.parametrize(
    "env",
    [
        {"GITHUB_REPOSITORY": "octo/repo"},
        {"GITHUB_TOKEN": "tok", "GITHUB_REPOSITORY": "octo"},
        {"GITHUB_TOKEN": "tok", "GITHUB_REPOSITORY": "octo/repo", "INPUT_PR_NUMBER": "abc"},
        {"GITHUB_TOKEN": "tok", "GITHUB_REPOSITORY": "octo/repo", "REDIS_LOCK_TTL_SECONDS": "soon"},
    ],
)
def test_invalid_settings_raise(env):
    with pytest.raises(ConfigurationError):
        Settings.from_env(env)


def test_backoff_delay_is_capped():
    s = Settings(github_token="t", repository="o/r", backoff_base_seconds=1, backoff_factor=2, max_backoff_seconds=5)
    assert [s.backoff_delay(n) for n in range(1, 6)] == [1, 2, 4, 5, 5]


@pytest.fixture
def action_env(monkeypatch, tmp_path):
    event = tmp_path / "event.json"
    event.write_text(json.dumps({"pull_request": {"number": 42}}))
    monkeypatch.setenv("INPUT_GITHUB_TOKEN", "tok")
    monkeypatch.setenv("GITHUB_REPOSITORY", "octo/repo")
    monkeypatch.setenv("INPUT_ACTION", "merge-now")
    monkeypatch.setenv("GITHUB_EVENT_PATH", str(event))
    monkeypatch.delenv("INPUT_PR_NUMBER", raising=False)
    monkeypatch.delenv("PUSHGATEWAY_URL", raising=False)


def test_main_success_exit_code(action_env, monkeypatch):
    seen = {}

    async def fake_run(settings, trigger):
        seen["action"] = settings.action
        seen["number"] = trigger.number
        return DispatchResult(action="merge-now", number=42, succeeded=True)

    monkeypatch.setattr(mainmod, "run", fake_run)
    assert mainmod.main() == 0
    assert seen == {"action": "merge-now", "number": 42}


def test_main_failure_emits_error_annotation(action_env, monkeypatch, capsys):
    async def fake_run(settings, trigger):
        return DispatchResult(action="merge-now", number=42, succeeded=False, error="Merge conflict")

    monkeypatch.setattr(mainmod, "run", fake_run)
    assert mainmod.main() == 1
    assert "::error::Merge conflict" in capsys.readouterr().out


def test_main_missing_token_fails(monkeypatch, capsys):
    monkeypatch.delenv("INPUT_GITHUB_TOKEN", raising=False)
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    monkeypatch.setenv("GITHUB_REPOSITORY", "octo/repo")
    assert mainmod.main() == 1
    assert "::error::" in capsys.readouterr().out


def test_main_unreadable_event_fails(action_env, monkeypatch, tmp_path, capsys):
    monkeypatch.setenv("GITHUB_EVENT_PATH", str(tmp_path / "missing.json"))
    assert mainmod.main() == 1
    assert "::error::" in capsys.readouterr().out
