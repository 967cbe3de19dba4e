from urllib.error import URLError

from mergebot import metrics


def test_push_without_gateway_is_skipped(monkeypatch):
    calls = []
    monkeypatch.setattr(metrics, "push_to_gateway", lambda *args, **kwargs: calls.append(args))
    assert metrics.push_metrics("") is False
    assert calls == []


def test_push_sends_registry_to_gateway(monkeypatch):
    seen = {}

    def fake_push(gateway, job, registry):
        seen.update(gateway=gateway, job=job, registry=registry)

    monkeypatch.setattr(metrics, "push_to_gateway", fake_push)
    assert metrics.push_metrics("pushgateway:9091") is True
    assert seen == {"gateway": "pushgateway:9091", "job": "mergebot", "registry": metrics.REGISTRY}


def test_push_failure_is_logged_not_raised(monkeypatch, caplog):
    def fake_push(gateway, job, registry):
        raise URLError("connection refused")

    monkeypatch.setattr(metrics, "push_to_gateway", fake_push)
    assert metrics.push_metrics("pushgateway:9091") is False
    assert "Failed to push metrics" in caplog.text
