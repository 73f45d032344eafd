from fastapi.testclient import TestClient

import postflow.api.main as api_main
from postflow.core.metrics import MetricsRegistry


def test_metrics_endpoint_returns_prometheus_payload(monkeypatch) -> None:
    monkeypatch.setattr(api_main.app.state, "metrics", MetricsRegistry())
    monkeypatch.setattr(api_main.settings, "metrics_enabled", True)

    client = TestClient(api_main.app)
    version_response = client.get("/version")
    assert version_response.status_code == 200

    metrics_response = client.get("/metrics")
    assert metrics_response.status_code == 200
    assert metrics_response.headers["content-type"].startswith("text/plain")
    body = metrics_response.text
    assert "postflow_build_info" in body
    assert 'postflow_http_requests_total{method="GET",path="/version",status="200"}' in body
    assert "postflow_http_request_duration_seconds_sum" in body
    assert "# TYPE postflow_credits_total counter" in body


def test_metrics_endpoint_disabled_returns_404(monkeypatch) -> None:
    monkeypatch.setattr(api_main.settings, "metrics_enabled", False)
    client = TestClient(api_main.app)
    response = client.get("/metrics")
    assert response.status_code == 404


def test_domain_counters_are_rendered_with_labels() -> None:
    registry = MetricsRegistry()
    registry.record_platform_publish(platform="twitter", outcome="success", count=2)
    registry.record_credits(operation="reserved", amount=3)
    registry.record_job(kind="scheduled_post", status="failed")
    registry.record_credits(operation="released", amount=0)

    assert registry.counter_value("postflow_platform_publish_total", platform="twitter", outcome="success") == 2
    assert registry.counter_value("postflow_credits_total", operation="released") == 0

    body = registry.render_prometheus(app_name="postflow", app_version="0.1.0", env="test")
    assert 'postflow_credits_total{operation="reserved"} 3' in body
    assert 'postflow_jobs_total{kind="scheduled_post",status="failed"} 1' in body

    registry.clear()
    assert registry.counter_value("postflow_credits_total", operation="reserved") == 0
