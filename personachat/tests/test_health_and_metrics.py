import personachat.api.health as health_api


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_health_db_lists_tables(client):
    resp = client.get("/health/db", params={"now": "2024-01-01T00:00:00+00:00"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["computed_at"] == "2024-01-01T00:00:00+00:00"
    assert body["db"]["latency_ms"] is None
    for table in ("users", "subscriptions", "payments", "user_activities"):
        assert table in body["db"]["tables_present"]


def test_health_db_reports_outage(client, monkeypatch):
    monkeypatch.setattr(health_api, "check_connection", lambda: False)
    resp = client.get("/health/db")
    assert resp.status_code == 200
    assert resp.json()["ok"] is False
    assert resp.json()["db"]["tables_present"] == []


def test_metrics_exposes_request_counters(client):
    client.get("/healthz")
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert 'http_requests_total{method="GET",path="/healthz",status="200"} 1.0' in resp.text
    assert "# TYPE ratelimit_block_total counter" in resp.text


def test_security_headers_on_every_response(client):
    resp = client.get("/healthz")
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert resp.headers["Cache-Control"] == "no-store"
    assert "Strict-Transport-Security" not in resp.headers

    https = client.get("/healthz", headers={"x-forwarded-proto": "https"})
    assert https.headers["Strict-Transport-Security"].startswith("max-age=31536000")


def test_sensitive_paths_are_blocked(client):
    for path in ("/.env", "/.env.local", "/.git/config", "/wp-admin"):
        resp = client.get(path)
        assert resp.status_code == 404
        assert resp.json()["code"] == "not_found"
        assert resp.headers["X-Frame-Options"] == "DENY"
