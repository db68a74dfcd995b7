from fastapi.testclient import TestClient

from clinicavoice import main
from clinicavoice.observability import normalise_path_for_metrics


def auth_header(token):
    return {"Authorization": f"Bearer {token}"}


def test_unknown_route_is_invalid_request(client):
    resp = client.get("/no-such-route")
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid request"}


def test_unsupported_method_is_invalid_request(client, clinician_token):
    resp = client.patch("/patients", headers=auth_header(clinician_token))
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid request"}


def test_every_response_allows_any_origin(client, clinician_token):
    ok = client.get("/templates", headers=auth_header(clinician_token))
    denied = client.get("/templates")
    missing = client.get("/nowhere")
    for resp in (ok, denied, missing):
        assert resp.headers["access-control-allow-origin"] == "*"


def test_trace_id_is_propagated(client):
    resp = client.get("/health", headers={"X-Trace-Id": "trace-123"})
    assert resp.headers["x-trace-id"] == "trace-123"
    assert client.get("/health").headers["x-trace-id"]


def test_health_reports_store(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["db"] is True
    assert body["uptime"] >= 0


def test_metrics_exposes_request_counters(client):
    client.get("/health")
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "clinicavoice_requests_total" in resp.text


def test_malformed_body_is_a_validation_error(client, clinician_token):
    resp = client.post(
        "/templates",
        content="not json",
        headers={**auth_header(clinician_token), "Content-Type": "application/json"},
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "Validation failed"


def test_unexpected_errors_become_500_with_message(services, settings, clinician_token, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("store exploded")

    monkeypatch.setattr(services.store, "query", explode)
    main.app.dependency_overrides[main.get_services] = lambda: services
    main.app.dependency_overrides[main.get_settings] = lambda: settings
    try:
        with TestClient(main.app, raise_server_exceptions=False) as client:
            resp = client.get("/templates", headers=auth_header(clinician_token))
    finally:
        main.app.dependency_overrides.clear()

    assert resp.status_code == 500
    assert resp.json() == {"error": "Internal server error", "message": "store exploded"}
    assert resp.headers["access-control-allow-origin"] == "*"


def test_metric_paths_collapse_identifiers():
    assert normalise_path_for_metrics("/patients/3f2b8c1e-1d2a-4c6b-9a7e-0b1c2d3e4f50") == "/patients/:param"
    assert normalise_path_for_metrics("/appointments/123/status") == "/appointments/:param/status"
    assert normalise_path_for_metrics("/dashboard/stats") == "/dashboard/stats"
