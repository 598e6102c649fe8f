from fastapi.testclient import TestClient


def test_health_check(client: TestClient):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_correlation_id_is_echoed(client: TestClient):
    response = client.get("/health", headers={"X-Correlation-ID": "req-123"})

    assert response.headers["X-Correlation-ID"] == "req-123"


def test_correlation_id_is_generated(client: TestClient):
    response = client.get("/health")

    assert response.headers["X-Correlation-ID"]
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert "X-Process-Time" not in response.headers


def test_cors_preflight_allows_configured_origin(client: TestClient):
    response = client.options(
        "/api/v1/orders",
        headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "Authorization",
        },
    )

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"
    assert "POST" in response.headers["access-control-allow-methods"]


def test_cors_preflight_rejects_patch(client: TestClient):
    response = client.options(
        "/api/v1/orders",
        headers={"Origin": "http://localhost:3000", "Access-Control-Request-Method": "PATCH"},
    )

    assert response.status_code == 400


def test_http_errors_use_the_envelope(client: TestClient):
    response = client.get("/api/v1/cart")

    assert response.status_code == 401
    body = response.json()
    assert body["message"] == "Not authenticated"
    assert body["errors"] == []
    assert body["success"] is False
    assert body["data"] is None
    assert "timestamp" in body
