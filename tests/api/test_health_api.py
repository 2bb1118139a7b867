from __future__ import annotations

import pytest

pytestmark = pytest.mark.api


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["service"] == "spark"


def test_liveness(client):
    assert client.get("/live").json() == {"status": "alive"}


def test_request_id_is_echoed(client):
    response = client.get("/live", headers={"X-Request-ID": "req_abc"})

    assert response.headers["X-Request-ID"] == "req_abc"
