import pytest

from spark.kernel.sanitize import REDACTED, sanitize_data, sanitize_headers


@pytest.mark.unit
def test_sanitize_headers_redacts_credentials_and_signatures():
    headers = {
        "Authorization": "Bearer abc",
        "X-Hub-Signature-256": "sha256=deadbeef",
        "Content-Type": "application/json",
    }

    assert sanitize_headers(headers) == {
        "Authorization": REDACTED,
        "X-Hub-Signature-256": REDACTED,
        "Content-Type": "application/json",
    }


@pytest.mark.unit
def test_sanitize_data_walks_nested_payloads():
    payload = {
        "error": "invalid_grant",
        "details": [{"refresh_token": "rt-1", "hint": "expired"}],
        "client": {"client_secret": "shh", "name": "spark"},
    }

    assert sanitize_data(payload) == {
        "error": "invalid_grant",
        "details": [{"refresh_token": REDACTED, "hint": "expired"}],
        "client": {"client_secret": REDACTED, "name": "spark"},
    }
