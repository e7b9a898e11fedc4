from __future__ import annotations

from roomrender.services.monitor import RETENTION_DAYS, scrub_payload


def test_scrub_payload_redacts_nested_secrets() -> None:
    payload = {
        "api_key": "sk-live",
        "Authorization": "Bearer abc",
        "nested": {"accessToken": "shpat_1", "count": 3},
        "items": [{"client_secret": "x", "ok": True}, "plain"],
        "product_id": "101",
    }
    scrubbed = scrub_payload(payload)
    assert scrubbed["api_key"] == "[REDACTED]"
    assert scrubbed["Authorization"] == "[REDACTED]"
    assert scrubbed["nested"] == {"accessToken": "[REDACTED]", "count": 3}
    assert scrubbed["items"] == [{"client_secret": "[REDACTED]", "ok": True}, "plain"]
    assert scrubbed["product_id"] == "101"
    # The input is left as it was.
    assert payload["api_key"] == "sk-live"


def test_retention_classes() -> None:
    assert RETENTION_DAYS == {"short": 7, "standard": 30, "long": 90}
