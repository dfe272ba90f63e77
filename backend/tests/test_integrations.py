import urllib.request

import pytest
from fastapi import HTTPException

from backend.app.config import settings
from backend.app.routers import integrations
from backend.app.routers.integrations import EMAIL_SECRETS, WHATSAPP_SECRETS, _decrypt_fields, _http_json, _masked, _merge_secrets


def test_masked_hides_secret_values():
    out = _masked({"enabled": True, "api_key": "enc", "from_email": "a@b.co", "from_name": ""}, EMAIL_SECRETS)
    assert "api_key" not in out
    assert out["has_api_key"] is True
    assert out["from_email"] == "a@b.co"


def test_blank_secret_keeps_stored_value(monkeypatch):
    monkeypatch.setattr(settings, "integrations_secret", "integration-test-passphrase")
    stored = {"access_token": "stored-token", "webhook_verify_token": ""}
    merged = _merge_secrets(
        {"enabled": True, "access_token": "", "webhook_verify_token": "new-verify", "phone_number_id": "123"},
        stored,
        WHATSAPP_SECRETS,
    )
    assert merged["access_token"] == "stored-token"
    assert merged["webhook_verify_token"] != "new-verify"
    assert _decrypt_fields({"webhook_verify_token": merged["webhook_verify_token"]}, WHATSAPP_SECRETS) == {
        "webhook_verify_token": "new-verify"
    }


class _StalledResponse:
    def read(self):
        raise TimeoutError("The read operation timed out")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


def test_provider_that_stops_responding_is_a_bad_gateway(monkeypatch):
    monkeypatch.setattr(integrations.urllib.request, "urlopen", lambda req, timeout: _StalledResponse())
    with pytest.raises(HTTPException) as ex:
        _http_json(urllib.request.Request("https://api.resend.com/emails"))
    assert ex.value.status_code == 502
    assert ex.value.detail == "Provider did not respond in time"


def test_provider_json_is_returned(monkeypatch):
    class _Ok(_StalledResponse):
        def read(self):
            return b'{"display_phone_number": "+1 555 0100"}'

    monkeypatch.setattr(integrations.urllib.request, "urlopen", lambda req, timeout: _Ok())
    assert _http_json(urllib.request.Request("https://graph.facebook.com/v18.0/1")) == {"display_phone_number": "+1 555 0100"}
