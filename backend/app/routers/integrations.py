from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
import json
import urllib.error
import urllib.request

from ..db import get_conn, set_user_context
from ..deps import require_admin
from ..logs import json_log
from ..secrets_box import decrypt_secret, encrypt_secret
from ..validation import OptionalEmail
from .settings import upsert_setting

router = APIRouter(prefix="/settings/integrations", tags=["settings"])

RESEND_URL = "https://api.resend.com/emails"
WHATSAPP_GRAPH_URL = "https://graph.facebook.com/v18.0"

# Fields stored encrypted; never returned to clients.
EMAIL_SECRETS = ("api_key",)
WHATSAPP_SECRETS = ("access_token", "webhook_verify_token")

DEFAULT_EMAIL = {"enabled": False, "api_key": "", "from_email": "", "from_name": ""}
DEFAULT_WHATSAPP = {
    "enabled": False,
    "phone_number_id": "",
    "access_token": "",
    "business_account_id": "",
    "webhook_verify_token": "",
}


class EmailSettingsIn(BaseModel):
    enabled: bool
    api_key: str = ""
    from_email: OptionalEmail = None
    from_name: str = ""


class WhatsAppSettingsIn(BaseModel):
    enabled: bool
    phone_number_id: str = ""
    access_token: str = ""
    business_account_id: str = ""
    webhook_verify_token: str = ""


def _decrypt_fields(value: dict, secret_fields: tuple) -> dict:
    return {k: (decrypt_secret(v) if k in secret_fields else v) for k, v in value.items()}


def _masked(value: dict, secret_fields: tuple) -> dict:
    out = {k: v for k, v in value.items() if k not in secret_fields}
    for k in secret_fields:
        out[f"has_{k}"] = bool(value.get(k))
    return out


def _load(cur, key: str, default: dict) -> dict:
    cur.execute("SELECT value FROM business_settings WHERE key = %s", (key,))
    row = cur.fetchone()
    return {**default, **(row["value"] if row else {})}


def _merge_secrets(incoming: dict, stored: dict, secret_fields: tuple) -> dict:
    # A blank secret in the form means "keep the current one".
    merged = dict(incoming)
    for k in secret_fields:
        if not merged.get(k):
            merged[k] = stored.get(k) or ""
        else:
            merged[k] = encrypt_secret(merged[k])
    return merged


@router.get("")
def get_integrations(user=Depends(require_admin)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            email = _load(cur, "email_settings", DEFAULT_EMAIL)
            whatsapp = _load(cur, "whatsapp_settings", DEFAULT_WHATSAPP)
    return {
        "success": True,
        "email": _masked(email, EMAIL_SECRETS),
        "whatsapp": _masked(whatsapp, WHATSAPP_SECRETS),
    }


@router.put("/email")
def update_email_settings(data: EmailSettingsIn, user=Depends(require_admin)):
    incoming = data.model_dump()
    incoming["from_email"] = incoming["from_email"] or ""
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                stored = _load(cur, "email_settings", DEFAULT_EMAIL)
                value = _merge_secrets(incoming, stored, EMAIL_SECRETS)
                upsert_setting(cur, "email_settings", value, "Email integration settings (API key encrypted)", user["user_id"])
    return {"success": True, "email": _masked(value, EMAIL_SECRETS)}


@router.put("/whatsapp")
def update_whatsapp_settings(data: WhatsAppSettingsIn, user=Depends(require_admin)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                stored = _load(cur, "whatsapp_settings", DEFAULT_WHATSAPP)
                value = _merge_secrets(data.model_dump(), stored, WHATSAPP_SECRETS)
                upsert_setting(cur, "whatsapp_settings", value, "WhatsApp Business API settings (tokens encrypted)", user["user_id"])
    return {"success": True, "whatsapp": _masked(value, WHATSAPP_SECRETS)}


def _http_json(req: urllib.request.Request) -> dict:
    try:
        with urllib.request.urlopen(req, timeout=15) as resp:
            return json.loads(resp.read().decode("utf-8") or "{}")
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace") if hasattr(e, "read") else str(e)
        try:
            message = json.loads(body).get("message") or body
        except ValueError:
            message = body
        raise HTTPException(status_code=502, detail=f"Provider rejected the request: {message}") from e
    except urllib.error.URLError as e:
        raise HTTPException(status_code=502, detail=f"Provider unreachable: {e.reason}") from e
    except TimeoutError as e:
        raise HTTPException(status_code=502, detail="Provider did not respond in time") from e


@router.post("/email/test")
def test_email_connection(user=Depends(require_admin)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            stored = _load(cur, "email_settings", DEFAULT_EMAIL)
    settings = _decrypt_fields(stored, EMAIL_SECRETS)
    if not settings["enabled"] or not settings["api_key"]:
        raise HTTPException(status_code=400, detail="Email not enabled or API key missing")
    sender = settings["from_email"] or "onboarding@resend.dev"
    payload = {
        "from": f"{settings['from_name']} <{sender}>" if settings["from_name"] else sender,
        "to": [user["email"]],
        "subject": "Test email",
        "html": "<p>Your email integration is configured correctly.</p>",
    }
    req = urllib.request.Request(
        RESEND_URL,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Authorization": f"Bearer {settings['api_key']}", "Content-Type": "application/json"},
        method="POST",
    )
    _http_json(req)
    json_log("info", "settings.integrations.email_tested", user_id=user["user_id"])
    return {"success": True}


@router.post("/whatsapp/test")
def test_whatsapp_connection(user=Depends(require_admin)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            stored = _load(cur, "whatsapp_settings", DEFAULT_WHATSAPP)
    settings = _decrypt_fields(stored, WHATSAPP_SECRETS)
    if not settings["enabled"] or not settings["access_token"]:
        raise HTTPException(status_code=400, detail="WhatsApp not enabled or access token missing")
    if not settings["phone_number_id"]:
        raise HTTPException(status_code=400, detail="Phone number ID is required")
    req = urllib.request.Request(
        f"{WHATSAPP_GRAPH_URL}/{settings['phone_number_id']}",
        headers={"Authorization": f"Bearer {settings['access_token']}"},
        method="GET",
    )
    info = _http_json(req)
    json_log("info", "settings.integrations.whatsapp_tested", user_id=user["user_id"])
    return {
        "success": True,
        "phone_number": info.get("display_phone_number"),
        "verified_name": info.get("verified_name"),
    }
