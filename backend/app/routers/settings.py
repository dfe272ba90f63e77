from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Optional
import json

from ..db import get_conn, set_user_context
from ..deps import get_current_user, require_admin, require_manager
from ..security import hash_pin, is_valid_pin_format
from ..validation import Pin

router = APIRouter(prefix="/settings", tags=["settings"])

# Values returned when a key has never been saved.
DEFAULT_SETTINGS = {
    "tax_rate": {"rate": 0.0875, "enabled": True},
    "currency": {"code": "XOF", "locale": "fr-FR", "symbol": "CFA", "fraction_digits": 0},
    "stock_alerts": {"default_threshold": 10, "enabled": True},
}


class PinIn(BaseModel):
    pin: Pin


class TaxSettingsIn(BaseModel):
    rate: float = Field(ge=0, le=1)
    enabled: bool


class CurrencySettingsIn(BaseModel):
    code: str = Field(min_length=3, max_length=3)
    locale: str = Field(min_length=2)
    symbol: str = Field(min_length=1)
    fraction_digits: Optional[int] = Field(default=None, ge=0, le=4)


class StockAlertSettingsIn(BaseModel):
    default_threshold: int = Field(ge=0)
    enabled: bool


@router.get("/pin")
def get_pin_status(user=Depends(require_manager)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            cur.execute(
                "SELECT created_at, updated_at FROM manager_pins WHERE user_id = %s",
                (user["user_id"],),
            )
            row = cur.fetchone()
    return {
        "success": True,
        "has_pin": bool(row),
        "created_at": row["created_at"] if row else None,
        "updated_at": row["updated_at"] if row else None,
    }


@router.post("/pin")
def set_pin(data: PinIn, user=Depends(require_manager)):
    if not is_valid_pin_format(data.pin):
        raise HTTPException(status_code=400, detail="PIN must be exactly 6 digits")
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO manager_pins (id, user_id, pin_hash)
                    VALUES (gen_random_uuid(), %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                      SET pin_hash = EXCLUDED.pin_hash, updated_at = now()
                    RETURNING (xmax = 0) AS created
                    """,
                    (user["user_id"], hash_pin(data.pin)),
                )
                created = bool(cur.fetchone()["created"])
    return {"success": True, "message": "PIN created successfully" if created else "PIN updated successfully"}


@router.delete("/pin")
def delete_pin(user=Depends(require_manager)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            cur.execute("DELETE FROM manager_pins WHERE user_id = %s RETURNING id", (user["user_id"],))
            if not cur.fetchone():
                raise HTTPException(status_code=404, detail="No PIN configured")
    return {"success": True, "message": "PIN deleted successfully"}


def load_business_settings(cur) -> dict:
    cur.execute(
        "SELECT key, value FROM business_settings WHERE key = ANY(%s)",
        (list(DEFAULT_SETTINGS.keys()),),
    )
    stored = {r["key"]: r["value"] for r in cur.fetchall()}
    return {k: stored.get(k) or v for k, v in DEFAULT_SETTINGS.items()}


def upsert_setting(cur, key: str, value: dict, description: str, user_id) -> dict:
    cur.execute(
        """
        INSERT INTO business_settings (id, key, value, description, updated_by)
        VALUES (gen_random_uuid(), %s, %s::jsonb, %s, %s)
        ON CONFLICT (key) DO UPDATE
          SET value = EXCLUDED.value, description = EXCLUDED.description,
              updated_by = EXCLUDED.updated_by, updated_at = now()
        RETURNING key, value, updated_at
        """,
        (key, json.dumps(value), description, user_id),
    )
    return cur.fetchone()


@router.get("/business")
def get_business_settings(user=Depends(get_current_user)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            return {"success": True, "settings": load_business_settings(cur)}


@router.get("/business/{key}")
def get_business_setting(key: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            cur.execute("SELECT value FROM business_settings WHERE key = %s", (key,))
            row = cur.fetchone()
    if row:
        return {"success": True, "key": key, "value": row["value"]}
    if key in DEFAULT_SETTINGS:
        return {"success": True, "key": key, "value": DEFAULT_SETTINGS[key]}
    raise HTTPException(status_code=404, detail="Setting not found")


@router.put("/business/tax")
def update_tax_settings(data: TaxSettingsIn, user=Depends(require_admin)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            row = upsert_setting(cur, "tax_rate", data.model_dump(), "Default tax rate applied at checkout", user["user_id"])
    return {"success": True, "setting": row}


@router.put("/business/currency")
def update_currency_settings(data: CurrencySettingsIn, user=Depends(require_admin)):
    value = data.model_dump()
    value["code"] = value["code"].upper()
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            row = upsert_setting(cur, "currency", value, "Display currency", user["user_id"])
    return {"success": True, "setting": row}


@router.put("/business/stock-alerts")
def update_stock_alert_settings(data: StockAlertSettingsIn, user=Depends(require_admin)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            row = upsert_setting(cur, "stock_alerts", data.model_dump(), "Low stock alert threshold", user["user_id"])
    return {"success": True, "setting": row}
