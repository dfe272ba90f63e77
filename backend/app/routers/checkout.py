from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel, Field
from datetime import date
from decimal import Decimal
from typing import List, Optional
import uuid

from ..access import can_access_store, is_manager_or_admin
from ..cash_math import to_money
from ..db import get_conn, set_user_context
from ..deps import get_current_user
from ..logs import json_log
from ..numbering import next_document_number
from ..pricing import validate_unit_price
from ..stock import adjust_inventory, bump_customer_totals, bump_session_totals, insert_sale, insert_sale_item, lock_inventory
from ..validation import PaymentMethod

router = APIRouter(prefix="/pos", tags=["pos"])


class CheckoutItemIn(BaseModel):
    inventory_id: uuid.UUID
    product_id: uuid.UUID
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)


class CheckoutIn(BaseModel):
    store_id: uuid.UUID
    cashier_id: uuid.UUID
    cash_session_id: Optional[uuid.UUID] = None
    customer_id: Optional[uuid.UUID] = None
    items: List[CheckoutItemIn] = Field(default_factory=list)
    subtotal: Decimal = Decimal("0")
    tax: Decimal = Field(default=Decimal("0"), ge=0)
    discount: Decimal = Field(default=Decimal("0"), ge=0)
    total: Decimal = Decimal("0")
    payment_method: PaymentMethod = "cash"
    payment_reference: Optional[str] = None
    notes: Optional[str] = None


def _load_product_prices(cur, product_ids: list) -> dict:
    cur.execute(
        """
        SELECT id, name, price, min_price, max_price, is_active
        FROM product_templates
        WHERE id = ANY(%s::uuid[])
        """,
        ([str(p) for p in product_ids],),
    )
    return {str(r["id"]): r for r in cur.fetchall()}


def _assert_session_usable(cur, session_id, store_id) -> None:
    cur.execute(
        """
        SELECT id, store_id, status
        FROM cash_sessions
        WHERE id = %s
        FOR UPDATE
        """,
        (session_id,),
    )
    row = cur.fetchone()
    if not row or str(row["store_id"]) != str(store_id):
        raise HTTPException(status_code=400, detail="Cash session not found for this store")
    if row["status"] != "open":
        raise HTTPException(status_code=400, detail="Cash session is not open")


def _checkout_impl(*, cur, data: CheckoutIn, user: dict, today: date) -> dict:
    if not data.items:
        raise HTTPException(status_code=400, detail="Cart is empty")
    if not can_access_store(user, data.store_id):
        raise HTTPException(status_code=403, detail="You do not have access to this store")
    if str(data.cashier_id) != str(user["user_id"]) and not is_manager_or_admin(user):
        raise HTTPException(status_code=403, detail="You can only record sales as yourself")
    if data.cash_session_id:
        _assert_session_usable(cur, data.cash_session_id, data.store_id)

    products = _load_product_prices(cur, [it.product_id for it in data.items])
    locked: dict = {}
    for it in data.items:
        key = str(it.inventory_id)
        inv = locked.get(key) or lock_inventory(cur, key, store_id=str(data.store_id))
        if not inv or str(inv["product_id"]) != str(it.product_id):
            raise HTTPException(status_code=400, detail="Product not available in this store")
        locked[key] = inv
        requested = sum(x.quantity for x in data.items if str(x.inventory_id) == key)
        if int(inv["quantity"]) < requested:
            raise HTTPException(
                status_code=400,
                detail={
                    "error": "Insufficient inventory",
                    "details": {"inventory_id": key, "available": int(inv["quantity"]), "requested": requested},
                },
            )
        product = products.get(str(it.product_id))
        if not product or not product["is_active"]:
            raise HTTPException(status_code=400, detail="Product is not available for sale")
        price_error = validate_unit_price(it.unit_price, product["price"], product["min_price"], product["max_price"])
        if price_error:
            raise HTTPException(
                status_code=400,
                detail={
                    "error": "Invalid price",
                    "details": {"product_id": str(it.product_id), "product_name": product["name"], "message": price_error},
                },
            )

    # Line totals are recomputed server-side; client figures are advisory.
    subtotal = Decimal("0.00")
    for it in data.items:
        subtotal += to_money(it.unit_price) * it.quantity - to_money(it.discount)
    totals = {
        "subtotal": to_money(subtotal),
        "tax": to_money(data.tax),
        "discount": to_money(data.discount),
        "total": to_money(subtotal + to_money(data.tax) - to_money(data.discount)),
    }
    if totals["total"] < 0:
        raise HTTPException(status_code=400, detail="Discount cannot exceed the sale total")

    sale_number = next_document_number(cur, "sale", data.store_id, today)
    sale = insert_sale(
        cur,
        sale_number=sale_number,
        store_id=data.store_id,
        cashier_id=data.cashier_id,
        customer_id=data.customer_id,
        cash_session_id=data.cash_session_id,
        totals=totals,
        payment_method=data.payment_method,
        payment_reference=data.payment_reference,
        notes=data.notes,
    )
    for it in data.items:
        insert_sale_item(
            cur,
            sale_id=sale["id"],
            product_id=it.product_id,
            inventory_id=it.inventory_id,
            quantity=it.quantity,
            unit_price=it.unit_price,
            discount=it.discount,
        )
        adjust_inventory(
            cur,
            inventory=locked[str(it.inventory_id)],
            delta=-it.quantity,
            movement_type="sale",
            user_id=user["user_id"],
            reference=f"sale:{sale['id']}",
        )
    bump_session_totals(cur, data.cash_session_id, data.payment_method, totals["total"])
    bump_customer_totals(cur, data.customer_id, totals["total"])
    return {"sale": sale, "totals": totals}


@router.post("/checkout", status_code=201)
def checkout(data: CheckoutIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.transaction():
            with conn.cursor() as cur:
                res = _checkout_impl(cur=cur, data=data, user=user, today=date.today())
    sale = res["sale"]
    json_log(
        "info",
        "pos.checkout.completed",
        sale_id=sale["id"],
        sale_number=sale["sale_number"],
        store_id=data.store_id,
        user_id=user["user_id"],
        total=res["totals"]["total"],
        payment_method=data.payment_method,
    )
    return {"success": True, "sale_id": sale["id"], "sale_number": sale["sale_number"], "total": res["totals"]["total"]}
