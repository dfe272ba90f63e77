from fastapi import APIRouter, HTTPException, Depends, Query
from fastapi.responses import Response
import uuid

from ..access import can_view_record
from ..config import settings
from ..db import get_conn, set_user_context
from ..deps import get_current_user
from ..receipts import PAGE_FORMATS, receipt_filename, render_receipt_pdf

router = APIRouter(prefix="/pos", tags=["pos"])


def _load_receipt_data(cur, sale_id) -> dict:
    cur.execute(
        """
        SELECT s.id, s.sale_number, s.store_id, s.cashier_id, s.customer_id, s.subtotal, s.tax,
               s.discount, s.total, s.payment_method, s.payment_reference, s.status, s.notes, s.created_at,
               st.name AS store_name, st.address AS store_address, st.phone AS store_phone,
               p.full_name AS cashier_name, c.name AS customer_name
        FROM sales s
        JOIN stores st ON st.id = s.store_id
        LEFT JOIN profiles p ON p.id = s.cashier_id
        LEFT JOIN customers c ON c.id = s.customer_id
        WHERE s.id = %s
        """,
        (sale_id,),
    )
    sale = cur.fetchone()
    if not sale:
        raise HTTPException(status_code=404, detail="Sale not found")
    cur.execute(
        """
        SELECT si.quantity, si.unit_price, si.discount, si.subtotal, pt.name, pt.sku
        FROM sale_items si
        JOIN product_templates pt ON pt.id = si.product_id
        WHERE si.sale_id = %s
        ORDER BY si.created_at, si.id
        """,
        (sale_id,),
    )
    return {"sale": sale, "items": cur.fetchall()}


@router.get("/receipt")
def get_receipt(
    sale_id: uuid.UUID,
    format: str = Query(default="THERMAL_80MM"),
    user=Depends(get_current_user),
):
    fmt = (format or "").strip().upper()
    if fmt not in PAGE_FORMATS:
        raise HTTPException(status_code=400, detail=f"Unsupported receipt format: {format}")
    with get_conn() as conn:
        set_user_context(conn, user["user_id"])
        with conn.cursor() as cur:
            data = _load_receipt_data(cur, sale_id)
    sale = data["sale"]
    if not can_view_record(user, owner_id=sale["cashier_id"], store_id=sale["store_id"]):
        raise HTTPException(status_code=403, detail="You do not have access to this sale")

    pdf = render_receipt_pdf(
        sale,
        data["items"],
        store={"name": sale["store_name"], "address": sale["store_address"], "phone": sale["store_phone"]},
        cashier_name=sale["cashier_name"],
        customer_name=sale["customer_name"],
        company={"name": settings.company_name, "address": settings.company_address, "phone": settings.company_phone},
        fmt=fmt,
    )
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{receipt_filename(sale["sale_number"])}"'},
    )
