"""
PDF receipts for completed sales, rendered with reportlab.

Thermal paper is continuous, so the THERMAL_80MM page height is computed from
the content; the sheet formats use their fixed ISO sizes.
"""

import json
from io import BytesIO
from typing import Any, Optional

from reportlab.graphics import renderPDF
from reportlab.graphics.barcode.qr import QrCodeWidget
from reportlab.graphics.shapes import Drawing
from reportlab.lib.units import mm
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

from .cash_math import to_money

# Widths/heights in points (1mm = 2.8346pt). None height = grows with content.
PAGE_FORMATS = {
    "THERMAL_80MM": {"width": 226.77, "height": None, "font_size": 8, "margin": 4 * mm},
    "A6": {"width": 297.64, "height": 419.53, "font_size": 8, "margin": 8 * mm},
    "A5": {"width": 419.53, "height": 595.28, "font_size": 9, "margin": 12 * mm},
    "A4": {"width": 595.28, "height": 841.89, "font_size": 10, "margin": 18 * mm},
}

FONT = "Helvetica"
FONT_BOLD = "Helvetica-Bold"
QR_SIZE = 28 * mm

PAYMENT_LABELS = {"cash": "Cash", "card": "Card", "mobile": "Mobile money", "other": "Other"}


def receipt_filename(sale_number: str) -> str:
    return f"ticket-{sale_number}.pdf"


def qr_payload(sale: dict) -> str:
    return json.dumps(
        {
            "type": "sale",
            "saleNumber": sale["sale_number"],
            "saleId": str(sale["id"]),
            "total": f"{to_money(sale['total']):.2f}",
            "date": str(sale["created_at"]),
        },
        separators=(",", ":"),
    )


def _money(v: Any) -> str:
    return f"{to_money(v):,.2f}"


def _fit(text: str, width: float, font: str, size: float) -> str:
    if stringWidth(text, font, size) <= width:
        return text
    while text and stringWidth(text + "...", font, size) > width:
        text = text[:-1]
    return text + "..."


def _lines(sale: dict, items: list[dict], store: dict, cashier_name: Optional[str], customer_name: Optional[str], company: dict) -> list[tuple]:
    """
    Receipt body as (kind, left, right) rows:
    kind is one of title, text, center, pair, rule, total.
    """
    rows: list[tuple] = [("title", company.get("name") or store.get("name") or "", None)]
    if store.get("name") and store.get("name") != company.get("name"):
        rows.append(("center", store["name"], None))
    for extra in (store.get("address") or company.get("address"), store.get("phone") or company.get("phone")):
        if extra:
            rows.append(("center", extra, None))
    rows.append(("rule", None, None))
    rows.append(("pair", "Receipt", sale["sale_number"]))
    created = sale.get("created_at")
    if created is not None:
        rows.append(("pair", "Date", created.strftime("%Y-%m-%d %H:%M") if hasattr(created, "strftime") else str(created)))
    if cashier_name:
        rows.append(("pair", "Cashier", cashier_name))
    if customer_name:
        rows.append(("pair", "Customer", customer_name))
    rows.append(("rule", None, None))
    for it in items:
        rows.append(("text", it.get("name") or it.get("sku") or "Item", None))
        line = f"  {int(it['quantity'])} x {_money(it['unit_price'])}"
        if to_money(it.get("discount")) > 0:
            line += f"  (-{_money(it['discount'])})"
        rows.append(("pair", line, _money(it["subtotal"])))
    rows.append(("rule", None, None))
    rows.append(("pair", "Subtotal", _money(sale["subtotal"])))
    if to_money(sale.get("tax")) > 0:
        rows.append(("pair", "Tax", _money(sale["tax"])))
    if to_money(sale.get("discount")) > 0:
        rows.append(("pair", "Discount", "-" + _money(sale["discount"])))
    rows.append(("total", "TOTAL", _money(sale["total"])))
    method = (sale.get("payment_method") or "").lower()
    rows.append(("pair", "Payment", PAYMENT_LABELS.get(method, method or "-")))
    if sale.get("status") == "refunded":
        rows.append(("center", "REFUNDED", None))
    if sale.get("notes"):
        rows.append(("text", str(sale["notes"]), None))
    rows.append(("rule", None, None))
    rows.append(("center", "Thank you for your purchase!", None))
    return rows


def render_receipt_pdf(
    sale: dict,
    items: list[dict],
    *,
    store: dict,
    cashier_name: Optional[str] = None,
    customer_name: Optional[str] = None,
    company: Optional[dict] = None,
    fmt: str = "THERMAL_80MM",
) -> bytes:
    page = PAGE_FORMATS.get((fmt or "").upper())
    if page is None:
        raise ValueError(f"unsupported receipt format: {fmt}")

    size = page["font_size"]
    leading = size * 1.4
    margin = page["margin"]
    width = page["width"]
    rows = _lines(sale, items, store, cashier_name, customer_name, company or {})
    content_height = len(rows) * leading + QR_SIZE + 2 * margin + leading
    height = page["height"] or content_height

    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=(width, height))
    c.setTitle(receipt_filename(sale["sale_number"]))
    usable = width - 2 * margin
    y = height - margin - size

    for kind, left, right in rows:
        if y < margin + leading:
            c.showPage()
            y = height - margin - size
        if kind == "title":
            c.setFont(FONT_BOLD, size + 3)
            c.drawCentredString(width / 2, y, _fit(left, usable, FONT_BOLD, size + 3))
            y -= leading * 1.3
            continue
        if kind == "rule":
            c.setLineWidth(0.5)
            c.setDash(2, 2)
            c.line(margin, y + size / 3, width - margin, y + size / 3)
            c.setDash()
        elif kind == "center":
            c.setFont(FONT, size)
            c.drawCentredString(width / 2, y, _fit(left, usable, FONT, size))
        elif kind == "text":
            c.setFont(FONT, size)
            c.drawString(margin, y, _fit(left, usable, FONT, size))
        else:
            font = FONT_BOLD if kind == "total" else FONT
            fsize = size + 1 if kind == "total" else size
            c.setFont(font, fsize)
            right_w = stringWidth(right, font, fsize)
            c.drawString(margin, y, _fit(left, usable - right_w - 4, font, fsize))
            c.drawRightString(width - margin, y, right)
        y -= leading

    if y - QR_SIZE < margin:
        c.showPage()
        y = height - margin
    widget = QrCodeWidget(qr_payload(sale))
    x0, y0, x1, y1 = widget.getBounds()
    drawing = Drawing(QR_SIZE, QR_SIZE, transform=[QR_SIZE / (x1 - x0), 0, 0, QR_SIZE / (y1 - y0), 0, 0])
    drawing.add(widget)
    renderPDF.draw(drawing, c, (width - QR_SIZE) / 2, y - QR_SIZE)

    c.showPage()
    c.save()
    return buf.getvalue()
