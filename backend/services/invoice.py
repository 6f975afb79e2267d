"""
Invoice Renderer
================
Single-page PDF receipt per order, written to ``{INVOICE_DIR}/invoice_{order_id}.pdf``.
Invoices are disposable: they can always be regenerated from the ledger row.

pip install reportlab
"""

import asyncio
import os
import re
from datetime import datetime

import structlog
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from config import settings
from schemas.payment_models import Payment

UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")


class InvoiceRenderer:

    def __init__(self, output_dir: str = settings.INVOICE_DIR, brand_name: str = settings.BRAND_NAME):
        self.output_dir = output_dir
        self.brand_name = brand_name
        self._logger = structlog.get_logger().bind(component="invoice")

    def invoice_path(self, order_id: str) -> str:
        safe_id = UNSAFE_NAME_CHARS.sub("_", order_id) or "unknown"
        return os.path.join(self.output_dir, f"invoice_{safe_id}.pdf")

    async def render(self, payment: Payment, product_title: str) -> str:
        """Render the receipt off the event loop and return its path."""
        path = self.invoice_path(payment.order_id)
        await asyncio.to_thread(self._draw, path, payment, product_title)
        self._logger.info("invoice_generated", order_id=payment.order_id, path=path)
        return path

    def _draw(self, path: str, payment: Payment, product_title: str) -> None:
        os.makedirs(self.output_dir, exist_ok=True)
        width, height = A4
        pdf = canvas.Canvas(path, pagesize=A4)
        pdf.setTitle(f"Invoice {payment.order_id}")

        pdf.setFont("Helvetica-Bold", 20)
        pdf.drawCentredString(width / 2, height - 72, "Invoice")
        pdf.setFont("Helvetica", 10)
        pdf.drawCentredString(width / 2, height - 90, self.brand_name)

        lines = [
            f"Invoice Number: {payment.order_id}",
            f"Date: {(payment.paid_at or datetime.utcnow()).strftime('%d %b %Y')}",
            "",
            f"Customer: {payment.username}",
            f"Email: {payment.email}",
            "",
            f"{payment.product_type.value}: {product_title}",
        ]
        lines += [f"Add-on: {bump.title} ({payment.currency} {bump.amount:.2f})" for bump in payment.order_bumps]
        lines += [
            f"Amount: {payment.currency} {payment.amount:.2f}",
            f"Payment Method: {payment.gateway.display_name}",
            f"Payment ID: {payment.gateway_payment_id or '-'}",
        ]

        pdf.setFont("Helvetica", 12)
        y = height - 140
        for line in lines:
            pdf.drawString(72, y, line)
            y -= 18

        pdf.drawCentredString(width / 2, y - 36, "Thank you for your purchase!")
        pdf.showPage()
        pdf.save()
