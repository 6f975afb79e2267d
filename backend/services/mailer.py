"""
Purchase Mailer
===============
Transactional purchase-confirmation email via SendGrid, with the invoice
PDF attached and, for accounts created by the purchase, a set-password link.

pip install sendgrid
"""

import asyncio
import base64
import html
import os
from typing import Optional

import structlog
from pydantic import BaseModel
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Attachment, Disposition, FileContent, FileName, FileType, Mail

from config import settings
from schemas.payment_models import Payment, ProductType


class EmailDeliveryError(Exception):
    """Provider refused or failed to accept the message"""


class EmailReceipt(BaseModel):
    recipient: str
    subject: str
    status_code: int
    message_id: Optional[str] = None


SUBJECTS = {
    ProductType.COURSE: "Course Access - Start Learning Now!",
}
DEFAULT_SUBJECT = "Your Purchase Is Ready"


class PurchaseMailer:

    def __init__(
        self,
        api_key: str = settings.SENDGRID_API_KEY,
        from_email: str = settings.SENDGRID_FROM_EMAIL,
        brand_name: str = settings.BRAND_NAME,
        frontend_url: str = settings.FRONTEND_URL,
        client: Optional[SendGridAPIClient] = None,
    ):
        self._client = client or SendGridAPIClient(api_key)
        self.from_email = from_email
        self.brand_name = brand_name
        self.frontend_url = frontend_url.rstrip("/")
        self._logger = structlog.get_logger().bind(component="mailer")

    def build_html(self, payment: Payment, product_title: str, reset_link: Optional[str]) -> str:
        title = html.escape(product_title)
        if reset_link:
            access_block = f"""
        <p><b>Important: Set Up Your Password!</b></p>
        <p>You now have access to <b>{title}</b>, but before you can start you need to <b>set up a password</b> for secure login.</p>
        <p><a href="{html.escape(reset_link)}" style="color: #007bff; font-weight: bold;">Click here to set your password</a>. This link expires in {settings.RESET_TOKEN_TTL_MINUTES} minutes.</p>
        """
        else:
            access_block = f"""
        <p><b>You're all set!</b></p>
        <p>You can access your purchase anytime:</p>
        <p><a href="{self.frontend_url}/home" style="color: #007bff; font-weight: bold;">Start Learning Now</a></p>
        """
        bumps = "".join(
            f"<li>{html.escape(b.title)}</li>" for b in payment.order_bumps
        )
        bump_block = f"<p>Also included:</p><ul>{bumps}</ul>" if bumps else ""
        return f"""
        <h3><span style='color: #23a925;'>{html.escape(self.brand_name)}</span></h3>
        <h5>Congratulations! Your payment was successful.</h5>
        <p>You have successfully purchased <b>{title}</b>.</p>
        <p><b>Payment ID:</b> {html.escape(payment.gateway_payment_id or payment.order_id)}</p>
        {bump_block}
        <br/>
        {access_block}
        <p>We're excited to have you onboard!</p>
        """

    def build_message(
        self,
        to_email: str,
        payment: Payment,
        product_title: str,
        invoice_path: Optional[str],
        reset_link: Optional[str],
    ) -> Mail:
        message = Mail(
            from_email=self.from_email,
            to_emails=to_email.strip().strip("'"),
            subject=SUBJECTS.get(payment.product_type, DEFAULT_SUBJECT),
            html_content=self.build_html(payment, product_title, reset_link),
        )
        if invoice_path and os.path.exists(invoice_path):
            with open(invoice_path, "rb") as f:
                encoded = base64.b64encode(f.read()).decode()
            message.attachment = Attachment(
                FileContent(encoded),
                FileName("invoice.pdf"),
                FileType("application/pdf"),
                Disposition("attachment"),
            )
        return message

    async def send_purchase_confirmation(
        self,
        to_email: str,
        payment: Payment,
        product_title: str,
        invoice_path: Optional[str] = None,
        reset_link: Optional[str] = None,
    ) -> EmailReceipt:
        if not to_email or "@" not in to_email:
            raise EmailDeliveryError(f"Invalid recipient email: {to_email!r}")

        message = self.build_message(to_email, payment, product_title, invoice_path, reset_link)
        subject = SUBJECTS.get(payment.product_type, DEFAULT_SUBJECT)

        try:
            response = await asyncio.to_thread(self._client.send, message)
        except Exception as e:
            self._logger.error("email_failed", order_id=payment.order_id, error=str(e))
            raise EmailDeliveryError(str(e)) from e

        if response.status_code >= 400:
            self._logger.error("email_rejected", order_id=payment.order_id, status=response.status_code)
            raise EmailDeliveryError(f"SendGrid returned {response.status_code}")

        receipt = EmailReceipt(
            recipient=to_email,
            subject=subject,
            status_code=response.status_code,
            message_id=(response.headers or {}).get("X-Message-Id"),
        )
        self._logger.info("email_sent",
                          order_id=payment.order_id,
                          subject=subject,
                          message_id=receipt.message_id)
        return receipt
