import json
import os

import httpx
import pytest

from schemas.payment_models import Payment, ProcessedBump, ProductType
from services.invoice import InvoiceRenderer
from services.mailer import EmailDeliveryError, PurchaseMailer
from services.pixel_tracker import ConversionTracker, hash_sha256


def _payment(**overrides):
    fields = dict(
        order_id="order_1", gateway_payment_id="pay_1", username="Asha", email="buyer@example.com",
        phone="9876543210", product_id="course-1", product_type=ProductType.COURSE, amount=999,
    )
    fields.update(overrides)
    return Payment(**fields)


class FakeResponse:
    def __init__(self, status_code, headers=None):
        self.status_code = status_code
        self.headers = headers or {}


class FakeSendGrid:
    def __init__(self, status_code=202):
        self.status_code = status_code
        self.messages = []

    def send(self, message):
        self.messages.append(message)
        return FakeResponse(self.status_code, {"X-Message-Id": "msg-1"})


# =============================================================================
# INVOICE
# =============================================================================

async def test_invoice_is_written_as_pdf(tmp_path):
    renderer = InvoiceRenderer(output_dir=str(tmp_path), brand_name="Academy")
    payment = _payment(order_bumps=[ProcessedBump(bump_id="b", product_id="e", title="Cheat Sheet", amount=199)])

    path = await renderer.render(payment, "Python Foundations")

    assert path == os.path.join(str(tmp_path), "invoice_order_1.pdf")
    with open(path, "rb") as f:
        assert f.read(5) == b"%PDF-"


def test_invoice_name_is_restricted_to_safe_characters(tmp_path):
    renderer = InvoiceRenderer(output_dir=str(tmp_path))

    path = renderer.invoice_path("../../etc/rcpt 1")

    assert path == os.path.join(str(tmp_path), "invoice_______etc_rcpt_1.pdf")


# =============================================================================
# EMAIL
# =============================================================================

def _mailer(client):
    return PurchaseMailer(
        api_key="SG.test", from_email="no-reply@academy.test", brand_name="Academy",
        frontend_url="https://learn.test", client=client,
    )


async def test_course_email_for_new_user(tmp_path):
    client = FakeSendGrid()
    invoice = tmp_path / "invoice_order_1.pdf"
    invoice.write_bytes(b"%PDF-1.4 test")

    receipt = await _mailer(client).send_purchase_confirmation(
        "buyer@example.com", _payment(), "Python Foundations",
        invoice_path=str(invoice), reset_link="https://learn.test/set-password?token=t&email=e",
    )

    assert receipt.subject == "Course Access - Start Learning Now!"
    assert receipt.message_id == "msg-1"
    body = client.messages[0].get()
    html = body["content"][0]["value"]
    assert "set-password?token=t" in html
    assert "pay_1" in html
    assert body["attachments"][0]["filename"] == "invoice.pdf"


async def test_existing_user_gets_start_learning_link():
    mailer = _mailer(FakeSendGrid())

    html = mailer.build_html(_payment(product_type=ProductType.DIGITAL_PRODUCT), "Guide", reset_link=None)

    assert "https://learn.test/home" in html
    assert "set your password" not in html


async def test_digital_product_subject():
    client = FakeSendGrid()

    receipt = await _mailer(client).send_purchase_confirmation(
        "buyer@example.com", _payment(product_type=ProductType.DIGITAL_PRODUCT), "Guide",
    )

    assert receipt.subject == "Your Purchase Is Ready"


async def test_rejected_email_raises():
    with pytest.raises(EmailDeliveryError):
        await _mailer(FakeSendGrid(status_code=500)).send_purchase_confirmation(
            "buyer@example.com", _payment(), "Python Foundations",
        )


async def test_invalid_recipient_raises():
    with pytest.raises(EmailDeliveryError):
        await _mailer(FakeSendGrid()).send_purchase_confirmation("not-an-email", _payment(), "x")


# =============================================================================
# PIXEL
# =============================================================================

async def test_pixel_posts_hashed_purchase_event():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"events_received": 1})

    tracker = ConversionTracker(
        pixel_id="px1", access_token="tok", graph_url="https://graph.test/v18.0",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )

    ok = await tracker.track_purchase(_payment(), "course-1", "Python Foundations", bump_ids=["ebook-1"])

    assert ok is True
    request = seen[0]
    assert request.url.path == "/v18.0/px1/events"
    assert request.url.params["access_token"] == "tok"
    event = json.loads(request.content)["data"][0]
    assert event["event_name"] == "Purchase"
    assert event["action_source"] == "website"
    assert event["user_data"]["em"] == [hash_sha256("buyer@example.com")]
    assert event["custom_data"]["content_type"] == "product"
    assert [c["id"] for c in event["custom_data"]["contents"]] == ["course-1", "ebook-1"]


async def test_pixel_swallows_errors():
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    tracker = ConversionTracker(
        pixel_id="px1", access_token="tok", graph_url="https://graph.test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )

    assert await tracker.track_purchase(_payment(), "course-1", "x") is False


async def test_pixel_disabled_without_credentials():
    tracker = ConversionTracker(pixel_id="", access_token="")

    assert tracker.enabled is False
    assert await tracker.track_purchase(_payment(), "course-1", "x") is False
    await tracker.close()
