import base64
import hashlib
import hmac

import pytest

import models
from services import customer_notify
from services.errors import ExternalServiceError
from utils import format_phone_number, local_phone_number, verify_hmac

from conftest import FakeEmail, FakeSms


@pytest.mark.parametrize("raw,expected", [
    ("+91 98765 43210", "919876543210"),
    ("9876543210", "919876543210"),
    ("919876543210", "919876543210"),
    ("441234567890", None),
    ("12345", None),
    (None, None),
])
def test_format_phone_number(raw, expected):
    assert format_phone_number(raw) == expected


def test_local_phone_number():
    assert local_phone_number("+919876543210") == "9876543210"
    assert local_phone_number("9876543210") == "9876543210"


def test_verify_hmac():
    body = b'{"id": 1}'
    header = base64.b64encode(hmac.new(b"secret", body, hashlib.sha256).digest()).decode()
    assert verify_hmac("secret", body, header)
    assert not verify_hmac("other", body, header)
    assert not verify_hmac("", body, header)


def test_default_sms_template(db, make_order):
    order = make_order()
    sms = FakeSms()

    customer_notify.send_sms(db, sms, order, "delivered")

    ((phone, text),) = sms.sent
    assert phone == "919876543210"
    assert text.startswith("Dear Asha Rao,")
    assert "(#1001) is delivered" in text
    assert "7259124665" in text


def test_stored_template_overrides_default(db, make_order):
    db.add(models.NotificationTemplate(channel="sms", event="confirm", status="active",
                                       body="Hi {{ customer_name }}, {{ order_name }} is confirmed."))
    db.commit()
    sms = FakeSms()

    customer_notify.send_sms(db, sms, make_order(), "confirm")

    assert sms.sent[0][1] == "Hi Asha Rao, #1001 is confirmed."


def test_inactive_template_disables_the_message(db, make_order):
    db.add(models.NotificationTemplate(channel="email", event="cancel", status="draft", template_id="X"))
    db.commit()
    email = FakeEmail()

    assert customer_notify.send_email(db, email, make_order(), "cancel") is None
    assert email.sent == []


def test_events_without_template_send_nothing(db, make_order):
    email = FakeEmail()
    assert customer_notify.send_email(db, email, make_order(), "confirm") is None
    assert email.sent == []


def test_invalid_phone_raises(db, make_order):
    order = make_order()
    order.shipping_address = {**order.shipping_address, "phone": "123"}
    order.phone = None
    db.commit()
    with pytest.raises(ExternalServiceError):
        customer_notify.send_sms(db, FakeSms(), order, "confirm")


def test_email_payload_uses_split_lines(db, make_order):
    order = make_order(shipping="40.00", discount="10.00")
    split = models.OrderSplit(line_items=[{"title": "Product A", "quantity": 2, "price": "100.00"}])

    data = customer_notify.email_template_data(order, split)

    assert data["orderName"] == "#1001"
    assert data["itemsCount"] == 2
    assert data["totalPrice"] == "200.00"
    assert data["finalTotalPrice"] == "230.00"
    assert data["currency"] == "₹"
