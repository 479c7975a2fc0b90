from decimal import Decimal

import pytest

import models
from services import erp_order_push, tax


@pytest.mark.parametrize("amount,rate,expected", [
    ("118", 18, "18.00"),
    ("200", 18, "30.51"),
    ("105", Decimal("5"), "5.00"),
    ("100", 0, "0.00"),
    ("100", None, "0.00"),
])
def test_inclusive_tax(amount, rate, expected):
    assert tax.inclusive_tax(amount, rate) == Decimal(expected)


def test_rate_lookup_prefers_category_over_tags():
    assert tax.rate_for("GST_5", "tax_18") == Decimal("5")
    assert tax.rate_for(None, "dog, tax_12") == Decimal("12")
    assert tax.rate_for(None, ["tax_0"]) == Decimal("0")
    assert tax.rate_for(None, None) is None
    with pytest.raises(ValueError):
        tax.rate_for("VAT_20")


def test_payment_mode_mapping():
    assert erp_order_push.payment_mode("PhonePe PG") == "The Pet Project - Website"
    assert erp_order_push.payment_mode("cash") == "cash"
    assert erp_order_push.payment_mode(None) is None


@pytest.fixture
def two_split_order(db, make_store, seed_stock, make_order):
    """2 x A (S1) and 3 x B (S2) at 100.00 each, 50.00 discount, 40.00 shipping."""
    make_store("S1", 1)
    make_store("S2", 2)
    seed_stock("A", 1, 5)
    seed_stock("B", 2, 5)
    order = make_order(shipping="40.00", discount="50.00", outlet=1)
    lines = {li["sku"]: li for li in order.line_items}

    def _split(code, outlet, sku):
        li = lines[sku]
        split = models.OrderSplit(
            order_reference_id=order.id, order_number=1001, split_id=f"1001-{code}", store_code=code,
            erp_store_id=outlet,
            line_items=[{"id": li["id"], "quantity": li["quantity"], "itemReferenceCode": sku, "outletId": outlet,
                         "productId": 100, "variantId": li["variantId"], "title": li["title"],
                         "price": li["price"]}],
        )
        db.add(split)
        db.commit()
        return split

    return order, _split("S1", 1, "A"), _split("S2", 2, "B")


def test_first_split_carries_shipping_and_its_share_of_discount(db, two_split_order, fake_erp):
    order, first, _second = two_split_order

    body = erp_order_push.build_sales_order(db, order, first, erp=fake_erp)["salesOrder"]

    assert body["outletId"] == 1
    assert body["status"] == "pending"
    assert body["shippingCharge"] == 40.0
    assert body["orderDiscAmt"] == 20.0
    assert body["orderDiscPerc"] == 10.0
    assert body["totalAmount"] == 240.0
    # 30.51 on the goods plus 6.10 on shipping
    assert body["totalTaxAmount"] == 36.61
    assert body["totalQuantity"] == 2
    assert body["paymentMode"] == "The Pet Project - Website"
    assert body["customerMobile"] == "919876543210"
    assert body["onlineReferenceNo"] == "5001"
    (item,) = body["orderItems"]
    assert item["itemReferenceCode"] == "A"
    assert item["taxPercentage"] == 18.0
    assert item["itemAmount"] == 200.0


def test_later_splits_carry_no_shipping(db, two_split_order):
    order, _first, second = two_split_order

    body = erp_order_push.build_sales_order(db, order, second, status="cancelled")["salesOrder"]

    assert body["status"] == "cancelled"
    assert body["shippingCharge"] == 0.0
    assert body["orderDiscAmt"] == 30.0
    assert body["totalAmount"] == 300.0


def test_push_marks_split_pushed(db, two_split_order, fake_erp):
    _order, first, _second = two_split_order

    erp_order_push.push_split(db, fake_erp, first)

    assert first.erp_order_push is True
    assert len(fake_erp.pushed) == 1
