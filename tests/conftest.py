"""
Test configuration: a fresh in-memory SQLite database per test, fake outbound
clients that record their calls, and a TestClient with dependency overrides.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models
from auth import get_current_user
from database import Base, get_db, get_session_factory
from services import hybrid_stock, sync_tracker
from services.clients import SideEffectClients, get_clients
from services.errors import ExternalServiceError


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(autouse=True)
def _reset_tracker():
    sync_tracker._TASKS.clear()
    yield
    sync_tracker._TASKS.clear()


# ---------------------------------------------------------------------------
# Fake outbound clients
# ---------------------------------------------------------------------------

class FakeErp:
    """Serves flat item rows per outlet, filtered by the itemTimeStamp>= watermark in the query."""

    def __init__(self, rows: Optional[Dict[int, List[Dict[str, Any]]]] = None, page_size: int = 10000):
        self.rows = rows or {}
        self.page_size = page_size
        self.queries: List[str] = []
        self.fail_outlets = set()
        self.pushed: List[Dict[str, Any]] = []
        self.push_error: Optional[Exception] = None

    @staticmethod
    def _parse(query: str) -> Dict[str, str]:
        parsed = {}
        for part in query.split(","):
            if ">=" in part:
                key, value = part.split(">=", 1)
            else:
                key, value = part.split("==", 1)
            parsed[key] = value
        return parsed

    def iter_item_pages(self, query: str, limit: int = 10000):
        self.queries.append(query)
        parsed = self._parse(query)
        outlet = int(parsed["outletId"])
        if outlet in self.fail_outlets:
            raise ExternalServiceError("erp", f"outlet {outlet} unavailable", 500)
        watermark = int(parsed.get("itemTimeStamp", "0"))
        rows = [r for r in self.rows.get(outlet, []) if int(r["itemTimeStamp"]) >= watermark]
        pages = [rows[i:i + self.page_size] for i in range(0, len(rows), self.page_size)] or [[]]
        for page, items in enumerate(pages, start=1):
            yield page, items, len(pages)

    def find_item_id(self, item_reference_code: str):
        return None

    def push_sales_order(self, body: Dict[str, Any]) -> Dict[str, Any]:
        if self.push_error is not None:
            raise self.push_error
        self.pushed.append(body)
        return {"result": {"status": "success"}}


class FakeShopify:
    def __init__(self):
        self.price_calls: List[tuple] = []
        self.inventory_calls: List[tuple] = []
        self.cancelled: List[Any] = []
        self.fulfilled: List[tuple] = []
        self.fail_price_calls = set()
        self.fail_inventory = False
        self.fail_fulfillment = False
        self.location_id = 777

    def variants_bulk_update(self, product_id, variants):
        index = len(self.price_calls)
        self.price_calls.append((product_id, list(variants)))
        if index in self.fail_price_calls:
            raise ExternalServiceError("storefront", "User errors: price rejected")
        return {"productVariants": variants, "userErrors": []}

    def set_on_hand_quantities(self, set_quantities, reason="correction"):
        self.inventory_calls.append((list(set_quantities), reason))
        if self.fail_inventory:
            raise ExternalServiceError("storefront", "inventory rejected")
        return {"userErrors": []}

    def get_location_id(self, inventory_item_id):
        return self.location_id

    def cancel_order(self, order_id, reason="OTHER", refund=False, restock=True):
        self.cancelled.append(order_id)
        return {"job": {"id": "gid://shopify/Job/1"}}

    def create_fulfillment(self, order_id, line_item_ids=None):
        self.fulfilled.append((order_id, line_item_ids))
        if self.fail_fulfillment:
            raise ExternalServiceError("storefront", "No open fulfillment orders")
        return {"fulfillment": {"id": "gid://shopify/Fulfillment/1"}}


class FakeRider:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.tasks: List[Dict[str, Any]] = []
        self.cancelled: List[str] = []

    def get_serviceability(self, pickup, drop):
        if self.fail:
            raise ExternalServiceError("rider", "Location not serviceable")
        return {"serviceability": {"locationServiceAble": True, "riderServiceAble": True}, "payouts": {"total": 45}}

    def create_task(self, order_details, pickup_details, drop_details, order_items):
        self.tasks.append({"order_details": order_details, "order_items": order_items})
        return {"status": True, "taskId": 8842, "Status_code": "ACCEPTED", "message": "Task created"}

    def cancel_task(self, task_id):
        self.cancelled.append(task_id)
        return {"status": True, "status_code": "CANCELLED", "msg": "Task cancelled"}


class FakeSms:
    def __init__(self):
        self.sent: List[tuple] = []

    def send(self, phone, text):
        self.sent.append((phone, text))
        return "OK"


class FakeEmail:
    def __init__(self):
        self.sent: List[tuple] = []

    def send_template(self, to, template_id, template_data):
        self.sent.append((to, template_id, template_data))
        return {"data": {"succeeded": 1}}


@pytest.fixture
def fake_erp():
    return FakeErp()


@pytest.fixture
def fake_shopify():
    return FakeShopify()


@pytest.fixture
def fake_rider():
    return FakeRider()


@pytest.fixture
def clients(fake_erp, fake_shopify, fake_rider):
    return SideEffectClients(
        erp=fake_erp,
        shopify=fake_shopify,
        email=FakeEmail(),
        sms=FakeSms(),
        geocoder=None,
        rider_for_store=lambda store: fake_rider,
    )


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def make_store(db):
    def _make(code: str, outlet: int, backup: bool = False, select_backup: Optional[int] = None,
              status: str = "Active", name: Optional[str] = None) -> models.Store:
        store = models.Store(
            erp_store_id=outlet,
            store_code=code,
            store_name=name or f"Store {code}",
            status=status,
            is_backup_warehouse=backup,
            select_backup_warehouse=select_backup,
            lat=Decimal("12.971600"),
            lng=Decimal("77.594600"),
            address="1 MG Road",
            city="Bengaluru",
            contact_number="9876543210",
        )
        db.add(store)
        db.commit()
        return store
    return _make


@pytest.fixture
def seed_stock(db):
    """Mirror a variant for `sku` and give it `stock` units at `outlet` in the ERP mirror."""
    def _seed(sku: str, outlet: int, stock: int, mrp: str = "499.00", product_id: int = 100,
              ts: str = "20240101000000") -> models.ErpItem:
        item_id = f"I-{sku}"
        variant = db.query(models.ProductVariantInfo).filter_by(sku=sku).first()
        if variant is None:
            db.add(models.ProductVariantInfo(
                variant_id=9000 + sum(ord(c) for c in sku),
                product_id=product_id,
                inventory_item_id=7000 + sum(ord(c) for c in sku),
                sku=sku,
                item_id=item_id,
                outlet_id=outlet,
                product_title=f"Product {sku}",
                tax_category="GST_18",
                is_new_product=True,
            ))
        row = models.ErpItem(item_id=item_id, outlet_id=outlet, item_name=f"Item {sku}",
                             mrp=Decimal(mrp), stock=stock, item_time_stamp=ts)
        db.add(row)
        db.commit()
        hybrid_stock.recompute_for_items(db, [item_id])
        return row
    return _seed


@pytest.fixture
def make_order(db):
    def _make(order_id: int = 5001, number: int = 1001, lines=(("A", 2), ("B", 3)), outlet: Optional[int] = None,
              price: str = "100.00", shipping: str = "0", discount: str = "0",
              financial_status: str = "paid") -> models.Order:
        line_items = [
            {
                "id": 11 + i,
                "sku": sku,
                "quantity": qty,
                "productId": 100,
                "variantId": 9000 + sum(ord(c) for c in sku),
                "title": f"Product {sku}",
                "price": price,
                "properties": [],
            }
            for i, (sku, qty) in enumerate(lines)
        ]
        order = models.Order(
            id=order_id,
            order_number=number,
            name=f"#{number}",
            email="customer@example.com",
            phone="+91 98765 43210",
            financial_status=financial_status,
            gateway="PhonePe PG",
            currency="INR",
            line_items=line_items,
            shipping_address={
                "name": "Asha Rao", "first_name": "Asha", "last_name": "Rao",
                "address1": "22 Residency Rd", "city": "Bengaluru", "province": "Karnataka",
                "country": "India", "zip": "560025", "phone": "9876543210",
                "latitude": 12.96, "longitude": 77.60,
            },
            note_attributes=[{"name": "_outletId", "value": str(outlet)}] if outlet is not None else [],
            total_shipping=Decimal(shipping),
            total_discounts=Decimal(discount),
            total_price=Decimal("500.00"),
        )
        db.add(order)
        db.commit()
        return order
    return _make


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------

@pytest.fixture
def admin_user(db):
    user = models.User(username="admin", hashed_password=models.User.hash_password("pw"), role="admin")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def client(db, session_factory, clients, admin_user):
    from main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_current_user] = lambda: admin_user
    app.dependency_overrides[get_clients] = lambda: clients

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()
