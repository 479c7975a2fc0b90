# models.py

from sqlalchemy import (Column, Integer, String, DateTime, Text, JSON,
                        ForeignKey, BIGINT, NUMERIC, BOOLEAN, Index, UniqueConstraint)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.dialects.postgresql import JSONB
from passlib.context import CryptContext
from database import Base


pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=True)
    role = Column(String(50), nullable=False, default="staff")

    def verify_password(self, password: str) -> bool:
        return pwd_context.verify(password, self.hashed_password)

    @staticmethod
    def hash_password(password: str) -> str:
        return pwd_context.hash(password)


class Store(Base):
    __tablename__ = "stores"
    id = Column(Integer, primary_key=True, index=True)
    erp_store_id = Column(BIGINT, unique=True, nullable=False, index=True)
    store_code = Column(String(64), unique=True, nullable=False)
    store_name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="Active")
    is_backup_warehouse = Column(BOOLEAN, nullable=False, default=False)
    # erp_store_id of the warehouse backing this store
    select_backup_warehouse = Column(BIGINT, nullable=True)
    store_cluster = Column(String(255))
    lat = Column(NUMERIC(10, 6))
    lng = Column(NUMERIC(10, 6))
    address = Column(Text)
    city = Column(String(255))
    contact_number = Column(String(32))
    radius = Column(JSONType)
    rider_store_id = Column(String(64))
    rider_access_token = Column(String(255))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class ErpItem(Base):
    __tablename__ = "erp_items"
    id = Column(Integer, primary_key=True)
    item_id = Column(String(64), nullable=False)
    outlet_id = Column(BIGINT, nullable=False)
    item_name = Column(String(512))
    mrp = Column(NUMERIC(12, 2))
    stock = Column(Integer, nullable=False, default=0)
    item_time_stamp = Column(String(14), nullable=False, default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("item_id", "outlet_id", name="uq_erp_item_outlet"),
        Index("ix_erp_items_outlet_ts", "outlet_id", "item_time_stamp"),
    )


class ProductVariantInfo(Base):
    """Storefront variant mirror, linked to its ERP item and publishing outlet."""
    __tablename__ = "product_variant_info"
    id = Column(Integer, primary_key=True)
    variant_id = Column(BIGINT, unique=True, nullable=False)
    product_id = Column(BIGINT, nullable=False, index=True)
    inventory_item_id = Column(BIGINT, index=True)
    location_id = Column(BIGINT)
    sku = Column(String(255), index=True)
    item_id = Column(String(64), index=True)
    outlet_id = Column(BIGINT, index=True)
    product_title = Column(String(512))
    variant_title = Column(String(255))
    product_image = Column(String(2048))
    tags = Column(Text)
    tax_category = Column(String(32))
    price = Column(NUMERIC(12, 2))
    compare_at_price = Column(NUMERIC(12, 2))
    is_new_product = Column(BOOLEAN, nullable=False, default=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class HybridStock(Base):
    __tablename__ = "hybrid_stock"
    id = Column(Integer, primary_key=True)
    sku = Column(String(255), nullable=False)
    outlet_id = Column(BIGINT, nullable=False)
    store_code = Column(String(64))
    item_id = Column(String(64))
    product_id = Column(BIGINT, index=True)
    variant_id = Column(BIGINT)
    product_title = Column(String(512))
    variant_title = Column(String(255))
    product_image = Column(String(2048))
    primary_stock = Column(Integer, nullable=False, default=0)
    back_up_stock = Column(Integer, nullable=False, default=0)
    hybrid_stock = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("sku", "outlet_id", name="uq_hybrid_sku_outlet"),
    )


class Order(Base):
    __tablename__ = "orders"
    id = Column(BIGINT, primary_key=True, autoincrement=False)
    order_number = Column(Integer, index=True)
    name = Column(String(64))
    email = Column(String(255))
    phone = Column(String(32))
    financial_status = Column(String(50))
    gateway = Column(String(255))
    currency = Column(String(10))
    line_items = Column(JSONType, nullable=False, default=list)
    shipping_address = Column(JSONType)
    billing_address = Column(JSONType)
    note_attributes = Column(JSONType)
    total_shipping = Column(NUMERIC(12, 2), default=0)
    total_discounts = Column(NUMERIC(12, 2), default=0)
    total_price = Column(NUMERIC(12, 2), default=0)
    taxes_included = Column(BOOLEAN, default=True)
    tags = Column(Text)
    created_at = Column(DateTime(timezone=True))
    processed_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    splits = relationship("OrderSplit", back_populates="order")


class OrderSplit(Base):
    __tablename__ = "order_splits"
    id = Column(Integer, primary_key=True)
    order_reference_id = Column(BIGINT, ForeignKey("orders.id"), nullable=False, index=True)
    order_number = Column(Integer, nullable=False)
    split_id = Column(String(128), nullable=False, index=True)
    store_code = Column(String(64), nullable=False)
    store_name = Column(String(255))
    erp_store_id = Column(BIGINT, nullable=False)
    erp_previous_store_id = Column(BIGINT)
    line_items = Column(JSONType, nullable=False, default=list)
    order_status = Column(String(32), nullable=False, default="new")
    on_hold_status = Column(String(16))
    on_hold_comment = Column(Text)
    re_assign_status = Column(BOOLEAN, nullable=False, default=False)
    # status -> epoch milliseconds, append-only
    time_stamp = Column(JSONType, nullable=False, default=dict)
    erp_order_push = Column(BOOLEAN, nullable=False, default=False)
    tpl_status = Column(BOOLEAN)
    tpl_task_id = Column(String(64))
    tpl_status_code = Column(String(64))
    tpl_message = Column(JSONType, default=lambda: {"status": "", "msg": ""})
    rider_name = Column(String(255))
    rider_contact = Column(String(32))
    cancelled_at = Column(DateTime(timezone=True))
    closed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    order = relationship("Order", back_populates="splits")

    __table_args__ = (
        UniqueConstraint("order_reference_id", "store_code", name="uq_split_order_store"),
    )


class SyncStatus(Base):
    __tablename__ = "sync_status"
    id = Column(Integer, primary_key=True)
    scope = Column(String(32), nullable=False, default="new_products")
    is_syncing = Column(BOOLEAN, nullable=False, default=False)
    last_sync_started_at = Column(DateTime(timezone=True))
    last_sync_completed_at = Column(DateTime(timezone=True))
    overall_status = Column(String(20), nullable=False, default="running")
    sync_types = Column(JSONType, nullable=False, default=dict)
    # variant ids matched by the price stage, consumed by the inventory stage
    context = Column(JSONType, default=dict)
    note = Column(Text)
    user_dismissed_at = Column(DateTime(timezone=True))


class NotificationLog(Base):
    __tablename__ = "notification_log"
    id = Column(Integer, primary_key=True)
    notification_info = Column(String(512), nullable=False)
    notification_details = Column(JSONType, nullable=False, default=dict)
    log_type = Column(String(10), nullable=False, default="info")
    notification_view_status = Column(BOOLEAN, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)


class SyncLease(Base):
    __tablename__ = "sync_leases"
    id = Column(Integer, primary_key=True)
    sync_type = Column(String(64), nullable=False)
    scope = Column(String(64), nullable=False)
    holder = Column(String(128), nullable=False)
    acquired_at = Column(DateTime(timezone=True), nullable=False)
    heartbeat_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("sync_type", "scope", name="uq_sync_lease_scope"),
    )


class NotificationTemplate(Base):
    __tablename__ = "notification_templates"
    id = Column(Integer, primary_key=True)
    channel = Column(String(16), nullable=False)   # sms | email | whatsapp | other
    event = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default="active")  # active | draft | archived
    template_id = Column(String(128))
    body = Column(Text)

    __table_args__ = (
        UniqueConstraint("channel", "event", name="uq_template_channel_event"),
    )
