# schemas.py
from __future__ import annotations

from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, Field, ConfigDict, field_validator

# =========================
# Base model configurations
# =========================

class ORMBase(BaseModel):
    """Base for models mapped to SQLAlchemy objects."""
    model_config = ConfigDict(from_attributes=True)

class APIBase(BaseModel):
    """Base for models mapped to external API payloads."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

# =========================
# Stores
# =========================

class StoreBase(BaseModel):
    erp_store_id: int
    store_code: str = Field(..., max_length=64)
    store_name: str
    status: str = "Active"
    is_backup_warehouse: bool = False
    select_backup_warehouse: Optional[int] = None
    store_cluster: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    address: Optional[str] = None
    city: Optional[str] = None
    contact_number: Optional[str] = None
    radius: Optional[Dict[str, Any]] = None
    rider_store_id: Optional[str] = None

    @field_validator("status")
    @classmethod
    def _status(cls, v: str) -> str:
        if v not in ("Active", "Inactive"):
            raise ValueError("status must be Active or Inactive")
        return v

class StoreCreate(StoreBase):
    rider_access_token: Optional[str] = None

class StoreUpdate(BaseModel):
    store_name: Optional[str] = None
    status: Optional[str] = None
    is_backup_warehouse: Optional[bool] = None
    select_backup_warehouse: Optional[int] = None
    store_cluster: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    address: Optional[str] = None
    city: Optional[str] = None
    contact_number: Optional[str] = None
    rider_store_id: Optional[str] = None
    rider_access_token: Optional[str] = None

class Store(StoreBase):
    id: int
    model_config = ConfigDict(from_attributes=True)

# =========================
# Catalog / stock read models
# =========================

class ErpItem(ORMBase):
    item_id: str
    outlet_id: int
    item_name: Optional[str] = None
    mrp: Optional[float] = None
    stock: int
    item_time_stamp: str

class VariantInfoIn(APIBase):
    variant_id: int
    product_id: int
    inventory_item_id: Optional[int] = None
    location_id: Optional[int] = None
    sku: Optional[str] = None
    item_id: Optional[str] = None
    outlet_id: Optional[int] = None
    product_title: Optional[str] = None
    variant_title: Optional[str] = None
    product_image: Optional[str] = None
    tags: Optional[str] = None
    tax_category: Optional[str] = None
    price: Optional[float] = None
    compare_at_price: Optional[float] = None

class VariantInfo(ORMBase):
    variant_id: int
    product_id: int
    sku: Optional[str] = None
    item_id: Optional[str] = None
    outlet_id: Optional[int] = None
    product_title: Optional[str] = None
    variant_title: Optional[str] = None
    tax_category: Optional[str] = None
    is_new_product: bool

class HybridStock(ORMBase):
    sku: str
    outlet_id: int
    store_code: Optional[str] = None
    item_id: Optional[str] = None
    product_id: Optional[int] = None
    variant_id: Optional[int] = None
    product_title: Optional[str] = None
    variant_title: Optional[str] = None
    product_image: Optional[str] = None
    primary_stock: int
    back_up_stock: int
    hybrid_stock: int

# =========================
# Orders and splits
# =========================

class OrderSplit(ORMBase):
    id: int
    order_reference_id: int
    order_number: int
    split_id: str
    store_code: str
    store_name: Optional[str] = None
    erp_store_id: int
    erp_previous_store_id: Optional[int] = None
    line_items: List[Dict[str, Any]] = Field(default_factory=list)
    order_status: str
    on_hold_status: Optional[str] = None
    on_hold_comment: Optional[str] = None
    re_assign_status: bool
    time_stamp: Dict[str, Any] = Field(default_factory=dict)
    erp_order_push: bool
    tpl_status: Optional[bool] = None
    tpl_task_id: Optional[str] = None
    tpl_status_code: Optional[str] = None
    tpl_message: Optional[Dict[str, Any]] = None
    rider_name: Optional[str] = None
    rider_contact: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

class Order(ORMBase):
    id: int
    order_number: Optional[int] = None
    name: Optional[str] = None
    email: Optional[str] = None
    financial_status: Optional[str] = None
    total_price: Optional[float] = None
    line_items: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: Optional[datetime] = None

class TransitionOut(BaseModel):
    split: OrderSplit
    failed_effects: List[str] = Field(default_factory=list)

class SplitRequest(BaseModel):
    method: Optional[str] = None
    store_override: Optional[int] = Field(None, description="erpStoreId to send the whole order to")

class OnHoldRequest(BaseModel):
    comment: str = Field(..., min_length=1)
    on_hold_status: str = "open"

class OnHoldStatusUpdate(BaseModel):
    on_hold_status: str
    comment: Optional[str] = None

class AdminStatusRequest(BaseModel):
    order_status: str
    comment: Optional[str] = None

class ReassignMove(BaseModel):
    line_item_id: int = Field(..., alias="lineItemId")
    quantity: int = Field(..., gt=0)
    store_code: str = Field(..., alias="storeCode")
    model_config = ConfigDict(populate_by_name=True)

class ReassignRequest(BaseModel):
    moves: List[ReassignMove] = Field(..., min_length=1)

# =========================
# Sync / notifications
# =========================

class SyncStatus(ORMBase):
    id: int
    scope: str
    is_syncing: bool
    overall_status: str
    sync_types: Dict[str, Any] = Field(default_factory=dict)
    last_sync_started_at: Optional[datetime] = None
    last_sync_completed_at: Optional[datetime] = None
    user_dismissed_at: Optional[datetime] = None
    note: Optional[str] = None

class Notification(ORMBase):
    id: int
    notification_info: str
    notification_details: Dict[str, Any] = Field(default_factory=dict)
    log_type: str
    notification_view_status: bool
    created_at: Optional[datetime] = None

class MarkReadRequest(BaseModel):
    ids: Optional[List[int]] = None

class NotificationTemplateIn(BaseModel):
    channel: str
    event: str
    status: str = "active"
    template_id: Optional[str] = None
    body: Optional[str] = None

class NotificationTemplate(NotificationTemplateIn):
    id: int
    model_config = ConfigDict(from_attributes=True)

# =========================
# Auth
# =========================

class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
