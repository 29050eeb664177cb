from pydantic import BaseModel, Field
from typing import List, Optional
import uuid
from datetime import datetime
from decimal import Decimal

from app.models.order import OrderStatus
from app.schemas.catalog import FoodItemSummary


class CartLine(BaseModel):
    """A single line of the submitted cart: food item, quantity and the price seen at cart time."""
    food_item_id: uuid.UUID
    quantity: int = Field(..., gt=0)
    price: Decimal = Field(..., ge=0)
    name: Optional[str] = None


class OrderRequest(BaseModel):
    """Schema for the full checkout request body."""
    items: List[CartLine]
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=128)


class NewOrderItem(BaseModel):
    food_item_id: uuid.UUID
    quantity: int
    price: Decimal


class NewOrder(BaseModel):
    total: Decimal
    status: OrderStatus = OrderStatus.COMPLETED
    idempotency_key: Optional[str] = None
    items: List[NewOrderItem]


class OrderItemRecord(NewOrderItem):
    id: uuid.UUID
    food_item: Optional[FoodItemSummary] = None


class OrderRecord(BaseModel):
    id: uuid.UUID
    total: Decimal
    status: OrderStatus
    idempotency_key: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[OrderItemRecord] = Field(default_factory=list)


class Pagination(BaseModel):
    page: int
    page_size: int
    total: int
    total_pages: int


class OrderPage(BaseModel):
    orders: List[OrderRecord]
    pagination: Pagination


class OrderPlacement(BaseModel):
    """Result of a successful checkout (or of a replayed idempotent one)."""
    order_id: uuid.UUID
    total: Decimal
    status: OrderStatus
    replayed: bool = False
    alerts_created: int = 0
