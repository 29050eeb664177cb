from enum import Enum
from tortoise import fields, models
import uuid


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"  # Checkout always creates orders in this state
    CANCELLED = "CANCELLED"


class Order(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    # Sum of line price x quantity at order time, never re-derived from FoodItem
    total = fields.DecimalField(max_digits=14, decimal_places=2)
    status = fields.CharEnumField(OrderStatus, default=OrderStatus.PENDING)
    # Client supplied retry token; the unique constraint makes duplicate submissions collide
    idempotency_key = fields.CharField(max_length=128, null=True, unique=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "orders"
        indexes = [
            ("status",),                 # Status-based filtering
            ("created_at",),             # Newest first listing
        ]


class OrderItem(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    order = fields.ForeignKeyField("models.Order", related_name="items", on_delete=fields.CASCADE)
    food_item = fields.ForeignKeyField("models.FoodItem", related_name="order_items", on_delete=fields.RESTRICT)
    quantity = fields.IntField()
    price = fields.DecimalField(max_digits=12, decimal_places=2) # Unit price snapshot

    class Meta:
        table = "order_items"
        indexes = [
            ("order_id",),              # Order line items
            ("food_item_id",),          # Food item popularity
        ]
