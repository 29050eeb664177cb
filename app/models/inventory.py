from enum import Enum
from tortoise import fields, models
import uuid


class AlertType(str, Enum):
    LOW_STOCK = "LOW_STOCK"
    NEAR_EXPIRY = "NEAR_EXPIRY"
    RAPID_DEPLETION = "RAPID_DEPLETION"
    CONSUMPTION_ANOMALY = "CONSUMPTION_ANOMALY"
    PREDICTIVE_SHORTAGE = "PREDICTIVE_SHORTAGE"


class AlertSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class Ingredient(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    name = fields.CharField(max_length=255, unique=True)
    # Only ever changed through atomic F() updates, never read-modify-write
    quantity = fields.DecimalField(max_digits=14, decimal_places=3)
    threshold = fields.DecimalField(max_digits=14, decimal_places=3) # Reorder point for low stock alerts
    unit = fields.CharField(max_length=32)
    expiry_date = fields.DatetimeField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "ingredients"
        indexes = [
            ("expiry_date",),  # Near expiry range scans
        ]


class AIAlert(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    type = fields.CharEnumField(AlertType)
    severity = fields.CharEnumField(AlertSeverity)
    title = fields.CharField(max_length=255)
    message = fields.TextField()
    # Weak reference: alerts outlive the ingredient they were raised for
    ingredient = fields.ForeignKeyField(
        "models.Ingredient", related_name="alerts", null=True, on_delete=fields.SET_NULL
    )
    is_read = fields.BooleanField(default=False)
    metadata = fields.JSONField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "ai_alerts"
        indexes = [
            ("is_read", "created_at"),  # Composite: unread alerts, newest first
        ]
