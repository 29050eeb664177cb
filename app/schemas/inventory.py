import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from app.models.inventory import AlertSeverity, AlertType


class IngredientRecord(BaseModel):
    """Ingredient stock row as read from the store (or the cache)."""
    id: uuid.UUID
    name: str
    quantity: Decimal
    threshold: Decimal
    unit: str
    expiry_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class IngredientCreate(BaseModel):
    name: str = Field(..., min_length=1, description="Unique ingredient name (e.g., Paneer).")
    quantity: Decimal = Field(..., ge=0, description="Initial stock level.")
    threshold: Decimal = Field(..., ge=0, description="Reorder point; below it a LOW_STOCK alert is raised.")
    unit: str = Field(..., min_length=1, description="Unit of measure, e.g. kg or L.")
    expiry_date: Optional[datetime] = None


class StockAdjustment(BaseModel):
    """Admin stock correction. Positive restocks, negative writes off."""
    delta: Decimal = Field(..., description="Signed change applied atomically to the current quantity.")


class NewAlert(BaseModel):
    type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    ingredient_id: Optional[uuid.UUID] = None
    metadata: Optional[dict[str, Any]] = None

    def dedup_key(self) -> tuple:
        return (self.type, self.severity, self.ingredient_id, self.title, self.message)


class ProposedAlert(BaseModel):
    """Alert suggested by the analysis provider; the ingredient is referenced by name."""
    type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    ingredient_name: Optional[str] = None


class AlertRecord(NewAlert):
    id: uuid.UUID
    is_read: bool = False
    created_at: Optional[datetime] = None
    ingredient: Optional[IngredientRecord] = None


class DashboardStats(BaseModel):
    total: int
    low_stock: int
    near_expiry: int
    total_quantity: Decimal


class InventoryDashboard(BaseModel):
    ingredients: List[IngredientRecord]
    stats: DashboardStats


class AnalysisResult(BaseModel):
    success: bool = True
    alerts_created: int
    source: str = Field(..., description="'ai' when the suggestion provider produced the alerts, else 'rules'.")
