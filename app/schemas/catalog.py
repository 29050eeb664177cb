import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from app.schemas.inventory import IngredientRecord


class FoodIngredientRecord(BaseModel):
    id: uuid.UUID
    qty_required: Decimal
    ingredient: IngredientRecord


class FoodItemSummary(BaseModel):
    """Denormalized food item snapshot embedded in order listings."""
    id: uuid.UUID
    name: str
    price: Decimal
    description: str = ""
    image: str = ""


class FoodItemRecord(FoodItemSummary):
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    ingredients: List[FoodIngredientRecord] = Field(default_factory=list)


class FoodIngredientRequest(BaseModel):
    ingredient_id: uuid.UUID
    qty_required: Decimal = Field(..., gt=0, description="Amount consumed per portion, in the ingredient's unit.")


class FoodItemCreate(BaseModel):
    name: str = Field(..., min_length=1, description="Name of the dish (e.g., Chicken Biryani).")
    price: Decimal = Field(..., gt=0, description="Selling price of the item.")
    description: str = ""
    image: str = ""
    ingredients: List[FoodIngredientRequest] = Field(default_factory=list)


class FoodItemUpdate(BaseModel):
    """Partial update; `ingredients`, when given, replaces the whole requirement set."""
    name: Optional[str] = Field(None, min_length=1)
    price: Optional[Decimal] = Field(None, gt=0)
    description: Optional[str] = None
    image: Optional[str] = None
    ingredients: Optional[List[FoodIngredientRequest]] = None
