import uuid
from decimal import Decimal
from typing import List

from pydantic import BaseModel, Field


class Suggestion(BaseModel):
    food_id: uuid.UUID
    name: str
    reason: str
    image: str = ""
    price: Decimal


class UpsellRequest(BaseModel):
    food_item_ids: List[uuid.UUID] = Field(..., description="Food items currently in the cart.")
