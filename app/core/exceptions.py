from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID


class PipelineStage(str, Enum):
    VALIDATING = "VALIDATING"
    RESERVING = "RESERVING"
    COMMITTING = "COMMITTING"
    COMMITTED = "COMMITTED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


class OrderError(Exception):
    """Base class for everything the order pipeline reports to its caller."""
    status_code = 500
    code = "order_error"

    def __init__(self, message: str, stage: Optional[PipelineStage] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def details(self) -> Optional[dict[str, Any]]:
        return None


class OrderRejected(OrderError, ValueError):
    """Recoverable by the caller: nothing was written."""
    status_code = 400
    code = "order_rejected"


class EmptyCartError(OrderRejected):
    code = "empty_cart"

    def __init__(self):
        super().__init__("Order must contain items.", PipelineStage.VALIDATING)


class InvalidCartLineError(OrderRejected):
    code = "invalid_cart_line"

    def __init__(self, index: int, reason: str):
        super().__init__(f"Cart line {index} is invalid: {reason}", PipelineStage.VALIDATING)
        self.index = index


class FoodItemNotFoundError(OrderRejected):
    status_code = 404
    code = "food_item_not_found"

    def __init__(self, food_item_id: UUID):
        super().__init__(f"Food item {food_item_id} not found", PipelineStage.VALIDATING)
        self.food_item_id = food_item_id


class IngredientNotFoundError(OrderRejected):
    status_code = 404
    code = "ingredient_not_found"

    def __init__(self, ingredient_id: UUID, stage: PipelineStage = PipelineStage.RESERVING):
        super().__init__(f"Ingredient {ingredient_id} not found", stage)
        self.ingredient_id = ingredient_id


class InsufficientInventoryError(OrderRejected):
    status_code = 409
    code = "insufficient_inventory"

    def __init__(
        self,
        ingredient_id: UUID,
        ingredient_name: str,
        required: Decimal,
        available: Decimal,
        stage: PipelineStage = PipelineStage.RESERVING,
    ):
        super().__init__(
            f"Insufficient inventory for {ingredient_name}. Required: {required}, Available: {available}",
            stage,
        )
        self.ingredient_id = ingredient_id
        self.ingredient_name = ingredient_name
        self.required = required
        self.available = available

    def details(self) -> dict[str, Any]:
        return {
            "ingredient_id": str(self.ingredient_id),
            "ingredient": self.ingredient_name,
            "required": str(self.required),
            "available": str(self.available),
        }


class OrderFailed(OrderError):
    """Commit stage failure (timeout, constraint violation, storage outage). Everything was rolled back."""
    status_code = 500
    code = "order_failed"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, PipelineStage.FAILED)
        self.cause = cause


class NotFoundError(LookupError):
    """Admin lookups for records that do not exist."""

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id
