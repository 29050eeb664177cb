"""
Persistence port consumed by the services.

The services never talk to the ORM directly; they depend on this protocol so the
same pipeline runs against Tortoise (production) or the in-memory store (tests).
Every method returns pydantic records from app.schemas, never ORM instances.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import AsyncContextManager, List, Optional, Protocol, Sequence
from uuid import UUID

from app.schemas.catalog import FoodItemCreate, FoodItemRecord, FoodItemUpdate
from app.schemas.inventory import AlertRecord, IngredientCreate, IngredientRecord, NewAlert
from app.schemas.order import NewOrder, OrderRecord


class IsolationLevel(str, Enum):
    READ_COMMITTED = "READ COMMITTED"
    REPEATABLE_READ = "REPEATABLE READ"
    SERIALIZABLE = "SERIALIZABLE"


class PersistenceError(Exception):
    """Storage layer failure (connection loss, constraint violation, ...)."""


class UniqueViolationError(PersistenceError):
    pass


class RecordNotFoundError(PersistenceError):
    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


def drop_duplicate_alerts(alerts: Sequence[NewAlert], existing: Sequence[NewAlert]) -> List[NewAlert]:
    """Removes exact duplicates, both within the batch and against `existing` alerts."""
    seen = {alert.dedup_key() for alert in existing}
    unique = []
    for alert in alerts:
        key = alert.dedup_key()
        if key in seen:
            continue
        seen.add(key)
        unique.append(alert)
    return unique


class PersistencePort(Protocol):

    def transaction(
        self,
        timeout: float,
        isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED,
    ) -> AsyncContextManager["PersistencePort"]:
        """
        Opens one transaction. The yielded port runs every call inside it; any exception
        escaping the block rolls everything back. Exceeding `timeout` raises TimeoutError
        after the rollback.
        """
        ...

    # --- Food items ---
    async def list_food_items(self) -> List[FoodItemRecord]: ...
    async def get_food_items(self, ids: Sequence[UUID]) -> List[FoodItemRecord]: ...
    async def create_food_item(self, data: FoodItemCreate) -> FoodItemRecord: ...
    async def update_food_item(self, food_item_id: UUID, data: FoodItemUpdate) -> Optional[FoodItemRecord]: ...

    # --- Ingredients ---
    async def list_ingredients(self) -> List[IngredientRecord]: ...
    async def get_ingredients(self, ids: Sequence[UUID]) -> List[IngredientRecord]: ...
    async def get_ingredient_by_name(self, name: str) -> Optional[IngredientRecord]: ...
    async def list_ingredients_expiring(self, start: datetime, end: datetime) -> List[IngredientRecord]: ...
    async def create_ingredient(self, data: IngredientCreate) -> IngredientRecord: ...

    async def increment_stock(self, ingredient_id: UUID, amount: Decimal) -> IngredientRecord:
        """Atomic `quantity = quantity + amount`; returns the post-update row."""
        ...

    async def decrement_stock(
        self, ingredient_id: UUID, amount: Decimal, *, guard: bool = False
    ) -> Optional[IngredientRecord]:
        """
        Atomic `quantity = quantity - amount`; returns the post-update row.
        With `guard` the update only applies while `quantity >= amount` and None is
        returned when it was refused. Raises RecordNotFoundError for unknown ids.
        """
        ...

    # --- Alerts ---
    async def list_alerts(self, is_read: bool, limit: int) -> List[AlertRecord]: ...
    async def mark_alert_read(self, alert_id: UUID) -> bool: ...
    async def create_alerts(self, alerts: Sequence[NewAlert], *, skip_duplicates: bool = True) -> int: ...

    # --- Orders ---
    async def create_order(self, order: NewOrder) -> OrderRecord: ...
    async def get_order(self, order_id: UUID) -> Optional[OrderRecord]: ...
    async def find_order_by_idempotency_key(self, key: str) -> Optional[OrderRecord]: ...
    async def list_orders(self, offset: int, limit: int) -> List[OrderRecord]: ...
    async def count_orders(self) -> int: ...
    async def count_orders_since(self, since: datetime) -> int: ...
