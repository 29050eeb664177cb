import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, List, Optional, Sequence
from uuid import UUID

from tortoise.exceptions import DBConnectionError, IntegrityError, OperationalError
from tortoise.expressions import F
from tortoise.transactions import in_transaction

from app.models.food import FoodIngredient, FoodItem
from app.models.inventory import AIAlert, Ingredient
from app.models.order import Order, OrderItem
from app.persistence.port import (
    IsolationLevel,
    PersistenceError,
    RecordNotFoundError,
    UniqueViolationError,
    drop_duplicate_alerts,
)
from app.schemas.catalog import (
    FoodIngredientRecord,
    FoodItemCreate,
    FoodItemRecord,
    FoodItemSummary,
    FoodItemUpdate,
    FoodIngredientRequest,
)
from app.schemas.inventory import AlertRecord, IngredientCreate, IngredientRecord, NewAlert
from app.schemas.order import NewOrder, OrderItemRecord, OrderRecord

log = logging.getLogger(__name__)


# ----------- ORM -> record conversion -----------

def _plain(value: Decimal) -> Decimal:
    # DecimalField normalizes on load, so 40.000 comes back as 4E+1
    return Decimal(format(value, "f"))


def _ingredient_record(ingredient: Ingredient) -> IngredientRecord:
    return IngredientRecord(
        id=ingredient.id,
        name=ingredient.name,
        quantity=_plain(ingredient.quantity),
        threshold=_plain(ingredient.threshold),
        unit=ingredient.unit,
        expiry_date=ingredient.expiry_date,
        created_at=ingredient.created_at,
        updated_at=ingredient.updated_at,
    )


def _food_summary(food: FoodItem) -> FoodItemSummary:
    return FoodItemSummary(
        id=food.id, name=food.name, price=_plain(food.price), description=food.description, image=food.image
    )


def _food_record(food: FoodItem) -> FoodItemRecord:
    """Requires `ingredients__ingredient` to be prefetched."""
    return FoodItemRecord(
        **_food_summary(food).model_dump(),
        created_at=food.created_at,
        updated_at=food.updated_at,
        ingredients=[
            FoodIngredientRecord(
                id=link.id,
                qty_required=_plain(link.qty_required),
                ingredient=_ingredient_record(link.ingredient),
            )
            for link in food.ingredients
        ],
    )


def _order_record(order: Order, with_items: bool = True) -> OrderRecord:
    """Requires `items__food_item` to be prefetched when `with_items` is set."""
    items = []
    if with_items:
        items = [
            OrderItemRecord(
                id=item.id,
                food_item_id=item.food_item_id,
                quantity=item.quantity,
                price=_plain(item.price),
                food_item=_food_summary(item.food_item),
            )
            for item in order.items
        ]
    return OrderRecord(
        id=order.id,
        total=_plain(order.total),
        status=order.status,
        idempotency_key=order.idempotency_key,
        created_at=order.created_at,
        updated_at=order.updated_at,
        items=items,
    )


async def _apply_isolation(conn, isolation_level: IsolationLevel) -> None:
    # Must be the first statement of the transaction. SQLite is always serializable.
    dialect = getattr(getattr(conn, "capabilities", None), "dialect", "")
    if dialect == "postgres":
        await conn.execute_script(f"SET TRANSACTION ISOLATION LEVEL {isolation_level.value}")


@asynccontextmanager
async def _translate_errors() -> AsyncIterator[None]:
    """Maps Tortoise exceptions onto the persistence port's taxonomy."""
    try:
        yield
    except IntegrityError as e:
        raise UniqueViolationError(str(e)) from e
    except (OperationalError, DBConnectionError) as e:
        raise PersistenceError(str(e)) from e


class TortoiseStore:
    """
    Persistence port backed by Tortoise ORM.

    A store created without a connection uses the default connection per call;
    `transaction()` yields a store bound to the transaction's connection.
    """

    def __init__(self, connection=None):
        self._conn = connection

    @asynccontextmanager
    async def transaction(
        self,
        timeout: float,
        isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED,
    ) -> AsyncIterator["TortoiseStore"]:
        async with _translate_errors():
            # Timeout cancels the block; in_transaction rolls back before TimeoutError surfaces
            async with asyncio.timeout(timeout):
                async with in_transaction() as conn:
                    await _apply_isolation(conn, isolation_level)
                    yield TortoiseStore(conn)

    @asynccontextmanager
    async def _atomic(self) -> AsyncIterator[object]:
        """Reuses the bound transaction, or opens a short one for multi-statement writes."""
        if self._conn is not None:
            yield self._conn
            return
        async with in_transaction() as conn:
            yield conn

    # --- Food items ---

    async def list_food_items(self) -> List[FoodItemRecord]:
        foods = await FoodItem.all().using_db(self._conn).order_by("name").prefetch_related("ingredients__ingredient")
        return [_food_record(food) for food in foods]

    async def get_food_items(self, ids: Sequence[UUID]) -> List[FoodItemRecord]:
        if not ids:
            return []
        foods = await FoodItem.filter(id__in=list(ids)).using_db(self._conn).prefetch_related("ingredients__ingredient")
        return [_food_record(food) for food in foods]

    async def _replace_requirements(self, food: FoodItem, requirements: Sequence[FoodIngredientRequest], conn) -> None:
        await FoodIngredient.filter(food_item_id=food.id).using_db(conn).delete()
        if requirements:
            await FoodIngredient.bulk_create(
                [
                    FoodIngredient(food_item=food, ingredient_id=req.ingredient_id, qty_required=req.qty_required)
                    for req in requirements
                ],
                using_db=conn,
            )

    async def create_food_item(self, data: FoodItemCreate) -> FoodItemRecord:
        async with _translate_errors():
            async with self._atomic() as conn:
                food = await FoodItem.create(
                    name=data.name,
                    price=data.price,
                    description=data.description,
                    image=data.image,
                    using_db=conn,
                )
                await self._replace_requirements(food, data.ingredients, conn)
                created = await TortoiseStore(conn).get_food_items([food.id])
        return created[0]

    async def update_food_item(self, food_item_id: UUID, data: FoodItemUpdate) -> Optional[FoodItemRecord]:
        async with _translate_errors():
            async with self._atomic() as conn:
                food = await FoodItem.get_or_none(id=food_item_id).using_db(conn)
                if not food:
                    return None
                changes = data.model_dump(exclude_unset=True, exclude={"ingredients"})
                for field, value in changes.items():
                    setattr(food, field, value)
                if changes:
                    await food.save(using_db=conn)
                if data.ingredients is not None:
                    await self._replace_requirements(food, data.ingredients, conn)
                updated = await TortoiseStore(conn).get_food_items([food.id])
        return updated[0]

    # --- Ingredients ---

    async def list_ingredients(self) -> List[IngredientRecord]:
        ingredients = await Ingredient.all().using_db(self._conn).order_by("name")
        return [_ingredient_record(i) for i in ingredients]

    async def get_ingredients(self, ids: Sequence[UUID]) -> List[IngredientRecord]:
        if not ids:
            return []
        ingredients = await Ingredient.filter(id__in=list(ids)).using_db(self._conn)
        return [_ingredient_record(i) for i in ingredients]

    async def get_ingredient_by_name(self, name: str) -> Optional[IngredientRecord]:
        ingredient = await Ingredient.get_or_none(name=name).using_db(self._conn)
        return _ingredient_record(ingredient) if ingredient else None

    async def list_ingredients_expiring(self, start: datetime, end: datetime) -> List[IngredientRecord]:
        ingredients = (
            await Ingredient.filter(expiry_date__gte=start, expiry_date__lte=end)
            .using_db(self._conn)
            .order_by("expiry_date")
        )
        return [_ingredient_record(i) for i in ingredients]

    async def create_ingredient(self, data: IngredientCreate) -> IngredientRecord:
        async with _translate_errors():
            ingredient = await Ingredient.create(**data.model_dump(), using_db=self._conn)
        return _ingredient_record(ingredient)

    async def _fetch_ingredient(self, ingredient_id: UUID) -> IngredientRecord:
        ingredient = await Ingredient.get_or_none(id=ingredient_id).using_db(self._conn)
        if not ingredient:
            raise RecordNotFoundError("Ingredient", ingredient_id)
        return _ingredient_record(ingredient)

    async def increment_stock(self, ingredient_id: UUID, amount: Decimal) -> IngredientRecord:
        async with _translate_errors():
            # Single UPDATE ... SET quantity = quantity + ?; the row lock serializes concurrent writers
            updated = await Ingredient.filter(id=ingredient_id).using_db(self._conn).update(
                quantity=F("quantity") + amount
            )
            if not updated:
                raise RecordNotFoundError("Ingredient", ingredient_id)
            return await self._fetch_ingredient(ingredient_id)

    async def decrement_stock(
        self, ingredient_id: UUID, amount: Decimal, *, guard: bool = False
    ) -> Optional[IngredientRecord]:
        async with _translate_errors():
            query = Ingredient.filter(id=ingredient_id)
            if guard:
                # Compare-and-decrement: the WHERE clause is re-evaluated against the locked row
                query = query.filter(quantity__gte=amount)
            updated = await query.using_db(self._conn).update(quantity=F("quantity") - amount)
            if not updated:
                if guard and await Ingredient.filter(id=ingredient_id).using_db(self._conn).exists():
                    return None
                raise RecordNotFoundError("Ingredient", ingredient_id)
            return await self._fetch_ingredient(ingredient_id)

    # --- Alerts ---

    async def list_alerts(self, is_read: bool, limit: int) -> List[AlertRecord]:
        alerts = (
            await AIAlert.filter(is_read=is_read)
            .using_db(self._conn)
            .order_by("-created_at")
            .limit(limit)
        )
        ingredient_ids = {a.ingredient_id for a in alerts if a.ingredient_id}
        ingredients = {i.id: i for i in await self.get_ingredients(list(ingredient_ids))}
        return [
            AlertRecord(
                id=a.id,
                type=a.type,
                severity=a.severity,
                title=a.title,
                message=a.message,
                ingredient_id=a.ingredient_id,
                metadata=a.metadata,
                is_read=a.is_read,
                created_at=a.created_at,
                ingredient=ingredients.get(a.ingredient_id),
            )
            for a in alerts
        ]

    async def mark_alert_read(self, alert_id: UUID) -> bool:
        updated = await AIAlert.filter(id=alert_id).using_db(self._conn).update(is_read=True)
        return updated > 0

    async def create_alerts(self, alerts: Sequence[NewAlert], *, skip_duplicates: bool = True) -> int:
        if not alerts:
            return 0
        if skip_duplicates:
            rows = (
                await AIAlert.filter(is_read=False, title__in=list({a.title for a in alerts}))
                .using_db(self._conn)
                .values("type", "severity", "title", "message", "ingredient_id", "metadata")
            )
            alerts = drop_duplicate_alerts(alerts, [NewAlert(**row) for row in rows])
        if not alerts:
            return 0
        async with _translate_errors():
            await AIAlert.bulk_create(
                [
                    AIAlert(
                        type=a.type,
                        severity=a.severity,
                        title=a.title,
                        message=a.message,
                        ingredient_id=a.ingredient_id,
                        metadata=a.metadata,
                    )
                    for a in alerts
                ],
                using_db=self._conn,
            )
        return len(alerts)

    # --- Orders ---

    async def create_order(self, order: NewOrder) -> OrderRecord:
        async with _translate_errors():
            async with self._atomic() as conn:
                created = await Order.create(
                    total=order.total,
                    status=order.status,
                    idempotency_key=order.idempotency_key,
                    using_db=conn,
                )
                rows = [
                    OrderItem(order=created, food_item_id=line.food_item_id, quantity=line.quantity, price=line.price)
                    for line in order.items
                ]
                await OrderItem.bulk_create(rows, using_db=conn)
        record = _order_record(created, with_items=False)
        record.items = [
            OrderItemRecord(id=row.id, food_item_id=row.food_item_id, quantity=row.quantity, price=row.price)
            for row in rows
        ]
        return record

    async def get_order(self, order_id: UUID) -> Optional[OrderRecord]:
        # Pre-fetch related entities to minimize DB queries (N+1 avoidance)
        order = await Order.get_or_none(id=order_id).using_db(self._conn).prefetch_related("items__food_item")
        return _order_record(order) if order else None

    async def find_order_by_idempotency_key(self, key: str) -> Optional[OrderRecord]:
        order = await Order.get_or_none(idempotency_key=key).using_db(self._conn).prefetch_related("items__food_item")
        return _order_record(order) if order else None

    async def list_orders(self, offset: int, limit: int) -> List[OrderRecord]:
        orders = (
            await Order.all()
            .using_db(self._conn)
            .order_by("-created_at", "-id")
            .offset(offset)
            .limit(limit)
            .prefetch_related("items__food_item")
        )
        return [_order_record(order) for order in orders]

    async def count_orders(self) -> int:
        return await Order.all().using_db(self._conn).count()

    async def count_orders_since(self, since: datetime) -> int:
        return await Order.filter(created_at__gte=since).using_db(self._conn).count()
