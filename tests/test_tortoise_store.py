import uuid
from decimal import Decimal

import pytest
import pytest_asyncio
from tortoise import Tortoise

from app.core.db import init_db
from app.models.inventory import AlertSeverity, AlertType
from app.models.order import OrderStatus
from app.persistence.port import UniqueViolationError
from app.persistence.tortoise_store import TortoiseStore
from app.schemas.catalog import FoodIngredientRequest, FoodItemCreate, FoodItemUpdate
from app.schemas.inventory import IngredientCreate, NewAlert
from app.schemas.order import NewOrder, NewOrderItem


@pytest_asyncio.fixture
async def db():
    await init_db("sqlite://:memory:")
    yield TortoiseStore()
    await Tortoise.close_connections()


async def seed(db):
    rice = await db.create_ingredient(IngredientCreate(name="Rice", quantity=Decimal("50"), threshold=Decimal("10"), unit="kg"))
    ghee = await db.create_ingredient(IngredientCreate(name="Ghee", quantity=Decimal("4.5"), threshold=Decimal("1"), unit="kg"))
    pulao = await db.create_food_item(
        FoodItemCreate(
            name="Veg Pulao",
            price=Decimal("249.00"),
            ingredients=[
                FoodIngredientRequest(ingredient_id=rice.id, qty_required=Decimal("0.25")),
                FoodIngredientRequest(ingredient_id=ghee.id, qty_required=Decimal("0.02")),
            ],
        )
    )
    return rice, ghee, pulao


def new_order(food, quantity=1, key=None):
    return NewOrder(
        total=food.price * quantity,
        status=OrderStatus.COMPLETED,
        idempotency_key=key,
        items=[NewOrderItem(food_item_id=food.id, quantity=quantity, price=food.price)],
    )


class TestCatalogAndStock:
    @pytest.mark.asyncio
    async def test_ingredients(self, db):
        rice, ghee, _ = await seed(db)

        assert [i.name for i in await db.list_ingredients()] == ["Ghee", "Rice"]
        (fetched,) = await db.get_ingredients([rice.id, uuid.uuid4()])
        assert fetched.quantity == Decimal("50")
        assert (await db.get_ingredient_by_name("Ghee")).id == ghee.id
        assert await db.get_ingredient_by_name("Saffron") is None
        with pytest.raises(UniqueViolationError):
            await db.create_ingredient(IngredientCreate(name="Rice", quantity=Decimal("1"), threshold=Decimal("1"), unit="kg"))

    @pytest.mark.asyncio
    async def test_food_items_embed_requirements(self, db):
        rice, ghee, pulao = await seed(db)

        assert pulao.price == Decimal("249.00")
        requirements = {r.ingredient.name: r.qty_required for r in pulao.ingredients}
        assert requirements == {"Rice": Decimal("0.25"), "Ghee": Decimal("0.02")}
        assert [f.name for f in await db.list_food_items()] == ["Veg Pulao"]

    @pytest.mark.asyncio
    async def test_update_replaces_requirements(self, db):
        rice, ghee, pulao = await seed(db)

        updated = await db.update_food_item(
            pulao.id,
            FoodItemUpdate(
                name="Ghee Rice",
                ingredients=[FoodIngredientRequest(ingredient_id=rice.id, qty_required=Decimal("0.3"))],
            ),
        )

        assert updated.name == "Ghee Rice"
        assert [(r.ingredient.name, r.qty_required) for r in updated.ingredients] == [("Rice", Decimal("0.3"))]
        assert await db.update_food_item(uuid.uuid4(), FoodItemUpdate(name="x")) is None

    @pytest.mark.asyncio
    async def test_duplicate_food_name(self, db):
        await seed(db)
        with pytest.raises(UniqueViolationError):
            await db.create_food_item(FoodItemCreate(name="Veg Pulao", price=Decimal("1")))


class TestOrders:
    @pytest.mark.asyncio
    async def test_create_and_read_back(self, db):
        _, _, pulao = await seed(db)

        created = await db.create_order(new_order(pulao, 2, key="k-1"))
        fetched = await db.get_order(created.id)

        assert fetched.total == Decimal("498.00")
        assert fetched.status == OrderStatus.COMPLETED
        (item,) = fetched.items
        assert (item.quantity, item.price, item.food_item.name) == (2, Decimal("249.00"), "Veg Pulao")
        assert (await db.find_order_by_idempotency_key("k-1")).id == created.id
        assert await db.find_order_by_idempotency_key("k-2") is None
        assert await db.get_order(uuid.uuid4()) is None

    @pytest.mark.asyncio
    async def test_idempotency_key_is_unique(self, db):
        _, _, pulao = await seed(db)
        await db.create_order(new_order(pulao, key="same"))
        with pytest.raises(UniqueViolationError):
            await db.create_order(new_order(pulao, key="same"))

    @pytest.mark.asyncio
    async def test_pagination(self, db):
        _, _, pulao = await seed(db)
        ids = {(await db.create_order(new_order(pulao))).id for _ in range(3)}

        first = await db.list_orders(offset=0, limit=2)
        second = await db.list_orders(offset=2, limit=2)

        assert len(first) == 2
        assert len(second) == 1
        assert {o.id for o in first + second} == ids
        assert await db.count_orders() == 3

    @pytest.mark.asyncio
    async def test_transaction_rolls_back(self, db):
        _, _, pulao = await seed(db)

        with pytest.raises(RuntimeError):
            async with db.transaction(5) as tx:
                await tx.create_order(new_order(pulao))
                raise RuntimeError("boom")

        assert await db.count_orders() == 0


class TestAlerts:
    @pytest.mark.asyncio
    async def test_create_list_and_mark_read(self, db):
        rice, _, _ = await seed(db)
        alert = NewAlert(
            type=AlertType.LOW_STOCK,
            severity=AlertSeverity.HIGH,
            title="Low Stock: Rice",
            message="Rice is below threshold (8kg remaining, threshold: 10kg)",
            ingredient_id=rice.id,
            metadata={"quantity": "8", "threshold": "10", "unit": "kg"},
        )

        assert await db.create_alerts([alert]) == 1
        assert await db.create_alerts([alert]) == 0

        (stored,) = await db.list_alerts(is_read=False, limit=10)
        assert stored.ingredient.name == "Rice"
        assert stored.metadata == {"quantity": "8", "threshold": "10", "unit": "kg"}

        assert await db.mark_alert_read(stored.id) is True
        assert await db.mark_alert_read(uuid.uuid4()) is False
        assert await db.list_alerts(is_read=False, limit=10) == []
        assert [a.id for a in await db.list_alerts(is_read=True, limit=10)] == [stored.id]
        # a read alert no longer blocks a fresh one
        assert await db.create_alerts([alert]) == 1
