import asyncio
import logging
import math
import time
from collections import defaultdict
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Set
from uuid import UUID

from app.core.config import ORDER_TX_ISOLATION, ORDER_TX_TIMEOUT, ORDERS_CACHE_TTL, PRICE_SOURCE, STOCK_POLICY
from app.core.exceptions import (
    EmptyCartError,
    FoodItemNotFoundError,
    IngredientNotFoundError,
    InsufficientInventoryError,
    InvalidCartLineError,
    NotFoundError,
    OrderError,
    OrderFailed,
    OrderRejected,
    PipelineStage,
)
from app.core.logging import elapsed_ms, log_timing, log_transaction
from app.models.order import OrderStatus
from app.persistence.port import IsolationLevel, PersistencePort, RecordNotFoundError, UniqueViolationError
from app.schemas.catalog import FoodItemRecord
from app.schemas.order import CartLine, NewOrder, NewOrderItem, OrderPage, OrderPlacement, OrderRecord, Pagination
from app.services.cache_service import BestEffortCache, CacheKeys
from app.services.inventory_service import InventoryLedger, build_low_stock_alert
from app.services.menu_service import MenuCatalog

log = logging.getLogger(__name__)

PostOrderHook = Callable[[UUID], Awaitable[Any]]


class StockPolicy(str, Enum):
    GUARDED = "guarded"  # compare-and-decrement, stock never goes negative
    ALLOW_NEGATIVE = "allow_negative"  # advisory pre-check only, negative stock is flagged CRITICAL


class PriceSource(str, Enum):
    CART = "cart"
    CATALOG = "catalog"


def compute_total(lines: Sequence[CartLine], prices: Optional[Mapping[UUID, Decimal]] = None) -> Decimal:
    """Σ(unit price × quantity). `prices` overrides the cart price per food item."""
    total = Decimal("0")
    for line in lines:
        price = prices[line.food_item_id] if prices else line.price
        total += price * line.quantity
    return total


def aggregate_deductions(lines: Sequence[CartLine], foods: Mapping[UUID, FoodItemRecord]) -> Dict[UUID, Decimal]:
    """
    Total amount of every ingredient the cart consumes:
    deduction[ingredient] = Σ qty_required(food, ingredient) × line quantity.
    Lines repeating the same food item simply add up.
    """
    deductions: Dict[UUID, Decimal] = defaultdict(lambda: Decimal("0"))
    for line in lines:
        for requirement in foods[line.food_item_id].ingredients:
            deductions[requirement.ingredient.id] += requirement.qty_required * line.quantity
    return dict(deductions)


class OrderPipeline:
    """
    Checkout: VALIDATING -> RESERVING -> COMMITTING -> COMMITTED.

    Validation and stock problems are raised as OrderRejected before anything is written;
    commit-stage problems are raised as OrderFailed after a full rollback. The order, its
    items, every stock decrement and every low-stock alert are written in one transaction.
    """

    def __init__(
        self,
        store: PersistencePort,
        catalog: MenuCatalog,
        ledger: InventoryLedger,
        cache: BestEffortCache,
        post_order_hook: Optional[PostOrderHook] = None,
        stock_policy: StockPolicy = StockPolicy(STOCK_POLICY),
        price_source: PriceSource = PriceSource(PRICE_SOURCE),
        tx_timeout: float = ORDER_TX_TIMEOUT,
        isolation_level: IsolationLevel = IsolationLevel(ORDER_TX_ISOLATION),
    ):
        self.store = store
        self.catalog = catalog
        self.ledger = ledger
        self.cache = BestEffortCache.wrap(cache)
        self.post_order_hook = post_order_hook
        self.stock_policy = StockPolicy(stock_policy)
        self.price_source = PriceSource(price_source)
        self.tx_timeout = tx_timeout
        self.isolation_level = IsolationLevel(isolation_level)
        self._background: Set[asyncio.Task] = set()

    # --- Checkout ---

    async def place_order(self, lines: Sequence[CartLine], idempotency_key: Optional[str] = None) -> OrderPlacement:
        started = time.perf_counter()
        try:
            if idempotency_key:
                existing = await self.store.find_order_by_idempotency_key(idempotency_key)
                if existing:
                    log.warning(f"Duplicate order submission idempotency_key={idempotency_key} order_id={existing.id}")
                    return self._replayed(existing)

            _stage(PipelineStage.VALIDATING, lines=len(lines))
            if not lines:
                raise EmptyCartError()
            _check_lines(lines)
            foods = await self._resolve_foods(lines)
            prices = self._line_prices(lines, foods)
            catalog_prices = {f.id: f.price for f in foods.values()} if self.price_source is PriceSource.CATALOG else None
            total = compute_total(lines, catalog_prices)
            deductions = aggregate_deductions(lines, foods)

            _stage(PipelineStage.RESERVING, ingredients=len(deductions))
            await self._precheck(deductions)

            _stage(PipelineStage.COMMITTING, total=total)
            order, alerts_created = await self._commit(lines, prices, total, deductions, idempotency_key)
        except OrderRejected as e:
            log.warning(f"Order rejected stage={e.stage.value if e.stage else None} reason={e.message}")
            raise
        except _Replay as replay:
            return self._replayed(replay.order)

        _stage(PipelineStage.COMMITTED, order_id=order.id)
        await self.cache.delete_pattern(CacheKeys.ORDERS_PATTERN)
        await self.ledger.invalidate_stock_caches(list(deductions), alerts_created=alerts_created > 0)
        self._schedule_post_order(order.id)

        log_timing("orders.place_order", started, order_id=order.id, items=len(lines), alerts=alerts_created)
        return OrderPlacement(order_id=order.id, total=order.total, status=order.status, alerts_created=alerts_created)

    async def _resolve_foods(self, lines: Sequence[CartLine]) -> Dict[UUID, FoodItemRecord]:
        foods = {f.id: f for f in await self.catalog.get_by_ids([line.food_item_id for line in lines])}
        for line in lines:
            if line.food_item_id not in foods:
                raise FoodItemNotFoundError(line.food_item_id)
        return foods

    def _line_prices(self, lines: Sequence[CartLine], foods: Mapping[UUID, FoodItemRecord]) -> List[Decimal]:
        """Unit price of every line, in cart order."""
        prices = []
        for line in lines:
            catalog_price = foods[line.food_item_id].price
            if line.price != catalog_price:
                log.warning(
                    f"Cart price differs from catalog food_item_id={line.food_item_id} "
                    f"cart={line.price} catalog={catalog_price} source={self.price_source.value}"
                )
            prices.append(catalog_price if self.price_source is PriceSource.CATALOG else line.price)
        return prices

    async def _precheck(self, deductions: Mapping[UUID, Decimal]) -> None:
        """Advisory stock check against committed stock. It narrows but does not close the race."""
        if not deductions:
            return
        current = {i.id: i for i in await self.store.get_ingredients(list(deductions))}
        for ingredient_id, required in deductions.items():
            ingredient = current.get(ingredient_id)
            if ingredient is None:
                raise IngredientNotFoundError(ingredient_id)
            if ingredient.quantity < required:
                raise InsufficientInventoryError(ingredient_id, ingredient.name, required, ingredient.quantity)

    async def _commit(
        self,
        lines: Sequence[CartLine],
        prices: Sequence[Decimal],
        total: Decimal,
        deductions: Mapping[UUID, Decimal],
        idempotency_key: Optional[str],
    ) -> tuple[OrderRecord, int]:
        tx_started = time.perf_counter()
        guarded = self.stock_policy is StockPolicy.GUARDED
        try:
            async with self.store.transaction(self.tx_timeout, self.isolation_level) as tx:
                log_transaction("start", operation="place_order")
                order = await tx.create_order(
                    NewOrder(
                        total=total,
                        status=OrderStatus.COMPLETED,
                        idempotency_key=idempotency_key,
                        items=[
                            NewOrderItem(food_item_id=line.food_item_id, quantity=line.quantity, price=price)
                            for line, price in zip(lines, prices)
                        ],
                    )
                )

                updated = []
                # fixed lock order across concurrent orders
                for ingredient_id in sorted(deductions):
                    amount = deductions[ingredient_id]
                    row = await self.ledger.decrement_stock(ingredient_id, amount, tx=tx, guard=guarded)
                    if row is None:
                        current = (await tx.get_ingredients([ingredient_id]))[0]
                        raise InsufficientInventoryError(
                            ingredient_id, current.name, amount, current.quantity, PipelineStage.COMMITTING
                        )
                    updated.append(row)

                alerts = [alert for alert in map(build_low_stock_alert, updated) if alert is not None]
                alerts_created = await tx.create_alerts(alerts, skip_duplicates=True) if alerts else 0
        except OrderError:
            log_transaction("rollback", elapsed_ms(tx_started), operation="place_order")
            raise
        except RecordNotFoundError as e:
            log_transaction("rollback", elapsed_ms(tx_started), operation="place_order")
            if e.entity == "Ingredient":
                raise IngredientNotFoundError(e.entity_id, PipelineStage.COMMITTING) from e
            raise FoodItemNotFoundError(e.entity_id) from e
        except UniqueViolationError as e:
            log_transaction("rollback", elapsed_ms(tx_started), operation="place_order")
            if idempotency_key:
                winner = await self.store.find_order_by_idempotency_key(idempotency_key)
                if winner:
                    raise _Replay(winner) from e
            log.error(f"Order commit failed duration_ms={elapsed_ms(tx_started)} error={e}")
            raise OrderFailed("Order could not be placed.", cause=e) from e
        except Exception as e:
            log_transaction("rollback", elapsed_ms(tx_started), operation="place_order")
            reason = "transaction timed out" if isinstance(e, TimeoutError) else repr(e)
            log.error(f"Order commit failed duration_ms={elapsed_ms(tx_started)} items={len(lines)} error={reason}")
            raise OrderFailed("Order could not be placed.", cause=e) from e

        log_transaction("commit", elapsed_ms(tx_started), order_id=order.id, items=len(lines))
        return order, alerts_created

    @staticmethod
    def _replayed(order: OrderRecord) -> OrderPlacement:
        return OrderPlacement(order_id=order.id, total=order.total, status=order.status, replayed=True)

    # --- Post-order screening ---

    def _schedule_post_order(self, order_id: UUID) -> None:
        if self.post_order_hook is None:
            return
        task = asyncio.create_task(self._run_post_order(order_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_post_order(self, order_id: UUID) -> None:
        try:
            await self.post_order_hook(order_id)
        except Exception as e:
            log.error(f"Post-order screening failed for order {order_id}: {e}")

    async def drain(self) -> None:
        """Waits for pending post-order work (shutdown, tests)."""
        if self._background:
            await asyncio.gather(*list(self._background))

    # --- Reads ---

    async def get_orders(self, page: int = 1, page_size: int = 10) -> OrderPage:
        if page < 1 or page_size < 1:
            raise ValueError("page and page_size must be positive")
        started = time.perf_counter()
        key = CacheKeys.orders(page, page_size)
        cached = await self.cache.get(key)
        if cached is not None:
            log.debug(f"Orders served from cache page={page} page_size={page_size}")
            return OrderPage.model_validate(cached)

        orders, total = await asyncio.gather(
            self.store.list_orders(offset=(page - 1) * page_size, limit=page_size),
            self.store.count_orders(),
        )
        result = OrderPage(
            orders=orders,
            pagination=Pagination(
                page=page, page_size=page_size, total=total, total_pages=math.ceil(total / page_size)
            ),
        )
        await self.cache.set(key, result.model_dump(mode="json"), ORDERS_CACHE_TTL)
        log_timing("orders.get_orders", started, page=page, page_size=page_size, total=total)
        return result

    async def get_order(self, order_id: UUID) -> OrderRecord:
        order = await self.store.get_order(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order


class _Replay(Exception):
    """A concurrent submission with the same idempotency key won the insert."""

    def __init__(self, order: OrderRecord):
        super().__init__(order.id)
        self.order = order


def _check_lines(lines: Sequence[CartLine]) -> None:
    # lines built with model_construct skip pydantic validation
    for index, line in enumerate(lines):
        if not isinstance(line.quantity, int) or line.quantity < 1:
            raise InvalidCartLineError(index, f"quantity must be a positive integer, got {line.quantity}")
        if line.price is None or line.price < 0:
            raise InvalidCartLineError(index, f"price must not be negative, got {line.price}")


def _stage(stage: PipelineStage, **context: Any) -> None:
    details = " ".join(f"{key}={value}" for key, value in context.items())
    log.debug(f"Order pipeline stage={stage.value} {details}".rstrip())
