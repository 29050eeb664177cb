import logging
import math
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional, Sequence
from uuid import UUID

from pydantic import TypeAdapter

from app.core.config import (
    ALERT_LIST_LIMIT,
    ALERTS_CACHE_TTL,
    DASHBOARD_CACHE_TTL,
    INGREDIENTS_CACHE_TTL,
    ORDER_TX_TIMEOUT,
)
from app.core.exceptions import InsufficientInventoryError, NotFoundError
from app.core.logging import log_timing
from app.models.inventory import AlertSeverity, AlertType
from app.persistence.port import PersistencePort, RecordNotFoundError
from app.schemas.inventory import (
    AlertRecord,
    AnalysisResult,
    DashboardStats,
    IngredientCreate,
    IngredientRecord,
    InventoryDashboard,
    NewAlert,
    ProposedAlert,
)
from app.services.cache_service import BestEffortCache, CacheKeys

log = logging.getLogger(__name__)

_ingredient_list = TypeAdapter(List[IngredientRecord])
_alert_list = TypeAdapter(List[AlertRecord])

NEAR_EXPIRY_ALERT_DAYS = 3
DASHBOARD_EXPIRY_DAYS = 7

Advisor = Callable[[List[IngredientRecord]], Awaitable[Optional[List[ProposedAlert]]]]


def _fmt(value: Decimal) -> str:
    return format(value.normalize(), "f")


def low_stock_severity(quantity: Decimal, threshold: Decimal) -> Optional[AlertSeverity]:
    """
    Shared low-stock rule: no alert unless quantity < threshold (strict), then
    CRITICAL when the stock is exhausted or negative, HIGH otherwise.
    """
    if quantity >= threshold:
        return None
    return AlertSeverity.CRITICAL if quantity <= 0 else AlertSeverity.HIGH


def build_low_stock_alert(ingredient: IngredientRecord) -> Optional[NewAlert]:
    severity = low_stock_severity(ingredient.quantity, ingredient.threshold)
    if severity is None:
        return None
    quantity, threshold, unit = _fmt(ingredient.quantity), _fmt(ingredient.threshold), ingredient.unit
    return NewAlert(
        type=AlertType.LOW_STOCK,
        severity=severity,
        title=f"Low Stock: {ingredient.name}",
        message=f"{ingredient.name} is below threshold ({quantity}{unit} remaining, threshold: {threshold}{unit})",
        ingredient_id=ingredient.id,
        metadata={"quantity": quantity, "threshold": threshold, "unit": unit},
    )


def days_until(moment: datetime, now: datetime) -> int:
    return math.ceil((moment - now).total_seconds() / 86400)


def build_near_expiry_alert(ingredient: IngredientRecord, now: datetime) -> Optional[NewAlert]:
    if ingredient.expiry_date is None:
        return None
    days = days_until(ingredient.expiry_date, now)
    if not 0 <= days <= NEAR_EXPIRY_ALERT_DAYS:
        return None
    return NewAlert(
        type=AlertType.NEAR_EXPIRY,
        severity=AlertSeverity.HIGH if days <= 1 else AlertSeverity.MEDIUM,
        title=f"Near Expiry: {ingredient.name}",
        message=f"{ingredient.name} expires in {days} days",
        ingredient_id=ingredient.id,
        metadata={"days_until_expiry": days},
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InventoryLedger:
    """Ingredient stock, expiry queries and alert records."""

    def __init__(
        self,
        store: PersistencePort,
        cache: BestEffortCache,
        clock: Callable[[], datetime] = _utcnow,
        alert_limit: int = ALERT_LIST_LIMIT,
    ):
        self.store = store
        self.cache = BestEffortCache.wrap(cache)
        self.clock = clock
        self.alert_limit = alert_limit

    # --- Reads ---

    async def get_ingredients(self) -> List[IngredientRecord]:
        started = time.perf_counter()
        cached = await self.cache.get(CacheKeys.INGREDIENTS)
        if cached is not None:
            log.debug("Ingredients served from cache")
            return _ingredient_list.validate_python(cached)

        ingredients = await self.store.list_ingredients()
        await self.cache.set(
            CacheKeys.INGREDIENTS, _ingredient_list.dump_python(ingredients, mode="json"), INGREDIENTS_CACHE_TTL
        )
        log_timing("inventory.get_ingredients", started, count=len(ingredients))
        return ingredients

    async def get_ingredient(self, ingredient_id: UUID) -> IngredientRecord:
        key = CacheKeys.ingredient(ingredient_id)
        cached = await self.cache.get(key)
        if cached is not None:
            return IngredientRecord.model_validate(cached)

        found = await self.store.get_ingredients([ingredient_id])
        if not found:
            raise NotFoundError("Ingredient", ingredient_id)
        await self.cache.set(key, found[0].model_dump(mode="json"), INGREDIENTS_CACHE_TTL)
        return found[0]

    async def get_alerts(self, is_read: bool = False) -> List[AlertRecord]:
        """Newest first, at most `alert_limit` rows."""
        started = time.perf_counter()
        key = CacheKeys.alerts(is_read)
        cached = await self.cache.get(key)
        if cached is not None:
            log.debug(f"Alerts served from cache is_read={is_read}")
            return _alert_list.validate_python(cached)

        alerts = await self.store.list_alerts(is_read=is_read, limit=self.alert_limit)
        await self.cache.set(key, _alert_list.dump_python(alerts, mode="json"), ALERTS_CACHE_TTL)
        log_timing("inventory.get_alerts", started, is_read=is_read, count=len(alerts))
        return alerts

    async def get_near_expiry(self, window_days: int = DASHBOARD_EXPIRY_DAYS) -> List[IngredientRecord]:
        """Ingredients expiring within [now, now + window_days], soonest first."""
        now = self.clock()
        return await self.store.list_ingredients_expiring(now, now + timedelta(days=window_days))

    async def get_dashboard(self) -> InventoryDashboard:
        started = time.perf_counter()
        cached = await self.cache.get(CacheKeys.DASHBOARD)
        if cached is not None:
            log.debug("Inventory dashboard served from cache")
            return InventoryDashboard.model_validate(cached)

        ingredients = await self.store.list_ingredients()
        now = self.clock()
        stats = DashboardStats(
            total=len(ingredients),
            low_stock=sum(1 for i in ingredients if i.quantity < i.threshold),
            near_expiry=sum(
                1 for i in ingredients
                if i.expiry_date is not None and 0 <= (i.expiry_date - now).total_seconds() <= DASHBOARD_EXPIRY_DAYS * 86400
            ),
            total_quantity=sum((i.quantity for i in ingredients), Decimal("0")),
        )
        dashboard = InventoryDashboard(ingredients=ingredients, stats=stats)
        await self.cache.set(CacheKeys.DASHBOARD, dashboard.model_dump(mode="json"), DASHBOARD_CACHE_TTL)
        log_timing("inventory.get_dashboard", started, ingredient_count=len(ingredients))
        return dashboard

    # --- Writes ---

    async def create_ingredient(self, data: IngredientCreate) -> IngredientRecord:
        ingredient = await self.store.create_ingredient(data)
        await self.invalidate_stock_caches([ingredient.id])
        log.info(f"Ingredient {ingredient.id} ({ingredient.name}) created")
        return ingredient

    async def mark_alert_read(self, alert_id: UUID) -> None:
        """Idempotent; marking an already-read alert succeeds again."""
        if not await self.store.mark_alert_read(alert_id):
            raise NotFoundError("Alert", alert_id)
        await self.cache.delete_many(CacheKeys.alerts(False), CacheKeys.alerts(True))
        log.info(f"Alert {alert_id} marked as read")

    async def decrement_stock(
        self,
        ingredient_id: UUID,
        amount: Decimal,
        *,
        tx: Optional[PersistencePort] = None,
        guard: bool = False,
    ) -> Optional[IngredientRecord]:
        """
        Atomic storage-level decrement; returns the post-update row, or None when
        `guard` refused to take the stock below zero. Cache invalidation is left to
        the caller, which knows when the surrounding transaction has committed.
        """
        return await (tx or self.store).decrement_stock(ingredient_id, amount, guard=guard)

    async def increment_stock(
        self, ingredient_id: UUID, amount: Decimal, *, tx: Optional[PersistencePort] = None
    ) -> IngredientRecord:
        return await (tx or self.store).increment_stock(ingredient_id, amount)

    async def adjust_stock(self, ingredient_id: UUID, delta: Decimal) -> IngredientRecord:
        """
        Admin correction. Restocks with a positive delta, writes off with a negative one
        (never below zero) and raises a LOW_STOCK alert when the result breaches the threshold.
        """
        started = time.perf_counter()
        try:
            async with self.store.transaction(timeout=ORDER_TX_TIMEOUT) as tx:
                if delta >= 0:
                    updated = await self.increment_stock(ingredient_id, delta, tx=tx)
                else:
                    updated = await self.decrement_stock(ingredient_id, -delta, tx=tx, guard=True)
                    if updated is None:
                        current = (await tx.get_ingredients([ingredient_id]))[0]
                        raise InsufficientInventoryError(ingredient_id, current.name, -delta, current.quantity)
                alert = build_low_stock_alert(updated)
                created = await tx.create_alerts([alert]) if alert else 0
        except RecordNotFoundError as e:
            raise NotFoundError("Ingredient", ingredient_id) from e

        await self.invalidate_stock_caches([ingredient_id], alerts_created=created > 0)
        log_timing("inventory.adjust_stock", started, ingredient_id=ingredient_id, delta=delta)
        return updated

    async def record_alerts(self, alerts: Sequence[NewAlert]) -> int:
        """Batch insert skipping exact duplicates; returns how many rows were written."""
        if not alerts:
            return 0
        created = await self.store.create_alerts(alerts, skip_duplicates=True)
        if created:
            await self.cache.delete(CacheKeys.alerts(False))
        log.info(f"Recorded {created} of {len(alerts)} alerts")
        return created

    # --- Analysis ---

    def rule_based_alerts(self, ingredients: Sequence[IngredientRecord]) -> List[NewAlert]:
        now = self.clock()
        alerts = []
        for ingredient in ingredients:
            for alert in (build_low_stock_alert(ingredient), build_near_expiry_alert(ingredient, now)):
                if alert is not None:
                    alerts.append(alert)
        return alerts

    @staticmethod
    def resolve_proposals(proposals: Sequence[ProposedAlert], ingredients: Sequence[IngredientRecord]) -> List[NewAlert]:
        """Maps ingredient names from the analysis provider onto ingredient ids (case-insensitive)."""
        by_name = {i.name.lower(): i.id for i in ingredients}
        return [
            NewAlert(
                type=p.type,
                severity=p.severity,
                title=p.title,
                message=p.message,
                ingredient_id=by_name.get(p.ingredient_name.lower()) if p.ingredient_name else None,
            )
            for p in proposals
        ]

    async def analyze_inventory(self, advisor: Optional[Advisor] = None) -> AnalysisResult:
        """
        Admin-triggered analysis. The advisor (when given) proposes alerts; when it has
        nothing to offer the shared rules are applied instead.
        """
        started = time.perf_counter()
        ingredients = await self.store.list_ingredients()

        proposals = await advisor(ingredients) if advisor else None
        if proposals is not None:
            alerts, source = self.resolve_proposals(proposals, ingredients), "ai"
        else:
            alerts, source = self.rule_based_alerts(ingredients), "rules"

        created = await self.record_alerts(alerts)
        log_timing("inventory.analyze", started, source=source, alerts_created=created)
        return AnalysisResult(alerts_created=created, source=source)

    async def invalidate_stock_caches(self, ingredient_ids: Sequence[UUID] = (), alerts_created: bool = False) -> None:
        keys = [CacheKeys.INGREDIENTS, CacheKeys.DASHBOARD]
        keys.extend(CacheKeys.ingredient(i) for i in ingredient_ids)
        if alerts_created:
            keys.append(CacheKeys.alerts(False))
        await self.cache.delete_many(*keys)
