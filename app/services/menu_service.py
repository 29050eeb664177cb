import asyncio
import logging
import time
from typing import Dict, List, Optional, Sequence
from uuid import UUID

from pydantic import TypeAdapter

from app.core.config import MENU_CACHE_TTL
from app.core.exceptions import NotFoundError
from app.core.logging import log_timing
from app.persistence.port import PersistencePort, RecordNotFoundError
from app.schemas.catalog import FoodItemCreate, FoodItemRecord, FoodItemUpdate
from app.services.cache_service import BestEffortCache, CacheKeys

log = logging.getLogger(__name__)

_food_list = TypeAdapter(List[FoodItemRecord])


class MenuCatalog:
    """Food items and their ingredient requirements, read through the cache."""

    def __init__(self, store: PersistencePort, cache: BestEffortCache, ttl: int = MENU_CACHE_TTL):
        self.store = store
        self.cache = BestEffortCache.wrap(cache)
        self.ttl = ttl

    async def get_all(self) -> List[FoodItemRecord]:
        """Every food item with its ingredients, ordered by name."""
        started = time.perf_counter()
        cached = await self.cache.get(CacheKeys.FOOD_ITEMS)
        if cached is not None:
            log.debug("Menu served from cache")
            return _food_list.validate_python(cached)

        items = await self.store.list_food_items()
        await self.cache.set(CacheKeys.FOOD_ITEMS, _food_list.dump_python(items, mode="json"), self.ttl)
        log_timing("menu.get_all", started, count=len(items))
        return items

    async def get_by_id(self, food_item_id: UUID) -> Optional[FoodItemRecord]:
        key = CacheKeys.food_item(food_item_id)
        cached = await self.cache.get(key)
        if cached is not None:
            return FoodItemRecord.model_validate(cached)

        found = await self.store.get_food_items([food_item_id])
        if not found:
            return None
        await self.cache.set(key, found[0].model_dump(mode="json"), self.ttl)
        return found[0]

    async def get_by_ids(self, food_item_ids: Sequence[UUID]) -> List[FoodItemRecord]:
        """
        Batch lookup. Each id is probed in the cache and the misses are fetched with one
        store query, so a call costs at most one round trip regardless of batch size.
        Unknown ids are simply absent from the result; the order of the result is not defined.
        """
        ids = list(dict.fromkeys(food_item_ids))
        if not ids:
            return []

        cached = await asyncio.gather(*(self.cache.get(CacheKeys.food_item(i)) for i in ids))
        found: Dict[UUID, FoodItemRecord] = {}
        missing: List[UUID] = []
        for food_item_id, payload in zip(ids, cached):
            if payload is None:
                missing.append(food_item_id)
            else:
                found[food_item_id] = FoodItemRecord.model_validate(payload)

        if missing:
            fetched = await self.store.get_food_items(missing)
            await asyncio.gather(
                *(self.cache.set(CacheKeys.food_item(f.id), f.model_dump(mode="json"), self.ttl) for f in fetched)
            )
            found.update((f.id, f) for f in fetched)
            log.debug(f"Menu batch lookup: {len(ids) - len(missing)} cached, {len(fetched)} fetched")

        return list(found.values())

    async def create_food_item(self, data: FoodItemCreate) -> FoodItemRecord:
        try:
            item = await self.store.create_food_item(data)
        except RecordNotFoundError as e:
            raise NotFoundError(e.entity, e.entity_id) from e
        await self.invalidate(item.id)
        log.info(f"Food item {item.id} ({item.name}) created")
        return item

    async def update_food_item(self, food_item_id: UUID, data: FoodItemUpdate) -> FoodItemRecord:
        try:
            item = await self.store.update_food_item(food_item_id, data)
        except RecordNotFoundError as e:
            raise NotFoundError(e.entity, e.entity_id) from e
        if item is None:
            raise NotFoundError("FoodItem", food_item_id)
        await self.invalidate(food_item_id)
        log.info(f"Food item {food_item_id} updated")
        return item

    async def invalidate(self, food_item_id: Optional[UUID] = None) -> None:
        keys = [CacheKeys.FOOD_ITEMS]
        if food_item_id is not None:
            keys.append(CacheKeys.food_item(food_item_id))
        await self.cache.delete_many(*keys)
