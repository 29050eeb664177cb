import logging
from dataclasses import dataclass
from typing import Optional

from app.core import config
from app.persistence.port import PersistencePort
from app.persistence.tortoise_store import TortoiseStore
from app.services.cache_service import BestEffortCache, create_cache
from app.services.inventory_service import InventoryLedger
from app.services.menu_service import MenuCatalog
from app.services.order_service import OrderPipeline
from app.services.suggestion_service import LLMClient, SuggestionGateway, create_llm_client

log = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the HTTP layer needs, constructed once per process."""
    store: PersistencePort
    cache: BestEffortCache
    catalog: MenuCatalog
    ledger: InventoryLedger
    orders: OrderPipeline
    suggestions: SuggestionGateway

    async def aclose(self) -> None:
        await self.orders.drain()
        await self.suggestions.aclose()
        await self.cache.close()


def build_services(
    store: Optional[PersistencePort] = None,
    cache: Optional[BestEffortCache] = None,
    llm_client: Optional[LLMClient] = None,
    stock_policy: str = config.STOCK_POLICY,
    price_source: str = config.PRICE_SOURCE,
) -> Services:
    if store is None:
        store = TortoiseStore()
    if cache is None:
        cache = create_cache(config.CACHE_BACKEND, config.REDIS_URL, config.CACHE_MAX_ENTRIES)
    if llm_client is None:
        llm_client = create_llm_client(config.GEMINI_API_KEY)

    cache = BestEffortCache.wrap(cache)
    catalog = MenuCatalog(store, cache)
    ledger = InventoryLedger(store, cache)
    suggestions = SuggestionGateway(catalog, ledger, store, llm_client)
    orders = OrderPipeline(
        store,
        catalog,
        ledger,
        cache,
        post_order_hook=suggestions.post_order_screen,
        stock_policy=stock_policy,
        price_source=price_source,
    )
    log.info(f"Services ready stock_policy={stock_policy} price_source={price_source}")
    return Services(store, cache, catalog, ledger, orders, suggestions)
