from types import SimpleNamespace

import pytest

from app.core import config
from app.services.cache_service import BestEffortCache
from app.services.inventory_service import InventoryLedger
from app.services.menu_service import MenuCatalog
from app.services.order_service import OrderPipeline
from app.testing.in_memory_store import InMemoryStore
from app.testing.testing_mocks import CountingCache


@pytest.fixture(autouse=True)
def no_llm_provider(monkeypatch):
    """Suggestions always use the deterministic fallback unless a test injects a client."""
    monkeypatch.setattr(config, "GEMINI_API_KEY", None)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def cache():
    return CountingCache()


@pytest.fixture
def kitchen(store):
    """A small seeded menu: biryani, paneer tikka and a drink without ingredients."""
    rice = store.add_ingredient("Basmati Rice", "50", "10")
    chicken = store.add_ingredient("Chicken", "20", "5")
    paneer = store.add_ingredient("Paneer", "40", "8")
    spices = store.add_ingredient("Spice Mix", "5", "1")
    biryani = store.add_food_item(
        "Chicken Biryani", "399.99", {rice.id: "0.25", chicken.id: "0.3", spices.id: "0.02"}
    )
    tikka = store.add_food_item("Paneer Tikka", "299.50", {paneer.id: "0.2", spices.id: "0.01"})
    lassi = store.add_food_item("Mango Lassi", "99.00")
    return SimpleNamespace(
        rice=rice, chicken=chicken, paneer=paneer, spices=spices, biryani=biryani, tikka=tikka, lassi=lassi
    )


@pytest.fixture
def make_pipeline(store, cache):
    """Builds an order pipeline over the shared store; `cache` may be overridden per call."""
    def build(cache_backend=None, **kwargs) -> OrderPipeline:
        wrapped = BestEffortCache.wrap(cache_backend if cache_backend is not None else cache)
        catalog = MenuCatalog(store, wrapped)
        ledger = InventoryLedger(store, wrapped)
        return OrderPipeline(store, catalog, ledger, wrapped, **kwargs)
    return build
