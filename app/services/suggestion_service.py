"""
Suggestion gateway: menu pairings, upsells, recommendations and post-order screening.

Everything here fails open. Provider errors (rate limits included) are logged and a
deterministic fallback built from the menu is returned instead; nothing raised in this
module reaches checkout or the admin flows.
"""
import functools
import json
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Protocol, Sequence
from uuid import UUID

import httpx
from pydantic import ValidationError

from app.core.config import AI_TIMEOUT, GEMINI_API_KEY, GEMINI_MODEL
from app.persistence.port import PersistencePort
from app.schemas.catalog import FoodItemRecord
from app.schemas.inventory import IngredientRecord, ProposedAlert
from app.schemas.suggestion import Suggestion
from app.services.inventory_service import InventoryLedger, build_low_stock_alert
from app.services.menu_service import MenuCatalog

log = logging.getLogger(__name__)

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

PAIRING_REASON = "This pairs perfectly with your selection!"
UPSELL_REASON = "Perfect addition to complete your meal!"
UPSELL_PAD_REASON = "Completes your meal perfectly!"
MENU_REASON = "Popular choice!"
NEXT_ORDER_REASON = "You might enjoy this next time!"
NEXT_ORDER_PAD_REASON = "Try this next time!"


class SuggestionUnavailable(Exception):
    """The provider could not produce a usable answer."""


class SuggestionRateLimited(SuggestionUnavailable):
    pass


class LLMClient(Protocol):
    async def generate(self, prompt: str) -> str: ...
    async def aclose(self) -> None: ...


class GeminiClient:
    """Minimal client for the Gemini generateContent REST endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str = GEMINI_MODEL,
        timeout: float = AI_TIMEOUT,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.http = http_client or httpx.AsyncClient(timeout=timeout)

    async def generate(self, prompt: str) -> str:
        try:
            response = await self.http.post(
                GEMINI_URL.format(model=self.model),
                json={"contents": [{"parts": [{"text": prompt}]}]},
                headers={"x-goog-api-key": self.api_key},
            )
        except httpx.HTTPError as e:
            raise SuggestionUnavailable(f"Gemini request failed: {e}") from e

        if response.status_code == 429 or (response.status_code != 200 and "RESOURCE_EXHAUSTED" in response.text):
            raise SuggestionRateLimited("Gemini rate limit reached")
        if response.status_code != 200:
            raise SuggestionUnavailable(f"Gemini returned {response.status_code}")

        try:
            parts = response.json()["candidates"][0]["content"]["parts"]
        except (ValueError, KeyError, IndexError) as e:
            raise SuggestionUnavailable("Gemini response had no candidates") from e
        return "".join(part.get("text", "") for part in parts)

    async def aclose(self) -> None:
        await self.http.aclose()


def extract_json(text: str) -> Any:
    """Pulls a JSON document out of a reply that may wrap it in markdown fences or prose."""
    match = re.search(r"```(?:json)?\s*([\s\S]+?)\s*```", text)
    candidate = match.group(1) if match else text.strip()
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass
    embedded = re.search(r"(\[[\s\S]*\]|\{[\s\S]*\})", candidate)
    if embedded:
        try:
            return json.loads(embedded.group(1))
        except json.JSONDecodeError:
            pass
    raise SuggestionUnavailable("Could not parse provider response")


def _fail_open(default: Callable[[], Any]):
    def decorate(func):
        @functools.wraps(func)
        async def wrapper(self, *args, **kwargs):
            try:
                return await func(self, *args, **kwargs)
            except Exception as e:
                log.error(f"Suggestion {func.__name__} failed: {e}")
                return default()
        return wrapper
    return decorate


def _to_suggestion(food: FoodItemRecord, reason: str) -> Suggestion:
    return Suggestion(food_id=food.id, name=food.name, reason=reason, image=food.image, price=food.price)


def _find_food(foods: Sequence[FoodItemRecord], name: Optional[str]) -> Optional[FoodItemRecord]:
    if not name:
        return None
    wanted = name.lower()
    return next((f for f in foods if f.name.lower() == wanted), None) or next(
        (f for f in foods if wanted in f.name.lower()), None
    )


def _menu_lines(foods: Sequence[FoodItemRecord]) -> str:
    return "\n".join(f"- {f.name}: {f.description} - ₹{f.price:.2f}" for f in foods)


class SuggestionGateway:

    def __init__(
        self,
        catalog: MenuCatalog,
        ledger: InventoryLedger,
        store: PersistencePort,
        client: Optional[LLMClient] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.catalog = catalog
        self.ledger = ledger
        self.store = store
        self.client = client
        self.clock = clock

    async def _ask(self, prompt: str, purpose: str) -> Optional[Any]:
        """Returns the parsed JSON answer, or None when there is no provider or it failed."""
        if self.client is None:
            return None
        try:
            return extract_json(await self.client.generate(prompt))
        except SuggestionRateLimited as e:
            log.warning(f"Suggestion provider rate limited purpose={purpose}: {e}")
        except SuggestionUnavailable as e:
            log.error(f"Suggestion provider unavailable purpose={purpose}: {e}")
        return None

    def _pick(
        self,
        answer: Any,
        candidates: Sequence[FoodItemRecord],
        limit: int,
        minimum: int,
        reason: str,
        pad_reason: str,
    ) -> List[Suggestion]:
        """Matches the provider's picks against the candidates, then pads up to `limit` when fewer than `minimum` matched."""
        picks = answer if isinstance(answer, list) else [answer]
        chosen: List[Suggestion] = []
        for pick in picks:
            if len(chosen) >= limit or not isinstance(pick, dict):
                continue
            food = _find_food(candidates, pick.get("foodName"))
            if food and all(s.food_id != food.id for s in chosen):
                chosen.append(_to_suggestion(food, pick.get("reason") or reason))
        if len(chosen) < minimum:
            taken = {s.food_id for s in chosen}
            for food in candidates:
                if len(chosen) >= limit:
                    break
                if food.id not in taken:
                    chosen.append(_to_suggestion(food, pad_reason))
        return chosen

    @_fail_open(lambda: None)
    async def suggest_pairing(self, food_id: UUID) -> Optional[Suggestion]:
        food = await self.catalog.get_by_id(food_id)
        if food is None:
            return None
        others = [f for f in await self.catalog.get_all() if f.id != food_id][:10]
        if not others:
            return None

        answer = await self._ask(
            f'A customer selected "{food.name}" ({food.description}).\n'
            f"Available food items:\n{_menu_lines(others)}\n"
            'Suggest ONE item that pairs well. Respond as JSON: {"foodName": "...", "reason": "..."}',
            "pairing",
        )
        if isinstance(answer, dict):
            match = _find_food(others, answer.get("foodName"))
            if match:
                return _to_suggestion(match, answer.get("reason") or PAIRING_REASON)
        return _to_suggestion(others[0], PAIRING_REASON)

    @_fail_open(list)
    async def suggest_upsells(self, cart_food_ids: Sequence[UUID]) -> List[Suggestion]:
        cart = await self.catalog.get_by_ids(cart_food_ids)
        if not cart:
            return []
        in_cart = {f.id for f in cart}
        candidates = [f for f in await self.catalog.get_all() if f.id not in in_cart][:15]
        if not candidates:
            return []

        answer = await self._ask(
            "A customer has these items in their cart:\n"
            + "\n".join(f"- {f.name} ({f.description})" for f in cart)
            + f"\nAvailable items to suggest:\n{_menu_lines(candidates)}\n"
            'Suggest 2-3 complementary items as a JSON array of {"foodName": "...", "reason": "..."}',
            "upsells",
        )
        if answer is None:
            return [_to_suggestion(f, UPSELL_REASON) for f in candidates[:3]]
        return self._pick(answer, candidates, limit=3, minimum=2, reason=UPSELL_REASON, pad_reason=UPSELL_PAD_REASON)

    @_fail_open(list)
    async def suggest_menu(self) -> List[Suggestion]:
        foods = (await self.catalog.get_all())[:20]
        if not foods:
            return []

        hour = self.clock().hour
        time_of_day = "morning" if hour < 12 else "afternoon" if hour < 17 else "evening"
        recent = await self.store.list_orders(offset=0, limit=5)
        popular = "\n".join(
            ", ".join(f"{item.quantity}x {item.food_item.name if item.food_item else item.food_item_id}" for item in o.items)
            for o in recent
        )
        answer = await self._ask(
            f"Suggest 3-5 menu items for the {time_of_day}.\nMenu:\n{_menu_lines(foods)}\n"
            f"Recent orders:\n{popular}\n"
            'Respond as a JSON array of {"foodName": "...", "reason": "..."}',
            "menu",
        )
        if answer is None:
            return [_to_suggestion(f, MENU_REASON) for f in foods[:5]]
        return self._pick(answer, foods, limit=5, minimum=3, reason=MENU_REASON, pad_reason=MENU_REASON)

    @_fail_open(list)
    async def suggest_next_order(self, order_id: UUID) -> List[Suggestion]:
        order = await self.store.get_order(order_id)
        if order is None or not order.items:
            return []
        ordered = {item.food_item_id for item in order.items}
        candidates = [f for f in await self.catalog.get_all() if f.id not in ordered][:15]
        if not candidates:
            return []

        answer = await self._ask(
            "A customer just ordered:\n"
            + "\n".join(
                f"{item.quantity}x {item.food_item.name if item.food_item else item.food_item_id}" for item in order.items
            )
            + f"\nAvailable items:\n{_menu_lines(candidates)}\n"
            'Suggest 2-3 items for their next order as a JSON array of {"foodName": "...", "reason": "..."}',
            "next_order",
        )
        if answer is None:
            return [_to_suggestion(f, NEXT_ORDER_REASON) for f in candidates[:3]]
        return self._pick(answer, candidates, limit=3, minimum=2, reason=NEXT_ORDER_REASON, pad_reason=NEXT_ORDER_PAD_REASON)

    def _proposals(self, answer: Any) -> Optional[List[ProposedAlert]]:
        if not isinstance(answer, list):
            return None
        proposals = []
        for raw in answer:
            if not isinstance(raw, dict):
                continue
            try:
                proposals.append(ProposedAlert(**{**raw, "ingredient_name": raw.get("ingredientName", raw.get("ingredient_name"))}))
            except ValidationError as e:
                log.warning(f"Discarding malformed alert proposal: {e.error_count()} errors")
        return proposals

    @_fail_open(lambda: 0)
    async def post_order_screen(self, order_id: UUID) -> int:
        """Screens the ingredients an order consumed and records any alerts. Returns the number written."""
        order = await self.store.get_order(order_id)
        if order is None:
            return 0
        foods = await self.catalog.get_by_ids([item.food_item_id for item in order.items])
        ingredient_ids = list(dict.fromkeys(req.ingredient.id for food in foods for req in food.ingredients))
        if not ingredient_ids:
            return 0
        ingredients = await self.store.get_ingredients(ingredient_ids)

        quantities = {item.food_item_id: item.quantity for item in order.items}
        usage = "\n".join(
            f"- {food.name} x{quantities.get(food.id, 0)} uses {req.qty_required}{req.ingredient.unit} of {req.ingredient.name}"
            for food in foods for req in food.ingredients
        )
        answer = await self._ask(
            f"After this order, analyze ingredient impact:\n{usage}\nCurrent stock:\n{_stock_lines(ingredients)}\n"
            "Return a JSON array of alerts with type, severity, title, message, ingredientName.",
            "post_order_screen",
        )
        proposals = self._proposals(answer)
        if proposals is not None:
            alerts = self.ledger.resolve_proposals(proposals, await self.store.list_ingredients())
        else:
            alerts = [a for a in map(build_low_stock_alert, ingredients) if a is not None]
        return await self.ledger.record_alerts(alerts)

    @_fail_open(lambda: None)
    async def analyze_inventory(self, ingredients: List[IngredientRecord]) -> Optional[List[ProposedAlert]]:
        """Alert proposals for the admin analysis, or None to let the ledger apply its rules."""
        if self.client is None:
            return None
        recent = await self.store.count_orders_since(self.clock() - timedelta(days=7))
        answer = await self._ask(
            f"Analyze this restaurant inventory:\n{_stock_lines(ingredients)}\n"
            f"Orders in the last 7 days: {recent}\n"
            "Return a JSON array of alerts with type (LOW_STOCK, NEAR_EXPIRY, RAPID_DEPLETION, "
            "CONSUMPTION_ANOMALY, PREDICTIVE_SHORTAGE), severity (LOW, MEDIUM, HIGH, CRITICAL), "
            "title, message, ingredientName.",
            "inventory_analysis",
        )
        return self._proposals(answer)

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.aclose()


def _stock_lines(ingredients: Sequence[IngredientRecord]) -> str:
    return "\n".join(
        f"- {i.name}: {i.quantity}{i.unit} (threshold: {i.threshold}{i.unit}, "
        f"expiry: {i.expiry_date.date() if i.expiry_date else 'N/A'})"
        for i in ingredients
    )


def create_llm_client(api_key: Optional[str] = GEMINI_API_KEY) -> Optional[LLMClient]:
    if not api_key:
        log.info("GEMINI_API_KEY not set; suggestions use the deterministic fallback")
        return None
    return GeminiClient(api_key)
