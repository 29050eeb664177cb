import json
import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from app.models.inventory import AlertSeverity, AlertType
from app.persistence.port import PersistenceError
from app.schemas.order import CartLine
from app.services.inventory_service import InventoryLedger
from app.services.menu_service import MenuCatalog
from app.services.suggestion_service import (
    MENU_REASON,
    NEXT_ORDER_REASON,
    PAIRING_REASON,
    UPSELL_PAD_REASON,
    UPSELL_REASON,
    GeminiClient,
    SuggestionGateway,
    SuggestionRateLimited,
    SuggestionUnavailable,
    create_llm_client,
    extract_json,
)
from app.testing.testing_mocks import ScriptedLLMClient, cart_line

MORNING = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_gateway(store, cache):
    def build(client=None) -> SuggestionGateway:
        return SuggestionGateway(
            MenuCatalog(store, cache), InventoryLedger(store, cache), store, client, clock=lambda: MORNING
        )
    return build


@pytest.fixture
def sides(store, kitchen):
    """Extra menu items so upsell padding has something to pad with."""
    store.add_food_item("Gulab Jamun", "149")
    store.add_food_item("Raita", "59")
    return kitchen


def gemini(handler) -> GeminiClient:
    return GeminiClient("test-key", model="test-model", http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestExtractJson:
    @pytest.mark.parametrize(
        "reply, expected",
        [
            ('{"foodName": "Raita"}', {"foodName": "Raita"}),
            ('```json\n[{"foodName": "Raita"}]\n```', [{"foodName": "Raita"}]),
            ('```\n{"a": 1}\n```', {"a": 1}),
            ('Sure! Here is my pick: {"foodName": "Raita", "reason": "cooling"} Enjoy.', {"foodName": "Raita", "reason": "cooling"}),
            ('I suggest:\n[{"foodName": "Raita"}]\nThanks', [{"foodName": "Raita"}]),
        ],
    )
    def test_accepts_common_reply_shapes(self, reply, expected):
        assert extract_json(reply) == expected

    def test_rejects_unparseable_reply(self):
        with pytest.raises(SuggestionUnavailable):
            extract_json("I'm not sure what to recommend today.")


class TestGeminiClient:
    @pytest.mark.asyncio
    async def test_joins_candidate_parts(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["key"] = request.headers["x-goog-api-key"]
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200, json={"candidates": [{"content": {"parts": [{"text": '{"foodName": '}, {"text": '"Raita"}'}]}}]}
            )

        client = gemini(handler)
        assert await client.generate("hello") == '{"foodName": "Raita"}'
        await client.aclose()

        assert seen["key"] == "test-key"
        assert seen["path"].endswith("/models/test-model:generateContent")
        assert seen["body"] == {"contents": [{"parts": [{"text": "hello"}]}]}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(429, text="Too Many Requests"),
            httpx.Response(400, json={"error": {"status": "RESOURCE_EXHAUSTED"}}),
        ],
    )
    async def test_rate_limits_are_distinguished(self, response):
        client = gemini(lambda request: response)
        with pytest.raises(SuggestionRateLimited):
            await client.generate("hello")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(503, text="unavailable"),
            httpx.Response(200, json={"candidates": []}),
            httpx.Response(200, text="not json"),
        ],
    )
    async def test_other_failures_are_unavailable(self, response):
        client = gemini(lambda request: response)
        with pytest.raises(SuggestionUnavailable) as exc_info:
            await client.generate("hello")
        assert not isinstance(exc_info.value, SuggestionRateLimited)

    @pytest.mark.asyncio
    async def test_reply_mentioning_resource_exhausted_is_not_a_rate_limit(self):
        reply = {"candidates": [{"content": {"parts": [{"text": "Quota status: RESOURCE_EXHAUSTED means slow down."}]}}]}
        client = gemini(lambda request: httpx.Response(200, json=reply))

        assert await client.generate("explain quotas") == "Quota status: RESOURCE_EXHAUSTED means slow down."

    @pytest.mark.asyncio
    async def test_transport_errors_are_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(SuggestionUnavailable):
            await gemini(handler).generate("hello")

    @pytest.mark.asyncio
    async def test_factory_needs_a_key(self):
        assert create_llm_client(None) is None
        assert create_llm_client("") is None
        client = create_llm_client("k")
        assert isinstance(client, GeminiClient)
        await client.aclose()


class TestPairing:
    @pytest.mark.asyncio
    async def test_fallback_is_first_other_item(self, make_gateway, kitchen):
        suggestion = await make_gateway().suggest_pairing(kitchen.biryani.id)
        assert suggestion.name == "Mango Lassi"
        assert suggestion.reason == PAIRING_REASON
        assert suggestion.price == Decimal("99.00")

    @pytest.mark.asyncio
    async def test_provider_pick_is_matched_case_insensitively(self, make_gateway, kitchen):
        client = ScriptedLLMClient(['```json\n{"foodName": "paneer tikka", "reason": "Smoky and light"}\n```'])

        suggestion = await make_gateway(client).suggest_pairing(kitchen.biryani.id)

        assert suggestion.food_id == kitchen.tikka.id
        assert suggestion.reason == "Smoky and light"
        assert "Chicken Biryani" in client.prompts[0]

    @pytest.mark.asyncio
    async def test_unknown_pick_falls_back(self, make_gateway, kitchen):
        client = ScriptedLLMClient(['{"foodName": "Butter Naan"}'])
        suggestion = await make_gateway(client).suggest_pairing(kitchen.biryani.id)
        assert suggestion.name == "Mango Lassi"

    @pytest.mark.asyncio
    async def test_nothing_to_pair(self, make_gateway, store):
        only = store.add_food_item("Masala Chai", "30")
        gateway = make_gateway()
        assert await gateway.suggest_pairing(only.id) is None
        assert await gateway.suggest_pairing(uuid.uuid4()) is None


class TestUpsells:
    @pytest.mark.asyncio
    async def test_fallback_excludes_cart_items(self, make_gateway, sides):
        upsells = await make_gateway().suggest_upsells([sides.biryani.id])
        assert [s.name for s in upsells] == ["Gulab Jamun", "Mango Lassi", "Paneer Tikka"]
        assert {s.reason for s in upsells} == {UPSELL_REASON}

    @pytest.mark.asyncio
    async def test_short_answer_is_padded(self, make_gateway, sides):
        client = ScriptedLLMClient(['[{"foodName": "Raita", "reason": "Cools the spice"}, {"foodName": "Chicken Biryani"}]'])

        upsells = await make_gateway(client).suggest_upsells([sides.biryani.id])

        assert [(s.name, s.reason) for s in upsells] == [
            ("Raita", "Cools the spice"),
            ("Gulab Jamun", UPSELL_PAD_REASON),
            ("Mango Lassi", UPSELL_PAD_REASON),
        ]

    @pytest.mark.asyncio
    async def test_answer_is_capped(self, make_gateway, sides):
        picks = [{"foodName": n} for n in ("Raita", "Gulab Jamun", "Mango Lassi", "Paneer Tikka")]
        client = ScriptedLLMClient([json.dumps(picks)])

        upsells = await make_gateway(client).suggest_upsells([sides.biryani.id])

        assert [s.name for s in upsells] == ["Raita", "Gulab Jamun", "Mango Lassi"]
        assert {s.reason for s in upsells} == {UPSELL_REASON}

    @pytest.mark.asyncio
    async def test_rate_limit_is_a_warning_and_falls_back(self, make_gateway, sides, caplog):
        client = ScriptedLLMClient([SuggestionRateLimited("quota")])

        with caplog.at_level(logging.WARNING):
            upsells = await make_gateway(client).suggest_upsells([sides.biryani.id])

        assert len(upsells) == 3
        assert "rate limited purpose=upsells" in caplog.text
        assert not [r for r in caplog.records if r.levelno >= logging.ERROR]

    @pytest.mark.asyncio
    async def test_empty_or_unknown_cart(self, make_gateway, kitchen):
        gateway = make_gateway()
        assert await gateway.suggest_upsells([]) == []
        assert await gateway.suggest_upsells([uuid.uuid4()]) == []


class TestMenuAndNextOrder:
    @pytest.mark.asyncio
    async def test_menu_fallback(self, make_gateway, sides):
        menu = await make_gateway().suggest_menu()
        assert len(menu) == 5
        assert {s.reason for s in menu} == {MENU_REASON}

    @pytest.mark.asyncio
    async def test_menu_from_prose_answer(self, make_gateway, kitchen):
        client = ScriptedLLMClient(['Here you go: [{"foodName": "Mango Lassi"}, {"foodName": "Nope"}] enjoy'])

        menu = await make_gateway(client).suggest_menu()

        assert [s.name for s in menu] == ["Mango Lassi", "Chicken Biryani", "Paneer Tikka"]
        assert "for the morning" in client.prompts[0]

    @pytest.mark.asyncio
    async def test_store_outage_fails_open(self, make_gateway, store, kitchen, caplog):
        store.faults["list_food_items"] = PersistenceError("database is down")

        with caplog.at_level(logging.ERROR):
            assert await make_gateway().suggest_menu() == []

        assert "Suggestion suggest_menu failed" in caplog.text

    @pytest.mark.asyncio
    async def test_next_order_skips_what_was_ordered(self, make_gateway, make_pipeline, kitchen):
        placement = await make_pipeline().place_order([CartLine(**cart_line(kitchen.biryani, 1))])

        suggestions = await make_gateway().suggest_next_order(placement.order_id)

        assert [s.name for s in suggestions] == ["Mango Lassi", "Paneer Tikka"]
        assert {s.reason for s in suggestions} == {NEXT_ORDER_REASON}
        assert await make_gateway().suggest_next_order(uuid.uuid4()) == []


class TestPostOrderScreen:
    @pytest.fixture
    def pizza_order(self, store, make_pipeline):
        async def place():
            cheese = store.add_ingredient("Cheese", "10", "8")
            pizza = store.add_food_item("Pizza", "450", {cheese.id: "1"})
            placement = await make_pipeline().place_order([CartLine(**cart_line(pizza, 1))])
            return cheese, placement.order_id
        return place

    @pytest.mark.asyncio
    async def test_rules_flag_ingredients_below_threshold(self, make_gateway, store, pizza_order):
        cheese, order_id = await pizza_order()
        assert store.alerts == []
        # a later write-off outside the order pushes the stock under its threshold
        await store.decrement_stock(cheese.id, Decimal("3"))

        gateway = make_gateway()
        assert await gateway.post_order_screen(order_id) == 1
        assert await gateway.post_order_screen(order_id) == 0
        (alert,) = store.alerts
        assert (alert.type, alert.severity, alert.ingredient_id) == (AlertType.LOW_STOCK, AlertSeverity.HIGH, cheese.id)

    @pytest.mark.asyncio
    async def test_provider_proposals_are_recorded(self, make_gateway, store, pizza_order, caplog):
        cheese, order_id = await pizza_order()
        reply = [
            {
                "type": "RAPID_DEPLETION",
                "severity": "MEDIUM",
                "title": "Cheese moving fast",
                "message": "Cheese will run out by Friday",
                "ingredientName": "cheese",
            },
            {"type": "SOMETHING_ELSE", "severity": "LOW", "title": "?", "message": "?"},
        ]
        client = ScriptedLLMClient([json.dumps(reply)])

        with caplog.at_level(logging.WARNING):
            assert await make_gateway(client).post_order_screen(order_id) == 1

        (alert,) = store.alerts
        assert alert.type == AlertType.RAPID_DEPLETION
        assert alert.ingredient_id == cheese.id
        assert "Discarding malformed alert proposal" in caplog.text
        assert "Cheese: 9kg" in client.prompts[0]

    @pytest.mark.asyncio
    async def test_provider_failure_uses_rules(self, make_gateway, store, pizza_order):
        cheese, order_id = await pizza_order()
        await store.decrement_stock(cheese.id, Decimal("5"))
        client = ScriptedLLMClient(default=SuggestionUnavailable("provider down"))

        assert await make_gateway(client).post_order_screen(order_id) == 1
        assert store.alerts[0].title == "Low Stock: Cheese"

    @pytest.mark.asyncio
    async def test_orders_without_ingredients_or_unknown(self, make_gateway, make_pipeline, kitchen):
        placement = await make_pipeline().place_order([CartLine(**cart_line(kitchen.lassi, 2))])
        client = ScriptedLLMClient()
        gateway = make_gateway(client)

        assert await gateway.post_order_screen(placement.order_id) == 0
        assert await gateway.post_order_screen(uuid.uuid4()) == 0
        assert client.prompts == []


class TestInventoryAdvice:
    @pytest.mark.asyncio
    async def test_no_provider_means_no_opinion(self, make_gateway, store, kitchen):
        assert await make_gateway().analyze_inventory(await store.list_ingredients()) is None

    @pytest.mark.asyncio
    async def test_proposals_from_provider(self, make_gateway, store, kitchen):
        client = ScriptedLLMClient(
            ['[{"type": "PREDICTIVE_SHORTAGE", "severity": "LOW", "title": "Rice", "message": "Reorder soon", "ingredientName": "Basmati Rice"}]']
        )

        proposals = await make_gateway(client).analyze_inventory(await store.list_ingredients())

        assert [(p.type, p.ingredient_name) for p in proposals] == [(AlertType.PREDICTIVE_SHORTAGE, "Basmati Rice")]
        assert "Spice Mix: 5kg (threshold: 1kg, expiry: N/A)" in client.prompts[0]
        assert "Orders in the last 7 days: 0" in client.prompts[0]

    @pytest.mark.asyncio
    async def test_non_list_answer_is_no_opinion(self, make_gateway, store, kitchen):
        client = ScriptedLLMClient(['{"status": "all good"}'])
        assert await make_gateway(client).analyze_inventory(await store.list_ingredients()) is None

    @pytest.mark.asyncio
    async def test_aclose_closes_client(self, make_gateway):
        client = ScriptedLLMClient()
        await make_gateway(client).aclose()
        assert client.closed
