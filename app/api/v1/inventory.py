import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from app.api.deps import get_services
from app.core.container import Services
from app.schemas.inventory import IngredientCreate, StockAdjustment
from app.schemas.response import SuccessResponse

# Every route here sits behind the admin gate (applied when the router is mounted)
router = APIRouter()
log = logging.getLogger(__name__)


@router.get("/ingredients", response_model=SuccessResponse)
async def list_ingredients(services: Services = Depends(get_services)):
    ingredients = await services.ledger.get_ingredients()
    return SuccessResponse(data=[i.model_dump(mode="json") for i in ingredients])


@router.post("/ingredients", status_code=status.HTTP_201_CREATED, response_model=SuccessResponse)
async def create_ingredient(payload: IngredientCreate, services: Services = Depends(get_services)):
    ingredient = await services.ledger.create_ingredient(payload)
    return SuccessResponse(data=ingredient.model_dump(mode="json"))


@router.get("/ingredients/{ingredient_id}", response_model=SuccessResponse)
async def get_ingredient(ingredient_id: UUID, services: Services = Depends(get_services)):
    ingredient = await services.ledger.get_ingredient(ingredient_id)
    return SuccessResponse(data=ingredient.model_dump(mode="json"))


@router.post("/ingredients/{ingredient_id}/adjust", response_model=SuccessResponse)
async def adjust_stock(ingredient_id: UUID, payload: StockAdjustment, services: Services = Depends(get_services)):
    """Restock (positive delta) or write off (negative delta) an ingredient."""
    ingredient = await services.ledger.adjust_stock(ingredient_id, payload.delta)
    log.info(f"Stock adjusted ingredient={ingredient.name} delta={payload.delta} quantity={ingredient.quantity}")
    return SuccessResponse(data=ingredient.model_dump(mode="json"))


@router.get("/dashboard", response_model=SuccessResponse)
async def inventory_dashboard(services: Services = Depends(get_services)):
    dashboard = await services.ledger.get_dashboard()
    return SuccessResponse(data=dashboard.model_dump(mode="json"))


@router.get("/near-expiry", response_model=SuccessResponse)
async def near_expiry(days: int = Query(7, ge=0, le=365), services: Services = Depends(get_services)):
    ingredients = await services.ledger.get_near_expiry(days)
    return SuccessResponse(data=[i.model_dump(mode="json") for i in ingredients])


@router.get("/alerts", response_model=SuccessResponse)
async def list_alerts(is_read: bool = False, services: Services = Depends(get_services)):
    alerts = await services.ledger.get_alerts(is_read)
    return SuccessResponse(data=[a.model_dump(mode="json") for a in alerts])


@router.post("/alerts/{alert_id}/read", response_model=SuccessResponse)
async def mark_alert_read(alert_id: UUID, services: Services = Depends(get_services)):
    await services.ledger.mark_alert_read(alert_id)
    return SuccessResponse(data={"id": str(alert_id), "is_read": True})


@router.post("/analysis", response_model=SuccessResponse)
async def trigger_analysis(services: Services = Depends(get_services)):
    """Runs the inventory analysis (provider-assisted when configured, rules otherwise)."""
    result = await services.ledger.analyze_inventory(advisor=services.suggestions.analyze_inventory)
    return SuccessResponse(data=result.model_dump(mode="json"))
