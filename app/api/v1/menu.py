from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from app.api.deps import get_services
from app.core.container import Services
from app.core.security import require_admin
from app.schemas.catalog import FoodItemCreate, FoodItemUpdate
from app.schemas.response import SuccessResponse
from app.schemas.suggestion import Suggestion, UpsellRequest

router = APIRouter()


def _suggestions(suggestions: List[Suggestion]) -> SuccessResponse:
    return SuccessResponse(data=[s.model_dump(mode="json") for s in suggestions])


@router.get("/", response_model=SuccessResponse)
async def list_food_items(services: Services = Depends(get_services)):
    """Full menu with ingredient requirements, ordered by name."""
    items = await services.catalog.get_all()
    return SuccessResponse(data=[item.model_dump(mode="json") for item in items])


# Static paths are registered before /{food_item_id}
@router.get("/recommendations", response_model=SuccessResponse)
async def menu_recommendations(services: Services = Depends(get_services)):
    suggestions = await services.suggestions.suggest_menu()
    return _suggestions(suggestions)


@router.post("/upsells", response_model=SuccessResponse)
async def cart_upsells(payload: UpsellRequest, services: Services = Depends(get_services)):
    """Items that complement the current cart."""
    suggestions = await services.suggestions.suggest_upsells(payload.food_item_ids)
    return _suggestions(suggestions)


@router.post("/", status_code=status.HTTP_201_CREATED, response_model=SuccessResponse,
             dependencies=[Depends(require_admin)])
async def create_food_item(payload: FoodItemCreate, services: Services = Depends(get_services)):
    item = await services.catalog.create_food_item(payload)
    return SuccessResponse(data=item.model_dump(mode="json"))


@router.get("/{food_item_id}", response_model=SuccessResponse)
async def get_food_item(food_item_id: UUID, services: Services = Depends(get_services)):
    item = await services.catalog.get_by_id(food_item_id)
    if not item:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Food item not found")
    return SuccessResponse(data=item.model_dump(mode="json"))


@router.patch("/{food_item_id}", response_model=SuccessResponse, dependencies=[Depends(require_admin)])
async def update_food_item(food_item_id: UUID, payload: FoodItemUpdate, services: Services = Depends(get_services)):
    item = await services.catalog.update_food_item(food_item_id, payload)
    return SuccessResponse(data=item.model_dump(mode="json"))


@router.get("/{food_item_id}/pairing", response_model=SuccessResponse)
async def food_pairing(food_item_id: UUID, services: Services = Depends(get_services)):
    """One item that pairs with the selected dish; data is null when nothing fits."""
    suggestion = await services.suggestions.suggest_pairing(food_item_id)
    return SuccessResponse(data=suggestion.model_dump(mode="json") if suggestion else None)
