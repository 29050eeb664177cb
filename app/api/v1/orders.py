import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, Response, status

from app.api.deps import get_services
from app.core.container import Services
from app.core.security import require_admin
from app.schemas.order import OrderRequest
from app.schemas.response import SuccessResponse

router = APIRouter()
log = logging.getLogger(__name__)


@router.post("/", status_code=status.HTTP_201_CREATED, response_model=SuccessResponse)
async def create_order_endpoint(
    request_data: OrderRequest,
    response: Response,
    services: Services = Depends(get_services),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key", max_length=128),
):
    """
    Places an order: validates the cart, deducts stock and records low-stock alerts atomically.
    Resubmitting with the same Idempotency-Key returns the original order (200) without side effects.
    """
    key = idempotency_key or request_data.idempotency_key
    placement = await services.orders.place_order(request_data.items, idempotency_key=key)
    if placement.replayed:
        response.status_code = status.HTTP_200_OK
    else:
        log.info(f"Order {placement.order_id} placed successfully total={placement.total}")
    return SuccessResponse(data=placement.model_dump(mode="json"))


@router.get("/", response_model=SuccessResponse, dependencies=[Depends(require_admin)])
async def list_orders_endpoint(
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    services: Services = Depends(get_services),
):
    """Newest orders first, with items and a snapshot of each food item."""
    result = await services.orders.get_orders(page, page_size)
    return SuccessResponse(data=result.model_dump(mode="json"))


@router.get("/{order_id}", response_model=SuccessResponse)
async def get_order_endpoint(order_id: UUID, services: Services = Depends(get_services)):
    """Fetches details for a specific order."""
    order = await services.orders.get_order(order_id)
    return SuccessResponse(data=order.model_dump(mode="json"))


@router.get("/{order_id}/suggestions", response_model=SuccessResponse)
async def next_order_suggestions_endpoint(order_id: UUID, services: Services = Depends(get_services)):
    suggestions = await services.suggestions.suggest_next_order(order_id)
    return SuccessResponse(data=[s.model_dump(mode="json") for s in suggestions])
