"""
Orders API Endpoints

Read-only views of the order ledger and its audit trail.
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends

from ..services.service_factory import ReconcilerServices
from .dependencies import get_services

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("")
async def list_orders_endpoint(
    services: ReconcilerServices = Depends(get_services)
) -> Dict[str, Any]:
    """
    All orders, newest first.

    Returns:
        {"orders": [...], "count": int}
    """
    orders = await services.ledger.list_orders()
    return {
        "orders": [o.to_public_dict() for o in orders],
        "count": len(orders)
    }


@router.get("/{order_id}")
async def get_order_endpoint(
    order_id: str,
    services: ReconcilerServices = Depends(get_services)
) -> Dict[str, Any]:
    """
    Order details.

    Raises:
        OrderNotFoundError: 404 via the application error handler
    """
    logger.debug(f"Retrieving order: {order_id}")
    record = await services.ledger.require(order_id)
    return record.to_public_dict()


@router.get("/{order_id}/observations")
async def get_order_observations_endpoint(
    order_id: str,
    services: ReconcilerServices = Depends(get_services)
) -> Dict[str, Any]:
    """
    Every outcome the ledger was handed for this order, in arrival order,
    with how it was applied (APPLIED, REFRESHED, DUPLICATE, CONFLICT).

    Example:
        GET /orders/ORD1/observations
    """
    await services.ledger.require(order_id)
    observations = await services.ledger.observations(order_id)
    return {
        "order_id": order_id,
        "observations": [o.model_dump(mode="json") for o in observations],
        "count": len(observations)
    }
