from typing import Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from orderflow.core.exceptions import ProductNotFound, VariantNotFound
from orderflow.core.rate_limiter import limiter
from orderflow.db.session import get_db
from orderflow.schemas.cart import normalize_selector
from orderflow.schemas.stock import InsufficientStockItem, StockCheckRequest, StockCheckResponse
from orderflow.services.stock_ledger import StockLedger
from orderflow.utils.response import success

router = APIRouter()

StockKey = Tuple[int, Optional[str], Optional[str]]


def _build_stock_response(payload: StockCheckRequest, db: Session) -> dict:
    requested_quantities: Dict[StockKey, int] = {}
    for item in payload.items:
        key = (item.product_id, normalize_selector(item.size), normalize_selector(item.color))
        requested_quantities[key] = requested_quantities.get(key, 0) + item.quantity

    ledger = StockLedger(db)
    insufficient_items: List[InsufficientStockItem] = []

    for (product_id, size, color), requested_quantity in requested_quantities.items():
        try:
            available_quantity = ledger.available(product_id, size, color)
            message = f"Insufficient stock for product {product_id}"
        except (ProductNotFound, VariantNotFound) as exc:
            available_quantity = 0
            message = exc.message

        if available_quantity < requested_quantity:
            insufficient_items.append(
                InsufficientStockItem(
                    product_id=product_id,
                    size=size,
                    color=color,
                    available_quantity=available_quantity,
                    requested_quantity=requested_quantity,
                    message=message,
                )
            )

    response = StockCheckResponse(
        available=len(insufficient_items) == 0,
        insufficient_items=insufficient_items,
    )
    return success(data=response.model_dump())


@router.post("/check", response_model=dict)
@limiter.limit("120/minute")
def check_stock(
    request: Request,
    payload: StockCheckRequest,
    db: Session = Depends(get_db),
):
    """Check stock availability for product quantities without deducting inventory."""
    return _build_stock_response(payload, db)
