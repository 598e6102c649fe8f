from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from orderflow.core.rate_limiter import limiter
from orderflow.db.session import get_db
from orderflow.schemas.order import serialize_order
from orderflow.services.payment_service import PaymentReconciler
from orderflow.utils.response import success

router = APIRouter()

SIGNATURE_HEADER = "X-Payment-Signature"


@router.post(
    "/webhook",
    summary="Payment provider webhook",
    description="""
Receives payment outcomes pushed by the provider.

The raw body must be signed with HMAC-SHA256 using the shared webhook secret
and the hex digest sent in the `X-Payment-Signature` header. Successful
payment events are reconciled against the order identified by `order_key`;
other events are acknowledged and ignored.
""",
    responses={
        200: {"description": "Event processed or ignored"},
        400: {"description": "Invalid signature, malformed payload or unacceptable payment"},
        404: {"description": "Order not found"},
    },
    tags=["Payments"],
)
@limiter.limit("120/minute")
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
):
    payload = await request.body()
    order = PaymentReconciler.process_webhook(db, payload, request.headers.get(SIGNATURE_HEADER))

    if order is None:
        return success(message="Event ignored")

    return success(data=serialize_order(order), message="Payment reconciled")
