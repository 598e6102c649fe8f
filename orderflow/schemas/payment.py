from typing import Optional
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator

SUCCESSFUL_PAYMENT_STATUSES = {"succeeded", "success", "paid", "completed", "captured"}


class PaymentResult(BaseModel):
    """Provider-agnostic payment outcome, validated in full before it touches an order."""
    id: str = Field(..., min_length=1, max_length=100)
    status: str = Field(..., min_length=1, max_length=30)
    amount: Decimal = Field(..., ge=0)
    currency: str = Field(..., min_length=3, max_length=3)
    method: Optional[str] = Field(default=None, max_length=30)
    provider_transaction_id: Optional[str] = Field(default=None, max_length=100)
    email_address: Optional[str] = Field(default=None, max_length=255)

    @field_validator("status")
    @classmethod
    def normalize_status(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        value = value.strip().upper()
        if not value.isalpha():
            raise ValueError("currency must be an ISO 4217 code")
        return value

    @property
    def is_successful(self) -> bool:
        return self.status in SUCCESSFUL_PAYMENT_STATUSES


class PaymentWebhookPayload(BaseModel):
    event: str = Field(..., min_length=1, max_length=100)
    order_key: str = Field(..., min_length=1, max_length=64)
    payment: PaymentResult
