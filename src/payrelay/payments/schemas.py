"""Request and response bodies for the JSON routes."""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class CreatePaymentSessionRequest(_CamelModel):
    """Body of POST /api/create-payment-session."""

    price_id: Optional[str] = Field(default=None, alias="priceId")
    customer_id: Optional[str] = Field(default=None, alias="customerId")


class CreatePaymentSessionResponse(_CamelModel):
    url: str


class ConfirmSubscriptionRequest(_CamelModel):
    """Body of POST /api/confirm-subscription. Every field is required."""

    payment_intent_id: Optional[str] = Field(default=None, alias="paymentIntentId")
    customer_id: Optional[str] = Field(default=None, alias="customerId")
    price_id: Optional[str] = Field(default=None, alias="priceId")
    payment_method_id: Optional[str] = Field(default=None, alias="paymentMethodId")

    def is_complete(self) -> bool:
        return all(
            (self.payment_intent_id, self.customer_id, self.price_id, self.payment_method_id)
        )


class ConfirmSubscriptionResponse(_CamelModel):
    success: bool = True
    subscription_id: str = Field(alias="subscriptionId")
    status: str
    current_period_end: Optional[datetime] = Field(alias="currentPeriodEnd")
    invoice_url: Optional[str] = Field(alias="invoiceUrl")

    def to_json(self) -> dict:
        data = self.model_dump(by_alias=True)
        if self.current_period_end is not None:
            data["currentPeriodEnd"] = _iso8601(self.current_period_end)
        return data


def _iso8601(value: datetime) -> str:
    """UTC timestamp with millisecond precision and a Z suffix."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"
