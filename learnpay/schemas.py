from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from learnpay.service import PaymentRequest
from learnpay.totals import LineItem, TaxRegion


class LineItemIn(BaseModel):
    unit_amount: int
    quantity: int = 1
    tax_exempt: bool = False
    id: Optional[str] = None
    name: Optional[str] = None


class TaxRegionIn(BaseModel):
    country: Optional[str] = None
    region: Optional[str] = None
    postal_code: Optional[str] = None


class CreatePaymentRequest(BaseModel):
    provider: str
    items: List[LineItemIn]
    currency: Optional[str] = None
    coupon_code: Optional[str] = None
    tax_region: Optional[TaxRegionIn] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    receipt_email: Optional[str] = None
    description: Optional[str] = None
    metadata: dict = Field(default_factory=dict)
    idempotency_key: Optional[str] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    escrow: Optional[dict] = None

    def to_domain(self, user_id=None) -> PaymentRequest:
        return PaymentRequest(
            provider=self.provider,
            items=[LineItem(**item.model_dump()) for item in self.items],
            currency=self.currency,
            coupon_code=self.coupon_code,
            tax_region=TaxRegion(**self.tax_region.model_dump()) if self.tax_region else None,
            user_id=user_id,
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            receipt_email=self.receipt_email,
            description=self.description,
            metadata=self.metadata,
            idempotency_key=self.idempotency_key,
            return_url=self.return_url,
            cancel_url=self.cancel_url,
            escrow=self.escrow,
        )


class RefundRequest(BaseModel):
    amount: Optional[int] = None
    reason: Optional[str] = None


class PaymentOut(BaseModel):
    payment_id: str
    provider: str
    status: str
    currency: str
    amount_subtotal: int
    amount_discount: int
    amount_tax: int
    amount_total: int
    amount_refunded: int
    amount_available: int
    tax_breakdown: dict
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    failure_code: Optional[str] = None
    captured_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_intent(cls, intent):
        return cls(
            payment_id=intent.public_id,
            provider=intent.provider,
            status=intent.status,
            currency=intent.currency,
            amount_subtotal=intent.amount_subtotal,
            amount_discount=intent.amount_discount,
            amount_tax=intent.amount_tax,
            amount_total=intent.amount_total,
            amount_refunded=intent.amount_refunded,
            amount_available=intent.amount_available,
            tax_breakdown=intent.tax_breakdown or {},
            entity_type=intent.entity_type,
            entity_id=intent.entity_id,
            failure_code=intent.failure_code,
            captured_at=intent.captured_at,
            created_at=intent.created_at,
        )
