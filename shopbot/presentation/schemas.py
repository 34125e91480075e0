from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, List, Optional

from shopbot.domain.models import OrderStatus, PaymentStatus


class ChatMessageRequest(BaseModel):
    shop_id: str
    sender_id: str
    text: str = Field(min_length=1, max_length=4000)
    sender_name: Optional[str] = None


class ChatMessageResponse(BaseModel):
    reply: Optional[str] = None
    customer_id: Optional[str] = None
    paused: bool = False
    rate_limited: bool = False
    images: List[Dict[str, Any]] = Field(default_factory=list)


class OrderItemResponse(BaseModel):
    product_id: str
    product_name: str
    quantity: int
    unit_price: int
    variant_specs: Dict[str, str] = Field(default_factory=dict)


class OrderResponse(BaseModel):
    id: str
    shop_id: str
    customer_id: str
    status: OrderStatus
    total_amount: int
    notes: Optional[str] = None
    items: List[OrderItemResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, order):
        return cls(
            id=order.id,
            shop_id=order.shop_id,
            customer_id=order.customer_id,
            status=order.status,
            total_amount=order.total_amount,
            notes=order.notes,
            items=[
                OrderItemResponse(
                    product_id=item.product_id,
                    product_name=item.product_name,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    variant_specs=item.variant_specs
                )
                for item in order.items
            ],
            created_at=order.created_at,
            updated_at=order.updated_at
        )


class PaymentResponse(BaseModel):
    id: str
    invoice_id: Optional[str] = None
    amount: int
    status: PaymentStatus
    payment_url: Optional[str] = None
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None


class OrderDetailsResponse(OrderResponse):
    payments: List[PaymentResponse] = Field(default_factory=list)
    paid: bool = False

    @classmethod
    def from_details(cls, details):
        return cls(
            **OrderResponse.from_domain(details.order).model_dump(),
            payments=[
                PaymentResponse(
                    id=payment.id,
                    invoice_id=payment.invoice_id,
                    amount=payment.amount,
                    status=payment.status,
                    payment_url=payment.payment_url,
                    transaction_id=payment.transaction_id,
                    paid_at=payment.paid_at
                )
                for payment in details.payments
            ],
            paid=details.paid_payment is not None
        )


class OrderStatusUpdateRequest(BaseModel):
    status: OrderStatus
    reason: Optional[str] = Field(default=None, max_length=500)


class PaymentWebhookResponse(BaseModel):
    status: str
    invoice_id: str
    order_id: Optional[str] = None


class SweepResponse(BaseModel):
    checked: int
    cancelled: int
    skipped: int
    failed: int


class HumanReplyRequest(BaseModel):
    text: str = Field(min_length=1, max_length=2000)


class HumanReplyResponse(BaseModel):
    customer_id: str
    ai_paused_until: datetime


class ErrorResponse(BaseModel):
    detail: str
