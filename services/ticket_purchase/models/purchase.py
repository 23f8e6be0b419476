"""Modelos Pydantic para órdenes, pagos y webhooks"""
from pydantic import BaseModel, EmailStr, Field, model_validator
from typing import Optional, List, Literal
from uuid import UUID
from datetime import datetime
from decimal import Decimal


class OrderItemRequest(BaseModel):
    """Una butaca numerada (seat_id) o unidades de una categoría general (category_id)"""
    seat_id: Optional[UUID] = None
    category_id: Optional[UUID] = None
    quantity: int = Field(1, ge=1)

    @model_validator(mode="after")
    def check_reference(self):
        if bool(self.seat_id) == bool(self.category_id):
            raise ValueError("Cada ítem debe indicar seat_id o category_id (uno solo)")
        return self


class CreateOrderRequest(BaseModel):
    items: List[OrderItemRequest] = Field(..., min_length=1)
    user_id: Optional[UUID] = None  # Solo admins pueden crear órdenes para otro usuario
    hold_minutes: Optional[int] = Field(None, ge=1, le=60)


class OrderItemResponse(BaseModel):
    id: str
    category_id: str
    seat_id: Optional[str] = None
    quantity: int
    unit_price: Decimal
    subtotal: Decimal


class PaymentResponse(BaseModel):
    id: str
    provider: str
    status: str
    amount: Decimal
    provider_payment_id: Optional[str] = None
    created_at: Optional[datetime] = None


class TicketResponse(BaseModel):
    id: str
    order_item_id: str
    qr_id: str
    qr_code_url: Optional[str] = None
    pdf_url: Optional[str] = None
    wallet_pass_url: Optional[str] = None
    used_at: Optional[datetime] = None


class OrderResponse(BaseModel):
    order_id: str
    status: str
    total: Decimal
    currency: str
    expires_at: datetime
    created_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    payment_provider: Optional[str] = None
    payment_number: Optional[str] = None
    items: List[OrderItemResponse] = []
    payments: List[PaymentResponse] = []
    tickets: List[TicketResponse] = []


class PaymentSessionRequest(BaseModel):
    provider: Literal["stripe", "pagotic"]
    payer_email: Optional[EmailStr] = None


class PaymentSessionResponse(BaseModel):
    order_id: str
    provider: str
    provider_payment_id: str
    redirect_url: Optional[str] = None
    client_secret: Optional[str] = None


class ReconciliationResponse(BaseModel):
    received: bool = True
    action: str
    order_id: Optional[str] = None
    order_status: Optional[str] = None
    tickets_issued: int = 0


class SweepResponse(BaseModel):
    reclaimed: int
    skipped: bool = False
