"""Modelos Pydantic para validación de tickets"""
from datetime import datetime
from pydantic import BaseModel, Field
from typing import Optional


class TicketValidationRequest(BaseModel):
    ticket_ref: str = Field(
        ..., alias="ticketRef", min_length=1, description="ID del ticket, qr_id o payload 'ticket:<qr_id>'"
    )
    device: Optional[str] = None

    class Config:
        populate_by_name = True


class TicketValidationResponse(BaseModel):
    """Respuesta para el escáner (camelCase, como la consume la app de control)"""
    status: str
    ticket_id: str = Field(..., alias="ticketId")
    used_at: datetime = Field(..., alias="usedAt")
    event_name: str = Field(..., alias="eventName")
    user_email: str = Field(..., alias="userEmail")

    class Config:
        populate_by_name = True


class TicketInfoResponse(BaseModel):
    id: str
    qr_id: str
    issued_at: Optional[datetime] = None
    used_at: Optional[datetime] = None
    validator_id: Optional[str] = None
    device: Optional[str] = None
