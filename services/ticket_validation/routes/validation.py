"""Rutas de validación de tickets"""
from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict
from uuid import UUID
from shared.database.session import get_db
from shared.auth.dependencies import get_current_scanner
from shared.exceptions import TicketingError
from shared.utils.http_errors import to_http_exception
from shared.utils.rate_limiter import limiter, RATE_LIMITS
from services.ticket_validation.models.ticket import (
    TicketInfoResponse,
    TicketValidationRequest,
    TicketValidationResponse
)
from services.ticket_validation.services.ticket_service import TicketValidationService


router = APIRouter()


@router.post("/validate", response_model=TicketValidationResponse)
@limiter.limit(RATE_LIMITS["validation"])
async def validate_ticket(
    request: Request,
    validation_request: TicketValidationRequest,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_scanner)
):
    """
    Validar ticket en la entrada (ID, qr_id o payload del QR)

    Requiere rol scanner o admin. 404 si no existe, 409 con el used_at
    original si ya fue usado.
    """
    try:
        result = await TicketValidationService.validate(
            db=db,
            ticket_ref=validation_request.ticket_ref,
            validator_id=str(current_user["user_id"]),
            device=validation_request.device
        )
    except TicketingError as e:
        raise to_http_exception(e)

    return TicketValidationResponse(
        status=result.status,
        ticket_id=result.ticket_id,
        used_at=result.used_at,
        event_name=result.event_name,
        user_email=result.user_email,
    )


@router.get("/{ticket_id}", response_model=TicketInfoResponse)
async def get_ticket(
    ticket_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: Dict = Depends(get_current_scanner)
):
    """Obtener información de un ticket por ID"""
    ticket = await TicketValidationService.get_ticket_by_id(db, ticket_id)

    if not ticket:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Ticket no encontrado"
        )

    return TicketInfoResponse(
        id=str(ticket.id),
        qr_id=ticket.qr_id,
        issued_at=ticket.issued_at,
        used_at=ticket.used_at,
        validator_id=ticket.validator_id,
        device=ticket.device,
    )
