"""Modelos SQLAlchemy del catálogo, inventario, órdenes, pagos y tickets"""
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, ForeignKey, Numeric, JSON, Uuid,
    UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid
from shared.database.connection import Base


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.CANCELLED, OrderStatus.EXPIRED})


class SeatStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    HELD = "HELD"
    SOLD = "SOLD"


class PaymentProvider(str, Enum):
    STRIPE = "STRIPE"
    PAGOTIC = "PAGOTIC"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    CANCELLED = "CANCELLED"


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, unique=True, nullable=False, index=True)
    full_name = Column(String, nullable=True)
    role = Column(String, nullable=False, server_default="user")  # user, admin, scanner
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    # Relaciones
    orders = relationship("Order", back_populates="user")


class Event(Base):
    __tablename__ = "events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    venue_name = Column(String, nullable=True)
    city = Column(String, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    # Relaciones
    sessions = relationship("EventSession", back_populates="event", cascade="all, delete-orphan")


class EventSession(Base):
    __tablename__ = "event_sessions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(Uuid(as_uuid=True), ForeignKey("events.id"), nullable=False)
    starts_at = Column(DateTime, nullable=False)
    venue_name = Column(String, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    # Relaciones
    event = relationship("Event", back_populates="sessions")
    categories = relationship("TicketCategory", back_populates="session", cascade="all, delete-orphan")
    seats = relationship("Seat", back_populates="session")


class TicketCategory(Base):
    """
    Categoría de tickets de una sesión.

    Para categorías sin numerar los contadores son el inventario:
    capacity_total = capacity_available + capacity_held + capacity_sold
    """
    __tablename__ = "ticket_categories"
    __table_args__ = (
        CheckConstraint("capacity_available >= 0", name="ck_category_available_non_negative"),
        CheckConstraint("capacity_held >= 0", name="ck_category_held_non_negative"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id = Column(Uuid(as_uuid=True), ForeignKey("event_sessions.id"), nullable=False)
    name = Column(String, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    is_seated = Column(Boolean, nullable=False, default=False)
    capacity_total = Column(Integer, nullable=False, default=0)
    capacity_available = Column(Integer, nullable=False, default=0)
    capacity_held = Column(Integer, nullable=False, default=0)
    capacity_sold = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    # Relaciones
    session = relationship("EventSession", back_populates="categories")
    seats = relationship("Seat", back_populates="category")
    capacity_logs = relationship("CapacityLog", back_populates="category")


class Seat(Base):
    __tablename__ = "seats"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id = Column(Uuid(as_uuid=True), ForeignKey("event_sessions.id"), nullable=False)
    category_id = Column(Uuid(as_uuid=True), ForeignKey("ticket_categories.id"), nullable=False)
    label = Column(String, nullable=False)
    status = Column(String, nullable=False, default=SeatStatus.AVAILABLE.value)  # AVAILABLE, HELD, SOLD
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)  # Usuario que lo retiene/compró
    held_by_order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id"), nullable=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    # Relaciones
    session = relationship("EventSession", back_populates="seats")
    category = relationship("TicketCategory", back_populates="seats")


class CapacityLog(Base):
    """Auditoría append-only de los movimientos de contadores de categoría"""
    __tablename__ = "capacity_logs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    category_id = Column(Uuid(as_uuid=True), ForeignKey("ticket_categories.id"), nullable=False)
    order_id = Column(Uuid(as_uuid=True), nullable=True)
    delta = Column(Integer, nullable=False)
    reason = Column(String, nullable=True)  # hold, release, sale
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    # Relaciones
    category = relationship("TicketCategory", back_populates="capacity_logs")


class Order(Base):
    __tablename__ = "orders"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    status = Column(String, nullable=False, default=OrderStatus.PENDING.value)  # PENDING, PAID, CANCELLED, EXPIRED
    total = Column(Numeric(12, 2), nullable=False)
    currency = Column(String, nullable=False, default="ARS")
    payment_provider = Column(String, nullable=True)
    external_transaction_id = Column(String, unique=True, nullable=True)  # Clave de correlación del proveedor
    payment_number = Column(String, unique=True, nullable=True)  # ID del pago en el proveedor
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    paid_at = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)  # Cuando se canceló o expiró

    # Relaciones
    user = relationship("User", back_populates="orders")
    order_items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    payments = relationship("Payment", back_populates="order", cascade="all, delete-orphan")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_item_quantity_positive"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    category_id = Column(Uuid(as_uuid=True), ForeignKey("ticket_categories.id"), nullable=False)
    seat_id = Column(Uuid(as_uuid=True), ForeignKey("seats.id"), nullable=True)  # Solo para ubicaciones numeradas
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    subtotal = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    # Relaciones
    order = relationship("Order", back_populates="order_items")
    category = relationship("TicketCategory")
    seat = relationship("Seat")
    tickets = relationship("Ticket", back_populates="order_item")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String, nullable=False)  # STRIPE, PAGOTIC
    status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)  # PENDING, APPROVED, CANCELLED
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String, nullable=False, default="ARS")
    provider_payment_id = Column(String, nullable=True, index=True)
    raw_response = Column(JSON, nullable=True)  # Payload del proveedor tal cual llegó (auditoría)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    # Relaciones
    order = relationship("Order", back_populates="payments")


class Ticket(Base):
    __tablename__ = "tickets"
    __table_args__ = (
        # Un ticket por unidad de la línea: nunca más tickets que quantity
        UniqueConstraint("order_item_id", "sequence", name="uq_ticket_item_sequence"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_item_id = Column(Uuid(as_uuid=True), ForeignKey("order_items.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)  # 1..quantity
    qr_id = Column(String, unique=True, index=True, nullable=False)
    qr_code_url = Column(String, nullable=True)
    pdf_url = Column(String, nullable=True)
    wallet_pass_url = Column(String, nullable=True)
    issued_at = Column(DateTime, server_default=func.now(), nullable=False)
    used_at = Column(DateTime, nullable=True)  # NULL = sin usar
    validator_id = Column(String, nullable=True)
    device = Column(String, nullable=True)

    # Relaciones
    order_item = relationship("OrderItem", back_populates="tickets")
    validation_logs = relationship("ValidationLog", back_populates="ticket")

    @property
    def assets_ready(self) -> bool:
        return bool(self.qr_code_url and self.pdf_url)


class ValidationLog(Base):
    """Registro append-only de cada intento de validación en la entrada"""
    __tablename__ = "validation_logs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    ticket_id = Column(Uuid(as_uuid=True), ForeignKey("tickets.id"), nullable=False, index=True)
    validator_id = Column(String, nullable=True)
    device = Column(String, nullable=True)
    result = Column(String, nullable=False)  # VALID, ALREADY_USED
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    # Relaciones
    ticket = relationship("Ticket", back_populates="validation_logs")
