"""
Gameroom Token Backend - Database Schema
========================================

Schema for the token-purchase core:
- Game catalog read model (locations and token packages)
- Payment records tracking one purchase attempt end-to-end
- Per (user, game, location) token balances
- Provider webhook replay ledger

All timestamps are timezone-naive UTC.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from sqlalchemy import (
    Integer, String, Numeric, DateTime, Boolean, ForeignKey, UniqueConstraint,
    Index, CheckConstraint, JSON, func
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column

from utils.datetime_helpers import get_naive_utc_now


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in development and tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class PaymentStatus(Enum):
    """Internal normalized payment lifecycle states"""
    CREATED = "created"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    EXPIRED = "expired"
    REFUNDED = "refunded"


class PaymentProvider(Enum):
    """Payment processors that can back a purchase"""
    STRIPE = "stripe"
    PAYPAL = "paypal"


class GameStatus(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    MAINTENANCE = "maintenance"


# ============================================================================
# CATALOG
# ============================================================================

class Game(Base):
    """Game catalog entry; CRUD lives elsewhere, purchases only read it"""
    __tablename__ = "games"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=GameStatus.ACTIVE.value)
    # [{"name": "Cedar Park", "available": true}, ...]
    locations: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    # [{"tokens": 50, "price": 10.0}, ...]
    token_packages: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, server_default=func.now())

    payments = relationship("PaymentRecord", back_populates="game")

    def __repr__(self):
        return f"<Game(id={self.id}, name='{self.name}', status='{self.status}')>"


# ============================================================================
# PAYMENTS
# ============================================================================

class PaymentRecord(Base):
    """One purchase attempt, keyed by the provider's intent/order id"""
    __tablename__ = "payment_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_ref: Mapped[str] = mapped_column(String(255), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    # Stripe client secret or PayPal approval URL; handed back on duplicate suppression
    client_handle: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    # Immutable at creation
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    game_id: Mapped[int] = mapped_column(Integer, ForeignKey("games.id"), nullable=False)
    location: Mapped[str] = mapped_column(String(100), nullable=False)
    token_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="usd")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=get_naive_utc_now)

    # Mutable
    provider_status: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PaymentStatus.CREATED.value)
    payment_method: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    receipt_ref: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    payer_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    metadata_json: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    tokens_added: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tokens_scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    tokens_credited_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Last time the status sweep asked the provider about this record
    last_reconciled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=get_naive_utc_now, onupdate=get_naive_utc_now
    )

    game = relationship("Game", back_populates="payments")

    __table_args__ = (
        UniqueConstraint("external_ref", name="uq_payment_records_external_ref"),
        Index("ix_payment_records_user_status_created", "user_id", "status", "created_at"),
        Index("ix_payment_records_schedule", "tokens_scheduled_for", "tokens_added"),
        Index(
            "ix_payment_records_duplicate_lookup",
            "user_id", "game_id", "token_quantity", "unit_price", "location", "status",
        ),
        CheckConstraint("token_quantity > 0", name="ck_payment_records_token_quantity_positive"),
        CheckConstraint(
            "status IN ('created', 'processing', 'succeeded', 'failed', 'canceled', 'expired', 'refunded')",
            name="ck_payment_records_status",
        ),
        # Crediting never happens from any state other than succeeded (refund may follow)
        CheckConstraint(
            "tokens_added = false OR status IN ('succeeded', 'refunded')",
            name="ck_payment_records_tokens_added_status",
        ),
    )

    @property
    def amount(self) -> Decimal:
        """Charged amount in major currency units"""
        return Decimal(self.unit_price)

    def __repr__(self):
        return (
            f"<PaymentRecord(id={self.id}, ref='{self.external_ref}', status='{self.status}', "
            f"tokens_added={self.tokens_added})>"
        )


class TokenBalance(Base):
    """Running token credit per (user, game, location)"""
    __tablename__ = "token_balances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    game_id: Mapped[int] = mapped_column(Integer, ForeignKey("games.id"), nullable=False)
    location: Mapped[str] = mapped_column(String(100), nullable=False)
    tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=get_naive_utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=get_naive_utc_now, onupdate=get_naive_utc_now
    )

    game = relationship("Game")

    __table_args__ = (
        UniqueConstraint("user_id", "game_id", "location", name="uq_token_balances_owner"),
        CheckConstraint("tokens >= 0", name="ck_token_balances_non_negative"),
    )

    def __repr__(self):
        return f"<TokenBalance(user='{self.user_id}', game={self.game_id}, location='{self.location}', tokens={self.tokens})>"


class ProviderWebhookEvent(Base):
    """Replay ledger: one row per accepted provider webhook event id"""
    __tablename__ = "provider_webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    external_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=get_naive_utc_now)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_provider_webhook_events_event"),
        Index("ix_provider_webhook_events_ref", "external_ref"),
    )
