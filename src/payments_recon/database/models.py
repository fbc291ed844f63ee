"""SQLAlchemy models for the local ledger and reconciliation bookkeeping."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..timeutils import utc_now


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class Transaction(Base):
    """A payment transaction in the local ledger."""
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    transaction_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_channel_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="ARS")
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(50), nullable=False, default="other")
    installments: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    transaction_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expected_settlement_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Set once the transaction has been paid out in a settlement
    settlement_batch_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint("payment_channel_id", "transaction_id", name="uq_transactions_channel_txn"),
        Index("ix_transactions_transaction_date", "transaction_date"),
        Index("ix_transactions_status", "status"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert transaction to dictionary representation."""
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "payment_channel_id": self.payment_channel_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status,
            "payment_method": self.payment_method,
            "installments": self.installments,
            "transaction_date": self.transaction_date.isoformat() if self.transaction_date else None,
            "expected_settlement_date": (
                self.expected_settlement_date.isoformat() if self.expected_settlement_date else None
            ),
            "settlement_batch_id": self.settlement_batch_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class ScheduledReconciliation(Base):
    """A recurring reconciliation job for one payment channel."""
    __tablename__ = "scheduled_reconciliations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payment_channel_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Recurrence
    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    day_of_week: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    day_of_month: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    hour: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    minute: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Length of the reconciled window ending at the run time
    days_to_include: Mapped[int] = mapped_column(Integer, nullable=False, default=7)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    next_run: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_run: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_execution_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    execution_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("ix_scheduled_reconciliations_next_run", "next_run"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert schedule to dictionary representation."""
        return {
            "id": self.id,
            "name": self.name,
            "organization_id": self.organization_id,
            "payment_channel_id": self.payment_channel_id,
            "frequency": self.frequency,
            "day_of_week": self.day_of_week,
            "day_of_month": self.day_of_month,
            "hour": self.hour,
            "minute": self.minute,
            "days_to_include": self.days_to_include,
            "is_active": self.is_active,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_execution_status": self.last_execution_status,
            "execution_count": self.execution_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class ReconciliationRun(Base):
    """Audit record of one reconciliation run."""
    __tablename__ = "reconciliation_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_channel_id: Mapped[str] = mapped_column(String(255), nullable=False)
    schedule_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False)
    records_affected: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_reconciliation_runs_channel", "payment_channel_id"),
        Index("ix_reconciliation_runs_created_at", "created_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert run to dictionary representation."""
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "payment_channel_id": self.payment_channel_id,
            "schedule_id": self.schedule_id,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "status": self.status,
            "records_affected": self.records_affected,
            "total_amount": str(self.total_amount),
            "description": self.description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
