"""Models for payment reconciliation."""

import enum
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field

from ..timeutils import utc_now


class TransactionStatus(str, enum.Enum):
    """Canonical transaction statuses shared by the local and remote ledgers."""
    CREATED = "created"
    IN_PAYMENT = "in_payment"
    COMPLETED = "completed"
    REJECTED = "rejected"
    TOKEN_SIGNATURE_ERROR = "token_signature_error"
    PAYMENT_SIGNATURE_ERROR = "payment_signature_error"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PENDING = "pending"
    OVERDUE = "overdue"


class PaymentMethod(str, enum.Enum):
    """Payment methods reported by the processor."""
    DEBIT_CARD = "debit_card"
    CREDIT_CARD = "credit_card"
    QR = "qr"
    DEBIN = "debin"
    OTHER = "other"


class RunStatus(str, enum.Enum):
    """Outcome of a reconciliation run."""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class ApplyAction(str, enum.Enum):
    """What applying a difference did to the local ledger."""
    CREATED = "created"
    UPDATED = "updated"


class TransactionRecord(BaseModel):
    """Normalized transaction as seen by the matcher.

    Both ledgers are mapped onto this shape by ``adapters`` before any
    comparison happens.
    """
    transaction_id: str = Field(..., min_length=1, description="Processor transaction ID")
    amount: Decimal = Field(..., description="Transaction amount")
    currency: str = Field(default="ARS", description="Three-letter currency code")
    status: TransactionStatus = Field(..., description="Canonical transaction status")
    payment_method: PaymentMethod = Field(default=PaymentMethod.OTHER)
    installments: int = Field(default=1, ge=1)
    transaction_date: datetime = Field(..., description="When the payment was made")
    expected_settlement_date: Optional[datetime] = Field(None, description="Estimated payout date")
    settlement_batch_id: Optional[str] = Field(None, description="Settlement that paid this transaction out")

    class Config:
        frozen = True
        from_attributes = True


class MismatchedRecord(BaseModel):
    """A transaction present in both ledgers whose compared fields differ."""
    transaction_id: str
    local: TransactionRecord
    remote: TransactionRecord
    fields: List[str] = Field(default_factory=list, description="Names of the differing fields")


class DiffResult(BaseModel):
    """Partition of the remote ledger against the local one."""
    missing: List[TransactionRecord] = Field(default_factory=list)
    mismatched: List[MismatchedRecord] = Field(default_factory=list)
    matched: List[str] = Field(default_factory=list)

    @property
    def missing_ids(self) -> List[str]:
        return [r.transaction_id for r in self.missing]

    @property
    def mismatched_ids(self) -> List[str]:
        return [m.transaction_id for m in self.mismatched]

    @property
    def actionable_ids(self) -> List[str]:
        """IDs that applying the diff would touch, missing first."""
        return self.missing_ids + self.mismatched_ids

    @property
    def is_clean(self) -> bool:
        return not self.missing and not self.mismatched

    @property
    def total_amount(self) -> Decimal:
        """Sum of remote amounts over the actionable records."""
        total = sum((r.amount for r in self.missing), Decimal("0"))
        return total + sum((m.remote.amount for m in self.mismatched), Decimal("0"))

    def remote_index(self) -> Dict[str, TransactionRecord]:
        """Authoritative copies of the actionable records, keyed by ID."""
        index = {r.transaction_id: r for r in self.missing}
        index.update((m.transaction_id, m.remote) for m in self.mismatched)
        return index

    def remote_record(self, transaction_id: str) -> Optional[TransactionRecord]:
        """Look up the authoritative copy of an actionable record."""
        return self.remote_index().get(transaction_id)


class BatchProgress(BaseModel):
    """Progress event emitted after every completed batch."""
    total_items: int
    processed_items: int
    current_batch: int
    total_batches: int
    percent_complete: float
    estimated_seconds_remaining: Optional[float] = None
    batch_results: Optional[List[Any]] = None


class ApplyOutcome(BaseModel):
    """Result of applying one difference to the local ledger."""
    transaction_id: str
    action: ApplyAction
    previous_status: Optional[TransactionStatus] = None
    new_status: TransactionStatus


class ReconciliationRequest(BaseModel):
    """Request model for starting a reconciliation job."""
    payment_channel_id: str = Field(..., description="Payment channel (button) to reconcile")
    organization_id: Optional[str] = Field(None, description="Owning organization")
    start_time: datetime = Field(..., description="Start of time range to reconcile")
    end_time: datetime = Field(..., description="End of time range to reconcile")
    provider: str = Field(default="clicpago", description="Remote ledger provider name")
    apply: bool = Field(default=False, description="Apply the differences to the local ledger")
    batch_size: Optional[int] = Field(default=None, ge=1, description="Apply in batches of this size")


class ReconciliationReport(BaseModel):
    """Complete reconciliation report with all findings."""
    id: str = Field(..., description="Run ID")
    status: RunStatus = Field(default=RunStatus.SUCCESS)
    payment_channel_id: str
    organization_id: Optional[str] = None
    provider: str = Field(default="clicpago")
    start_time: datetime
    end_time: datetime
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    # Statistics
    total_local_records: int = Field(default=0)
    total_remote_records: int = Field(default=0)
    total_missing: int = Field(default=0)
    total_mismatched: int = Field(default=0)
    total_matched: int = Field(default=0)
    records_affected: int = Field(default=0)
    total_amount: Decimal = Field(default=Decimal("0"))
    applied: bool = Field(default=False)

    diff: Optional[DiffResult] = None
    outcomes: List[ApplyOutcome] = Field(default_factory=list)

    error_message: Optional[str] = None

    def to_summary_dict(self) -> Dict[str, Any]:
        """Return a summary of the report without detailed records."""
        return {
            "id": self.id,
            "status": self.status.value,
            "payment_channel_id": self.payment_channel_id,
            "organization_id": self.organization_id,
            "provider": self.provider,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "applied": self.applied,
            "statistics": {
                "total_local_records": self.total_local_records,
                "total_remote_records": self.total_remote_records,
                "total_missing": self.total_missing,
                "total_mismatched": self.total_mismatched,
                "total_matched": self.total_matched,
                "records_affected": self.records_affected,
                "total_amount": str(self.total_amount),
                "match_rate": (
                    f"{(self.total_matched / self.total_remote_records * 100):.2f}%"
                    if self.total_remote_records > 0 else "N/A"
                ),
            },
            "error_message": self.error_message,
        }

    def to_full_dict(self) -> Dict[str, Any]:
        """Return the complete report including the diff and apply outcomes."""
        result = self.to_summary_dict()
        result["diff"] = self.diff.model_dump(mode="json") if self.diff else None
        result["outcomes"] = [o.model_dump(mode="json") for o in self.outcomes]
        return result
