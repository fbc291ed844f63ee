"""Mapping of ledger rows onto the canonical ``TransactionRecord``.

Every record enters the reconciliation core through one of these functions,
so the matcher only ever sees one shape.
"""

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Sequence

from ..errors import ErrorKind, ReconciliationError
from ..timeutils import to_naive_utc
from .models import PaymentMethod, TransactionRecord, TransactionStatus

logger = logging.getLogger(__name__)

# Processor status codes, by name and by numeric code
REMOTE_STATUS_CODES: Dict[str, TransactionStatus] = {
    "CREADA": TransactionStatus.CREATED,
    "EN_PAGO": TransactionStatus.IN_PAYMENT,
    "REALIZADA": TransactionStatus.COMPLETED,
    "RECHAZADA": TransactionStatus.REJECTED,
    "ERROR_VALIDACION_HASH_TOKEN": TransactionStatus.TOKEN_SIGNATURE_ERROR,
    "ERROR_VALIDACION_HASH_PAGO": TransactionStatus.PAYMENT_SIGNATURE_ERROR,
    "EXPIRADA": TransactionStatus.EXPIRED,
    "CANCELADA": TransactionStatus.CANCELLED,
    "DEVUELTA": TransactionStatus.REFUNDED,
    "PENDIENTE": TransactionStatus.PENDING,
    "VENCIDA": TransactionStatus.OVERDUE,
    "1": TransactionStatus.CREATED,
    "2": TransactionStatus.IN_PAYMENT,
    "3": TransactionStatus.COMPLETED,
    "4": TransactionStatus.REJECTED,
    "5": TransactionStatus.TOKEN_SIGNATURE_ERROR,
    "6": TransactionStatus.PAYMENT_SIGNATURE_ERROR,
    "7": TransactionStatus.EXPIRED,
    "8": TransactionStatus.CANCELLED,
    "9": TransactionStatus.REFUNDED,
    "10": TransactionStatus.PENDING,
    "11": TransactionStatus.OVERDUE,
}

REMOTE_PAYMENT_METHODS: Dict[str, PaymentMethod] = {
    "DEBIT_CARD": PaymentMethod.DEBIT_CARD,
    "DEBITO": PaymentMethod.DEBIT_CARD,
    "DÉBITO": PaymentMethod.DEBIT_CARD,
    "CREDIT_CARD": PaymentMethod.CREDIT_CARD,
    "CREDITO": PaymentMethod.CREDIT_CARD,
    "CRÉDITO": PaymentMethod.CREDIT_CARD,
    "QR": PaymentMethod.QR,
    "DEBIN": PaymentMethod.DEBIN,
}

# Business days between payment and payout, per method
SETTLEMENT_BUSINESS_DAYS: Dict[PaymentMethod, int] = {
    PaymentMethod.DEBIT_CARD: 1,
    PaymentMethod.QR: 1,
    PaymentMethod.CREDIT_CARD: 18,
}
DEFAULT_SETTLEMENT_BUSINESS_DAYS = 5

# Alternate key spellings seen in processor payloads, preferred first
_REMOTE_KEYS: Dict[str, Sequence[str]] = {
    "transaction_id": ("idTransaccion", "transactionId", "transaction_id"),
    "date": ("fechaTransaccion", "date", "transaction_date"),
    "amount": ("monto", "amount"),
    "currency": ("moneda", "currency"),
    "status": ("estado", "status"),
    "payment_method": ("medioPago", "paymentMethod", "payment_method"),
    "installments": ("cuotas", "quotas", "installments"),
    "expected_settlement_date": (
        "fechaAcreditacionEstimada",
        "expectedPayDate",
        "estimatedPaymentDate",
        "expected_settlement_date",
    ),
    "settlement_batch_id": (
        "idLiquidacion",
        "liquidacionId",
        "liquidationId",
        "IdLiquidacion",
        "settlement_batch_id",
    ),
}

_DATE_FORMATS = (
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y",
)


def add_business_days(start: datetime, days: int) -> datetime:
    """Add ``days`` Monday-to-Friday days to ``start``."""
    current = start
    added = 0
    while added < days:
        current += timedelta(days=1)
        if current.weekday() < 5:
            added += 1
    return current


def expected_settlement_date(
    transaction_date: datetime,
    payment_method: PaymentMethod,
) -> datetime:
    """Estimate when the processor pays a transaction out.

    Debit card and QR settle the next business day, credit card after 18
    business days, anything else after 5.
    """
    days = SETTLEMENT_BUSINESS_DAYS.get(payment_method, DEFAULT_SETTLEMENT_BUSINESS_DAYS)
    return add_business_days(transaction_date, days)


def _pick(payload: Mapping[str, Any], field_name: str) -> Any:
    for key in _REMOTE_KEYS[field_name]:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse the date formats the processor uses into naive UTC.

    Raises:
        ReconciliationError: If the value is not a recognizable date.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)

    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return to_naive_utc(datetime.fromisoformat(text))
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    raise ReconciliationError(
        ErrorKind.VALIDATION,
        f"Unrecognized date: {value!r}",
    )


def parse_status(value: Any) -> TransactionStatus:
    """Map a processor or canonical status code to ``TransactionStatus``.

    Raises:
        ReconciliationError: If the status is unknown.
    """
    if isinstance(value, TransactionStatus):
        return value
    code = str(value).strip()
    status = REMOTE_STATUS_CODES.get(code.upper())
    if status is not None:
        return status
    try:
        return TransactionStatus(code.lower())
    except ValueError:
        raise ReconciliationError(
            ErrorKind.VALIDATION,
            f"Unknown transaction status: {value!r}",
        ) from None


def parse_payment_method(value: Any) -> PaymentMethod:
    """Map a processor payment method; unknown methods become ``OTHER``."""
    if isinstance(value, PaymentMethod):
        return value
    if value is None:
        return PaymentMethod.OTHER
    code = str(value).strip()
    method = REMOTE_PAYMENT_METHODS.get(code.upper())
    if method is not None:
        return method
    try:
        return PaymentMethod(code.lower())
    except ValueError:
        logger.debug(f"Unmapped payment method {value!r}, using 'other'")
        return PaymentMethod.OTHER


def _parse_amount(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError):
        raise ReconciliationError(
            ErrorKind.VALIDATION,
            f"Invalid amount: {value!r}",
        ) from None


def from_remote_payload(payload: Mapping[str, Any]) -> TransactionRecord:
    """Build a ``TransactionRecord`` from a processor transaction payload.

    Args:
        payload: One transaction as returned by the processor API.

    Returns:
        Normalized record.

    Raises:
        ReconciliationError: If a mandatory field is missing or malformed.
    """
    transaction_id = _pick(payload, "transaction_id")
    if transaction_id is None:
        raise ReconciliationError(
            ErrorKind.VALIDATION,
            "Remote transaction without an identifier",
            details={"keys": sorted(payload.keys())},
        )

    transaction_date = parse_datetime(_pick(payload, "date"))
    if transaction_date is None:
        raise ReconciliationError(
            ErrorKind.VALIDATION,
            f"Remote transaction {transaction_id} has no date",
        )

    amount = _pick(payload, "amount")
    status = _pick(payload, "status")
    if amount is None or status is None:
        raise ReconciliationError(
            ErrorKind.VALIDATION,
            f"Remote transaction {transaction_id} is missing amount or status",
        )

    payment_method = parse_payment_method(_pick(payload, "payment_method"))
    expected = parse_datetime(_pick(payload, "expected_settlement_date"))
    if expected is None:
        expected = expected_settlement_date(transaction_date, payment_method)

    settlement_batch_id = _pick(payload, "settlement_batch_id")
    installments = _pick(payload, "installments")

    return TransactionRecord(
        transaction_id=str(transaction_id),
        amount=_parse_amount(amount),
        currency=str(_pick(payload, "currency") or "ARS").upper(),
        status=parse_status(status),
        payment_method=payment_method,
        installments=int(installments) if installments else 1,
        transaction_date=transaction_date,
        expected_settlement_date=expected,
        settlement_batch_id=str(settlement_batch_id) if settlement_batch_id is not None else None,
    )


def from_orm(row: Any) -> TransactionRecord:
    """Build a ``TransactionRecord`` from a local ``Transaction`` row."""
    return TransactionRecord(
        transaction_id=row.transaction_id,
        amount=Decimal(str(row.amount)),
        currency=row.currency,
        status=parse_status(row.status),
        payment_method=parse_payment_method(row.payment_method),
        installments=row.installments or 1,
        transaction_date=row.transaction_date,
        expected_settlement_date=row.expected_settlement_date,
        settlement_batch_id=row.settlement_batch_id,
    )
