"""Error kinds shared by the reconciliation service and its API surface."""

import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional


class ErrorSeverity(str, enum.Enum):
    """How loudly an error should be reported."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ErrorSpec:
    """Static attributes attached to every error kind."""
    code: str
    severity: ErrorSeverity
    status_code: int


class ErrorKind(enum.Enum):
    """Tagged error kinds. Each value carries its code, severity and HTTP status."""
    VALIDATION = ErrorSpec("VALIDATION_ERROR", ErrorSeverity.LOW, 400)
    NOT_FOUND = ErrorSpec("NOT_FOUND", ErrorSeverity.LOW, 404)
    CONFIGURATION = ErrorSpec("CONFIGURATION_ERROR", ErrorSeverity.CRITICAL, 500)
    DATABASE = ErrorSpec("DATABASE_ERROR", ErrorSeverity.HIGH, 500)
    EXTERNAL_API = ErrorSpec("EXTERNAL_API_ERROR", ErrorSeverity.HIGH, 502)

    @property
    def code(self) -> str:
        return self.value.code

    @property
    def severity(self) -> ErrorSeverity:
        return self.value.severity

    @property
    def status_code(self) -> int:
        return self.value.status_code


class ReconciliationError(Exception):
    """Single application error type; behaviour is selected by ``kind``."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details

    @property
    def should_report(self) -> bool:
        """Low severity errors are expected client mistakes and are not logged as errors."""
        return self.kind.severity is not ErrorSeverity.LOW

    def to_dict(self, include_details: bool = False) -> Dict[str, Any]:
        """Machine-readable payload for API responses."""
        payload: Dict[str, Any] = {
            "error": self.kind.code,
            "message": self.message,
        }
        if include_details and self.details:
            payload["details"] = self.details
        return payload

    def __repr__(self) -> str:
        return f"ReconciliationError({self.kind.name}, {self.message!r})"
