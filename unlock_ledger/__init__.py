"""
Offline-Payment Unlock Code Ledger

This package provides:
- Offline sale records issued by admins
- Single-use, hashed unlock codes bound to a sale and a course
- Exactly-once redemption of a code into a course enrollment
- Lazy expiry of codes after a fixed validity window
- Post-commit audit events
"""

from .codes import CodeGenerator, hash_code, normalize_code
from .errors import (
    AlreadyEnrolled,
    CodeAlreadyRedeemed,
    CodeExpired,
    CodeGenerationExhausted,
    CodeNotFoundForCourse,
    CourseNotFound,
    ErrorKind,
    StorageError,
    UnlockLedgerError,
    ValidationError,
)
from .models import (
    Actor,
    CodeStatus,
    Enrollment,
    PaymentMethod,
    TransactionRecord,
    TransactionStatus,
    UnlockCode,
)
from .service import UnlockLedgerService, create_service

__all__ = [
    "CodeGenerator",
    "hash_code",
    "normalize_code",
    "AlreadyEnrolled",
    "CodeAlreadyRedeemed",
    "CodeExpired",
    "CodeGenerationExhausted",
    "CodeNotFoundForCourse",
    "CourseNotFound",
    "ErrorKind",
    "StorageError",
    "UnlockLedgerError",
    "ValidationError",
    "Actor",
    "CodeStatus",
    "Enrollment",
    "PaymentMethod",
    "TransactionRecord",
    "TransactionStatus",
    "UnlockCode",
    "UnlockLedgerService",
    "create_service",
]
