from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from .errors import ErrorKind


class PaymentMethod(str, Enum):
    ESEWA_PERSONAL = "esewa-personal"
    BANK_TRANSFER = "bank-transfer"
    CASH = "cash"
    OTHER = "other"


class PaymentReferenceType(str, Enum):
    TRANSACTION_ID = "transaction-id"
    SCREENSHOT = "screenshot"


class TransactionStatus(str, Enum):
    PENDING_REDEMPTION = "pending-redemption"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CodeStatus(str, Enum):
    UNUSED = "unused"
    USED = "used"
    EXPIRED = "expired"


class Actor(BaseModel):
    """An identity already verified by the session layer."""
    id: str
    name: str = "Admin"
    role: str = "admin"


class Course(BaseModel):
    id: str
    title: str
    enrolled_count: int = 0


class IssueTransactionRequest(BaseModel):
    buyer_name: str = Field(..., min_length=1)
    contact: str = Field(..., min_length=1)
    payment_method: PaymentMethod
    course_id: str = Field(..., min_length=1)
    amount: Decimal = Field(
        ...,
        gt=0,
        max_digits=12,
        decimal_places=2,
        description="Settled amount, must be positive with at most 2 decimal places",
    )
    payment_reference_type: Optional[PaymentReferenceType] = None
    payment_reference: Optional[str] = None
    notes: Optional[str] = None
    currency: Optional[str] = None
    idempotency_key: Optional[str] = Field(default=None, description="Replays the first result for duplicate submits")

    model_config = ConfigDict(str_strip_whitespace=True, json_schema_extra={
        "example": {
            "buyer_name": "Asha",
            "contact": "9800000000",
            "payment_method": "esewa-personal",
            "course_id": "C1",
            "amount": 1000,
            "payment_reference_type": "transaction-id",
            "payment_reference": "ESW-77812",
        }
    })


class RedeemCodeRequest(BaseModel):
    code: str = Field(..., min_length=1)
    course_id: str = Field(..., min_length=1)

    model_config = ConfigDict(str_strip_whitespace=True)


class TransactionRecord(BaseModel):
    id: UUID
    buyer_name: str
    contact: str
    payment_method: PaymentMethod
    payment_reference_type: Optional[PaymentReferenceType] = None
    payment_reference: Optional[str] = None
    course_id: str
    amount: Decimal
    currency: str = "NPR"
    notes: Optional[str] = None
    status: TransactionStatus
    issued_by: str
    issued_by_role: str = "admin"
    unlock_code_id: Optional[UUID] = None
    idempotency_key: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TransactionSummary(BaseModel):
    id: UUID
    buyer_name: str
    contact: str
    payment_method: PaymentMethod
    amount: Decimal
    currency: str
    status: TransactionStatus
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UnlockCode(BaseModel):
    id: UUID
    code: Optional[str] = None
    code_hash: Optional[str] = None
    course_id: str
    issued_to: str
    issued_by: str
    issued_by_role: str = "admin"
    transaction_id: Optional[UUID] = None
    is_used: bool = False
    used_by_user_id: Optional[str] = None
    used_at: Optional[datetime] = None
    expires_on: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_on is None:
            return False
        now = now or datetime.now(timezone.utc)
        return as_utc(self.expires_on) < now

    def status_at(self, now: Optional[datetime] = None) -> CodeStatus:
        if self.is_used:
            return CodeStatus.USED
        if self.is_expired(now):
            return CodeStatus.EXPIRED
        return CodeStatus.UNUSED

    def can_redeem(self, now: Optional[datetime] = None) -> bool:
        return self.status_at(now) == CodeStatus.UNUSED


class UnlockCodeView(UnlockCode):
    status: CodeStatus
    transaction: Optional[TransactionSummary] = None


class Enrollment(BaseModel):
    id: UUID
    student_id: str
    course_id: str
    enrolled_at: datetime
    progress: int = 0
    is_active: bool = True
    unlock_code_id: Optional[UUID] = None

    model_config = ConfigDict(from_attributes=True)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class TransactionPage(BaseModel):
    success: Literal[True] = True
    data: list[TransactionRecord]
    pagination: Pagination


class UnlockCodePage(BaseModel):
    success: Literal[True] = True
    data: list[UnlockCodeView]
    pagination: Pagination


class IssueTransactionResponse(BaseModel):
    success: Literal[True] = True
    transaction: TransactionRecord
    unlock_code_id: UUID
    plaintext_code: str
    expires_on: datetime
    message: str


class RedeemCodeResponse(BaseModel):
    success: Literal[True] = True
    enrollment: Enrollment
    message: str


class EnrollmentStatusResponse(BaseModel):
    success: Literal[True] = True
    student_id: str
    course_id: str
    enrolled: bool
    enrollment: Optional[Enrollment] = None


class ErrorDetail(BaseModel):
    kind: ErrorKind
    message: str


class ErrorResponse(BaseModel):
    success: Literal[False] = False
    error: ErrorDetail


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
