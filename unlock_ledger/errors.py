from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION_ERROR = "validation_error"
    COURSE_NOT_FOUND = "course_not_found"
    CODE_GENERATION_EXHAUSTED = "code_generation_exhausted"
    CODE_NOT_FOUND_FOR_COURSE = "code_not_found_for_course"
    CODE_ALREADY_REDEEMED = "code_already_redeemed"
    CODE_EXPIRED = "code_expired"
    ALREADY_ENROLLED = "already_enrolled"
    TRANSACTION_NOT_FOUND = "transaction_not_found"
    UNLOCK_CODE_NOT_FOUND = "unlock_code_not_found"
    STORAGE_ERROR = "storage_error"
    UNAUTHENTICATED = "unauthenticated"


class UnlockLedgerError(Exception):
    kind: ErrorKind = ErrorKind.STORAGE_ERROR
    default_message = "Unlock ledger operation failed"

    def __init__(self, message: str = ""):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(UnlockLedgerError):
    kind = ErrorKind.VALIDATION_ERROR
    default_message = "Missing or malformed input"


class CourseNotFound(UnlockLedgerError):
    kind = ErrorKind.COURSE_NOT_FOUND
    default_message = "Course not found"


class CodeGenerationExhausted(UnlockLedgerError):
    kind = ErrorKind.CODE_GENERATION_EXHAUSTED
    default_message = "Failed to generate unique code"


class CodeNotFoundForCourse(UnlockLedgerError):
    kind = ErrorKind.CODE_NOT_FOUND_FOR_COURSE
    default_message = "Invalid code or code doesn't match this course"


class CodeAlreadyRedeemed(UnlockLedgerError):
    kind = ErrorKind.CODE_ALREADY_REDEEMED
    default_message = "This code has already been redeemed"


class CodeExpired(UnlockLedgerError):
    kind = ErrorKind.CODE_EXPIRED
    default_message = "This code has expired"


class AlreadyEnrolled(UnlockLedgerError):
    kind = ErrorKind.ALREADY_ENROLLED
    default_message = "You are already enrolled in this course"


class TransactionNotFound(UnlockLedgerError):
    kind = ErrorKind.TRANSACTION_NOT_FOUND
    default_message = "Transaction not found"


class UnlockCodeNotFound(UnlockLedgerError):
    kind = ErrorKind.UNLOCK_CODE_NOT_FOUND
    default_message = "Code not found"


class Unauthenticated(UnlockLedgerError):
    kind = ErrorKind.UNAUTHENTICATED
    default_message = "Authentication required"


class StorageError(UnlockLedgerError):
    kind = ErrorKind.STORAGE_ERROR
    default_message = "Storage operation failed"


class DuplicateCodeHash(StorageError):
    """Raised by a storage backend when the code_hash unique index rejects an insert."""
