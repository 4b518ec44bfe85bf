import json
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import UUID, uuid4

from .audit import AuditDispatcher, AuditEventKind, LoggingAuditSink
from .catalog import CourseCatalog, InMemoryCourseCatalog
from .codes import CodeGenerator, hash_code, mask_code
from .config import Settings, get_settings
from .enrollments import EnrollmentLedger
from .errors import (
    AlreadyEnrolled,
    CodeAlreadyRedeemed,
    CodeExpired,
    CodeGenerationExhausted,
    CodeNotFoundForCourse,
    CourseNotFound,
    TransactionNotFound,
    UnlockCodeNotFound,
    UnlockLedgerError,
    ValidationError,
)
from .expiring_store import ExpiringStore, InMemoryExpiringStore, SqlExpiringStore
from .models import (
    Actor,
    Course,
    IssueTransactionRequest,
    IssueTransactionResponse,
    Pagination,
    RedeemCodeRequest,
    RedeemCodeResponse,
    TransactionPage,
    TransactionRecord,
    TransactionStatus,
    TransactionSummary,
    UnlockCode,
    UnlockCodePage,
    UnlockCodeView,
)
from .sql_storage import SqlStorage, make_engine
from .storage import InMemoryStorage, LedgerStorage

logger = logging.getLogger(__name__)

IDEMPOTENCY_PREFIX = "issue:"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UnlockLedgerService:
    def __init__(
        self,
        storage: Optional[LedgerStorage] = None,
        catalog: Optional[CourseCatalog] = None,
        audit: Optional[AuditDispatcher] = None,
        expiring_store: Optional[ExpiringStore] = None,
        code_generator: Optional[CodeGenerator] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage()
        self.catalog = catalog or InMemoryCourseCatalog()
        self.audit = audit or AuditDispatcher()
        self.expiring_store = expiring_store or InMemoryExpiringStore(clock=clock)
        self.code_generator = code_generator or CodeGenerator(
            length=self.settings.code_length,
            group_size=self.settings.code_group_size,
        )
        self.clock = clock
        self.enrollments = EnrollmentLedger(self.storage)

    def issue_offline_transaction(self, request: IssueTransactionRequest, issuer: Actor) -> IssueTransactionResponse:
        if request.idempotency_key:
            existing = self._check_idempotency(request.idempotency_key)
            if existing:
                return existing

        course = self.catalog.find_course(request.course_id)
        if course is None:
            raise CourseNotFound(f"Course {request.course_id} not found")

        now = self.clock()
        transaction = self.storage.add_transaction({
            "id": uuid4(),
            "buyer_name": request.buyer_name,
            "contact": request.contact,
            "payment_method": request.payment_method,
            "payment_reference_type": request.payment_reference_type,
            "payment_reference": request.payment_reference,
            "course_id": request.course_id,
            "amount": request.amount,
            "currency": request.currency or self.settings.default_currency,
            "notes": request.notes,
            "status": TransactionStatus.PENDING_REDEMPTION,
            "issued_by": issuer.id,
            "issued_by_role": issuer.role,
            "unlock_code_id": None,
            "idempotency_key": request.idempotency_key,
            "created_at": now,
            "updated_at": now,
        })

        plaintext, unlock_code = self._mint_unlock_code(transaction, issuer, now)

        try:
            transaction = self.storage.attach_unlock_code(transaction.id, unlock_code.id, self.clock())
        except UnlockLedgerError:
            # The code stays valid and redeemable; the link is reconciled by hand.
            logger.exception(
                "Unlock code %s issued but transaction %s was not back-filled",
                unlock_code.id, transaction.id,
            )

        if request.idempotency_key:
            self._remember_issue(request.idempotency_key, transaction.id, unlock_code.id)

        logger.info(
            "Offline sale recorded: transaction=%s course=%s amount=%s code=%s",
            transaction.id, course.id, transaction.amount, mask_code(plaintext),
        )
        self.audit.emit(AuditEventKind.OFFLINE_SALE_CREATED, issuer, {
            "transaction_id": str(transaction.id),
            "course_id": course.id,
            "course_name": course.title,
            "amount": str(transaction.amount),
            "currency": transaction.currency,
            "payment_method": transaction.payment_method.value,
            "buyer_name": transaction.buyer_name,
            "contact": transaction.contact,
            "unlock_code": plaintext,
            "details": (
                f'Admin created offline sale for course "{course.title}" - '
                f"Amount: {transaction.currency} {transaction.amount}, "
                f"Method: {transaction.payment_method.value}, Buyer: {transaction.buyer_name}"
            ),
        })

        return IssueTransactionResponse(
            transaction=transaction,
            unlock_code_id=unlock_code.id,
            plaintext_code=plaintext,
            expires_on=unlock_code.expires_on,
            message=f"Transaction created and code generated: {plaintext}",
        )

    def redeem_code(self, request: RedeemCodeRequest, student: Actor) -> RedeemCodeResponse:
        if not request.code or not request.course_id or not student.id:
            raise ValidationError("Code, course ID, and user authentication required")

        masked = mask_code(request.code)
        unlock_code = self.storage.find_unlock_code(hash_code(request.code), request.course_id)
        if unlock_code is None:
            logger.info("Redeem rejected: code %s not found for course %s", masked, request.course_id)
            raise CodeNotFoundForCourse()

        if unlock_code.is_used:
            logger.info("Redeem rejected: code %s already used", masked)
            raise CodeAlreadyRedeemed()

        now = self.clock()
        if unlock_code.is_expired(now):
            logger.info("Redeem rejected: code %s expired on %s", masked, unlock_code.expires_on)
            raise CodeExpired()

        if self.enrollments.is_enrolled(student.id, request.course_id):
            logger.info("Redeem rejected: student %s already enrolled in %s", student.id, request.course_id)
            raise AlreadyEnrolled()

        enrollment = self.storage.redeem(unlock_code.id, student.id, request.course_id, now)
        logger.info("Code %s redeemed by student %s for course %s", masked, student.id, request.course_id)

        self._bump_enrolled_count(request.course_id)
        self.audit.emit(AuditEventKind.CODE_REDEEMED, student, self._redemption_details(request, unlock_code))

        return RedeemCodeResponse(
            enrollment=enrollment,
            message="Code redeemed successfully. You are now enrolled in the course.",
        )

    def list_transactions(self, page: Optional[int] = None, limit: Optional[int] = None) -> TransactionPage:
        page, limit = self._page_window(page, limit)
        transactions, total = self.storage.list_transactions((page - 1) * limit, limit)
        return TransactionPage(data=transactions, pagination=_pagination(page, limit, total))

    def list_unlock_codes(self, page: Optional[int] = None, limit: Optional[int] = None) -> UnlockCodePage:
        page, limit = self._page_window(page, limit)
        codes, total = self.storage.list_unlock_codes((page - 1) * limit, limit)
        transactions = self.storage.get_transactions(c.transaction_id for c in codes if c.transaction_id)
        now = self.clock()
        views = [self._code_view(code, transactions.get(code.transaction_id), now) for code in codes]
        return UnlockCodePage(data=views, pagination=_pagination(page, limit, total))

    def get_transaction(self, transaction_id: UUID) -> TransactionRecord:
        transaction = self.storage.get_transaction(transaction_id)
        if not transaction:
            raise TransactionNotFound(f"Transaction {transaction_id} not found")
        return transaction

    def get_unlock_code(self, unlock_code_id: UUID) -> UnlockCodeView:
        unlock_code = self.storage.get_unlock_code(unlock_code_id)
        if not unlock_code:
            raise UnlockCodeNotFound(f"Code {unlock_code_id} not found")
        transaction = None
        if unlock_code.transaction_id:
            transaction = self.storage.get_transaction(unlock_code.transaction_id)
        return self._code_view(unlock_code, transaction, self.clock())

    def migrate_legacy_codes(self) -> int:
        """Fill ``code_hash`` for codes stored before hashing was introduced."""
        migrated = self.storage.migrate_legacy_codes()
        logger.info("Legacy unlock code migration hashed %d codes", migrated)
        return migrated

    def _mint_unlock_code(self, transaction: TransactionRecord, issuer: Actor, now: datetime) -> tuple[str, UnlockCode]:
        max_attempts = self.settings.code_max_attempts
        expires_on = now + timedelta(days=self.settings.code_validity_days)

        def insert(plaintext: str, digest: str) -> UnlockCode:
            return self.storage.add_unlock_code({
                "id": uuid4(),
                "code": plaintext,
                "code_hash": digest,
                "course_id": transaction.course_id,
                "issued_to": transaction.buyer_name,
                "issued_by": issuer.id,
                "issued_by_role": issuer.role,
                "transaction_id": transaction.id,
                "is_used": False,
                "used_by_user_id": None,
                "used_at": None,
                "expires_on": expires_on,
                "created_at": now,
            })

        try:
            return self.code_generator.generate_unique(
                self.storage.code_hash_exists, max_attempts=max_attempts, claim=insert,
            )
        except CodeGenerationExhausted:
            logger.error(
                "Code generation exhausted after %d attempts; transaction %s left %s",
                max_attempts, transaction.id, transaction.status.value,
            )
            raise

    def _check_idempotency(self, idempotency_key: str) -> Optional[IssueTransactionResponse]:
        stored = self.expiring_store.get(IDEMPOTENCY_PREFIX + idempotency_key)
        if not stored:
            return None
        ids = json.loads(stored)
        transaction = self.storage.get_transaction(UUID(ids["transaction_id"]))
        unlock_code = self.storage.get_unlock_code(UUID(ids["unlock_code_id"]))
        if not transaction or not unlock_code or not unlock_code.code:
            return None
        return IssueTransactionResponse(
            transaction=transaction,
            unlock_code_id=unlock_code.id,
            plaintext_code=unlock_code.code,
            expires_on=unlock_code.expires_on,
            message="Transaction already exists (idempotent return)",
        )

    def _remember_issue(self, idempotency_key: str, transaction_id: UUID, unlock_code_id: UUID) -> None:
        try:
            self.expiring_store.put(
                IDEMPOTENCY_PREFIX + idempotency_key,
                json.dumps({"transaction_id": str(transaction_id), "unlock_code_id": str(unlock_code_id)}),
                timedelta(seconds=self.settings.idempotency_ttl_seconds),
            )
        except UnlockLedgerError:
            logger.exception("Failed to record idempotency key for transaction %s", transaction_id)

    def _bump_enrolled_count(self, course_id: str) -> None:
        try:
            self.catalog.increment_enrolled_count(course_id)
        except Exception:
            logger.exception("Failed to increment enrolled count for course %s", course_id)

    def _redemption_details(self, request: RedeemCodeRequest, unlock_code: UnlockCode) -> dict:
        details = {
            "action": "code_redemption",
            "unlock_code": request.code,
            "unlock_code_id": str(unlock_code.id),
            "course_id": request.course_id,
            "transaction_id": str(unlock_code.transaction_id) if unlock_code.transaction_id else None,
            "amount": None,
            "currency": None,
        }
        try:
            course: Optional[Course] = self.catalog.find_course(request.course_id)
            transaction = self.storage.get_transaction(unlock_code.transaction_id) if unlock_code.transaction_id else None
        except Exception:
            logger.exception("Failed to load redemption context for code %s", unlock_code.id)
            return details
        details["course_name"] = course.title if course else "Unknown Course"
        if transaction:
            details["amount"] = str(transaction.amount)
            details["currency"] = transaction.currency
        return details

    def _page_window(self, page: Optional[int], limit: Optional[int]) -> tuple[int, int]:
        page = max(1, page or 1)
        limit = min(self.settings.max_page_limit, max(1, limit or self.settings.default_page_limit))
        return page, limit

    def _code_view(self, unlock_code: UnlockCode, transaction: Optional[TransactionRecord], now: datetime) -> UnlockCodeView:
        return UnlockCodeView(
            **unlock_code.model_dump(),
            status=unlock_code.status_at(now),
            transaction=TransactionSummary.model_validate(transaction) if transaction else None,
        )


def _pagination(page: int, limit: int, total: int) -> Pagination:
    return Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit))


def create_service(settings: Optional[Settings] = None, catalog: Optional[CourseCatalog] = None) -> UnlockLedgerService:
    settings = settings or get_settings()
    if settings.storage_backend == "sql":
        engine = make_engine(settings.database_url)
        storage = SqlStorage(engine)
        expiring_store = SqlExpiringStore(engine)
    else:
        storage = InMemoryStorage()
        expiring_store = InMemoryExpiringStore()

    logger.info("Unlock ledger using %s storage", settings.storage_backend)
    return UnlockLedgerService(
        storage=storage,
        catalog=catalog or InMemoryCourseCatalog(seed=True),
        audit=AuditDispatcher([LoggingAuditSink()]),
        expiring_store=expiring_store,
        settings=settings,
    )
