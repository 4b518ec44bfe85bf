"""
Unit Tests for SQL Storage

Tests cover:
1. Issue and redeem through the SQL backend
2. Unique index on code hashes
3. Rollback of partial redemptions
4. Legacy code migration
5. Concurrent redemption across connections
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from unlock_ledger.audit import AuditDispatcher, InMemoryAuditSink
from unlock_ledger.catalog import InMemoryCourseCatalog
from unlock_ledger.codes import hash_code
from unlock_ledger.config import Settings
from unlock_ledger.errors import (
    AlreadyEnrolled,
    CodeAlreadyRedeemed,
    CodeExpired,
    CodeNotFoundForCourse,
    DuplicateCodeHash,
    StorageError,
    UnlockCodeNotFound,
    UnlockLedgerError,
)
from unlock_ledger.expiring_store import SqlExpiringStore
from unlock_ledger.models import (
    Actor,
    CodeStatus,
    IssueTransactionRequest,
    PaymentMethod,
    RedeemCodeRequest,
    TransactionStatus,
    as_utc,
)
from unlock_ledger.service import UnlockLedgerService, create_service
from unlock_ledger.sql_storage import EnrollmentRow, SqlStorage, make_engine
from unlock_ledger.storage import InMemoryStorage


ADMIN = Actor(id="admin-1", role="admin")
STUDENT = Actor(id="student-1", role="student")
START = datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def engine():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    yield engine
    engine.dispose()


@pytest.fixture
def storage(engine):
    return SqlStorage(engine)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def service(engine, storage, clock):
    return UnlockLedgerService(
        storage=storage,
        catalog=InMemoryCourseCatalog(seed=True),
        audit=AuditDispatcher([InMemoryAuditSink()]),
        expiring_store=SqlExpiringStore(engine, clock=clock),
        settings=Settings(storage_backend="sql"),
        clock=clock,
    )


def issue_request(**overrides) -> IssueTransactionRequest:
    data = {
        "buyer_name": "Asha",
        "contact": "9800000000",
        "payment_method": PaymentMethod.BANK_TRANSFER,
        "course_id": "C1",
        "amount": Decimal("1000"),
    }
    data.update(overrides)
    return IssueTransactionRequest(**data)


def code_data(plaintext, **overrides):
    data = {
        "id": uuid4(),
        "code": plaintext,
        "code_hash": hash_code(plaintext),
        "course_id": "C1",
        "issued_to": "Asha",
        "issued_by": "admin-1",
        "issued_by_role": "admin",
        "transaction_id": None,
        "is_used": False,
        "used_by_user_id": None,
        "used_at": None,
        "expires_on": START + timedelta(days=7),
        "created_at": START,
    }
    data.update(overrides)
    return data


class TestSqlIssueAndRedeem:
    """Tests for the full flow on the SQL backend."""

    def test_issue_persists_transaction_and_code(self, service, storage):
        """Test that both records are stored and linked."""
        issued = service.issue_offline_transaction(issue_request(), ADMIN)

        transaction = storage.get_transaction(issued.transaction.id)
        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.amount == Decimal("1000")
        assert transaction.payment_method == PaymentMethod.BANK_TRANSFER
        assert transaction.unlock_code_id == issued.unlock_code_id

        code = storage.get_unlock_code(issued.unlock_code_id)
        assert code.code_hash == hash_code(issued.plaintext_code)
        assert code.is_used is False
        assert as_utc(code.expires_on) == START + timedelta(days=7)

    def test_amount_stored_exactly(self, service, storage):
        """Test that a two-decimal amount round-trips without rounding."""
        issued = service.issue_offline_transaction(issue_request(amount=Decimal("10.05")), ADMIN)

        assert issued.transaction.amount == Decimal("10.05")
        assert storage.get_transaction(issued.transaction.id).amount == Decimal("10.05")

    def test_redeem_flips_code_and_enrolls(self, service, storage):
        """Test that redemption commits the code flip with the enrollment."""
        issued = service.issue_offline_transaction(issue_request(), ADMIN)

        response = service.redeem_code(RedeemCodeRequest(code=issued.plaintext_code, course_id="C1"), STUDENT)

        assert response.enrollment.student_id == "student-1"
        code = storage.get_unlock_code(issued.unlock_code_id)
        assert code.is_used is True
        assert code.used_by_user_id == "student-1"
        assert storage.find_enrollment("student-1", "C1") is not None

        with pytest.raises(CodeAlreadyRedeemed):
            service.redeem_code(RedeemCodeRequest(code=issued.plaintext_code, course_id="C1"), Actor(id="student-2"))

    def test_wrong_course_and_expiry(self, service, clock):
        """Test the lookup and expiry rejections against stored rows."""
        issued = service.issue_offline_transaction(issue_request(), ADMIN)

        with pytest.raises(CodeNotFoundForCourse):
            service.redeem_code(RedeemCodeRequest(code=issued.plaintext_code, course_id="C2"), STUDENT)

        clock.now = START + timedelta(days=8)
        with pytest.raises(CodeExpired):
            service.redeem_code(RedeemCodeRequest(code=issued.plaintext_code, course_id="C1"), STUDENT)

        assert service.get_unlock_code(issued.unlock_code_id).status == CodeStatus.EXPIRED

    def test_idempotent_issue_survives_new_service(self, engine, storage, service, clock):
        """Test that idempotency keys are shared through the database."""
        first = service.issue_offline_transaction(issue_request(idempotency_key="sale-9"), ADMIN)

        other = UnlockLedgerService(
            storage=SqlStorage(engine),
            catalog=InMemoryCourseCatalog(seed=True),
            expiring_store=SqlExpiringStore(engine, clock=clock),
            settings=Settings(storage_backend="sql"),
            clock=clock,
        )
        second = other.issue_offline_transaction(issue_request(idempotency_key="sale-9"), ADMIN)

        assert second.transaction.id == first.transaction.id
        assert storage.list_transactions(0, 10)[1] == 1

    def test_listings(self, service):
        """Test paginated listings with transaction summaries."""
        for n in range(3):
            service.issue_offline_transaction(issue_request(buyer_name=f"Buyer {n}"), ADMIN)

        transactions = service.list_transactions(page=1, limit=2)
        codes = service.list_unlock_codes(page=1, limit=10)

        assert transactions.pagination.total == 3
        assert len(transactions.data) == 2
        assert len(codes.data) == 3
        assert all(view.transaction is not None for view in codes.data)


class TestSqlConstraints:
    """Tests for schema-level guarantees."""

    def test_duplicate_code_hash_rejected(self, storage):
        """Test that the unique index on code_hash is enforced."""
        storage.add_unlock_code(code_data("DUPE-0001"))

        with pytest.raises(DuplicateCodeHash):
            storage.add_unlock_code(code_data("dupe-0001"))

        assert storage.code_hash_exists(hash_code("DUPE-0001"))

    def test_existing_enrollment_rolls_back_code_flip(self, storage):
        """Test that a failed enrollment insert leaves the code unused."""
        first = storage.add_unlock_code(code_data("FRST-0001"))
        second = storage.add_unlock_code(code_data("SCND-0002"))
        storage.redeem(first.id, "student-1", "C1", START)

        with pytest.raises(AlreadyEnrolled):
            storage.redeem(second.id, "student-1", "C1", START)

        assert storage.get_unlock_code(second.id).is_used is False
        assert len(storage.list_enrollments("student-1")) == 1

    def test_second_redeem_of_same_code_rejected(self, storage):
        """Test the conditional update guarding the code flip."""
        code = storage.add_unlock_code(code_data("ONCE-0001"))
        storage.redeem(code.id, "student-1", "C1", START)

        with pytest.raises(CodeAlreadyRedeemed):
            storage.redeem(code.id, "student-2", "C1", START)

        assert storage.find_enrollment("student-2", "C1") is None

    def test_redeem_unknown_code(self, storage):
        """Test redeeming an id that does not exist."""
        with pytest.raises(UnlockCodeNotFound):
            storage.redeem(uuid4(), "student-1", "C1", START)

    def test_storage_failure_rolls_back_code_flip(self, engine, storage):
        """Test that a failed enrollment write never consumes the code."""
        code = storage.add_unlock_code(code_data("FAIL-0001"))
        EnrollmentRow.__table__.drop(engine)

        with pytest.raises(StorageError):
            storage.redeem(code.id, "student-1", "C1", START)

        assert storage.get_unlock_code(code.id).is_used is False


class TestSqlConcurrentRedemption:
    """Tests for exactly-once redemption across connections."""

    def test_students_race_for_one_code(self, tmp_path, clock):
        """Test that one code redeemed from many threads enrolls exactly once."""
        engine = make_engine(f"sqlite:///{tmp_path / 'race.db'}")
        service = UnlockLedgerService(
            storage=SqlStorage(engine),
            catalog=InMemoryCourseCatalog(seed=True),
            expiring_store=SqlExpiringStore(engine, clock=clock),
            settings=Settings(storage_backend="sql"),
            clock=clock,
        )
        code = service.issue_offline_transaction(issue_request(), ADMIN).plaintext_code
        barrier = threading.Barrier(8)

        def attempt(n):
            barrier.wait()
            try:
                service.redeem_code(RedeemCodeRequest(code=code, course_id="C1"), Actor(id=f"student-{n}"))
                return "ok"
            except UnlockLedgerError as exc:
                return exc.kind.value

        try:
            with ThreadPoolExecutor(max_workers=8) as pool:
                results = list(pool.map(attempt, range(8)))

            assert results.count("ok") == 1
            assert all(r in ("ok", "code_already_redeemed", "already_enrolled") for r in results)
            with Session(engine) as session:
                assert session.scalar(select(func.count()).select_from(EnrollmentRow)) == 1
        finally:
            engine.dispose()


class TestSqlLegacyMigration:
    """Tests for hashing legacy plaintext codes."""

    def test_migrate_legacy_codes(self, storage):
        """Test that plaintext-only rows gain a digest exactly once."""
        legacy = storage.add_unlock_code(code_data("LEGA-CY01", code_hash=None))
        storage.add_unlock_code(code_data("MODN-0001"))

        assert storage.find_unlock_code(hash_code("LEGA-CY01"), "C1") is None

        assert storage.migrate_legacy_codes() == 1
        assert storage.migrate_legacy_codes() == 0

        found = storage.find_unlock_code(hash_code("lega-cy01"), "C1")
        assert found is not None
        assert found.id == legacy.id


class TestCreateService:
    """Tests for wiring the service from settings."""

    def test_sql_backend_from_environment(self, tmp_path, monkeypatch):
        """Test that UNLOCK_LEDGER_* variables select the SQL backend."""
        monkeypatch.setenv("UNLOCK_LEDGER_STORAGE_BACKEND", "sql")
        monkeypatch.setenv("UNLOCK_LEDGER_DATABASE_URL", f"sqlite:///{tmp_path / 'ledger.db'}")
        monkeypatch.setenv("UNLOCK_LEDGER_CODE_VALIDITY_DAYS", "3")

        service = create_service(Settings())

        assert isinstance(service.storage, SqlStorage)
        assert isinstance(service.expiring_store, SqlExpiringStore)
        issued = service.issue_offline_transaction(issue_request(), ADMIN)
        assert as_utc(issued.expires_on) - as_utc(issued.transaction.created_at) == timedelta(days=3)

    def test_memory_backend_is_default(self):
        """Test the default wiring."""
        service = create_service(Settings(_env_file=None))

        assert isinstance(service.storage, InMemoryStorage)
        assert service.catalog.find_course("C1") is not None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
