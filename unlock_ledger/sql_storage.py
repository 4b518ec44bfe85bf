"""SQLAlchemy-backed storage for transactions, unlock codes and enrollments.

The unique index on ``unlock_codes.code_hash`` and the compound unique
constraint on ``enrollments (student_id, course_id)`` live in the schema, so
uniqueness holds even across processes sharing one database.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Iterable, Iterator, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .codes import hash_code
from .errors import (
    AlreadyEnrolled,
    CodeAlreadyRedeemed,
    DuplicateCodeHash,
    StorageError,
    TransactionNotFound,
    UnlockCodeNotFound,
)
from .models import Enrollment, TransactionRecord, TransactionStatus, UnlockCode

logger = logging.getLogger(__name__)

Base = declarative_base()


class TransactionRow(Base):
    __tablename__ = "transactions"

    id = Column(Uuid, primary_key=True)
    buyer_name = Column(String(255), nullable=False)
    contact = Column(String(255), nullable=False)
    payment_method = Column(String(32), nullable=False)
    payment_reference_type = Column(String(32), nullable=True)
    payment_reference = Column(String(255), nullable=True)
    course_id = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="NPR")
    notes = Column(Text, nullable=True)
    status = Column(String(32), nullable=False, default=TransactionStatus.PENDING_REDEMPTION.value)
    issued_by = Column(String(255), nullable=False)
    issued_by_role = Column(String(32), nullable=False, default="admin")
    unlock_code_id = Column(Uuid, nullable=True)
    idempotency_key = Column(String(255), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class UnlockCodeRow(Base):
    __tablename__ = "unlock_codes"

    id = Column(Uuid, primary_key=True)
    code = Column(String(32), nullable=True)  # display only
    code_hash = Column(String(64), nullable=True, unique=True, index=True)
    course_id = Column(String(64), nullable=False, index=True)
    issued_to = Column(String(255), nullable=False)
    issued_by = Column(String(255), nullable=False)
    issued_by_role = Column(String(32), nullable=False, default="admin")
    transaction_id = Column(Uuid, nullable=True, index=True)
    is_used = Column(Boolean, nullable=False, default=False)
    used_by_user_id = Column(String(64), nullable=True)
    used_at = Column(DateTime(timezone=True), nullable=True)
    expires_on = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)


class EnrollmentRow(Base):
    __tablename__ = "enrollments"
    __table_args__ = (UniqueConstraint("student_id", "course_id", name="uq_enrollment_student_course"),)

    id = Column(Uuid, primary_key=True)
    student_id = Column(String(64), nullable=False, index=True)
    course_id = Column(String(64), nullable=False, index=True)
    enrolled_at = Column(DateTime(timezone=True), nullable=False)
    progress = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    unlock_code_id = Column(Uuid, nullable=True)


class ExpiringKeyRow(Base):
    __tablename__ = "expiring_keys"

    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)


def make_engine(database_url: str, **kwargs) -> Engine:
    if database_url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    else:
        kwargs.setdefault("pool_pre_ping", True)
    return create_engine(database_url, **kwargs)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)


class SqlStorage:
    def __init__(self, engine: Engine):
        self.engine = engine
        self.SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        init_db(engine)

    @classmethod
    def from_url(cls, database_url: str) -> "SqlStorage":
        return cls(make_engine(database_url))

    def add_transaction(self, data: dict) -> TransactionRecord:
        row = TransactionRow(**_enum_values(data))
        self._write(row)
        return TransactionRecord.model_validate(row)

    def attach_unlock_code(self, transaction_id: UUID, unlock_code_id: UUID, now: datetime) -> TransactionRecord:
        try:
            with self.SessionLocal() as session, session.begin():
                row = session.get(TransactionRow, transaction_id)
                if row is None:
                    raise TransactionNotFound(f"Transaction {transaction_id} not found")
                row.unlock_code_id = unlock_code_id
                row.status = TransactionStatus.COMPLETED.value
                row.updated_at = now
                session.flush()
                return TransactionRecord.model_validate(row)
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to update transaction {transaction_id}: {exc}") from exc

    def get_transaction(self, transaction_id: UUID) -> Optional[TransactionRecord]:
        with self._session() as session:
            row = session.get(TransactionRow, transaction_id)
            return TransactionRecord.model_validate(row) if row else None

    def get_transactions(self, transaction_ids: Iterable[UUID]) -> dict[UUID, TransactionRecord]:
        ids = list(set(transaction_ids))
        if not ids:
            return {}
        with self._session() as session:
            rows = session.scalars(select(TransactionRow).where(TransactionRow.id.in_(ids))).all()
            return {row.id: TransactionRecord.model_validate(row) for row in rows}

    def list_transactions(self, offset: int, limit: int) -> tuple[list[TransactionRecord], int]:
        with self._session() as session:
            total = session.scalar(select(func.count()).select_from(TransactionRow))
            rows = session.scalars(
                select(TransactionRow).order_by(TransactionRow.created_at.desc()).offset(offset).limit(limit)
            ).all()
            return [TransactionRecord.model_validate(r) for r in rows], total or 0

    def code_hash_exists(self, code_hash: str) -> bool:
        with self._session() as session:
            return session.scalar(
                select(UnlockCodeRow.id).where(UnlockCodeRow.code_hash == code_hash)
            ) is not None

    def add_unlock_code(self, data: dict) -> UnlockCode:
        row = UnlockCodeRow(**_enum_values(data))
        try:
            self._write(row)
        except StorageError as exc:
            if isinstance(exc.__cause__, IntegrityError):
                raise DuplicateCodeHash(f"Code hash {str(data.get('code_hash'))[:10]}... already exists") from exc.__cause__
            raise
        return UnlockCode.model_validate(row)

    def get_unlock_code(self, unlock_code_id: UUID) -> Optional[UnlockCode]:
        with self._session() as session:
            row = session.get(UnlockCodeRow, unlock_code_id)
            return UnlockCode.model_validate(row) if row else None

    def find_unlock_code(self, code_hash: str, course_id: str) -> Optional[UnlockCode]:
        with self._session() as session:
            row = session.scalars(
                select(UnlockCodeRow).where(
                    UnlockCodeRow.code_hash == code_hash,
                    UnlockCodeRow.course_id == course_id,
                )
            ).first()
            return UnlockCode.model_validate(row) if row else None

    def list_unlock_codes(self, offset: int, limit: int) -> tuple[list[UnlockCode], int]:
        with self._session() as session:
            total = session.scalar(select(func.count()).select_from(UnlockCodeRow))
            rows = session.scalars(
                select(UnlockCodeRow).order_by(UnlockCodeRow.created_at.desc()).offset(offset).limit(limit)
            ).all()
            return [UnlockCode.model_validate(r) for r in rows], total or 0

    def find_enrollment(self, student_id: str, course_id: str) -> Optional[Enrollment]:
        with self._session() as session:
            row = session.scalars(
                select(EnrollmentRow).where(
                    EnrollmentRow.student_id == student_id,
                    EnrollmentRow.course_id == course_id,
                )
            ).first()
            return Enrollment.model_validate(row) if row else None

    def list_enrollments(self, student_id: str) -> list[Enrollment]:
        with self._session() as session:
            rows = session.scalars(
                select(EnrollmentRow)
                .where(EnrollmentRow.student_id == student_id)
                .order_by(EnrollmentRow.enrolled_at.desc())
            ).all()
            return [Enrollment.model_validate(r) for r in rows]

    def redeem(self, unlock_code_id: UUID, student_id: str, course_id: str, now: datetime) -> Enrollment:
        session = self.SessionLocal()
        try:
            with session.begin():
                result = session.execute(
                    update(UnlockCodeRow)
                    .where(UnlockCodeRow.id == unlock_code_id, UnlockCodeRow.is_used.is_(False))
                    .values(is_used=True, used_by_user_id=student_id, used_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    if session.get(UnlockCodeRow, unlock_code_id) is None:
                        raise UnlockCodeNotFound(f"Unlock code {unlock_code_id} not found")
                    raise CodeAlreadyRedeemed()

                row = EnrollmentRow(
                    id=uuid4(),
                    student_id=student_id,
                    course_id=course_id,
                    enrolled_at=now,
                    progress=0,
                    is_active=True,
                    unlock_code_id=unlock_code_id,
                )
                session.add(row)
                session.flush()
            return Enrollment.model_validate(row)
        except IntegrityError as exc:
            raise AlreadyEnrolled() from exc
        except SQLAlchemyError as exc:
            logger.exception("Redemption transaction rolled back for code %s", unlock_code_id)
            raise StorageError(f"Redemption failed: {exc}") from exc
        finally:
            session.close()

    def migrate_legacy_codes(self) -> int:
        try:
            with self.SessionLocal() as session, session.begin():
                rows = session.scalars(
                    select(UnlockCodeRow).where(UnlockCodeRow.code_hash.is_(None), UnlockCodeRow.code.is_not(None))
                ).all()
                for row in rows:
                    row.code_hash = hash_code(row.code)
                session.flush()
                return len(rows)
        except SQLAlchemyError as exc:
            raise StorageError(f"Legacy code migration failed: {exc}") from exc

    def _write(self, row) -> None:
        try:
            with self.SessionLocal() as session, session.begin():
                session.add(row)
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to write {type(row).__name__}: {exc}") from exc

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self.SessionLocal()
        try:
            yield session
        except SQLAlchemyError as exc:
            raise StorageError(f"Storage read failed: {exc}") from exc
        finally:
            session.close()


def _enum_values(data: dict) -> dict:
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in data.items()}
