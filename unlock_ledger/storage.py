import threading
from datetime import datetime
from typing import Iterable, Optional, Protocol
from uuid import UUID, uuid4

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


class LedgerStorage(Protocol):
    """Persistence operations the ledger service relies on.

    Implementations must enforce the unique index on ``code_hash`` and the
    compound unique index on ``(student_id, course_id)`` for enrollments, and
    must make ``redeem`` all-or-nothing.
    """

    def add_transaction(self, data: dict) -> TransactionRecord: ...

    def attach_unlock_code(self, transaction_id: UUID, unlock_code_id: UUID, now: datetime) -> TransactionRecord: ...

    def get_transaction(self, transaction_id: UUID) -> Optional[TransactionRecord]: ...

    def get_transactions(self, transaction_ids: Iterable[UUID]) -> dict[UUID, TransactionRecord]: ...

    def list_transactions(self, offset: int, limit: int) -> tuple[list[TransactionRecord], int]: ...

    def code_hash_exists(self, code_hash: str) -> bool: ...

    def add_unlock_code(self, data: dict) -> UnlockCode: ...

    def get_unlock_code(self, unlock_code_id: UUID) -> Optional[UnlockCode]: ...

    def find_unlock_code(self, code_hash: str, course_id: str) -> Optional[UnlockCode]: ...

    def list_unlock_codes(self, offset: int, limit: int) -> tuple[list[UnlockCode], int]: ...

    def find_enrollment(self, student_id: str, course_id: str) -> Optional[Enrollment]: ...

    def list_enrollments(self, student_id: str) -> list[Enrollment]: ...

    def redeem(self, unlock_code_id: UUID, student_id: str, course_id: str, now: datetime) -> Enrollment: ...

    def migrate_legacy_codes(self) -> int: ...


class InMemoryStorage:
    def __init__(self):
        self.transactions: dict[UUID, dict] = {}
        self.unlock_codes: dict[UUID, dict] = {}
        self.enrollments: dict[UUID, dict] = {}
        self.code_hash_index: dict[str, UUID] = {}
        self.enrollment_index: dict[tuple[str, str], UUID] = {}
        self._lock = threading.RLock()
        self._enrollment_lock = threading.Lock()
        self._code_locks: dict[UUID, threading.Lock] = {}

    def add_transaction(self, data: dict) -> TransactionRecord:
        with self._lock:
            self.transactions[data["id"]] = dict(data)
        return TransactionRecord(**data)

    def attach_unlock_code(self, transaction_id: UUID, unlock_code_id: UUID, now: datetime) -> TransactionRecord:
        with self._lock:
            data = self.transactions.get(transaction_id)
            if data is None:
                raise TransactionNotFound(f"Transaction {transaction_id} not found")
            data = {
                **data,
                "unlock_code_id": unlock_code_id,
                "status": TransactionStatus.COMPLETED,
                "updated_at": now,
            }
            self.transactions[transaction_id] = data
        return TransactionRecord(**data)

    def get_transaction(self, transaction_id: UUID) -> Optional[TransactionRecord]:
        data = self.transactions.get(transaction_id)
        return TransactionRecord(**data) if data else None

    def get_transactions(self, transaction_ids: Iterable[UUID]) -> dict[UUID, TransactionRecord]:
        found = {}
        for transaction_id in set(transaction_ids):
            data = self.transactions.get(transaction_id)
            if data:
                found[transaction_id] = TransactionRecord(**data)
        return found

    def list_transactions(self, offset: int, limit: int) -> tuple[list[TransactionRecord], int]:
        with self._lock:
            rows = list(self.transactions.values())
        rows.sort(key=lambda t: t["created_at"], reverse=True)
        return [TransactionRecord(**t) for t in rows[offset:offset + limit]], len(rows)

    def code_hash_exists(self, code_hash: str) -> bool:
        return code_hash in self.code_hash_index

    def add_unlock_code(self, data: dict) -> UnlockCode:
        with self._lock:
            code_hash = data.get("code_hash")
            if code_hash is not None:
                if code_hash in self.code_hash_index:
                    raise DuplicateCodeHash(f"Code hash {code_hash[:10]}... already exists")
                self.code_hash_index[code_hash] = data["id"]
            self.unlock_codes[data["id"]] = dict(data)
            self._code_locks[data["id"]] = threading.Lock()
        return UnlockCode(**data)

    def get_unlock_code(self, unlock_code_id: UUID) -> Optional[UnlockCode]:
        data = self.unlock_codes.get(unlock_code_id)
        return UnlockCode(**data) if data else None

    def find_unlock_code(self, code_hash: str, course_id: str) -> Optional[UnlockCode]:
        unlock_code_id = self.code_hash_index.get(code_hash)
        if unlock_code_id is None:
            return None
        data = self.unlock_codes.get(unlock_code_id)
        if not data or data["course_id"] != course_id:
            return None
        return UnlockCode(**data)

    def list_unlock_codes(self, offset: int, limit: int) -> tuple[list[UnlockCode], int]:
        with self._lock:
            rows = list(self.unlock_codes.values())
        rows.sort(key=lambda c: c["created_at"], reverse=True)
        return [UnlockCode(**c) for c in rows[offset:offset + limit]], len(rows)

    def find_enrollment(self, student_id: str, course_id: str) -> Optional[Enrollment]:
        enrollment_id = self.enrollment_index.get((student_id, course_id))
        if enrollment_id is None:
            return None
        return Enrollment(**self.enrollments[enrollment_id])

    def list_enrollments(self, student_id: str) -> list[Enrollment]:
        with self._enrollment_lock:
            rows = [e for e in self.enrollments.values() if e["student_id"] == student_id]
        rows.sort(key=lambda e: e["enrolled_at"], reverse=True)
        return [Enrollment(**e) for e in rows]

    def redeem(self, unlock_code_id: UUID, student_id: str, course_id: str, now: datetime) -> Enrollment:
        code_lock = self._code_locks.get(unlock_code_id)
        if code_lock is None:
            raise UnlockCodeNotFound(f"Unlock code {unlock_code_id} not found")

        with code_lock:
            code = self.unlock_codes[unlock_code_id]
            if code["is_used"]:
                raise CodeAlreadyRedeemed()

            # Both writes happen under the code lock and the enrollment index
            # lock, so other redeemers never observe only one of them.
            with self._enrollment_lock:
                key = (student_id, course_id)
                if key in self.enrollment_index:
                    raise AlreadyEnrolled()

                enrollment = {
                    "id": uuid4(),
                    "student_id": student_id,
                    "course_id": course_id,
                    "enrolled_at": now,
                    "progress": 0,
                    "is_active": True,
                    "unlock_code_id": unlock_code_id,
                }
                self.enrollments[enrollment["id"]] = enrollment
                self.enrollment_index[key] = enrollment["id"]
                self.unlock_codes[unlock_code_id] = {
                    **code,
                    "is_used": True,
                    "used_by_user_id": student_id,
                    "used_at": now,
                }

        return Enrollment(**enrollment)

    def migrate_legacy_codes(self) -> int:
        with self._lock:
            pending: dict[str, UUID] = {}
            for unlock_code_id, data in self.unlock_codes.items():
                if data.get("code_hash") or not data.get("code"):
                    continue
                code_hash = hash_code(data["code"])
                if code_hash in self.code_hash_index or code_hash in pending:
                    raise StorageError(f"Legacy code {unlock_code_id} collides with an existing hash")
                pending[code_hash] = unlock_code_id

            # Nothing is written unless every legacy code hashes uniquely.
            for code_hash, unlock_code_id in pending.items():
                self.unlock_codes[unlock_code_id] = {**self.unlock_codes[unlock_code_id], "code_hash": code_hash}
                self.code_hash_index[code_hash] = unlock_code_id
        return len(pending)
