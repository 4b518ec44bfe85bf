from typing import Optional

from .models import Enrollment
from .storage import LedgerStorage


class EnrollmentLedger:
    """Read side of course access grants.

    Enrollments are appended only by a successful redemption; nothing here
    updates or removes them.
    """

    def __init__(self, storage: LedgerStorage):
        self.storage = storage

    def is_enrolled(self, student_id: str, course_id: str) -> bool:
        enrollment = self.storage.find_enrollment(student_id, course_id)
        return enrollment is not None and enrollment.is_active

    def get_enrollment(self, student_id: str, course_id: str) -> Optional[Enrollment]:
        return self.storage.find_enrollment(student_id, course_id)

    def list_for_student(self, student_id: str) -> list[Enrollment]:
        return self.storage.list_enrollments(student_id)
