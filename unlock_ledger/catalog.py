import threading
from typing import Iterable, Optional, Protocol

from .models import Course


class CourseCatalog(Protocol):
    def find_course(self, course_id: str) -> Optional[Course]: ...

    def increment_enrolled_count(self, course_id: str) -> None: ...


class InMemoryCourseCatalog:
    def __init__(self, courses: Optional[Iterable[Course]] = None, seed: bool = False):
        self.courses: dict[str, Course] = {}
        self._lock = threading.Lock()
        for course in courses or []:
            self.add_course(course)
        if seed:
            self._seed_data()

    def _seed_data(self):
        self.add_course(Course(id="C1", title="Grade 10 Science"))
        self.add_course(Course(id="C2", title="Grade 10 Mathematics"))

    def add_course(self, course: Course) -> None:
        self.courses[course.id] = course

    def find_course(self, course_id: str) -> Optional[Course]:
        return self.courses.get(course_id)

    def increment_enrolled_count(self, course_id: str) -> None:
        with self._lock:
            course = self.courses.get(course_id)
            if course is not None:
                self.courses[course_id] = course.model_copy(update={"enrolled_count": course.enrolled_count + 1})
