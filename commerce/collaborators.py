"""
Interfaces to the systems around the ledger: the course catalog, study groups
and the user directory. The in-memory implementations keep their data in the
same store as the ledger.
"""

from typing import Optional, Protocol

from .models import CourseStats, CourseUpsert
from .storage import InMemoryStorage


class CourseCatalog(Protocol):
    def lesson_count(self, course_id: str) -> int: ...

    def study_group_for(self, course_id: str) -> Optional[str]: ...


class StudyGroupDirectory(Protocol):
    def add_member(self, group_id: str, student_id: str) -> None: ...


class UserDirectory(Protocol):
    def display_name(self, user_id: str) -> Optional[str]: ...


class InMemoryCourseCatalog:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def upsert(self, course_id: str, course: CourseUpsert) -> CourseStats:
        # catalog fields only; the ledger owns total_students / total_revenue
        with self.storage.atomic():
            doc = self.storage.get("courses", course_id) or {
                "course_id": course_id, "total_students": 0, "total_revenue": 0,
            }
            doc.update(course.model_dump())
            self.storage.put("courses", course_id, doc)
        return CourseStats(**doc)

    def get(self, course_id: str) -> Optional[CourseStats]:
        doc = self.storage.get("courses", course_id)
        return CourseStats(**doc) if doc else None

    def lesson_count(self, course_id: str) -> int:
        doc = self.storage.get("courses", course_id)
        return doc.get("total_lessons", 0) if doc else 0

    def study_group_for(self, course_id: str) -> Optional[str]:
        doc = self.storage.get("courses", course_id)
        return doc.get("study_group_id") if doc else None


class InMemoryStudyGroups:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def add_member(self, group_id: str, student_id: str) -> None:
        with self.storage.atomic():
            group = self.storage.get("study_groups", group_id)
            if group is None:
                raise LookupError(f"Study group {group_id} not found")
            if student_id not in group["members"]:
                group["members"].append(student_id)
                self.storage.put("study_groups", group_id, group)

    def create(self, group_id: str, course_id: Optional[str] = None) -> None:
        self.storage.put("study_groups", group_id, {"id": group_id, "course_id": course_id, "members": []})

    def members(self, group_id: str) -> list[str]:
        group = self.storage.get("study_groups", group_id)
        return group["members"] if group else []


class InMemoryUserDirectory:
    def __init__(self, storage: InMemoryStorage):
        self.storage = storage

    def register(self, user_id: str, display_name: str) -> None:
        self.storage.put("users", user_id, {"id": user_id, "display_name": display_name})

    def display_name(self, user_id: str) -> Optional[str]:
        user = self.storage.get("users", user_id)
        return user.get("display_name") if user else None
