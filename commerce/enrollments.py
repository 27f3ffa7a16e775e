import logging
from typing import Optional
from uuid import UUID, uuid4

from .collaborators import CourseCatalog, InMemoryCourseCatalog
from .config import Settings, settings as default_settings
from .errors import EnrollmentNotFoundError, MissingFieldError
from .models import (
    Enrollment,
    EnrollmentProgress,
    EnrollmentResponse,
    EnrollRequest,
    progress_percentage,
)
from .retry import RetryConfig, retry_decorator
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


class EnrollmentProgressTracker:
    """One enrollment per (student, course), plus lesson-completion progress.

    Progress writes are compare-and-set on the enrollment's ``version``; a
    conflicting concurrent write makes the whole read-modify-write run again.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        catalog: Optional[CourseCatalog] = None,
        settings: Optional[Settings] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.catalog = catalog or InMemoryCourseCatalog(self.storage)
        self.settings = settings or default_settings
        self.retry_config = RetryConfig.from_settings(self.settings)

    def enroll(self, request: EnrollRequest) -> EnrollmentResponse:
        for field_name in ("student_id", "course_id", "lecturer_id"):
            if not getattr(request, field_name):
                raise MissingFieldError(f"{field_name} is required", context={"field": field_name})

        key = (request.student_id, request.course_id)
        with self.storage.atomic():
            existing_id = self.storage.get("enrollment_index", key)
            if existing_id is not None:
                logger.info(f"Student {request.student_id} already enrolled in course {request.course_id}")
                return EnrollmentResponse(
                    enrollment=self.get(existing_id),
                    created=False,
                    message="Enrollment already exists (idempotent return)",
                )

            now = self.storage.now()
            enrollment_id = uuid4()
            enrollment_data = {
                "id": enrollment_id,
                "student_id": request.student_id,
                "course_id": request.course_id,
                "lecturer_id": request.lecturer_id,
                "completed_lessons": [],
                "progress": 0,
                "payment_reference": request.payment_reference,
                "amount_paid": request.amount_paid,
                "enrolled_at": now,
                "last_accessed_at": now,
                "version": 0,
            }
            self.storage.put("enrollments", enrollment_id, enrollment_data)
            self.storage.put("enrollment_index", key, enrollment_id)
            self.storage.increment(
                "courses", request.course_id,
                defaults={"course_id": request.course_id, "lecturer_id": request.lecturer_id},
                total_students=1,
            )

        logger.info(f"Enrolled student {request.student_id} in course {request.course_id} ({enrollment_id})")
        return EnrollmentResponse(
            enrollment=Enrollment(**enrollment_data),
            created=True,
            message="Enrollment created successfully",
        )

    @retry_decorator(lambda self: self.retry_config)
    def complete_lesson(self, enrollment_id: UUID, lesson_id: str) -> int:
        enrollment = self.get(enrollment_id)
        if enrollment.has_completed(lesson_id):
            return enrollment.progress

        completed = enrollment.completed_lessons + [lesson_id]
        total_lessons = self.catalog.lesson_count(enrollment.course_id)
        progress = progress_percentage(len(completed), total_lessons)

        data = enrollment.model_dump()
        data.update(
            completed_lessons=completed,
            progress=progress,
            last_accessed_at=self.storage.now(),
        )
        self.storage.compare_and_set("enrollments", enrollment_id, data, enrollment.version)
        logger.info(
            f"Enrollment {enrollment_id} progress: {len(completed)}/{total_lessons} lessons ({progress}%)"
        )
        return progress

    @retry_decorator(lambda self: self.retry_config)
    def sync_progress(self, enrollment_id: UUID) -> int:
        enrollment = self.get(enrollment_id)
        total_lessons = self.catalog.lesson_count(enrollment.course_id)
        progress = progress_percentage(len(enrollment.completed_lessons), total_lessons)
        if progress != enrollment.progress:
            data = enrollment.model_dump()
            data["progress"] = progress
            self.storage.compare_and_set("enrollments", enrollment_id, data, enrollment.version)
            logger.info(f"Synced progress for enrollment {enrollment_id}: {enrollment.progress}% -> {progress}%")
        return progress

    def get(self, enrollment_id: UUID) -> Enrollment:
        data = self.storage.get("enrollments", enrollment_id)
        if not data:
            raise EnrollmentNotFoundError(f"Enrollment {enrollment_id} not found")
        return Enrollment(**data)

    def get_progress(self, enrollment_id: UUID) -> EnrollmentProgress:
        enrollment = self.get(enrollment_id)
        return EnrollmentProgress(
            enrollment_id=enrollment.id,
            progress=enrollment.progress,
            completed_lessons=enrollment.completed_lessons,
        )

    def find(self, student_id: str, course_id: str) -> Optional[Enrollment]:
        enrollment_id = self.storage.get("enrollment_index", (student_id, course_id))
        return self.get(enrollment_id) if enrollment_id is not None else None

    def list_for_student(self, student_id: str) -> list[Enrollment]:
        enrollments = [
            Enrollment(**e) for e in self.storage.find("enrollments", lambda e: e["student_id"] == student_id)
        ]
        enrollments.sort(key=lambda e: e.enrolled_at, reverse=True)
        return enrollments
