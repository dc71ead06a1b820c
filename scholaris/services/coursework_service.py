"""
Courses, assignments and quizzes.
"""

import logging
from typing import Any, Dict

from ..core.entities import Assignment, Course, Quiz
from ..core.exceptions import DependencyError, DuplicateEntityError, ResourceNotFoundError, ValidationError
from ..persistence.record_store import RecordStore
from .authorization import AuthorizationGate, Caller, Capabilities

logger = logging.getLogger(__name__)


class CourseworkService:
    """Creates courses and the graded work that belongs to them."""

    def __init__(self, store: RecordStore, gate: AuthorizationGate):
        self._store = store
        self._gate = gate

    def create_course(self, caller: Caller, data: Dict[str, Any]) -> Course:
        self._gate.authorize(caller, Capabilities.CREATE_COURSE)
        if not data.get("title") or not data.get("code") or not data.get("instructor"):
            raise ValidationError("Please provide required fields: title, code, instructor")
        if self._store.teachers.find_by_id(data["instructor"]) is None:
            raise ResourceNotFoundError("Instructor not found", details={"instructor": data["instructor"]})
        if self._store.courses.find_by_code(data["code"]) is not None:
            raise DuplicateEntityError("Course with this code already exists", details={"code": data["code"]})

        course = Course(data["title"], data["code"], data["instructor"],
                        max_enrollment=data.get("maxEnrollment"))
        self._store.courses.insert(course)
        logger.info("Course %s created", course.code)
        return course

    def get_course(self, caller: Caller, course_id: str) -> Course:
        self._gate.authorize(caller, Capabilities.VIEW_COURSE)
        return self._require_course(course_id)

    def create_assignment(self, caller: Caller, data: Dict[str, Any]) -> Assignment:
        if not data.get("title") or not data.get("course") or not data.get("dueDate") \
                or data.get("maxPoints") is None:
            raise ValidationError("Please provide required fields: title, course, dueDate, maxPoints")
        course = self._require_course(data["course"])
        self._gate.authorize(caller, Capabilities.MANAGE_COURSEWORK, course=course)

        assignment = Assignment(
            data["title"], course.id, course.instructor, data["dueDate"], data["maxPoints"],
            description=data.get("description")
        )
        return self._store.assignments.insert(assignment)

    def delete_assignment(self, caller: Caller, assignment_id: str) -> None:
        """Delete an assignment that no grade refers to."""
        assignment = self._store.assignments.find_by_id(assignment_id)
        if assignment is None:
            raise ResourceNotFoundError("Assignment not found", details={"assignmentId": assignment_id})
        self._gate.authorize(caller, Capabilities.MANAGE_COURSEWORK, course=self._require_course(assignment.course))

        if self._store.grades.exists_for_assignment(assignment.id):
            raise DependencyError("Cannot delete assignment with associated grades",
                                  details={"assignmentId": assignment.id})
        self._store.assignments.delete(assignment.id)

    def create_quiz(self, caller: Caller, data: Dict[str, Any]) -> Quiz:
        if not data.get("title") or not data.get("course") or data.get("maxPoints") is None:
            raise ValidationError("Please provide required fields: title, course, maxPoints")
        course = self._require_course(data["course"])
        self._gate.authorize(caller, Capabilities.MANAGE_COURSEWORK, course=course)

        quiz = Quiz(data["title"], course.id, course.instructor, data["maxPoints"])
        return self._store.quizzes.insert(quiz)

    def _require_course(self, course_id: str) -> Course:
        course = self._store.courses.find_by_id(course_id)
        if course is None:
            raise ResourceNotFoundError("Course not found", details={"courseId": course_id})
        return course
