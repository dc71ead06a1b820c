"""
Grade aggregation: recording and updating grades, and per-student summaries.
"""

import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Tuple

from ..core.entities import Course, GradeRecord, Student
from ..core.enums import EventType, GradeType, Role
from ..core.exceptions import ResourceNotFoundError, ValidationError
from ..core.grading import letter_grade, percentage, validate_points
from ..core.pagination import page_window, pagination
from ..core.rounding import round_half_up
from ..persistence.record_store import RecordStore
from .authorization import AuthorizationGate, Caller, Capabilities
from .notifications import NotificationEmitter

logger = logging.getLogger(__name__)

_REQUIRED_FIELDS = ("student", "course", "gradeType", "pointsEarned", "maxPoints")


def apply_score(grade: GradeRecord, points_earned: float, max_points: float) -> None:
    """Set points and the derived percentage and letter grade."""
    grade.points_earned = points_earned
    grade.max_points = max_points
    grade.percentage = percentage(points_earned, max_points)
    grade.letter_grade = letter_grade(grade.percentage)


def summarize(grades: List[GradeRecord]) -> Tuple["OrderedDict[str, Dict[str, Any]]", float]:
    """Per-course mean percentage and the mean of those means.

    Both are rounded to two decimals; the overall figure averages the rounded
    course means, one vote per course regardless of how many grades it has.
    """
    by_course: "OrderedDict[str, List[GradeRecord]]" = OrderedDict()
    for grade in grades:
        by_course.setdefault(grade.course, []).append(grade)

    averages = OrderedDict()
    for course_id, course_grades in by_course.items():
        mean = sum(g.percentage or 0 for g in course_grades) / len(course_grades)
        averages[course_id] = {
            'average': round_half_up(mean, 2),
            'totalGrades': len(course_grades),
        }

    if not averages:
        return averages, 0
    overall = sum(entry['average'] for entry in averages.values()) / len(averages)
    return averages, round_half_up(overall, 2)


class GradeService:
    """Records grades and derives course averages and overall GPA."""

    def __init__(self, store: RecordStore, gate: AuthorizationGate, emitter: NotificationEmitter):
        self._store = store
        self._gate = gate
        self._emitter = emitter

    def record_grade(self, caller: Caller, data: Dict[str, Any]) -> GradeRecord:
        missing = [name for name in _REQUIRED_FIELDS if data.get(name) is None or data.get(name) == ""]
        if missing:
            raise ValidationError(
                "Please provide required fields: student, course, gradeType, pointsEarned, maxPoints",
                details={"missing": missing}
            )
        points_earned = data["pointsEarned"]
        max_points = data["maxPoints"]
        validate_points(points_earned, max_points)

        student = self._store.students.find_by_id(data["student"])
        if student is None:
            raise ResourceNotFoundError("Student not found", details={"studentId": data["student"]})

        course = self._store.courses.find_by_id(data["course"])
        if course is None:
            raise ResourceNotFoundError("Course not found", details={"courseId": data["course"]})
        # Roster membership is only revealed to callers who own the course.
        self._gate.authorize(caller, Capabilities.RECORD_GRADE, course=course)
        if not course.is_enrolled(student.id):
            raise ValidationError("Student is not enrolled in this course")

        if data.get("assignment"):
            assignment = self._store.assignments.find_by_id(data["assignment"])
            if assignment is None or assignment.course != course.id:
                raise ValidationError("Assignment not found or does not belong to this course")
        if data.get("quiz"):
            quiz = self._store.quizzes.find_by_id(data["quiz"])
            if quiz is None or quiz.course != course.id:
                raise ValidationError("Quiz not found or does not belong to this course")

        grade = GradeRecord(
            student.id, course.id, data["gradeType"], points_earned, max_points,
            graded_by=self._grader_id(caller, data.get("gradedBy")),
            assignment=data.get("assignment"), quiz=data.get("quiz"),
            feedback=data.get("feedback")
        )
        apply_score(grade, points_earned, max_points)
        self._store.grades.insert(grade)

        logger.info("Grade %s recorded for student %s in %s", grade.id, student.id, course.code)
        self._notify(grade, student)
        return grade

    def update_grade(self, caller: Caller, grade_id: str, patch: Dict[str, Any]) -> GradeRecord:
        """Apply a partial update and recompute percentage and letter grade.

        Patched values are merged with the stored ones and the resulting pair
        must still satisfy 0 <= pointsEarned <= maxPoints.
        """
        grade = self._require_grade(grade_id)
        course = self._store.courses.find_by_id(grade.course)
        if course is None:
            raise ResourceNotFoundError("Course not found", details={"courseId": grade.course})
        self._gate.authorize(caller, Capabilities.UPDATE_GRADE, course=course)

        max_points = grade.max_points
        if patch.get("maxPoints") is not None:
            max_points = patch["maxPoints"]
        points_earned = grade.points_earned
        if patch.get("pointsEarned") is not None:
            points_earned = patch["pointsEarned"]
        if patch.get("maxPoints") is not None or patch.get("pointsEarned") is not None:
            validate_points(points_earned, max_points)

        apply_score(grade, points_earned, max_points)
        if "feedback" in patch and patch["feedback"] is not None:
            grade.feedback = patch["feedback"]

        self._store.grades.save(grade)
        self._notify(grade, self._store.students.find_by_id(grade.student))
        return grade

    def get_grade(self, caller: Caller, grade_id: str) -> GradeRecord:
        grade = self._require_grade(grade_id)
        student = self._store.students.find_by_id(grade.student)
        course = self._store.courses.find_by_id(grade.course)
        self._gate.authorize(caller, Capabilities.VIEW_GRADES, student=student, course=course)
        return grade

    def list_grades(self, caller: Caller, student_id: Optional[str] = None, course_id: Optional[str] = None,
                    assignment_id: Optional[str] = None, quiz_id: Optional[str] = None,
                    grade_type: Optional[str] = None, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        skip, limit = page_window(page, limit)
        if grade_type and grade_type not in {t.value for t in GradeType}:
            raise ValidationError(f"Invalid gradeType '{grade_type}'", details={"field": "gradeType"})

        course = self._require_course(course_id) if course_id else None
        if student_id:
            student = self._require_student(student_id)
            self._gate.authorize(caller, Capabilities.VIEW_GRADES, student=student, course=course)
            student_ids = [student.id]
        elif course is not None:
            self._gate.authorize(caller, Capabilities.LIST_COURSE_GRADES, course=course)
            student_ids = None
        else:
            student_ids = self._visible_students(caller)

        filters = {'course': course_id, 'assignment': assignment_id, 'quiz': quiz_id, 'gradeType': grade_type}
        grades = self._store.grades.find_owned(student_ids, filters, skip=skip, limit=limit)
        total = self._store.grades.count_owned(student_ids, filters)
        return {
            'grades': [grade.to_dict() for grade in grades],
            'pagination': pagination(page, limit, total),
        }

    def delete_grade(self, caller: Caller, grade_id: str) -> None:
        self._gate.authorize(caller, Capabilities.DELETE_GRADE)
        grade = self._require_grade(grade_id)
        self._store.grades.delete(grade.id)
        logger.info("Grade %s deleted by %s", grade.id, caller.id)

    def student_summary(self, caller: Caller, student_id: str) -> Dict[str, Any]:
        """Grades grouped by course with per-course averages and the overall GPA."""
        student = self._require_student(student_id)
        self._gate.authorize(caller, Capabilities.VIEW_GRADES, student=student)

        grades = self._store.grades.find_by_student(student.id)
        averages, overall = summarize(grades)

        courses = {c.id: c for c in self._store.courses.find_by_ids(averages.keys())}
        titles = {a.id: a.title for a in self._store.assignments.find_by_ids(g.assignment for g in grades)}
        titles.update({q.id: q.title for q in self._store.quizzes.find_by_ids(g.quiz for g in grades)})

        grades_by_course = {}
        for course_id, entry in averages.items():
            course = courses.get(course_id)
            grades_by_course[course_id] = {
                'course': {'id': course.id, 'title': course.title, 'code': course.code} if course else None,
                'average': entry['average'],
                'totalGrades': entry['totalGrades'],
                'grades': [
                    {
                        'id': g.id,
                        'type': g.grade_type.value,
                        'assignmentTitle': titles.get(g.assignment),
                        'quizTitle': titles.get(g.quiz),
                        'pointsEarned': g.points_earned,
                        'maxPoints': g.max_points,
                        'percentage': g.percentage,
                        'letterGrade': g.letter_grade,
                    }
                    for g in grades if g.course == course_id
                ],
            }

        return {
            'gradesByCourse': grades_by_course,
            'overallGPA': overall,
            'totalGrades': len(grades),
        }

    def _grader_id(self, caller: Caller, requested: Optional[str]) -> str:
        teacher = self._gate.teacher_profile(caller)
        if teacher is not None:
            return teacher.id
        return requested or caller.id

    def _visible_students(self, caller: Caller) -> Optional[List[str]]:
        self._gate.require_role(caller, Capabilities.VIEW_GRADES)
        if caller.role == Role.ADMIN:
            return None
        if caller.role == Role.STUDENT:
            own = self._store.students.find_by_user(caller.id)
            return [own.id] if own else []
        if caller.role == Role.PARENT:
            return [child.id for child in self._store.students.find_by_parent(caller.id)]
        raise ValidationError("A student or course filter is required", details={"field": "course"})

    def _notify(self, grade: GradeRecord, student: Optional[Student]) -> None:
        # Grades only go to the owning student's channel, never broadcast.
        if student is None:
            return
        self._emitter.publish(
            EventType.GRADE_UPDATED,
            {
                'gradeId': grade.id,
                'studentId': grade.student,
                'courseId': grade.course,
                'pointsEarned': grade.points_earned,
                'maxPoints': grade.max_points,
                'percentage': grade.percentage,
                'letterGrade': grade.letter_grade,
            },
            recipient=student.user
        )

    def _require_grade(self, grade_id: str) -> GradeRecord:
        grade = self._store.grades.find_by_id(grade_id)
        if grade is None:
            raise ResourceNotFoundError("Grade not found", details={"gradeId": grade_id})
        return grade

    def _require_student(self, student_id: str) -> Student:
        student = self._store.students.find_by_id(student_id)
        if student is None:
            raise ResourceNotFoundError("Student not found", details={"studentId": student_id})
        return student

    def _require_course(self, course_id: str) -> Course:
        course = self._store.courses.find_by_id(course_id)
        if course is None:
            raise ResourceNotFoundError("Course not found", details={"courseId": course_id})
        return course
