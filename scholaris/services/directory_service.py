"""
Accounts and the teacher/student profiles attached to them.
"""

import logging
from typing import Any, Dict

from ..core.entities import Student, Teacher, User
from ..core.enums import Role
from ..core.exceptions import DuplicateEntityError, ResourceNotFoundError, ValidationError
from ..persistence.record_store import RecordStore
from .authorization import AuthorizationGate, Caller, Capabilities

logger = logging.getLogger(__name__)


class DirectoryService:
    """Admin-only creation of users and their profiles."""

    def __init__(self, store: RecordStore, gate: AuthorizationGate):
        self._store = store
        self._gate = gate

    def create_user(self, caller: Caller, data: Dict[str, Any]) -> User:
        self._gate.authorize(caller, Capabilities.MANAGE_USERS)
        if not data.get("firstName") or not data.get("lastName") or not data.get("email") or not data.get("role"):
            raise ValidationError("Please provide required fields: firstName, lastName, email, role")
        if self._store.users.find_by_email(data["email"]) is not None:
            raise DuplicateEntityError("User with this email already exists", details={"email": data["email"]})

        user = User(data["firstName"], data["lastName"], data["email"], data["role"])
        self._store.users.insert(user)
        logger.info("User %s created with role %s", user.id, user.role.value)
        return user

    def create_teacher(self, caller: Caller, data: Dict[str, Any]) -> Teacher:
        self._gate.authorize(caller, Capabilities.MANAGE_USERS)
        if not data.get("user") or not data.get("employeeId"):
            raise ValidationError("Please provide required fields: user, employeeId")
        self._require_account(data["user"], Role.TEACHER)
        if self._store.teachers.find_by_user(data["user"]) is not None:
            raise DuplicateEntityError("Teacher profile already exists for this user")

        teacher = Teacher(data["user"], data["employeeId"], department=data.get("department"))
        return self._store.teachers.insert(teacher)

    def create_student(self, caller: Caller, data: Dict[str, Any]) -> Student:
        self._gate.authorize(caller, Capabilities.MANAGE_USERS)
        required = ("user", "studentId", "rollNumber", "class")
        if any(not data.get(name) for name in required):
            raise ValidationError("Please provide required fields: user, studentId, rollNumber, class")
        self._require_account(data["user"], Role.STUDENT)
        if data.get("parent"):
            self._require_account(data["parent"], Role.PARENT)
        if self._store.students.find_by_student_id(data["studentId"]) is not None:
            raise DuplicateEntityError("Student ID already exists", details={"studentId": data["studentId"]})

        student = Student(
            data["user"], data["studentId"], data["rollNumber"], data["class"],
            section=data.get("section"), parent=data.get("parent")
        )
        return self._store.students.insert(student)

    def _require_account(self, user_id: str, role: Role) -> User:
        user = self._store.users.find_by_id(user_id)
        if user is None or user.role != role:
            raise ResourceNotFoundError(f"No {role.value} account with id {user_id}", details={"user": user_id})
        return user
