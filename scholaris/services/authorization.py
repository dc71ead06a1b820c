"""
Authorization gate: role and ownership checks applied before any record is
read or written.

Every route declares a ``Capability`` naming the roles it admits and the
scope its target is owned through. The gate first checks the role against the
capability, then asks the role's ``AccessPolicy`` whether the caller owns the
target.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Optional

from ..core.entities import Course, Student, Teacher
from ..core.enums import AccessScope, Role
from ..core.exceptions import AuthenticationError, AuthorizationError, ConfigurationError
from ..core.interfaces import AccessPolicy
from ..persistence.repositories import CourseRepository, TeacherRepository, UserRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Caller:
    """Authenticated identity making a request."""
    id: str
    role: Role

    @classmethod
    def from_identity(cls, user_id: Optional[str], role: Optional[str]) -> "Caller":
        if not user_id or not role:
            raise AuthenticationError("Not authorized, no identity provided")
        try:
            return cls(user_id, Role(role))
        except ValueError:
            raise AuthenticationError(f"Unknown role: {role}")


@dataclass(frozen=True)
class Capability:
    """What a route may do, for which roles, and how its target is owned."""
    name: str
    roles: FrozenSet[Role]
    scope: AccessScope = AccessScope.NONE
    financial: bool = False

    def __post_init__(self):
        # Accountants only ever reach financial and operational records.
        if Role.ACCOUNTANT in self.roles and not self.financial:
            raise ConfigurationError(f"Capability {self.name} admits accountants but is not financial")


def capability(name: str, roles: Iterable[Role], scope: AccessScope = AccessScope.NONE,
               financial: bool = False) -> Capability:
    return Capability(name, frozenset(roles), scope, financial)


_ACADEMIC_READERS = (Role.ADMIN, Role.TEACHER, Role.STUDENT, Role.PARENT)
_STAFF = (Role.ADMIN, Role.TEACHER)


class Capabilities:
    """Capabilities declared by the API routes."""

    MARK_ATTENDANCE = capability("attendance.mark", _STAFF, AccessScope.COURSE)
    LIST_ATTENDANCE = capability("attendance.list", _ACADEMIC_READERS, AccessScope.STUDENT)
    LIST_COURSE_ATTENDANCE = capability("attendance.list_course", _STAFF, AccessScope.COURSE)
    VIEW_STUDENT_ATTENDANCE = capability("attendance.student", _ACADEMIC_READERS, AccessScope.STUDENT)
    VIEW_CLASS_ATTENDANCE = capability("attendance.class", _STAFF)
    OVERRIDE_ATTENDANCE = capability("attendance.override", _STAFF, AccessScope.STUDENT)
    REGISTER_BIOMETRIC = capability("biometric.register", (Role.ADMIN,))

    RECORD_GRADE = capability("grades.record", _STAFF, AccessScope.COURSE)
    UPDATE_GRADE = capability("grades.update", _STAFF, AccessScope.COURSE)
    DELETE_GRADE = capability("grades.delete", (Role.ADMIN,))
    VIEW_GRADES = capability("grades.view", _ACADEMIC_READERS, AccessScope.STUDENT)
    LIST_COURSE_GRADES = capability("grades.list_course", _STAFF, AccessScope.COURSE)

    CREATE_COURSE = capability("courses.create", (Role.ADMIN,))
    VIEW_COURSE = capability("courses.view", _ACADEMIC_READERS)
    MANAGE_ENROLLMENT = capability("courses.enroll", _STAFF, AccessScope.COURSE)
    VIEW_ROSTER = capability("courses.roster", _STAFF, AccessScope.COURSE)
    MANAGE_COURSEWORK = capability("coursework.manage", _STAFF, AccessScope.COURSE)

    MANAGE_TRANSPORT = capability("transport.manage", (Role.ADMIN,))
    MANAGE_INVENTORY = capability("inventory.manage", (Role.ADMIN, Role.ACCOUNTANT), financial=True)
    VIEW_INVENTORY = capability("inventory.view", (Role.ADMIN, Role.ACCOUNTANT), financial=True)

    MANAGE_FEES = capability("fees.manage", (Role.ADMIN, Role.ACCOUNTANT), financial=True)
    VIEW_FEES = capability(
        "fees.view", (Role.ADMIN, Role.ACCOUNTANT, Role.STUDENT, Role.PARENT),
        AccessScope.STUDENT, financial=True
    )
    PAY_FEE = capability("fees.pay", (Role.ADMIN, Role.ACCOUNTANT), AccessScope.STUDENT, financial=True)
    DELETE_FEE = capability("fees.delete", (Role.ADMIN,))

    VIEW_EXPENSES = capability("expenses.view", (Role.ADMIN, Role.ACCOUNTANT), financial=True)
    MANAGE_EXPENSES = capability("expenses.manage", (Role.ADMIN, Role.ACCOUNTANT), financial=True)
    DELETE_EXPENSE = capability("expenses.delete", (Role.ADMIN,))

    VIEW_LIBRARY = capability("library.view", _ACADEMIC_READERS)
    MANAGE_LIBRARY = capability("library.manage", (Role.ADMIN,))
    CIRCULATE_BOOKS = capability("library.circulate", _STAFF)

    MANAGE_USERS = capability("users.manage", (Role.ADMIN,))


class AdminPolicy(AccessPolicy):
    """Administrators own everything."""

    def allows_student(self, caller_id, student, course):
        return True

    def allows_course(self, caller_id, course):
        return True

    def get_policy_name(self) -> str:
        return "AdminPolicy"


class TeacherPolicy(AccessPolicy):
    """Teachers own the courses they instruct and the students enrolled in them."""

    def __init__(self, teachers: TeacherRepository, courses: CourseRepository):
        self._teachers = teachers
        self._courses = courses

    def _profile(self, caller_id: str) -> Optional[Teacher]:
        return self._teachers.find_by_user(caller_id)

    def allows_course(self, caller_id: str, course: Course) -> bool:
        teacher = self._profile(caller_id)
        return teacher is not None and course.instructor == teacher.id

    def allows_student(self, caller_id: str, student: Student, course: Optional[Course]) -> bool:
        if course is not None:
            return self.allows_course(caller_id, course)
        teacher = self._profile(caller_id)
        if teacher is None:
            return False
        return any(c.is_enrolled(student.id) for c in self._courses.find_by_instructor(teacher.id))

    def get_policy_name(self) -> str:
        return "TeacherPolicy"


class StudentPolicy(AccessPolicy):
    """Students own only their own profile's records."""

    def allows_student(self, caller_id, student, course):
        return student.user == caller_id

    def allows_course(self, caller_id, course):
        return False

    def get_policy_name(self) -> str:
        return "StudentPolicy"


class ParentPolicy(AccessPolicy):
    """Parents own the records of the students that list them as parent."""

    def allows_student(self, caller_id, student, course):
        return student.parent is not None and student.parent == caller_id

    def allows_course(self, caller_id, course):
        return False

    def get_policy_name(self) -> str:
        return "ParentPolicy"


class AccountantPolicy(AccessPolicy):
    """Accountants see every student's financial records and no course records."""

    def allows_student(self, caller_id, student, course):
        return True

    def allows_course(self, caller_id, course):
        return False

    def get_policy_name(self) -> str:
        return "AccountantPolicy"


@dataclass
class AuthorizationGate:
    """Applies capability role lists and per-role ownership policies."""
    teachers: TeacherRepository
    courses: CourseRepository
    users: UserRepository
    policies: Dict[Role, AccessPolicy] = field(default_factory=dict)

    def __post_init__(self):
        if not self.policies:
            self.policies = {
                Role.ADMIN: AdminPolicy(),
                Role.TEACHER: TeacherPolicy(self.teachers, self.courses),
                Role.STUDENT: StudentPolicy(),
                Role.PARENT: ParentPolicy(),
                Role.ACCOUNTANT: AccountantPolicy(),
            }

    def identify(self, user_id: Optional[str], role: Optional[str]) -> Caller:
        """Resolve a claimed identity against the stored account.

        The role the gate applies is always the account's own; a claim that
        disagrees with it is rejected rather than corrected.
        """
        claimed = Caller.from_identity(user_id, role)
        user = self.users.find_by_id(claimed.id)
        if user is None:
            raise AuthenticationError("Not authorized, user not found")
        if user.role != claimed.role:
            logger.warning("Caller %s claimed role %s but holds %s", user.id, claimed.role.value, user.role.value)
            raise AuthenticationError("Not authorized, role does not match account")
        return Caller(user.id, user.role)

    def can(self, caller: Caller, capability: Capability,
            student: Optional[Student] = None, course: Optional[Course] = None) -> bool:
        if caller.role not in capability.roles:
            return False
        policy = self.policies.get(caller.role)
        if policy is None:
            return False
        return policy.allows(caller.id, capability.scope, student=student, course=course)

    def authorize(self, caller: Caller, capability: Capability,
                  student: Optional[Student] = None, course: Optional[Course] = None) -> None:
        """Return if the caller may exercise ``capability`` on the target, else raise."""
        if not self.can(caller, capability, student=student, course=course):
            self._deny(caller, capability)

    def require_role(self, caller: Caller, capability: Capability) -> None:
        """Role check alone, for listings scoped to the caller's own records afterwards."""
        if caller.role not in capability.roles or caller.role not in self.policies:
            self._deny(caller, capability)

    def _deny(self, caller: Caller, capability: Capability) -> None:
        logger.info("Denied %s to %s (%s)", capability.name, caller.id, caller.role.value)
        raise AuthorizationError(
            f"Not authorized to perform {capability.name}",
            error_code="FORBIDDEN",
            details={"capability": capability.name, "role": caller.role.value}
        )

    def teacher_profile(self, caller: Caller) -> Optional[Teacher]:
        """Teacher profile of a teacher caller, if one exists."""
        if caller.role != Role.TEACHER:
            return None
        return self.teachers.find_by_user(caller.id)
