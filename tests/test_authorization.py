import pytest

from conftest import caller_for

from scholaris.core.enums import AccessScope, Role
from scholaris.core.exceptions import AuthenticationError, AuthorizationError, ConfigurationError
from scholaris.main import ScholarisPlatform
from scholaris.services import Caller, Capabilities
from scholaris.services.authorization import capability


def test_caller_requires_identity():
    with pytest.raises(AuthenticationError):
        Caller.from_identity(None, "admin")
    with pytest.raises(AuthenticationError):
        Caller.from_identity("user-1", None)
    with pytest.raises(AuthenticationError):
        Caller.from_identity("user-1", "janitor")
    assert Caller.from_identity("user-1", "parent") == Caller("user-1", Role.PARENT)


def test_identity_is_resolved_against_the_account(platform, school):
    gate = platform.gate
    parent = school.parent

    assert gate.identify(parent.id, "parent") == Caller(parent.id, Role.PARENT)
    with pytest.raises(AuthenticationError, match="role does not match"):
        gate.identify(parent.id, "admin")
    with pytest.raises(AuthenticationError, match="user not found"):
        gate.identify("ghost", "admin")


def test_bootstrap_admin_is_created_once(tmp_path):
    config = {'database_path': str(tmp_path / "boot.db"), 'bootstrap_admin_id': "root-admin"}
    first = ScholarisPlatform(config)
    assert first.gate.identify("root-admin", "admin").role == Role.ADMIN

    second = ScholarisPlatform(config)
    assert second.store.users.count() == 1


def test_admin_is_always_allowed(platform, school):
    gate = platform.gate
    admin = caller_for(school.admin)
    assert gate.can(admin, Capabilities.VIEW_GRADES, student=school.s3)
    assert gate.can(admin, Capabilities.RECORD_GRADE, course=school.other_course)
    assert gate.can(admin, Capabilities.DELETE_FEE)


def test_teacher_owns_courses_they_instruct(platform, school):
    gate = platform.gate
    teacher = caller_for(school.teacher_user)

    assert gate.can(teacher, Capabilities.RECORD_GRADE, course=school.course)
    assert not gate.can(teacher, Capabilities.RECORD_GRADE, course=school.other_course)
    # Without a course the student must be enrolled in one of the teacher's courses.
    assert gate.can(teacher, Capabilities.VIEW_GRADES, student=school.s1)
    assert not gate.can(teacher, Capabilities.VIEW_GRADES, student=school.s3)
    assert not gate.can(teacher, Capabilities.VIEW_GRADES, student=school.s1, course=school.other_course)


def test_teacher_without_profile_is_denied(platform, school):
    stranger = Caller("no-profile", Role.TEACHER)
    assert not platform.gate.can(stranger, Capabilities.RECORD_GRADE, course=school.course)


def test_student_owns_only_self(platform, school):
    gate = platform.gate
    alice = caller_for(school.student_users[0])

    assert gate.can(alice, Capabilities.VIEW_GRADES, student=school.s1)
    assert not gate.can(alice, Capabilities.VIEW_GRADES, student=school.s2)
    assert not gate.can(alice, Capabilities.RECORD_GRADE, course=school.course)
    assert not gate.can(alice, Capabilities.VIEW_GRADES)


def test_parent_owns_children(platform, school):
    gate = platform.gate
    parent = caller_for(school.parent)

    assert gate.can(parent, Capabilities.VIEW_STUDENT_ATTENDANCE, student=school.s1)
    assert gate.can(parent, Capabilities.VIEW_FEES, student=school.s2)
    assert not gate.can(parent, Capabilities.VIEW_GRADES, student=school.s3)


def test_accountant_is_limited_to_financial_records(platform, school):
    gate = platform.gate
    accountant = caller_for(school.accountant)

    assert gate.can(accountant, Capabilities.VIEW_FEES, student=school.s3)
    assert gate.can(accountant, Capabilities.MANAGE_INVENTORY)
    assert not gate.can(accountant, Capabilities.VIEW_GRADES, student=school.s1)
    assert not gate.can(accountant, Capabilities.MARK_ATTENDANCE, course=school.course)
    assert not gate.can(accountant, Capabilities.DELETE_FEE)


def test_driver_has_no_capabilities(platform, school):
    driver = caller_for(school.driver)
    assert not platform.gate.can(driver, Capabilities.VIEW_COURSE)


def test_accountant_capability_must_be_financial():
    with pytest.raises(ConfigurationError):
        capability("grades.peek", (Role.ADMIN, Role.ACCOUNTANT), AccessScope.STUDENT)


def test_authorize_raises_forbidden(platform, school):
    with pytest.raises(AuthorizationError) as excinfo:
        platform.gate.authorize(caller_for(school.student_users[0]), Capabilities.DELETE_GRADE)
    assert excinfo.value.error_code == "FORBIDDEN"
    assert excinfo.value.details['capability'] == "grades.delete"
