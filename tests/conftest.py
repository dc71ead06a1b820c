"""
Shared fixtures: a platform over a temporary SQLite file and a small seeded school.
"""

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from scholaris.core.entities import User, Teacher, Student, Course
from scholaris.core.enums import Role
from scholaris.core.interfaces import NotificationListener
from scholaris.main import ScholarisPlatform
from scholaris.services import Caller

DEVICE_TOKEN = "device-secret"


def caller_for(user: User) -> Caller:
    return Caller(user.id, user.role)


def headers_for(user: User) -> dict:
    return {"X-User-Id": user.id, "X-User-Role": user.role.value}


class RecordingListener(NotificationListener):
    """Collects published notifications."""

    def __init__(self):
        self.events = []

    def on_notification(self, event_type, payload, recipient):
        self.events.append((event_type, payload, recipient))

    def of_type(self, event_type):
        return [event for event in self.events if event[0] == event_type]


@pytest.fixture
def platform(tmp_path):
    return ScholarisPlatform({
        'database_path': str(tmp_path / "scholaris.db"),
        'biometric_device_token': DEVICE_TOKEN,
        'capacity_retry_limit': 3,
    })


@pytest.fixture
def store(platform):
    return platform.store


@pytest.fixture
def client(platform):
    return TestClient(platform.app)


@pytest.fixture
def listener(platform):
    recorder = RecordingListener()
    platform.emitter.add_listener(recorder)
    return recorder


@pytest.fixture
def school(store):
    """Admin, two teachers with a course each, a parent of two students, an accountant and a driver."""
    users = store.users
    admin = users.insert(User("Ada", "Admin", "admin@school.test", Role.ADMIN))
    teacher_user = users.insert(User("Tom", "Teacher", "tom@school.test", Role.TEACHER))
    other_teacher_user = users.insert(User("Olga", "Other", "olga@school.test", Role.TEACHER))
    parent = users.insert(User("Pat", "Parent", "pat@school.test", Role.PARENT))
    accountant = users.insert(User("Alex", "Accounts", "alex@school.test", Role.ACCOUNTANT))
    driver = users.insert(User("Dana", "Driver", "dana@school.test", Role.DRIVER))

    teacher = store.teachers.insert(Teacher(teacher_user.id, "EMP001"))
    other_teacher = store.teachers.insert(Teacher(other_teacher_user.id, "EMP002"))

    student_users = [
        users.insert(User(first, "Pupil", f"{first.lower()}@school.test", Role.STUDENT))
        for first in ("Alice", "Bob", "Carol")
    ]
    s1 = store.students.insert(Student(student_users[0].id, "S001", "1", "10", section="A", parent=parent.id))
    s2 = store.students.insert(Student(student_users[1].id, "S002", "2", "10", section="A", parent=parent.id))
    s3 = store.students.insert(Student(student_users[2].id, "S003", "3", "10", section="B"))

    course = Course("Physics", "PHY101", teacher.id, max_enrollment=30)
    course.enrolled_students = [s1.id, s2.id]
    store.courses.insert(course)

    other_course = Course("Chemistry", "CHE101", other_teacher.id)
    other_course.enrolled_students = [s3.id]
    store.courses.insert(other_course)

    return SimpleNamespace(
        admin=admin,
        teacher_user=teacher_user,
        other_teacher_user=other_teacher_user,
        teacher=teacher,
        other_teacher=other_teacher,
        parent=parent,
        accountant=accountant,
        driver=driver,
        student_users=student_users,
        s1=s1,
        s2=s2,
        s3=s3,
        course=course,
        other_course=other_course,
    )
