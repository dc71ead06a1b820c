import pytest

from conftest import DEVICE_TOKEN, caller_for

from scholaris.core.entities import AttendanceRecord
from scholaris.core.exceptions import (
    AuthenticationError, AuthorizationError, DuplicateEntityError,
    ResourceNotFoundError, ValidationError
)
from scholaris.services.attendance_service import (
    ALREADY_MARKED, ALREADY_RECORDED, MARKED, SAVED, attendance_statistics, class_average
)


def _mark(platform, school, student, date, status="present", course=None, user=None):
    record = {
        "student": student.id,
        "course": (course or school.course).id,
        "date": date,
        "status": status,
    }
    return platform.attendance_service.mark_batch(caller_for(user or school.teacher_user), [record])


def test_statistics_for_no_records_is_zero():
    assert attendance_statistics([]) == {'total': 0, 'present': 0, 'absent': 0, 'attendanceRate': 0}


def test_statistics_only_present_counts():
    records = [
        AttendanceRecord("s", "c", "2024-09-02", "present"),
        AttendanceRecord("s", "c", "2024-09-03", "late"),
        AttendanceRecord("s", "c", "2024-09-04", "present"),
    ]
    statistics = attendance_statistics(records)
    assert statistics['present'] == 2
    assert statistics['absent'] == 1
    # 66.67 rounds up
    assert statistics['attendanceRate'] == 67


def test_class_average():
    assert class_average([100, 50]) == 75
    assert class_average([]) == 0


def test_mark_twice_reports_already_marked(platform, school, listener):
    first = _mark(platform, school, school.s1, "2024-09-02T08:00:00Z")
    second = _mark(platform, school, school.s1, "2024-09-02T15:30:00Z", status="absent")

    assert first.results[0]['status'] == MARKED
    assert second.results[0]['status'] == ALREADY_MARKED
    assert second.results[0]['attendanceId'] == first.results[0]['attendanceId']
    assert second.errors == []
    assert len(platform.store.attendance.find_all()) == 1
    assert len(listener.of_type("attendance_updated")) == 1


def test_attendance_events_are_broadcast_but_grades_are_not(platform, school, listener):
    _mark(platform, school, school.s1, "2024-09-02T08:00:00Z")
    platform.grade_service.record_grade(caller_for(school.teacher_user), {
        "student": school.s1.id, "course": school.course.id, "gradeType": "exam",
        "pointsEarned": 8, "maxPoints": 10,
    })

    assert listener.of_type("attendance_updated")[0][2] is None
    assert listener.of_type("grade_updated")[0][2] == school.student_users[0].id


def test_store_rejects_second_record_for_same_day(platform, school):
    platform.store.attendance.insert(AttendanceRecord(school.s1.id, school.course.id, "2024-09-02T08:00:00", "present"))
    with pytest.raises(DuplicateEntityError):
        platform.store.attendance.insert(
            AttendanceRecord(school.s1.id, school.course.id, "2024-09-02T13:00:00", "absent")
        )


def test_store_level_duplicate_is_tolerated(platform, school, monkeypatch):
    platform.store.attendance.insert(AttendanceRecord(school.s1.id, school.course.id, "2024-09-02", "present"))
    # Simulate losing the race: the lookup misses and the insert hits the index.
    monkeypatch.setattr(platform.store.attendance, "find_for_day", lambda *args, **kwargs: None)

    batch = _mark(platform, school, school.s1, "2024-09-02")

    assert batch.errors == []
    assert batch.results[0]['status'] == ALREADY_MARKED


def test_batch_collects_per_record_errors(platform, school):
    records = [
        {"student": school.s1.id, "course": school.course.id, "date": "2024-09-02", "status": "present"},
        {"student": school.s2.id, "course": school.course.id, "date": "2024-09-02"},
        {"student": school.s3.id, "course": school.course.id, "date": "2024-09-02", "status": "present"},
        {"student": school.s2.id, "course": school.course.id, "date": "2024-09-02", "status": "sleeping"},
    ]
    batch = platform.attendance_service.mark_batch(caller_for(school.teacher_user), records).to_dict()

    assert batch['processed'] == 1
    assert batch['failed'] == 3
    messages = [error['error'] for error in batch['errors']]
    assert messages[0] == "Missing required fields: student, course, date, status"
    assert messages[1] == "Student is not enrolled in this course"
    assert messages[2].startswith("Invalid status")


def test_teacher_cannot_mark_another_teachers_course(platform, school):
    batch = _mark(platform, school, school.s3, "2024-09-02", course=school.other_course)
    assert batch.results == []
    assert batch.errors[0]['error'].startswith("Not authorized")


def test_foreign_roster_is_not_revealed(platform, school):
    records = [
        {"student": school.s3.id, "course": school.other_course.id, "date": "2024-09-02", "status": "present"},
        {"student": school.s1.id, "course": school.other_course.id, "date": "2024-09-02", "status": "present"},
        {"student": school.s1.id, "course": "no-such-course", "date": "2024-09-02", "status": "present"},
    ]
    batch = platform.attendance_service.mark_batch(caller_for(school.teacher_user), records)

    messages = [error['error'] for error in batch.errors]
    assert messages[0] == messages[1] == "Not authorized to perform attendance.mark"
    assert messages[2] == "Course not found"


def test_empty_batch_is_rejected(platform, school):
    with pytest.raises(ValidationError):
        platform.attendance_service.mark_batch(caller_for(school.teacher_user), [])


def test_student_rate_and_access(platform, school):
    _mark(platform, school, school.s1, "2024-09-02")
    _mark(platform, school, school.s1, "2024-09-03", status="absent")
    _mark(platform, school, school.s1, "2024-09-04", status="late")

    own = platform.attendance_service.student_rate(caller_for(school.student_users[0]), school.s1.id)
    assert own['statistics'] == {'total': 3, 'present': 1, 'absent': 2, 'attendanceRate': 33}

    by_parent = platform.attendance_service.student_rate(caller_for(school.parent), school.s1.id)
    assert by_parent['statistics']['total'] == 3

    with pytest.raises(AuthorizationError):
        platform.attendance_service.student_rate(caller_for(school.student_users[1]), school.s1.id)
    with pytest.raises(AuthorizationError):
        platform.attendance_service.student_rate(caller_for(school.other_teacher_user), school.s1.id)


def test_student_rate_end_date_is_inclusive(platform, school):
    _mark(platform, school, school.s1, "2024-09-02")
    _mark(platform, school, school.s1, "2024-09-03", status="absent")

    result = platform.attendance_service.student_rate(
        caller_for(school.admin), school.s1.id, start_date="2024-09-01", end_date="2024-09-02"
    )
    assert result['statistics'] == {'total': 1, 'present': 1, 'absent': 0, 'attendanceRate': 100}


def test_class_summary_excludes_students_without_records(platform, school):
    _mark(platform, school, school.s1, "2024-09-02")
    _mark(platform, school, school.s2, "2024-09-02")
    _mark(platform, school, school.s2, "2024-09-03", status="absent")

    summary = platform.attendance_service.class_summary(caller_for(school.admin), "10")

    assert summary['classSummary'] == {'totalStudents': 3, 'studentsWithAttendance': 2, 'classAverage': 75}
    assert summary['attendanceByStudent'][school.s3.id]['statistics']['attendanceRate'] == 0


def test_class_summary_filters_section(platform, school):
    summary = platform.attendance_service.class_summary(caller_for(school.admin), "10", section="B")
    assert list(summary['attendanceByStudent']) == [school.s3.id]


def test_listing_requires_filter_for_teachers(platform, school):
    with pytest.raises(ValidationError):
        platform.attendance_service.list_records(caller_for(school.teacher_user))


def test_student_listing_is_scoped_to_self(platform, school):
    _mark(platform, school, school.s1, "2024-09-02")
    _mark(platform, school, school.s2, "2024-09-02")

    listing = platform.attendance_service.list_records(caller_for(school.student_users[0]))
    assert [r['student'] for r in listing['attendanceRecords']] == [school.s1.id]
    assert listing['pagination']['totalDocs'] == 1


def test_biometric_sync_saves_once(platform, school, listener):
    service = platform.attendance_service
    service.register_biometric(caller_for(school.admin), school.s1.id, "FP-1")
    scan = {"biometricId": "FP-1", "timestamp": "2024-09-02T07:55:00Z", "deviceId": "gate-1"}

    first = service.sync_biometric(DEVICE_TOKEN, [scan])
    second = service.sync_biometric(DEVICE_TOKEN, [dict(scan, timestamp="2024-09-02T12:00:00Z")])

    assert first['processedRecords'][0]['status'] == SAVED
    assert second['processedRecords'][0]['status'] == ALREADY_RECORDED
    sync_events = listener.of_type("attendance_sync")
    assert len(sync_events) == 1
    assert sync_events[0][1]['studentName'] == "Alice Pupil"


def test_biometric_sync_requires_device_token(platform, school):
    with pytest.raises(AuthenticationError):
        platform.attendance_service.sync_biometric("wrong", [{"biometricId": "FP-1", "timestamp": "2024-09-02"}])
    with pytest.raises(AuthenticationError):
        platform.attendance_service.sync_biometric(None, [{"biometricId": "FP-1", "timestamp": "2024-09-02"}])


def test_biometric_sync_reports_unknown_ids(platform, school):
    result = platform.attendance_service.sync_biometric(
        DEVICE_TOKEN, [{"biometricId": "nobody", "timestamp": "2024-09-02"}]
    )
    assert result['processed'] == 0
    assert result['failedRecords'] == [{'biometricId': "nobody", 'error': "Student not found"}]


def test_biometric_id_is_unique_per_student(platform, school):
    service = platform.attendance_service
    service.register_biometric(caller_for(school.admin), school.s1.id, "FP-1")
    with pytest.raises(DuplicateEntityError):
        service.register_biometric(caller_for(school.admin), school.s2.id, "FP-1")


def test_manual_override_updates_biometric_record(platform, school):
    service = platform.attendance_service
    service.register_biometric(caller_for(school.admin), school.s1.id, "FP-1")
    service.sync_biometric(DEVICE_TOKEN, [{"biometricId": "FP-1", "timestamp": "2024-09-02T07:55:00Z"}])

    updated = service.manual_override(caller_for(school.teacher_user), school.s1.id, "2024-09-02", "late")
    assert updated['status'] == "late"

    with pytest.raises(ResourceNotFoundError):
        service.manual_override(caller_for(school.admin), school.s1.id, "2024-09-05", "late")
    with pytest.raises(ValidationError):
        service.manual_override(caller_for(school.admin), school.s1.id, "2024-09-02", "asleep")


def test_manual_override_respects_the_records_course(platform, school):
    service = platform.attendance_service
    # s1 is in the teacher's course, but this scan was taken for another teacher's course.
    other = platform.store.courses.find_by_id(school.other_course.id)
    other.enrolled_students.append(school.s1.id)
    platform.store.courses.save(other)
    service.register_biometric(caller_for(school.admin), school.s1.id, "FP-1")
    service.sync_biometric(DEVICE_TOKEN, [
        {"biometricId": "FP-1", "timestamp": "2024-09-02T07:55:00Z", "courseId": school.other_course.id},
    ])

    with pytest.raises(AuthorizationError):
        service.manual_override(caller_for(school.teacher_user), school.s1.id, "2024-09-02", "absent")

    updated = service.manual_override(caller_for(school.other_teacher_user), school.s1.id, "2024-09-02", "absent")
    assert updated['status'] == "absent"
