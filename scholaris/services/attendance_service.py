"""
Attendance aggregation: batch marking, biometric sync and attendance rates.

Uniqueness of (student, course, day) is enforced by the record store. The
lookup before each insert only saves a round trip; an insert rejected by the
store is reported the same way as a record found by the lookup.
"""

import hmac
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from ..core.entities import AttendanceRecord, Course, Student
from ..core.enums import AttendanceMethod, AttendanceStatus, EventType, Role
from ..core.exceptions import (
    AuthenticationError, DuplicateEntityError, ResourceNotFoundError,
    ScholarisException, ValidationError
)
from ..core.pagination import page_window, pagination
from ..core.rounding import round_half_up
from ..core.timeutils import calendar_day, parse_range
from ..persistence.record_store import RecordStore
from .authorization import AuthorizationGate, Caller, Capabilities
from .notifications import NotificationEmitter

logger = logging.getLogger(__name__)

MARKED = "marked"
ALREADY_MARKED = "already_marked"
SAVED = "saved"
ALREADY_RECORDED = "already_recorded"


def attendance_statistics(records: Iterable[AttendanceRecord]) -> Dict[str, int]:
    """Totals and rounded attendance rate; only ``present`` counts as attended."""
    total = 0
    present = 0
    for record in records:
        total += 1
        if record.is_present:
            present += 1
    rate = round_half_up(present / total * 100) if total else 0
    return {
        'total': total,
        'present': present,
        'absent': total - present,
        'attendanceRate': rate,
    }


def class_average(rates: List[int]) -> int:
    """Rounded mean of the given per-student rates, 0 when there are none."""
    if not rates:
        return 0
    return round_half_up(sum(rates) / len(rates))


@dataclass
class BatchResult:
    """Itemized outcome of a best-effort batch."""
    results: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'results': self.results,
            'errors': self.errors,
            'processed': len(self.results),
            'failed': len(self.errors),
        }


class AttendanceService:
    """Marks attendance and derives per-student and per-class rates."""

    def __init__(self, store: RecordStore, gate: AuthorizationGate, emitter: NotificationEmitter,
                 device_token: Optional[str] = None):
        self._store = store
        self._gate = gate
        self._emitter = emitter
        self._device_token = device_token

    def mark_batch(self, caller: Caller, records: List[Dict[str, Any]]) -> BatchResult:
        """Mark each record independently; one failing record never aborts the batch."""
        if not isinstance(records, list) or not records:
            raise ValidationError("Please provide attendance records", details={"field": "attendanceRecords"})

        batch = BatchResult()
        for raw in records:
            try:
                batch.results.append(self._mark_one(caller, raw))
            except ScholarisException as e:
                batch.errors.append({'record': raw, 'error': e.message})
            except Exception as e:
                logger.exception("Unexpected error marking attendance: %s", e)
                batch.errors.append({'record': raw, 'error': "Unexpected error while marking attendance"})

        logger.info("Attendance batch by %s: %d processed, %d failed",
                    caller.id, len(batch.results), len(batch.errors))
        return batch

    def _mark_one(self, caller: Caller, raw: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(raw, dict):
            raise ValidationError("Attendance record must be an object")

        student_id = raw.get("student")
        course_id = raw.get("course")
        if not student_id or not course_id or not raw.get("date") or not raw.get("status"):
            raise ValidationError("Missing required fields: student, course, date, status")

        course = self._require_course(course_id)
        self._gate.authorize(caller, Capabilities.MARK_ATTENDANCE, course=course)
        if not course.is_enrolled(student_id):
            raise ValidationError("Student is not enrolled in this course")

        record = AttendanceRecord(
            student_id, course_id, raw["date"], raw["status"],
            method=raw.get("method") or AttendanceMethod.MANUAL, marked_by=caller.id
        )

        existing = self._store.attendance.find_for_day(student_id, course_id, record.day)
        if existing is not None:
            return {**raw, 'status': ALREADY_MARKED, 'attendanceId': existing.id}

        try:
            self._store.attendance.insert(record)
        except DuplicateEntityError:
            # Lost the race against a concurrent insert for the same day.
            existing = self._store.attendance.find_for_day(student_id, course_id, record.day)
            return {**raw, 'status': ALREADY_MARKED, 'attendanceId': existing.id if existing else None}

        self._emitter.publish(EventType.ATTENDANCE_UPDATED, {
            'studentId': student_id,
            'courseId': course_id,
            'date': record.date.isoformat(),
            'status': record.status.value,
        })
        return {**raw, 'status': MARKED, 'attendanceId': record.id}

    def list_records(self, caller: Caller, student_id: Optional[str] = None, course_id: Optional[str] = None,
                     start_date: Optional[str] = None, end_date: Optional[str] = None,
                     status: Optional[str] = None, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        """Filtered, paginated attendance records, newest first."""
        skip, limit = page_window(page, limit)
        start, end = parse_range(start_date, end_date)
        if status and status not in {s.value for s in AttendanceStatus}:
            raise ValidationError("Invalid status. Must be present, absent, late, or excused",
                                  details={"field": "status"})

        course = self._require_course(course_id) if course_id else None
        if student_id:
            student = self._require_student(student_id)
            self._gate.authorize(caller, Capabilities.LIST_ATTENDANCE, student=student, course=course)
            student_ids = [student.id]
        elif course is not None:
            self._gate.authorize(caller, Capabilities.LIST_COURSE_ATTENDANCE, course=course)
            student_ids = None
        else:
            student_ids = self._visible_students(caller)

        records = self._store.attendance.find_records(
            student_ids, course_id, start, end, status, skip=skip, limit=limit
        )
        total = self._store.attendance.count_records(student_ids, course_id, start, end, status)
        return {
            'attendanceRecords': [record.to_dict() for record in records],
            'pagination': pagination(page, limit, total),
        }

    def _visible_students(self, caller: Caller) -> Optional[List[str]]:
        """Students whose records an unfiltered listing may show; None means all."""
        self._gate.require_role(caller, Capabilities.LIST_ATTENDANCE)
        if caller.role == Role.ADMIN:
            return None
        if caller.role == Role.STUDENT:
            own = self._store.students.find_by_user(caller.id)
            return [own.id] if own else []
        if caller.role == Role.PARENT:
            return [child.id for child in self._store.students.find_by_parent(caller.id)]
        raise ValidationError("A student or course filter is required", details={"field": "course"})

    def student_rate(self, caller: Caller, student_id: str, start_date: Optional[str] = None,
                     end_date: Optional[str] = None, course_id: Optional[str] = None,
                     page: int = 1, limit: int = 10) -> Dict[str, Any]:
        """A student's records in range plus statistics over all of them."""
        skip, limit = page_window(page, limit)
        student = self._require_student(student_id)
        course = self._require_course(course_id) if course_id else None
        self._gate.authorize(caller, Capabilities.VIEW_STUDENT_ATTENDANCE, student=student, course=course)

        start, end = parse_range(start_date, end_date)
        records = self._store.attendance.find_records([student.id], course_id, start, end)
        return {
            'attendanceRecords': [record.to_dict() for record in records[skip:skip + limit]],
            'statistics': attendance_statistics(records),
            'pagination': pagination(page, limit, len(records)),
        }

    def class_summary(self, caller: Caller, class_id: str, start_date: Optional[str] = None,
                      end_date: Optional[str] = None, section: Optional[str] = None) -> Dict[str, Any]:
        """Per-student rates for a class and the average over students that have records."""
        self._gate.authorize(caller, Capabilities.VIEW_CLASS_ATTENDANCE)
        start, end = parse_range(start_date, end_date)

        students = self._store.students.find_by_class(class_id, section)
        records = self._store.attendance.find_records([s.id for s in students], None, start, end)

        grouped: Dict[str, List[AttendanceRecord]] = {s.id: [] for s in students}
        for record in records:
            if record.student in grouped:
                grouped[record.student].append(record)

        by_student = {}
        rates = []
        for student in students:
            student_records = grouped[student.id]
            statistics = attendance_statistics(student_records)
            if statistics['total'] > 0:
                rates.append(statistics['attendanceRate'])
            by_student[student.id] = {
                'student': student.to_dict(),
                'records': [record.to_dict() for record in student_records],
                'statistics': statistics,
            }

        return {
            'attendanceByStudent': by_student,
            'classSummary': {
                'totalStudents': len(students),
                'studentsWithAttendance': len(rates),
                'classAverage': class_average(rates),
            },
        }

    def sync_biometric(self, device_token: Optional[str], records: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Store scans pushed by a biometric device; every scan counts as present."""
        if not self._device_token or not device_token or \
                not hmac.compare_digest(str(device_token), str(self._device_token)):
            raise AuthenticationError("Unauthorized device access")
        if not isinstance(records, list) or not records:
            raise ValidationError("Invalid attendance records", details={"field": "attendanceRecords"})

        processed = []
        failed = []
        for raw in records:
            biometric_id = raw.get("biometricId") if isinstance(raw, dict) else None
            try:
                processed.append(self._sync_one(raw))
            except ScholarisException as e:
                failed.append({'biometricId': biometric_id, 'error': e.message})
            except Exception as e:
                logger.exception("Unexpected error syncing biometric record: %s", e)
                failed.append({'biometricId': biometric_id, 'error': "Unexpected error while syncing record"})

        logger.info("Biometric sync: %d processed, %d failed", len(processed), len(failed))
        return {
            'processed': len(processed),
            'failed': len(failed),
            'processedRecords': processed,
            'failedRecords': failed,
        }

    def _sync_one(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(raw, dict):
            raise ValidationError("Biometric record must be an object")
        student = self._store.students.find_by_biometric_id(raw.get("biometricId"))
        if student is None:
            raise ResourceNotFoundError("Student not found")
        if not raw.get("timestamp"):
            raise ValidationError("timestamp is required", details={"field": "timestamp"})

        course_id = raw.get("courseId") or None
        record = AttendanceRecord(
            student.id, course_id, raw["timestamp"], AttendanceStatus.PRESENT,
            method=AttendanceMethod.BIOMETRIC,
            biometric_data={
                'deviceId': raw.get("deviceId"),
                'timestamp': raw["timestamp"],
                'fingerprintId': raw.get("biometricId"),
                'confidence': raw.get("confidence"),
            }
        )

        existing = self._store.attendance.find_for_day(student.id, course_id, record.day)
        if existing is not None:
            return {**raw, 'studentId': student.id, 'status': ALREADY_RECORDED}
        try:
            self._store.attendance.insert(record)
        except DuplicateEntityError:
            return {**raw, 'studentId': student.id, 'status': ALREADY_RECORDED}

        user = self._store.users.find_by_id(student.user)
        self._emitter.publish(EventType.ATTENDANCE_SYNC, {
            'studentId': student.id,
            'studentName': user.full_name if user else None,
            'date': record.date.isoformat(),
            'status': record.status.value,
            'method': record.method.value,
        })
        return {**raw, 'attendanceId': record.id, 'studentId': student.id, 'status': SAVED}

    def manual_override(self, caller: Caller, student_id: Optional[str], date: Optional[str],
                        status: Optional[str], course_id: Optional[str] = None) -> Dict[str, Any]:
        """Correct the status of a biometric record for a student's day."""
        if not student_id or not date or not status:
            raise ValidationError("Student ID, date, and status are required")
        if status not in {s.value for s in AttendanceStatus}:
            raise ValidationError("Invalid status. Must be present, absent, late, or excused",
                                  details={"field": "status"})

        student = self._require_student(student_id)
        course = self._require_course(course_id) if course_id else None
        self._gate.authorize(caller, Capabilities.OVERRIDE_ATTENDANCE, student=student, course=course)

        filters = {'student': student.id, 'day': calendar_day(date), 'method': AttendanceMethod.BIOMETRIC.value}
        if course_id:
            filters['course'] = course_id
        record = self._store.attendance.find_one(filters)
        if record is None:
            raise ResourceNotFoundError("No biometric record found for the specified date")
        if course is None and record.course:
            # A course-bound record is owned by its course, not by any course shared with the student.
            self._gate.authorize(caller, Capabilities.OVERRIDE_ATTENDANCE, student=student,
                                 course=self._require_course(record.course))

        record.status = AttendanceStatus(status)
        record.marked_by = caller.id
        self._store.attendance.save(record)

        self._emitter.publish(EventType.ATTENDANCE_UPDATED, {
            'studentId': student.id,
            'courseId': record.course,
            'date': record.date.isoformat(),
            'status': record.status.value,
        })
        return record.to_dict()

    def register_biometric(self, caller: Caller, student_id: str, biometric_id: Optional[str]) -> Dict[str, Any]:
        self._gate.authorize(caller, Capabilities.REGISTER_BIOMETRIC)
        if not biometric_id:
            raise ValidationError("Biometric ID is required", details={"field": "biometricId"})

        student = self._require_student(student_id)
        holder = self._store.students.find_by_biometric_id(biometric_id)
        if holder is not None and holder.id != student.id:
            raise DuplicateEntityError("Biometric ID is already registered to another student")

        student.register_biometric(biometric_id)
        self._store.students.save(student)
        return {
            'studentId': student.id,
            'biometricId': student.biometric_id,
            'status': student.biometric_status.value,
        }

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
