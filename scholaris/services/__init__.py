"""
Services module containing the authorization gate, the aggregators, the
capacity guards and the notification emitter.
"""

from .authorization import AuthorizationGate, Caller, Capability, Capabilities
from .notifications import ConnectionRegistry, NotificationEmitter
from .attendance_service import AttendanceService
from .grade_service import GradeService
from .capacity_service import CapacityService
from .fee_service import FeeService
from .coursework_service import CourseworkService
from .directory_service import DirectoryService

__all__ = [
    "AuthorizationGate",
    "Caller",
    "Capability",
    "Capabilities",
    "ConnectionRegistry",
    "NotificationEmitter",
    "AttendanceService",
    "GradeService",
    "CapacityService",
    "FeeService",
    "CourseworkService",
    "DirectoryService",
]
