"""
Enumerations and constants for the Scholaris platform.
"""

from enum import Enum


class Role(Enum):
    """Account roles."""
    ADMIN = "admin"
    TEACHER = "teacher"
    STUDENT = "student"
    PARENT = "parent"
    ACCOUNTANT = "accountant"
    DRIVER = "driver"


class AttendanceStatus(Enum):
    """Attendance outcome for a student on a day."""
    PRESENT = "present"
    ABSENT = "absent"
    LATE = "late"
    EXCUSED = "excused"


class AttendanceMethod(Enum):
    """How an attendance record was captured."""
    MANUAL = "manual"
    BIOMETRIC = "biometric"
    GPS = "gps"


class BiometricStatus(Enum):
    """Biometric enrolment state of a student."""
    REGISTERED = "registered"
    INACTIVE = "inactive"
    REQUIRES_RE_ENROLLMENT = "requires_re_enrollment"


class GradeType(Enum):
    """Kinds of graded work."""
    ASSIGNMENT = "assignment"
    QUIZ = "quiz"
    EXAM = "exam"
    PARTICIPATION = "participation"


class TransportStatus(Enum):
    """Operational state of a transport record."""
    ACTIVE = "active"
    MAINTENANCE = "maintenance"
    DECOMMISSIONED = "decommissioned"


class InventoryStatus(Enum):
    """State of an inventory item."""
    AVAILABLE = "available"
    IN_USE = "in-use"
    DAMAGED = "damaged"
    DISPOSED = "disposed"


class BookStatus(Enum):
    """Circulation state of a library book."""
    AVAILABLE = "available"
    BORROWED = "borrowed"
    RESERVED = "reserved"
    DAMAGED = "damaged"
    LOST = "lost"


class ExpenseType(Enum):
    """Kinds of school expenditure."""
    BUILDING = "building"
    UTILITY = "utility"
    SALARY = "salary"
    MAINTENANCE = "maintenance"
    OTHER = "other"


class FeeType(Enum):
    """Fee categories."""
    ANNUAL = "annual"
    TUITION = "tuition"
    TRANSPORT = "transport"
    LIBRARY = "library"
    DEVELOPMENT = "development"
    OTHER = "other"


class FeeStatus(Enum):
    """Payment state of a fee."""
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"
    WAIVED = "waived"


class PaymentMethod(Enum):
    """Accepted payment methods."""
    CASH = "cash"
    CHECK = "check"
    ONLINE = "online"
    BANK_TRANSFER = "bank_transfer"
    OTHER = "other"


class AccessScope(Enum):
    """What a capability's target is owned through."""
    NONE = "none"
    STUDENT = "student"
    COURSE = "course"


class EventType(Enum):
    """Notification events pushed to connected clients."""
    ATTENDANCE_UPDATED = "attendance_updated"
    ATTENDANCE_SYNC = "attendance_sync"
    GRADE_UPDATED = "grade_updated"
    FEE_CREATED = "fee_created"
    FEE_PAID = "fee_paid"
    LOW_STOCK_ALERT = "low_stock_alert"
    EXPENSE_CREATED = "expense_created"
    NOTIFICATION = "notification"


# Collection names in the record store
class Collection(Enum):
    """Document collections."""
    USER = "user"
    TEACHER = "teacher"
    STUDENT = "student"
    COURSE = "course"
    ATTENDANCE = "attendance"
    GRADE = "grade"
    ASSIGNMENT = "assignment"
    QUIZ = "quiz"
    VEHICLE = "vehicle"
    TRANSPORT = "transport"
    INVENTORY = "inventory"
    FEE = "fee"
    LIBRARY = "library"
    EXPENSE = "expense"
