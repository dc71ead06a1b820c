"""
Core module containing the domain model, grade arithmetic and base classes.
"""

from .entities import *
from .interfaces import *
from .exceptions import *
from .enums import *
from .grading import letter_grade, percentage, validate_points

__all__ = [
    # Entities
    "AbstractEntity",
    "User",
    "Teacher",
    "Student",
    "Course",
    "AttendanceRecord",
    "GradeRecord",
    "Assignment",
    "Quiz",
    "Vehicle",
    "Transport",
    "InventoryItem",
    "Fee",

    # Interfaces
    "Repository",
    "AccessPolicy",
    "NotificationListener",

    # Enums
    "Role",
    "AttendanceStatus",
    "AttendanceMethod",
    "BiometricStatus",
    "GradeType",
    "TransportStatus",
    "InventoryStatus",
    "FeeType",
    "FeeStatus",
    "PaymentMethod",
    "AccessScope",
    "EventType",
    "Collection",

    # Exceptions
    "ScholarisException",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "ConcurrencyError",
    "ResourceNotFoundError",
    "DuplicateEntityError",
    "CapacityExceededError",
    "DependencyError",
    "PersistenceError",
    "ConfigurationError",

    # Grading
    "letter_grade",
    "percentage",
    "validate_points",
]
