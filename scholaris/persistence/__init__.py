"""
Persistence module: the document store and its repositories.
"""

from .database import DatabaseManager, SQLiteDatabase, DatabaseFactory
from .repositories import (
    BaseRepository, UserRepository, TeacherRepository, StudentRepository,
    CourseRepository, AttendanceRepository, GradeRepository, AssignmentRepository,
    QuizRepository, VehicleRepository, TransportRepository, InventoryRepository,
    FeeRepository, LibraryRepository, ExpenseRepository
)
from .record_store import RecordStore

__all__ = [
    "DatabaseManager",
    "SQLiteDatabase",
    "DatabaseFactory",
    "BaseRepository",
    "UserRepository",
    "TeacherRepository",
    "StudentRepository",
    "CourseRepository",
    "AttendanceRepository",
    "GradeRepository",
    "AssignmentRepository",
    "QuizRepository",
    "VehicleRepository",
    "TransportRepository",
    "InventoryRepository",
    "FeeRepository",
    "LibraryRepository",
    "ExpenseRepository",
    "RecordStore",
]
