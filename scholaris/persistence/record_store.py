"""
Bundle of all repositories over one database, handed to the services.
"""

from .database import DatabaseManager
from .repositories import (
    UserRepository, TeacherRepository, StudentRepository, CourseRepository,
    AttendanceRepository, GradeRepository, AssignmentRepository, QuizRepository,
    VehicleRepository, TransportRepository, InventoryRepository, FeeRepository,
    LibraryRepository, ExpenseRepository
)


class RecordStore:
    """All repositories sharing a single database."""

    def __init__(self, database: DatabaseManager):
        self.database = database
        self.users = UserRepository(database)
        self.teachers = TeacherRepository(database)
        self.students = StudentRepository(database)
        self.courses = CourseRepository(database)
        self.attendance = AttendanceRepository(database)
        self.grades = GradeRepository(database)
        self.assignments = AssignmentRepository(database)
        self.quizzes = QuizRepository(database)
        self.vehicles = VehicleRepository(database)
        self.transports = TransportRepository(database)
        self.inventory = InventoryRepository(database)
        self.fees = FeeRepository(database)
        self.library = LibraryRepository(database)
        self.expenses = ExpenseRepository(database)
