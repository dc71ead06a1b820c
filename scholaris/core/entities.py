"""
Core entities for the Scholaris platform.

Every entity is stored as a JSON document; ``to_dict`` produces the stored and
wire representation (camelCase keys) and ``from_dict`` restores it.
"""

import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from .enums import (
    Collection, Role, AttendanceStatus, AttendanceMethod, BiometricStatus,
    GradeType, TransportStatus, InventoryStatus, BookStatus, ExpenseType, FeeType, FeeStatus,
    PaymentMethod
)
from .exceptions import ValidationError
from .timeutils import utcnow, parse_datetime, calendar_day


def _enum_value(enum_cls, value, field_name: str):
    """Coerce a raw value into ``enum_cls`` or raise a field-level ValidationError."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(
            f"Invalid {field_name} '{value}'. Must be one of: {allowed}",
            details={"field": field_name}
        )


class AbstractEntity(ABC):
    """Base abstract entity with universal ID, lifecycle, and versioning."""

    collection: Collection = None

    def __init__(self, entity_id: Optional[str] = None):
        self._id = entity_id or str(uuid.uuid4())
        self._created_at = utcnow()
        self._updated_at = self._created_at
        self._version = 1

    @property
    def id(self) -> str:
        """Get the entity ID."""
        return self._id

    @property
    def created_at(self) -> datetime:
        """Get creation timestamp."""
        return self._created_at

    @property
    def updated_at(self) -> datetime:
        """Get last update timestamp."""
        return self._updated_at

    @property
    def version(self) -> int:
        """Get current version."""
        return self._version

    def touch(self) -> None:
        """Mark the entity as modified."""
        self._updated_at = utcnow()
        self._version += 1

    @abstractmethod
    def _fields(self) -> Dict[str, Any]:
        """Domain fields of the document."""
        pass

    @classmethod
    @abstractmethod
    def _from_fields(cls, data: Dict[str, Any], entity_id: str) -> "AbstractEntity":
        """Rebuild the entity from its domain fields."""
        pass

    def to_dict(self) -> Dict[str, Any]:
        """Convert entity to dictionary."""
        document = {
            'id': self._id,
            'createdAt': self._created_at.isoformat(),
            'updatedAt': self._updated_at.isoformat(),
            'version': self._version,
        }
        document.update(self._fields())
        return document

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AbstractEntity":
        """Restore an entity from its stored document."""
        entity = cls._from_fields(data, data["id"])
        if data.get("createdAt"):
            entity._created_at = parse_datetime(data["createdAt"])
        if data.get("updatedAt"):
            entity._updated_at = parse_datetime(data["updatedAt"])
        entity._version = data.get("version", 1)
        return entity

    def __str__(self) -> str:
        return f"{self.__class__.__name__}(id={self._id})"

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(id={self._id}, version={self._version})"


class User(AbstractEntity):
    """Account identity; the role decides which policy the gate applies."""

    collection = Collection.USER

    def __init__(self, first_name: str, last_name: str, email: str, role: Role, **kwargs):
        super().__init__(**kwargs)
        self.first_name = first_name
        self.last_name = last_name
        self.email = email
        self.role = _enum_value(Role, role, "role")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def _fields(self) -> Dict[str, Any]:
        return {
            'firstName': self.first_name,
            'lastName': self.last_name,
            'email': self.email,
            'role': self.role.value,
        }

    @classmethod
    def _from_fields(cls, data, entity_id):
        return cls(data["firstName"], data["lastName"], data["email"], Role(data["role"]),
                   entity_id=entity_id)


class Teacher(AbstractEntity):
    """Teacher profile keyed by the owning account."""

    collection = Collection.TEACHER

    def __init__(self, user: str, employee_id: str, department: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.user = user
        self.employee_id = employee_id
        self.department = department
        self.is_active = True

    def _fields(self) -> Dict[str, Any]:
        return {
            'user': self.user,
            'employeeId': self.employee_id,
            'department': self.department,
            'isActive': self.is_active,
        }

    @classmethod
    def _from_fields(cls, data, entity_id):
        teacher = cls(data["user"], data["employeeId"], data.get("department"), entity_id=entity_id)
        teacher.is_active = data.get("isActive", True)
        return teacher


class Student(AbstractEntity):
    """Student profile with class/section placement and parent link."""

    collection = Collection.STUDENT

    def __init__(self, user: str, student_id: str, roll_number: str, class_id: str,
                 section: Optional[str] = None, parent: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.user = user
        self.student_id = student_id
        self.roll_number = roll_number
        self.class_id = class_id
        self.section = section
        self.parent = parent
        self.transport: Optional[str] = None
        self.biometric_id: Optional[str] = None
        self.biometric_status = BiometricStatus.INACTIVE
        self.biometric_registration_date: Optional[str] = None
        self.is_active = True

    def register_biometric(self, biometric_id: str) -> None:
        """Bind a fingerprint id to this student."""
        self.biometric_id = biometric_id
        self.biometric_status = BiometricStatus.REGISTERED
        self.biometric_registration_date = utcnow().isoformat()

    def _fields(self) -> Dict[str, Any]:
        return {
            'user': self.user,
            'studentId': self.student_id,
            'rollNumber': self.roll_number,
            'class': self.class_id,
            'section': self.section,
            'parent': self.parent,
            'transport': self.transport,
            'biometricId': self.biometric_id,
            'biometricStatus': self.biometric_status.value,
            'biometricRegistrationDate': self.biometric_registration_date,
            'isActive': self.is_active,
        }

    @classmethod
    def _from_fields(cls, data, entity_id):
        student = cls(
            data["user"], data["studentId"], data["rollNumber"], data["class"],
            section=data.get("section"), parent=data.get("parent"), entity_id=entity_id
        )
        student.transport = data.get("transport")
        student.biometric_id = data.get("biometricId")
        student.biometric_status = BiometricStatus(data.get("biometricStatus", "inactive"))
        student.biometric_registration_date = data.get("biometricRegistrationDate")
        student.is_active = data.get("isActive", True)
        return student


class Course(AbstractEntity):
    """Course with an instructor and a bounded enrolment list."""

    collection = Collection.COURSE

    def __init__(self, title: str, code: str, instructor: str,
                 max_enrollment: Optional[int] = None, **kwargs):
        super().__init__(**kwargs)
        if max_enrollment is not None and max_enrollment < 1:
            raise ValidationError("maxEnrollment must be at least 1", details={"field": "maxEnrollment"})
        self.title = title
        self.code = code
        self.instructor = instructor
        self.max_enrollment = max_enrollment
        self.enrolled_students: List[str] = []
        self.is_active = True

    def is_enrolled(self, student_id: str) -> bool:
        return student_id in self.enrolled_students

    def _fields(self) -> Dict[str, Any]:
        return {
            'title': self.title,
            'code': self.code,
            'instructor': self.instructor,
            'maxEnrollment': self.max_enrollment,
            'enrolledStudents': list(self.enrolled_students),
            'isActive': self.is_active,
        }

    @classmethod
    def _from_fields(cls, data, entity_id):
        course = cls(data["title"], data["code"], data["instructor"],
                     max_enrollment=data.get("maxEnrollment"), entity_id=entity_id)
        course.enrolled_students = list(data.get("enrolledStudents", []))
        course.is_active = data.get("isActive", True)
        return course


class AttendanceRecord(AbstractEntity):
    """One student's attendance in one course on one calendar day."""

    collection = Collection.ATTENDANCE

    def __init__(self, student: str, course: Optional[str], date, status,
                 method=AttendanceMethod.MANUAL, marked_by: Optional[str] = None,
                 biometric_data: Optional[Dict[str, Any]] = None,
                 gps_data: Optional[Dict[str, Any]] = None, **kwargs):
        super().__init__(**kwargs)
        self.student = student
        self.course = course
        self.date = parse_datetime(date)
        self.status = _enum_value(AttendanceStatus, status, "status")
        self.method = _enum_value(AttendanceMethod, method, "method")
        self.marked_by = marked_by
        self.biometric_data = biometric_data
        self.gps_data = gps_data

    @property
    def day(self) -> str:
        return calendar_day(self.date)

    @property
    def is_present(self) -> bool:
        return self.status == AttendanceStatus.PRESENT

    def _fields(self) -> Dict[str, Any]:
        return {
            'student': self.student,
            'course': self.course,
            'date': self.date.isoformat(),
            'day': self.day,
            'status': self.status.value,
            'method': self.method.value,
            'markedBy': self.marked_by,
            'biometricData': self.biometric_data,
            'gpsData': self.gps_data,
        }

    @classmethod
    def _from_fields(cls, data, entity_id):
        return cls(
            data["student"], data.get("course"), data["date"], data["status"],
            method=data.get("method", "manual"), marked_by=data.get("markedBy"),
            biometric_data=data.get("biometricData"), gps_data=data.get("gpsData"),
            entity_id=entity_id
        )


class GradeRecord(AbstractEntity):
    """Graded work with derived percentage and letter grade."""

    collection = Collection.GRADE

    def __init__(self, student: str, course: str, grade_type, points_earned: float,
                 max_points: float, graded_by: Optional[str] = None,
                 assignment: Optional[str] = None, quiz: Optional[str] = None,
                 feedback: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.student = student
        self.course = course
        self.grade_type = _enum_value(GradeType, grade_type, "gradeType")
        self.points_earned = points_earned
        self.max_points = max_points
        self.percentage: Optional[float] = None
        self.letter_grade: Optional[str] = None
        self.graded_by = graded_by
        self.assignment = assignment
        self.quiz = quiz
        self.feedback = feedback
        self.graded_date = utcnow().isoformat()

    def _fields(self) -> Dict[str, Any]:
        return {
            'student': self.student,
            'course': self.course,
            'assignment': self.assignment,
            'quiz': self.quiz,
            'gradeType': self.grade_type.value,
            'pointsEarned': self.points_earned,
            'maxPoints': self.max_points,
            'percentage': self.percentage,
            'letterGrade': self.letter_grade,
            'feedback': self.feedback,
            'gradedBy': self.graded_by,
            'gradedDate': self.graded_date,
        }

    @classmethod
    def _from_fields(cls, data, entity_id):
        grade = cls(
            data["student"], data["course"], data["gradeType"], data["pointsEarned"],
            data["maxPoints"], graded_by=data.get("gradedBy"), assignment=data.get("assignment"),
            quiz=data.get("quiz"), feedback=data.get("feedback"), entity_id=entity_id
        )
        grade.percentage = data.get("percentage")
        grade.letter_grade = data.get("letterGrade")
        grade.graded_date = data.get("gradedDate", grade.graded_date)
        return grade


class Assignment(AbstractEntity):
    collection = Collection.ASSIGNMENT

    def __init__(self, title: str, course: str, instructor: str, due_date, max_points: float,
                 description: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        if max_points is None or max_points < 1:
            raise ValidationError("maxPoints must be at least 1", details={"field": "maxPoints"})
        self.title = title
        self.course = course
        self.instructor = instructor
        self.due_date = parse_datetime(due_date, "dueDate")
        self.max_points = max_points
        self.description = description

    def _fields(self) -> Dict[str, Any]:
        return {
            'title': self.title,
            'course': self.course,
            'instructor': self.instructor,
            'dueDate': self.due_date.isoformat(),
            'maxPoints': self.max_points,
            'description': self.description,
        }

    @classmethod
    def _from_fields(cls, data, entity_id):
        return cls(data["title"], data["course"], data["instructor"], data["dueDate"],
                   data["maxPoints"], description=data.get("description"), entity_id=entity_id)


class Quiz(AbstractEntity):
    collection = Collection.QUIZ

    def __init__(self, title: str, course: str, instructor: str, max_points: float, **kwargs):
        super().__init__(**kwargs)
        if max_points is None or max_points < 1:
            raise ValidationError("maxPoints must be at least 1", details={"field": "maxPoints"})
        self.title = title
        self.course = course
        self.instructor = instructor
        self.max_points = max_points

    def _fields(self) -> Dict[str, Any]:
        return {
            'title': self.title,
            'course': self.course,
            'instructor': self.instructor,
            'maxPoints': self.max_points,
        }

    @classmethod
    def _from_fields(cls, data, entity_id):
        return cls(data["title"], data["course"], data["instructor"], data["maxPoints"],
                   entity_id=entity_id)


class Vehicle(AbstractEntity):
    collection = Collection.VEHICLE

    def __init__(self, registration_number: str, capacity: int, model: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        if capacity is None or capacity < 1:
            raise ValidationError("Vehicle capacity must be at least 1", details={"field": "capacity"})
        self.registration_number = registration_number
        self.capacity = capacity
        self.model = model

    def _fields(self) -> Dict[str, Any]:
        return {
            'registrationNumber': self.registration_number,
            'capacity': self.capacity,
            'model': self.model,
        }

    @classmethod
    def _from_fields(cls, data, entity_id):
        return cls(data["registrationNumber"], data["capacity"], model=data.get("model"),
                   entity_id=entity_id)


class Transport(AbstractEntity):
    """A vehicle running a route with a bounded set of assigned students."""

    collection = Collection.TRANSPORT

    def __init__(self, route_name: str, vehicle: str, driver: str, capacity: int, **kwargs):
        super().__init__(**kwargs)
        self.route_name = route_name
        self.vehicle = vehicle
        self.driver = driver
        self.capacity = capacity
        self.status = TransportStatus.ACTIVE
        self.assigned_students: List[str] = []

    def _fields(self) -> Dict[str, Any]:
        return {
            'routeName': self.route_name,
            'vehicle': self.vehicle,
            'driver': self.driver,
            'capacity': self.capacity,
            'status': self.status.value,
            'assignedStudents': list(self.assigned_students),
        }

    @classmethod
    def _from_fields(cls, data, entity_id):
        transport = cls(data["routeName"], data["vehicle"], data["driver"], data["capacity"],
                        entity_id=entity_id)
        transport.status = TransportStatus(data.get("status", "active"))
        transport.assigned_students = list(data.get("assignedStudents", []))
        return transport


class InventoryItem(AbstractEntity):
    """Stocked item; quantity never drops below zero."""

    collection = Collection.INVENTORY

    def __init__(self, name: str, category: str, sku: str, quantity: int, unit: str,
                 unit_price: float = 0, min_stock_level: int = 0,
                 location: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        if quantity is None or quantity < 0:
            raise ValidationError("quantity must not be negative", details={"field": "quantity"})
        self.name = name
        self.category = category
        self.sku = sku
        self.quantity = quantity
        self.unit = unit
        self.unit_price = unit_price or 0
        self.min_stock_level = min_stock_level or 0
        self.location = location
        self.status = InventoryStatus.AVAILABLE

    @property
    def total_value(self) -> float:
        return self.quantity * self.unit_price

    @property
    def needs_restock(self) -> bool:
        return self.quantity < self.min_stock_level

    def _fields(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'category': self.category,
            'sku': self.sku,
            'quantity': self.quantity,
            'unit': self.unit,
            'unitPrice': self.unit_price,
            'totalValue': self.total_value,
            'minStockLevel': self.min_stock_level,
            'location': self.location,
            'status': self.status.value,
            'needsRestock': self.needs_restock,
        }

    @classmethod
    def _from_fields(cls, data, entity_id):
        item = cls(
            data["name"], data["category"], data["sku"], data["quantity"], data["unit"],
            unit_price=data.get("unitPrice", 0), min_stock_level=data.get("minStockLevel", 0),
            location=data.get("location"), entity_id=entity_id
        )
        item.status = InventoryStatus(data.get("status", "available"))
        return item


class Fee(AbstractEntity):
    """A charge raised against a student."""

    collection = Collection.FEE

    def __init__(self, student: str, academic_year: str, fee_type, amount: float, due_date,
                 created_by: str, notes: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        if amount is None or amount <= 0:
            raise ValidationError("amount must be greater than 0", details={"field": "amount"})
        self.student = student
        self.academic_year = academic_year
        self.fee_type = _enum_value(FeeType, fee_type, "feeType")
        self.amount = amount
        self.due_date = parse_datetime(due_date, "dueDate")
        self.created_by = created_by
        self.notes = notes
        self.status = FeeStatus.PENDING
        self.payment_method: Optional[PaymentMethod] = None
        self.payment_date: Optional[str] = None
        self.transaction_id: Optional[str] = None
        self.receipt_number: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.status == FeeStatus.PAID

    def mark_paid(self, payment_method, transaction_id: Optional[str] = None,
                  receipt_number: Optional[str] = None) -> None:
        self.status = FeeStatus.PAID
        self.payment_method = _enum_value(PaymentMethod, payment_method, "paymentMethod")
        self.payment_date = utcnow().isoformat()
        if transaction_id:
            self.transaction_id = transaction_id
        if receipt_number:
            self.receipt_number = receipt_number

    def _fields(self) -> Dict[str, Any]:
        return {
            'student': self.student,
            'academicYear': self.academic_year,
            'feeType': self.fee_type.value,
            'amount': self.amount,
            'dueDate': self.due_date.isoformat(),
            'status': self.status.value,
            'paymentMethod': self.payment_method.value if self.payment_method else None,
            'paymentDate': self.payment_date,
            'transactionId': self.transaction_id,
            'receiptNumber': self.receipt_number,
            'notes': self.notes,
            'createdBy': self.created_by,
        }

    @classmethod
    def _from_fields(cls, data, entity_id):
        fee = cls(
            data["student"], data["academicYear"], data["feeType"], data["amount"],
            data["dueDate"], data["createdBy"], notes=data.get("notes"), entity_id=entity_id
        )
        fee.status = FeeStatus(data.get("status", "pending"))
        if data.get("paymentMethod"):
            fee.payment_method = PaymentMethod(data["paymentMethod"])
        fee.payment_date = data.get("paymentDate")
        fee.transaction_id = data.get("transactionId")
        fee.receipt_number = data.get("receiptNumber")
        return fee


class Book(AbstractEntity):
    """A library title held in ``totalCopies`` copies.

    ``availableCopies`` stays within ``0..totalCopies``; a book whose last copy
    is out reads as borrowed.
    """

    collection = Collection.LIBRARY

    def __init__(self, book_id: str, title: str, author: str, category: str, total_copies: int,
                 isbn: Optional[str] = None, publisher: Optional[str] = None,
                 published_year: Optional[int] = None, edition: Optional[str] = None,
                 price: Optional[float] = None, shelf_location: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        if isinstance(total_copies, bool) or not isinstance(total_copies, int) or total_copies < 1:
            raise ValidationError("Total copies must be at least 1", details={"field": "totalCopies"})
        self.book_id = book_id
        self.title = title
        self.author = author
        self.category = category
        self.total_copies = total_copies
        self.available_copies = total_copies
        self.isbn = isbn
        self.publisher = publisher
        self.published_year = published_year
        self.edition = edition
        self.price = price
        self.shelf_location = shelf_location
        self.status = BookStatus.AVAILABLE

    @property
    def is_available(self) -> bool:
        return self.status == BookStatus.AVAILABLE and self.available_copies > 0

    @property
    def copies_out(self) -> int:
        return self.total_copies - self.available_copies

    def _fields(self) -> Dict[str, Any]:
        return {
            'bookId': self.book_id,
            'title': self.title,
            'author': self.author,
            'isbn': self.isbn,
            'category': self.category,
            'publisher': self.publisher,
            'publishedYear': self.published_year,
            'edition': self.edition,
            'totalCopies': self.total_copies,
            'availableCopies': self.available_copies,
            'price': self.price,
            'shelfLocation': self.shelf_location,
            'status': self.status.value,
        }

    @classmethod
    def _from_fields(cls, data, entity_id):
        book = cls(
            data["bookId"], data["title"], data["author"], data["category"], data["totalCopies"],
            isbn=data.get("isbn"), publisher=data.get("publisher"),
            published_year=data.get("publishedYear"), edition=data.get("edition"),
            price=data.get("price"), shelf_location=data.get("shelfLocation"), entity_id=entity_id
        )
        book.available_copies = data.get("availableCopies", book.total_copies)
        book.status = BookStatus(data.get("status", "available"))
        return book


class Expense(AbstractEntity):
    """Money paid out by the school, recorded against the account that paid it."""

    collection = Collection.EXPENSE

    def __init__(self, expense_type, category: str, amount: float, date, paid_by: str,
                 description: Optional[str] = None, receipt: Optional[str] = None,
                 payment_method: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.expense_type = _enum_value(ExpenseType, expense_type, "expenseType")
        self.category = category
        self.amount = _positive_amount(amount)
        self.date = parse_datetime(date, "date")
        self.paid_by = paid_by
        self.description = description
        self.receipt = receipt
        self.payment_method = payment_method

    def _fields(self) -> Dict[str, Any]:
        return {
            'expenseType': self.expense_type.value,
            'category': self.category,
            'amount': self.amount,
            'date': self.date.isoformat(),
            'description': self.description,
            'receipt': self.receipt,
            'paidBy': self.paid_by,
            'paymentMethod': self.payment_method,
        }

    @classmethod
    def _from_fields(cls, data, entity_id):
        return cls(
            data["expenseType"], data["category"], data["amount"], data["date"], data["paidBy"],
            description=data.get("description"), receipt=data.get("receipt"),
            payment_method=data.get("paymentMethod"), entity_id=entity_id
        )


def _positive_amount(amount: Any) -> float:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount <= 0:
        raise ValidationError("Amount must be greater than 0", details={"field": "amount"})
    return amount
