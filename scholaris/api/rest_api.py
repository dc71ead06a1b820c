"""
REST API implementation for the Scholaris platform using FastAPI.
"""

import asyncio
import json
import logging
import uuid
from typing import Optional, Dict, Any, List

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from fastapi import FastAPI, Depends, Header, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..core.enums import EventType
from ..core.exceptions import (
    ScholarisException, ValidationError, AuthenticationError, AuthorizationError,
    ResourceNotFoundError, DuplicateEntityError, DependencyError, ConcurrencyError
)
from ..core.timeutils import utcnow
from ..services import (
    AuthorizationGate, Caller, NotificationEmitter, AttendanceService, GradeService, CapacityService,
    FeeService, CourseworkService, DirectoryService
)

logger = logging.getLogger(__name__)


# Pydantic models for API
class CamelModel(BaseModel):
    """Request body with camelCase keys on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_data(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class AttendanceMarkRequest(CamelModel):
    # Records are validated one by one so that a bad record fails alone.
    attendance_records: List[Dict[str, Any]] = Field(default_factory=list)


class BiometricSyncRequest(CamelModel):
    attendance_records: List[Dict[str, Any]] = Field(default_factory=list)


class ManualOverrideRequest(CamelModel):
    student_id: Optional[str] = None
    date: Optional[str] = None
    status: Optional[str] = None
    course_id: Optional[str] = None


class BiometricRegisterRequest(CamelModel):
    biometric_id: Optional[str] = None


class GradeCreate(CamelModel):
    student: str = Field(..., min_length=1)
    course: str = Field(..., min_length=1)
    grade_type: str = Field(..., min_length=1)
    points_earned: float
    max_points: float
    assignment: Optional[str] = None
    quiz: Optional[str] = None
    feedback: Optional[str] = Field(None, max_length=2000)
    graded_by: Optional[str] = None


class GradeUpdate(CamelModel):
    points_earned: Optional[float] = None
    max_points: Optional[float] = None
    feedback: Optional[str] = Field(None, max_length=2000)


class CourseCreate(CamelModel):
    title: str = Field(..., min_length=1, max_length=200)
    code: str = Field(..., min_length=1, max_length=20)
    instructor: str = Field(..., min_length=1)
    max_enrollment: Optional[int] = Field(None, ge=1)


class StudentsRequest(CamelModel):
    students: List[Any] = Field(default_factory=list)


class AssignmentCreate(CamelModel):
    title: str = Field(..., min_length=1, max_length=200)
    course: str = Field(..., min_length=1)
    due_date: str = Field(..., min_length=1)
    max_points: float
    description: Optional[str] = Field(None, max_length=2000)


class QuizCreate(CamelModel):
    title: str = Field(..., min_length=1, max_length=200)
    course: str = Field(..., min_length=1)
    max_points: float


class VehicleCreate(CamelModel):
    registration_number: str = Field(..., min_length=1, max_length=20)
    capacity: int
    model: Optional[str] = None


class TransportCreate(CamelModel):
    route_name: str = Field(..., min_length=1, max_length=100)
    vehicle: str = Field(..., min_length=1)
    driver: str = Field(..., min_length=1)
    capacity: Optional[int] = None


class TransportUpdate(CamelModel):
    capacity: Optional[int] = None
    status: Optional[str] = None


class InventoryCreate(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    category: str = Field(..., min_length=1)
    sku: str = Field(..., min_length=1, max_length=50)
    quantity: int = Field(..., ge=0)
    unit: str = Field(..., min_length=1)
    unit_price: float = 0
    min_stock_level: int = Field(0, ge=0)
    location: Optional[str] = None


class StockUpdate(CamelModel):
    quantity_change: Optional[int] = None
    reason: Optional[str] = None


class FeeCreate(CamelModel):
    student: str = Field(..., min_length=1)
    academic_year: str = Field(..., min_length=1)
    fee_type: str = Field(..., min_length=1)
    amount: float
    due_date: str = Field(..., min_length=1)
    notes: Optional[str] = Field(None, max_length=1000)


class FeePayment(CamelModel):
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None
    receipt_number: Optional[str] = None


class ExpenseCreate(CamelModel):
    expense_type: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    amount: float
    date: str = Field(..., min_length=1)
    description: Optional[str] = Field(None, max_length=1000)
    receipt: Optional[str] = None
    payment_method: Optional[str] = None


class ExpenseUpdate(CamelModel):
    amount: Optional[float] = None
    description: Optional[str] = Field(None, max_length=1000)
    receipt: Optional[str] = None
    payment_method: Optional[str] = None


class BookCreate(CamelModel):
    book_id: str = Field(..., min_length=1, max_length=50)
    title: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    total_copies: int
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    published_year: Optional[int] = None
    edition: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    shelf_location: Optional[str] = None


class BookUpdate(CamelModel):
    title: Optional[str] = None
    author: Optional[str] = None
    isbn: Optional[str] = None
    category: Optional[str] = None
    publisher: Optional[str] = None
    published_year: Optional[int] = None
    edition: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    shelf_location: Optional[str] = None
    status: Optional[str] = None


class BookIssue(CamelModel):
    book_id: Optional[str] = None
    student_id: Optional[str] = None
    due_date: Optional[str] = None


class BookReturn(CamelModel):
    book_id: Optional[str] = None


class UserCreate(CamelModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., pattern=r'^[^@]+@[^@]+\.[^@]+$')
    role: str = Field(..., pattern=r'^(admin|teacher|student|parent|accountant|driver)$')


class TeacherCreate(CamelModel):
    user: str = Field(..., min_length=1)
    employee_id: str = Field(..., min_length=1, max_length=20)
    department: Optional[str] = None


class StudentCreate(CamelModel):
    user: str = Field(..., min_length=1)
    student_id: str = Field(..., min_length=1, max_length=20)
    roll_number: str = Field(..., min_length=1)
    class_id: str = Field(..., alias="class", min_length=1)
    section: Optional[str] = None
    parent: Optional[str] = None


# Domain errors to HTTP status codes; first match wins.
_STATUS_CODES = (
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (ResourceNotFoundError, status.HTTP_404_NOT_FOUND),
    (ConcurrencyError, status.HTTP_409_CONFLICT),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (DuplicateEntityError, status.HTTP_400_BAD_REQUEST),
    (DependencyError, status.HTTP_400_BAD_REQUEST),
)


def status_for(error: ScholarisException) -> int:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def envelope(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    return body


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message, **extra})


class ScholarisRestAPI:
    """REST and WebSocket API for the Scholaris platform."""

    def __init__(self, attendance_service: AttendanceService, grade_service: GradeService,
                 capacity_service: CapacityService, fee_service: FeeService,
                 coursework_service: CourseworkService, directory_service: DirectoryService,
                 emitter: NotificationEmitter, gate: AuthorizationGate,
                 cors_origins: Optional[List[str]] = None):
        self._attendance_service = attendance_service
        self._grade_service = grade_service
        self._capacity_service = capacity_service
        self._fee_service = fee_service
        self._coursework_service = coursework_service
        self._directory_service = directory_service
        self._emitter = emitter
        self._gate = gate

        # Create FastAPI app
        self.app = FastAPI(
            title="Scholaris School Management API",
            description="Multi-tenant school management backend",
            version=__version__,
            docs_url="/docs",
            redoc_url="/redoc"
        )

        # Add CORS middleware
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins or ["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        self._setup_error_handlers()
        self._setup_routes()
        self._setup_socket()

    def _current_caller(self, x_user_id: Optional[str] = Header(None),
                        x_user_role: Optional[str] = Header(None)) -> Caller:
        """Identity established upstream, checked against the stored account."""
        return self._gate.identify(x_user_id, x_user_role)

    async def _call(self, func, *args, **kwargs):
        """Run a blocking service call off the event loop."""
        self._emitter.attach_loop(asyncio.get_running_loop())
        return await run_in_threadpool(func, *args, **kwargs)

    def _setup_error_handlers(self):
        """Map domain exceptions onto the error envelope."""

        @self.app.exception_handler(ScholarisException)
        async def handle_domain_error(request: Request, exc: ScholarisException):
            status_code = status_for(exc)
            if status_code >= 500:
                logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
                return _error(status_code, "Internal server error")
            extra = {}
            if exc.error_code:
                extra["errorCode"] = exc.error_code
            if exc.details:
                extra["details"] = exc.details
            return _error(status_code, exc.message, **extra)

        @self.app.exception_handler(RequestValidationError)
        async def handle_request_validation(request: Request, exc: RequestValidationError):
            errors = [
                {"field": ".".join(str(part) for part in error.get("loc", ())[1:]), "message": error.get("msg")}
                for error in exc.errors()
            ]
            message = "; ".join(f"{e['field'] or 'body'}: {e['message']}" for e in errors) or "Invalid request"
            return _error(status.HTTP_400_BAD_REQUEST, message, errors=errors)

        @self.app.exception_handler(Exception)
        async def handle_unexpected(request: Request, exc: Exception):
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")

    def _setup_routes(self):
        """Setup API routes."""

        @self.app.get("/", response_model=Dict[str, str])
        async def root():
            """Root endpoint."""
            return {
                "message": "Scholaris School Management API",
                "version": __version__,
                "docs": "/docs"
            }

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            return {
                "status": "healthy",
                "timestamp": utcnow().isoformat(),
                "notifications": self._emitter.get_statistics(),
            }

        self._setup_attendance_routes()
        self._setup_grade_routes()
        self._setup_course_routes()
        self._setup_operations_routes()
        self._setup_fee_routes()
        self._setup_directory_routes()

    def _setup_attendance_routes(self):
        attendance = self._attendance_service

        @self.app.post("/api/attendance/mark")
        async def mark_attendance(body: AttendanceMarkRequest, caller: Caller = Depends(self._current_caller)):
            """Mark a batch of attendance records."""
            result = await self._call(attendance.mark_batch, caller, body.attendance_records)
            return envelope(result.to_dict(), "Attendance marked successfully")

        @self.app.get("/api/attendance")
        async def list_attendance(
            student: Optional[str] = None,
            course: Optional[str] = None,
            start_date: Optional[str] = Query(None, alias="startDate"),
            end_date: Optional[str] = Query(None, alias="endDate"),
            attendance_status: Optional[str] = Query(None, alias="status"),
            page: int = 1,
            limit: int = 10,
            caller: Caller = Depends(self._current_caller),
        ):
            data = await self._call(attendance.list_records, caller, student_id=student, course_id=course,
                                    start_date=start_date, end_date=end_date, status=attendance_status,
                                    page=page, limit=limit)
            return envelope(data)

        @self.app.get("/api/attendance/student/{student_id}")
        async def student_attendance(
            student_id: str,
            start_date: Optional[str] = Query(None, alias="startDate"),
            end_date: Optional[str] = Query(None, alias="endDate"),
            course: Optional[str] = None,
            page: int = 1,
            limit: int = 10,
            caller: Caller = Depends(self._current_caller),
        ):
            """A student's attendance records and rate."""
            data = await self._call(attendance.student_rate, caller, student_id, start_date=start_date,
                                    end_date=end_date, course_id=course, page=page, limit=limit)
            return envelope(data)

        @self.app.get("/api/attendance/class/{class_id}")
        async def class_attendance(
            class_id: str,
            start_date: Optional[str] = Query(None, alias="startDate"),
            end_date: Optional[str] = Query(None, alias="endDate"),
            section: Optional[str] = None,
            caller: Caller = Depends(self._current_caller),
        ):
            """Per-student attendance for a class and the class average."""
            data = await self._call(attendance.class_summary, caller, class_id, start_date=start_date,
                                    end_date=end_date, section=section)
            return envelope(data)

        @self.app.post("/api/biometric/sync-attendance")
        async def sync_biometric(body: BiometricSyncRequest, x_device_token: Optional[str] = Header(None)):
            """Scans pushed by a biometric device, authenticated by its token."""
            data = await self._call(attendance.sync_biometric, x_device_token, body.attendance_records)
            return envelope(data, "Biometric attendance sync completed")

        @self.app.post("/api/biometric/manual-override")
        async def manual_override(body: ManualOverrideRequest, caller: Caller = Depends(self._current_caller)):
            data = await self._call(attendance.manual_override, caller, body.student_id, body.date,
                                    body.status, course_id=body.course_id)
            return envelope(data, "Attendance updated successfully")

        @self.app.post("/api/biometric/register/{student_id}")
        async def register_biometric(student_id: str, body: BiometricRegisterRequest,
                                     caller: Caller = Depends(self._current_caller)):
            data = await self._call(attendance.register_biometric, caller, student_id, body.biometric_id)
            return envelope(data, "Biometric data registered successfully")

    def _setup_grade_routes(self):
        grades = self._grade_service

        @self.app.post("/api/grades", status_code=status.HTTP_201_CREATED)
        async def record_grade(body: GradeCreate, caller: Caller = Depends(self._current_caller)):
            """Record a grade; percentage and letter grade are derived."""
            grade = await self._call(grades.record_grade, caller, body.to_data())
            return envelope(grade.to_dict(), "Grade recorded successfully")

        @self.app.get("/api/grades")
        async def list_grades(
            student: Optional[str] = None,
            course: Optional[str] = None,
            assignment: Optional[str] = None,
            quiz: Optional[str] = None,
            grade_type: Optional[str] = Query(None, alias="gradeType"),
            page: int = 1,
            limit: int = 10,
            caller: Caller = Depends(self._current_caller),
        ):
            data = await self._call(grades.list_grades, caller, student_id=student, course_id=course,
                                    assignment_id=assignment, quiz_id=quiz, grade_type=grade_type,
                                    page=page, limit=limit)
            return envelope(data)

        @self.app.get("/api/grades/student/{student_id}/summary")
        async def grade_summary(student_id: str, caller: Caller = Depends(self._current_caller)):
            """Per-course averages and overall GPA for a student."""
            data = await self._call(grades.student_summary, caller, student_id)
            return envelope(data)

        @self.app.get("/api/grades/{grade_id}")
        async def get_grade(grade_id: str, caller: Caller = Depends(self._current_caller)):
            grade = await self._call(grades.get_grade, caller, grade_id)
            return envelope(grade.to_dict())

        @self.app.put("/api/grades/{grade_id}")
        async def update_grade(grade_id: str, body: GradeUpdate, caller: Caller = Depends(self._current_caller)):
            grade = await self._call(grades.update_grade, caller, grade_id, body.to_data())
            return envelope(grade.to_dict(), "Grade updated successfully")

        @self.app.delete("/api/grades/{grade_id}")
        async def delete_grade(grade_id: str, caller: Caller = Depends(self._current_caller)):
            await self._call(grades.delete_grade, caller, grade_id)
            return envelope(message="Grade deleted successfully")

    def _setup_course_routes(self):
        coursework = self._coursework_service
        capacity = self._capacity_service

        @self.app.post("/api/courses", status_code=status.HTTP_201_CREATED)
        async def create_course(body: CourseCreate, caller: Caller = Depends(self._current_caller)):
            course = await self._call(coursework.create_course, caller, body.to_data())
            return envelope(course.to_dict(), "Course created successfully")

        @self.app.get("/api/courses/{course_id}")
        async def get_course(course_id: str, caller: Caller = Depends(self._current_caller)):
            course = await self._call(coursework.get_course, caller, course_id)
            return envelope(course.to_dict())

        @self.app.post("/api/courses/{course_id}/enroll")
        async def enroll_students(course_id: str, body: StudentsRequest,
                                  caller: Caller = Depends(self._current_caller)):
            """Enroll every listed student or none of them."""
            change = await self._call(capacity.enroll, caller, course_id, body.students)
            message = (f"{len(change.changed)} students enrolled successfully" if change.changed
                       else "Students already enrolled in course")
            return envelope(change.entity.to_dict(), message)

        @self.app.post("/api/courses/{course_id}/unenroll")
        async def unenroll_students(course_id: str, body: StudentsRequest,
                                    caller: Caller = Depends(self._current_caller)):
            change = await self._call(capacity.unenroll, caller, course_id, body.students)
            return envelope(change.entity.to_dict(), f"{len(change.changed)} students removed from course")

        @self.app.get("/api/courses/{course_id}/students")
        async def course_roster(course_id: str, caller: Caller = Depends(self._current_caller)):
            data = await self._call(capacity.roster, caller, course_id)
            return envelope(data)

        @self.app.post("/api/assignments", status_code=status.HTTP_201_CREATED)
        async def create_assignment(body: AssignmentCreate, caller: Caller = Depends(self._current_caller)):
            assignment = await self._call(coursework.create_assignment, caller, body.to_data())
            return envelope(assignment.to_dict(), "Assignment created successfully")

        @self.app.delete("/api/assignments/{assignment_id}")
        async def delete_assignment(assignment_id: str, caller: Caller = Depends(self._current_caller)):
            """Delete an assignment no grade refers to."""
            await self._call(coursework.delete_assignment, caller, assignment_id)
            return envelope(message="Assignment deleted successfully")

        @self.app.post("/api/quizzes", status_code=status.HTTP_201_CREATED)
        async def create_quiz(body: QuizCreate, caller: Caller = Depends(self._current_caller)):
            quiz = await self._call(coursework.create_quiz, caller, body.to_data())
            return envelope(quiz.to_dict(), "Quiz created successfully")

    def _setup_operations_routes(self):
        capacity = self._capacity_service

        # Transport endpoints
        @self.app.post("/api/transport/vehicles", status_code=status.HTTP_201_CREATED)
        async def create_vehicle(body: VehicleCreate, caller: Caller = Depends(self._current_caller)):
            vehicle = await self._call(capacity.create_vehicle, caller, body.to_data())
            return envelope(vehicle.to_dict(), "Vehicle created successfully")

        @self.app.post("/api/transport", status_code=status.HTTP_201_CREATED)
        async def create_transport(body: TransportCreate, caller: Caller = Depends(self._current_caller)):
            transport = await self._call(capacity.create_transport, caller, body.to_data())
            return envelope(transport.to_dict(), "Transport created successfully")

        @self.app.put("/api/transport/{transport_id}")
        async def update_transport(transport_id: str, body: TransportUpdate,
                                   caller: Caller = Depends(self._current_caller)):
            transport = await self._call(capacity.update_transport, caller, transport_id, body.to_data())
            return envelope(transport.to_dict(), "Transport updated successfully")

        @self.app.post("/api/transport/{transport_id}/assign-students")
        async def assign_students(transport_id: str, body: StudentsRequest,
                                  caller: Caller = Depends(self._current_caller)):
            """Assign every listed student to the route or none of them."""
            change = await self._call(capacity.assign_students, caller, transport_id, body.students)
            return envelope(change.entity.to_dict(), f"{len(change.changed)} students assigned successfully")

        @self.app.post("/api/transport/{transport_id}/remove-students")
        async def remove_students(transport_id: str, body: StudentsRequest,
                                  caller: Caller = Depends(self._current_caller)):
            change = await self._call(capacity.remove_students, caller, transport_id, body.students)
            return envelope(change.entity.to_dict(), f"{len(change.changed)} students removed successfully")

        # Inventory endpoints
        @self.app.post("/api/inventory", status_code=status.HTTP_201_CREATED)
        async def create_item(body: InventoryCreate, caller: Caller = Depends(self._current_caller)):
            item = await self._call(capacity.create_item, caller, body.to_data())
            return envelope(item.to_dict(), "Inventory item created successfully")

        @self.app.post("/api/inventory/{item_id}/stock-update")
        async def update_stock(item_id: str, body: StockUpdate, caller: Caller = Depends(self._current_caller)):
            """Apply a signed quantity change; stock never drops below zero."""
            item = await self._call(capacity.update_stock, caller, item_id, body.quantity_change)
            if body.reason:
                logger.info("Stock of %s changed by %s: %s", item.id, body.quantity_change, body.reason)
            return envelope(item.to_dict(), "Stock updated successfully")

        @self.app.get("/api/inventory/low-stock")
        async def low_stock(page: int = 1, limit: int = 10, caller: Caller = Depends(self._current_caller)):
            data = await self._call(capacity.low_stock, caller, page=page, limit=limit)
            return envelope(data)

        @self.app.get("/api/inventory/summary")
        async def inventory_summary(caller: Caller = Depends(self._current_caller)):
            data = await self._call(capacity.inventory_summary, caller)
            return envelope(data)

        # Library endpoints
        @self.app.get("/api/library")
        async def list_books(
            category: Optional[str] = None,
            book_status: Optional[str] = Query(None, alias="status"),
            available: bool = False,
            page: int = 1,
            limit: int = 10,
            caller: Caller = Depends(self._current_caller),
        ):
            data = await self._call(capacity.list_books, caller, category=category, status=book_status,
                                    available=available, page=page, limit=limit)
            return envelope(data)

        @self.app.post("/api/library", status_code=status.HTTP_201_CREATED)
        async def create_book(body: BookCreate, caller: Caller = Depends(self._current_caller)):
            book = await self._call(capacity.create_book, caller, body.to_data())
            return envelope(book.to_dict(), "Book added to library successfully")

        @self.app.get("/api/library/search")
        async def search_books(q: Optional[str] = None, caller: Caller = Depends(self._current_caller)):
            books = await self._call(capacity.search_books, caller, q)
            return envelope([book.to_dict() for book in books])

        @self.app.get("/api/library/stats")
        async def library_stats(caller: Caller = Depends(self._current_caller)):
            data = await self._call(capacity.library_stats, caller)
            return envelope(data)

        @self.app.post("/api/library/issue")
        async def issue_book(body: BookIssue, caller: Caller = Depends(self._current_caller)):
            """Lend one copy; rejected once no copy is left."""
            data = await self._call(capacity.issue_book, caller, body.book_id, body.student_id, body.due_date)
            return envelope(data, "Book issued successfully")

        @self.app.post("/api/library/return")
        async def return_book(body: BookReturn, caller: Caller = Depends(self._current_caller)):
            book = await self._call(capacity.return_book, caller, body.book_id)
            return envelope(book.to_dict(), "Book returned successfully")

        @self.app.get("/api/library/{book_id}")
        async def get_book(book_id: str, caller: Caller = Depends(self._current_caller)):
            book = await self._call(capacity.get_book, caller, book_id)
            return envelope(book.to_dict())

        @self.app.put("/api/library/{book_id}")
        async def update_book(book_id: str, body: BookUpdate, caller: Caller = Depends(self._current_caller)):
            book = await self._call(capacity.update_book, caller, book_id, body.to_data())
            return envelope(book.to_dict(), "Book updated successfully")

        @self.app.delete("/api/library/{book_id}")
        async def delete_book(book_id: str, caller: Caller = Depends(self._current_caller)):
            await self._call(capacity.delete_book, caller, book_id)
            return envelope(message="Book removed from library successfully")

    def _setup_fee_routes(self):
        fees = self._fee_service

        @self.app.post("/api/fees", status_code=status.HTTP_201_CREATED)
        async def create_fee(body: FeeCreate, caller: Caller = Depends(self._current_caller)):
            fee = await self._call(fees.create_fee, caller, body.to_data())
            return envelope(fee.to_dict(), "Fee record created successfully")

        @self.app.get("/api/fees")
        async def list_fees(
            student: Optional[str] = None,
            fee_status: Optional[str] = Query(None, alias="status"),
            fee_type: Optional[str] = Query(None, alias="feeType"),
            academic_year: Optional[str] = Query(None, alias="academicYear"),
            page: int = 1,
            limit: int = 10,
            caller: Caller = Depends(self._current_caller),
        ):
            data = await self._call(fees.list_fees, caller, student_id=student, status=fee_status,
                                    fee_type=fee_type, academic_year=academic_year, page=page, limit=limit)
            return envelope(data)

        @self.app.get("/api/fees/student/{student_id}/summary")
        async def fee_summary(student_id: str, caller: Caller = Depends(self._current_caller)):
            data = await self._call(fees.student_summary, caller, student_id)
            return envelope(data)

        @self.app.get("/api/fees/{fee_id}")
        async def get_fee(fee_id: str, caller: Caller = Depends(self._current_caller)):
            fee = await self._call(fees.get_fee, caller, fee_id)
            return envelope(fee.to_dict())

        @self.app.post("/api/fees/{fee_id}/pay")
        async def pay_fee(fee_id: str, body: FeePayment, caller: Caller = Depends(self._current_caller)):
            fee = await self._call(fees.pay_fee, caller, fee_id, body.payment_method,
                                   transaction_id=body.transaction_id, receipt_number=body.receipt_number)
            return envelope(fee.to_dict(), "Payment recorded successfully")

        @self.app.delete("/api/fees/{fee_id}")
        async def delete_fee(fee_id: str, caller: Caller = Depends(self._current_caller)):
            await self._call(fees.delete_fee, caller, fee_id)
            return envelope(message="Fee record deleted successfully")

        # Expense endpoints
        @self.app.post("/api/expenses", status_code=status.HTTP_201_CREATED)
        async def create_expense(body: ExpenseCreate, caller: Caller = Depends(self._current_caller)):
            expense = await self._call(fees.create_expense, caller, body.to_data())
            return envelope(expense.to_dict(), "Expense created successfully")

        @self.app.get("/api/expenses")
        async def list_expenses(
            expense_type: Optional[str] = Query(None, alias="expenseType"),
            category: Optional[str] = None,
            paid_by: Optional[str] = Query(None, alias="paidBy"),
            date_from: Optional[str] = Query(None, alias="dateFrom"),
            date_to: Optional[str] = Query(None, alias="dateTo"),
            page: int = 1,
            limit: int = 10,
            caller: Caller = Depends(self._current_caller),
        ):
            data = await self._call(fees.list_expenses, caller, expense_type=expense_type, category=category,
                                    paid_by=paid_by, date_from=date_from, date_to=date_to,
                                    page=page, limit=limit)
            return envelope(data)

        @self.app.get("/api/expenses/summary")
        async def expense_summary(
            date_from: Optional[str] = Query(None, alias="dateFrom"),
            date_to: Optional[str] = Query(None, alias="dateTo"),
            caller: Caller = Depends(self._current_caller),
        ):
            """Expense totals by type and by month."""
            data = await self._call(fees.expense_totals, caller, date_from=date_from, date_to=date_to)
            return envelope(data)

        @self.app.get("/api/expenses/categories")
        async def expense_categories(caller: Caller = Depends(self._current_caller)):
            data = await self._call(fees.expense_categories, caller)
            return envelope(data)

        @self.app.get("/api/expenses/{expense_id}")
        async def get_expense(expense_id: str, caller: Caller = Depends(self._current_caller)):
            expense = await self._call(fees.get_expense, caller, expense_id)
            return envelope(expense.to_dict())

        @self.app.put("/api/expenses/{expense_id}")
        async def update_expense(expense_id: str, body: ExpenseUpdate,
                                 caller: Caller = Depends(self._current_caller)):
            expense = await self._call(fees.update_expense, caller, expense_id, body.to_data())
            return envelope(expense.to_dict(), "Expense updated successfully")

        @self.app.delete("/api/expenses/{expense_id}")
        async def delete_expense(expense_id: str, caller: Caller = Depends(self._current_caller)):
            await self._call(fees.delete_expense, caller, expense_id)
            return envelope(message="Expense deleted successfully")

    def _setup_directory_routes(self):
        directory = self._directory_service

        @self.app.post("/api/users", status_code=status.HTTP_201_CREATED)
        async def create_user(body: UserCreate, caller: Caller = Depends(self._current_caller)):
            user = await self._call(directory.create_user, caller, body.to_data())
            return envelope(user.to_dict(), "User created successfully")

        @self.app.post("/api/teachers", status_code=status.HTTP_201_CREATED)
        async def create_teacher(body: TeacherCreate, caller: Caller = Depends(self._current_caller)):
            teacher = await self._call(directory.create_teacher, caller, body.to_data())
            return envelope(teacher.to_dict(), "Teacher created successfully")

        @self.app.post("/api/students", status_code=status.HTTP_201_CREATED)
        async def create_student(body: StudentCreate, caller: Caller = Depends(self._current_caller)):
            student = await self._call(directory.create_student, caller, body.to_data())
            return envelope(student.to_dict(), "Student created successfully")

    def _setup_socket(self):
        """Notification channel: clients bind their user id, then receive events."""
        registry = self._emitter.registry

        @self.app.websocket("/ws")
        async def notification_socket(websocket: WebSocket):
            await websocket.accept()
            self._emitter.attach_loop(asyncio.get_running_loop())
            connection_id = str(uuid.uuid4())
            registry.register(connection_id, websocket)
            logger.info("Socket %s connected", connection_id)
            try:
                while True:
                    text = await websocket.receive_text()
                    try:
                        message = json.loads(text)
                    except ValueError:
                        message = None
                    await self._handle_socket_message(websocket, connection_id, message)
            except WebSocketDisconnect:
                pass
            finally:
                user_id = registry.unregister(connection_id)
                logger.info("Socket %s disconnected (user %s)", connection_id, user_id)

    async def _handle_socket_message(self, websocket: WebSocket, connection_id: str, message: Any) -> None:
        if not isinstance(message, dict):
            await websocket.send_json({"type": "error", "payload": {"message": "Messages must be JSON objects"}})
            return

        message_type = message.get("type")
        payload = message.get("payload") if isinstance(message.get("payload"), dict) else {}

        if message_type == "user_connected":
            user_id = message.get("userId")
            if not user_id:
                await websocket.send_json({"type": "error", "payload": {"message": "userId is required"}})
                return
            self._emitter.registry.bind(connection_id, str(user_id))
            await websocket.send_json({
                "type": "connected",
                "payload": {"userId": str(user_id), "connectionId": connection_id},
            })
        elif message_type == "send_notification":
            self._emitter.publish(EventType.NOTIFICATION, payload,
                                  recipient=message.get("recipient"), fallback_broadcast=True)
        elif message_type == "attendance_sync":
            self._emitter.publish(EventType.ATTENDANCE_UPDATED, payload)
        else:
            await websocket.send_json({
                "type": "error",
                "payload": {"message": f"Unknown message type: {message_type}"},
            })
