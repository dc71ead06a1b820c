"""
Enrollment and capacity guards for courses, transport, inventory and library
copies.

Each guard re-reads the document, checks its bound and writes back only if
the document's version is still the one it read. A lost race re-runs the
whole check against fresh state, up to ``retry_limit`` times.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from ..core.entities import AbstractEntity, Book, Course, InventoryItem, Transport, Vehicle
from ..core.enums import BookStatus, EventType, InventoryStatus, Role, TransportStatus
from ..core.exceptions import (
    CapacityExceededError, ConcurrencyError, DuplicateEntityError,
    ResourceNotFoundError, ValidationError
)
from ..core.pagination import page_window, pagination
from ..core.timeutils import parse_datetime
from ..persistence.record_store import RecordStore
from ..persistence.repositories import BaseRepository
from .authorization import AuthorizationGate, Caller, Capabilities
from .notifications import NotificationEmitter

logger = logging.getLogger(__name__)

E = TypeVar('E', bound=AbstractEntity)

DEFAULT_RETRY_LIMIT = 3


@dataclass
class MembershipChange:
    """Result of adding or removing students from a bounded list."""
    entity: AbstractEntity
    changed: List[str] = field(default_factory=list)


def _student_ids(students: Any) -> List[str]:
    if not isinstance(students, list) or not students:
        raise ValidationError("Please provide an array of student IDs", details={"field": "students"})
    if not all(isinstance(s, str) and s for s in students):
        raise ValidationError("Student IDs must be non-empty strings", details={"field": "students"})
    return list(dict.fromkeys(students))


class CapacityService:
    """Guards every write that admits members against a capacity bound."""

    def __init__(self, store: RecordStore, gate: AuthorizationGate, emitter: NotificationEmitter,
                 retry_limit: int = DEFAULT_RETRY_LIMIT):
        self._store = store
        self._gate = gate
        self._emitter = emitter
        self._retry_limit = max(1, retry_limit)

    def _compare_and_set(self, repository: BaseRepository, entity_id: str, not_found: str,
                         mutate: Callable[[E], Tuple[bool, Any]]) -> Tuple[E, Any]:
        """Run ``mutate`` on a fresh copy and write it back if nobody else wrote first.

        ``mutate`` raises to reject, or returns ``(changed, result)``; unchanged
        documents are not written.
        """
        for attempt in range(1, self._retry_limit + 1):
            entity = repository.find_by_id(entity_id)
            if entity is None:
                raise ResourceNotFoundError(not_found, details={"id": entity_id})
            changed, result = mutate(entity)
            if not changed:
                return entity, result
            if repository.save_if_unchanged(entity):
                return entity, result
            logger.debug("Version conflict on %s %s (attempt %d)", repository.collection, entity_id, attempt)

        logger.warning("Giving up on %s %s after %d conflicting writes",
                       repository.collection, entity_id, self._retry_limit)
        raise ConcurrencyError(
            "The record was modified concurrently, please retry",
            details={"collection": repository.collection, "id": entity_id}
        )

    def _missing_students(self, student_ids: List[str], active_only: bool = False) -> List[str]:
        found = {
            s.id for s in self._store.students.find_by_ids(student_ids)
            if s.is_active or not active_only
        }
        return [s for s in student_ids if s not in found]

    # Course enrollment

    def enroll(self, caller: Caller, course_id: str, students: Any) -> MembershipChange:
        """Enroll all of ``students`` or none of them."""
        incoming = _student_ids(students)
        self._gate.authorize(caller, Capabilities.MANAGE_ENROLLMENT, course=self._require_course(course_id))

        def admit(course: Course):
            if course.max_enrollment and len(course.enrolled_students) + len(incoming) > course.max_enrollment:
                raise CapacityExceededError(
                    f"Cannot enroll more than {course.max_enrollment} students in this course",
                    details={
                        'maxEnrollment': course.max_enrollment,
                        'current': len(course.enrolled_students),
                        'incoming': len(incoming),
                    }
                )
            missing = self._missing_students(incoming)
            if missing:
                raise ResourceNotFoundError(f"Students not found: {', '.join(missing)}",
                                            details={"studentIds": missing})
            new = [s for s in incoming if not course.is_enrolled(s)]
            course.enrolled_students.extend(new)
            return bool(new), new

        course, new = self._compare_and_set(self._store.courses, course_id, "Course not found", admit)
        logger.info("Enrolled %d students in course %s", len(new), course.code)
        return MembershipChange(course, new)

    def unenroll(self, caller: Caller, course_id: str, students: Any) -> MembershipChange:
        outgoing = set(_student_ids(students))
        self._gate.authorize(caller, Capabilities.MANAGE_ENROLLMENT, course=self._require_course(course_id))

        def release(course: Course):
            removed = [s for s in course.enrolled_students if s in outgoing]
            course.enrolled_students = [s for s in course.enrolled_students if s not in outgoing]
            return bool(removed), removed

        course, removed = self._compare_and_set(self._store.courses, course_id, "Course not found", release)
        return MembershipChange(course, removed)

    def roster(self, caller: Caller, course_id: str) -> Dict[str, Any]:
        course = self._require_course(course_id)
        self._gate.authorize(caller, Capabilities.VIEW_ROSTER, course=course)
        students = {s.id: s for s in self._store.students.find_by_ids(course.enrolled_students)}
        return {
            'enrolledStudents': [students[s].to_dict() for s in course.enrolled_students if s in students],
            'totalEnrolled': len(course.enrolled_students),
        }

    # Transport

    def create_vehicle(self, caller: Caller, data: Dict[str, Any]) -> Vehicle:
        self._gate.authorize(caller, Capabilities.MANAGE_TRANSPORT)
        if not data.get("registrationNumber") or data.get("capacity") is None:
            raise ValidationError("Please provide required fields: registrationNumber, capacity")
        vehicle = Vehicle(data["registrationNumber"], data["capacity"], model=data.get("model"))
        return self._store.vehicles.insert(vehicle)

    def create_transport(self, caller: Caller, data: Dict[str, Any]) -> Transport:
        self._gate.authorize(caller, Capabilities.MANAGE_TRANSPORT)
        if not data.get("routeName") or not data.get("vehicle") or not data.get("driver"):
            raise ValidationError("Please provide required fields: routeName, vehicle, driver")

        vehicle = self._store.vehicles.find_by_id(data["vehicle"])
        if vehicle is None:
            raise ResourceNotFoundError("Vehicle not found", details={"vehicleId": data["vehicle"]})
        driver = self._store.users.find_by_id(data["driver"])
        if driver is None or driver.role != Role.DRIVER:
            raise ResourceNotFoundError("Driver not found or invalid role", details={"driverId": data["driver"]})

        capacity = data.get("capacity") or vehicle.capacity
        self._check_transport_capacity(capacity, vehicle)

        transport = Transport(data["routeName"], vehicle.id, driver.id, capacity)
        self._store.transports.insert(transport)
        logger.info("Transport %s created for route %s", transport.id, transport.route_name)
        return transport

    def update_transport(self, caller: Caller, transport_id: str, patch: Dict[str, Any]) -> Transport:
        self._gate.authorize(caller, Capabilities.MANAGE_TRANSPORT)
        status = None
        if patch.get("status") is not None:
            if patch["status"] not in {s.value for s in TransportStatus}:
                raise ValidationError(f"Invalid status '{patch['status']}'", details={"field": "status"})
            status = TransportStatus(patch["status"])
        capacity = patch.get("capacity")

        def apply(transport: Transport):
            if capacity is not None:
                self._check_transport_capacity(capacity, self._store.vehicles.find_by_id(transport.vehicle))
                if capacity < len(transport.assigned_students):
                    raise CapacityExceededError(
                        "Capacity cannot be lower than the number of assigned students",
                        details={'capacity': capacity, 'current': len(transport.assigned_students)}
                    )
                transport.capacity = capacity
            if status is not None:
                transport.status = status
            return capacity is not None or status is not None, None

        transport, _ = self._compare_and_set(self._store.transports, transport_id,
                                             "Transport record not found", apply)
        return transport

    def assign_students(self, caller: Caller, transport_id: str, students: Any) -> MembershipChange:
        """Assign all of ``students`` to an active transport or none of them."""
        incoming = _student_ids(students)
        self._gate.authorize(caller, Capabilities.MANAGE_TRANSPORT)

        def admit(transport: Transport):
            if transport.status != TransportStatus.ACTIVE:
                raise ValidationError("Cannot assign students to inactive transport")
            current = len(transport.assigned_students)
            if current + len(incoming) > transport.capacity:
                raise CapacityExceededError(
                    f"Adding {len(incoming)} students would exceed capacity of {transport.capacity}. "
                    f"Current: {current}",
                    details={'capacity': transport.capacity, 'current': current, 'incoming': len(incoming)}
                )
            missing = self._missing_students(incoming, active_only=True)
            if missing:
                raise ResourceNotFoundError(f"Students not found: {', '.join(missing)}",
                                            details={"studentIds": missing})
            new = [s for s in incoming if s not in transport.assigned_students]
            transport.assigned_students.extend(new)
            return bool(new), new

        transport, new = self._compare_and_set(self._store.transports, transport_id,
                                               "Transport record not found", admit)
        self._link_students(new, transport.id)
        return MembershipChange(transport, new)

    def remove_students(self, caller: Caller, transport_id: str, students: Any) -> MembershipChange:
        outgoing = set(_student_ids(students))
        self._gate.authorize(caller, Capabilities.MANAGE_TRANSPORT)

        def release(transport: Transport):
            removed = [s for s in transport.assigned_students if s in outgoing]
            transport.assigned_students = [s for s in transport.assigned_students if s not in outgoing]
            return bool(removed), removed

        transport, removed = self._compare_and_set(self._store.transports, transport_id,
                                                   "Transport record not found", release)
        self._link_students(removed, None, previous=transport.id)
        return MembershipChange(transport, removed)

    def _check_transport_capacity(self, capacity: Any, vehicle: Optional[Vehicle]) -> None:
        if not isinstance(capacity, int) or capacity < 1:
            raise ValidationError("Capacity must be a positive integer", details={"field": "capacity"})
        if vehicle is not None and capacity > vehicle.capacity:
            raise ValidationError("Capacity cannot exceed vehicle capacity", details={"field": "capacity"})

    def _link_students(self, student_ids: List[str], transport_id: Optional[str],
                       previous: Optional[str] = None) -> None:
        """Mirror the assignment on each student profile."""
        for student in self._store.students.find_by_ids(student_ids):
            if previous is not None and student.transport != previous:
                continue
            student.transport = transport_id
            self._store.students.save(student)

    # Inventory

    def create_item(self, caller: Caller, data: Dict[str, Any]) -> InventoryItem:
        self._gate.authorize(caller, Capabilities.MANAGE_INVENTORY)
        required = ("name", "category", "sku", "unit")
        if any(not data.get(name) for name in required) or data.get("quantity") is None:
            raise ValidationError("Please provide required fields: name, category, sku, quantity, unit")
        if (data.get("unitPrice") or 0) < 0:
            raise ValidationError("unitPrice must not be negative", details={"field": "unitPrice"})
        if self._store.inventory.find_by_sku(data["sku"]) is not None:
            raise DuplicateEntityError("SKU already exists", details={"sku": data["sku"]})

        item = InventoryItem(
            data["name"], data["category"], data["sku"], data["quantity"], data["unit"],
            unit_price=data.get("unitPrice") or 0, min_stock_level=data.get("minStockLevel") or 0,
            location=data.get("location")
        )
        return self._store.inventory.insert(item)

    def update_stock(self, caller: Caller, item_id: str, quantity_change: Any) -> InventoryItem:
        """Apply a signed quantity change, clamping the result at zero."""
        self._gate.authorize(caller, Capabilities.MANAGE_INVENTORY)
        if quantity_change is None:
            raise ValidationError("Please provide quantity change value", details={"field": "quantityChange"})
        if isinstance(quantity_change, bool) or not isinstance(quantity_change, int):
            raise ValidationError("quantityChange must be an integer", details={"field": "quantityChange"})

        def adjust(item: InventoryItem):
            item.quantity = max(0, item.quantity + quantity_change)
            # Zero stock is reported as damaged; anything else is available.
            item.status = InventoryStatus.DAMAGED if item.quantity == 0 else InventoryStatus.AVAILABLE
            return True, None

        item, _ = self._compare_and_set(self._store.inventory, item_id, "Inventory item not found", adjust)
        if item.needs_restock:
            self._emitter.publish(EventType.LOW_STOCK_ALERT, {
                'itemId': item.id,
                'name': item.name,
                'currentQuantity': item.quantity,
                'minLevel': item.min_stock_level,
            })
        return item

    def low_stock(self, caller: Caller, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        self._gate.authorize(caller, Capabilities.VIEW_INVENTORY)
        skip, limit = page_window(page, limit)
        items = self._store.inventory.find_low_stock(skip=skip, limit=limit)
        return {
            'lowStockItems': [item.to_dict() for item in items],
            'pagination': pagination(page, limit, self._store.inventory.count_low_stock()),
        }

    def inventory_summary(self, caller: Caller) -> Dict[str, Any]:
        """Quantities and values grouped by category."""
        self._gate.authorize(caller, Capabilities.VIEW_INVENTORY)
        by_category: Dict[str, Dict[str, Any]] = {}
        total_value = 0
        items = self._store.inventory.find_all()
        for item in items:
            entry = by_category.setdefault(item.category, {
                'category': item.category,
                'totalItems': 0,
                'totalQuantity': 0,
                'totalValue': 0,
                'items': [],
            })
            entry['totalItems'] += 1
            entry['totalQuantity'] += item.quantity
            entry['totalValue'] += item.total_value
            entry['items'].append({'name': item.name, 'quantity': item.quantity, 'value': item.total_value})
            total_value += item.total_value

        return {
            'summaryByCategory': by_category,
            'overall': {
                'totalCategories': len(by_category),
                'totalItems': len(items),
                'totalValue': total_value,
            },
        }

    # Library

    def create_book(self, caller: Caller, data: Dict[str, Any]) -> Book:
        self._gate.authorize(caller, Capabilities.MANAGE_LIBRARY)
        required = ("bookId", "title", "author", "category")
        if any(not data.get(name) for name in required) or data.get("totalCopies") is None:
            raise ValidationError("Please provide required fields: bookId, title, author, category, totalCopies")
        if self._store.library.find_by_book_id(data["bookId"]) is not None:
            raise DuplicateEntityError("Book ID already exists", details={"bookId": data["bookId"]})

        book = Book(
            data["bookId"], data["title"], data["author"], data["category"], data["totalCopies"],
            isbn=data.get("isbn"), publisher=data.get("publisher"),
            published_year=data.get("publishedYear"), edition=data.get("edition"),
            price=data.get("price"), shelf_location=data.get("shelfLocation")
        )
        self._store.library.insert(book)
        logger.info("Book %s added with %d copies", book.book_id, book.total_copies)
        return book

    def list_books(self, caller: Caller, category: Optional[str] = None, status: Optional[str] = None,
                   available: bool = False, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        self._gate.authorize(caller, Capabilities.VIEW_LIBRARY)
        skip, limit = page_window(page, limit)
        filters = {'category': category, 'status': BookStatus.AVAILABLE.value if available else status}
        books = self._store.library.find_books(filters, available_only=available, skip=skip, limit=limit)
        total = self._store.library.count_books(filters, available_only=available)
        return {
            'books': [book.to_dict() for book in books],
            'pagination': pagination(page, limit, total),
        }

    def get_book(self, caller: Caller, book_id: str) -> Book:
        self._gate.authorize(caller, Capabilities.VIEW_LIBRARY)
        return self._require_book(book_id)

    def update_book(self, caller: Caller, book_id: str, patch: Dict[str, Any]) -> Book:
        """Patch descriptive fields and status; copy counts only move through issue and return."""
        self._gate.authorize(caller, Capabilities.MANAGE_LIBRARY)
        status = None
        if patch.get("status") is not None:
            if patch["status"] not in {s.value for s in BookStatus}:
                raise ValidationError(f"Invalid status '{patch['status']}'", details={"field": "status"})
            status = BookStatus(patch["status"])
        fields = {
            'title': 'title', 'author': 'author', 'isbn': 'isbn', 'category': 'category',
            'publisher': 'publisher', 'publishedYear': 'published_year', 'edition': 'edition',
            'price': 'price', 'shelfLocation': 'shelf_location',
        }
        changes = {attr: patch[key] for key, attr in fields.items() if patch.get(key) is not None}

        def apply(book: Book):
            for attr, value in changes.items():
                setattr(book, attr, value)
            if status is not None:
                book.status = status
            return bool(changes) or status is not None, None

        book, _ = self._compare_and_set(self._store.library, book_id, "Book not found", apply)
        return book

    def delete_book(self, caller: Caller, book_id: str) -> None:
        self._gate.authorize(caller, Capabilities.MANAGE_LIBRARY)
        book = self._require_book(book_id)
        if book.status != BookStatus.AVAILABLE or book.copies_out:
            raise ValidationError("Cannot delete book that is currently borrowed or reserved")
        self._store.library.delete(book.id)

    def issue_book(self, caller: Caller, book_id: Optional[str], student_id: Optional[str],
                   due_date: Optional[str]) -> Dict[str, Any]:
        """Lend one copy to a student; the last copy out marks the book borrowed."""
        self._gate.authorize(caller, Capabilities.CIRCULATE_BOOKS)
        if not book_id or not student_id or not due_date:
            raise ValidationError("Please provide bookId, studentId, and dueDate")
        due = parse_datetime(due_date, "dueDate")
        student = self._store.students.find_by_id(student_id)

        def lend(book: Book):
            if not book.is_available:
                raise ValidationError("Book is not available for issue",
                                      details={'status': book.status.value,
                                               'availableCopies': book.available_copies})
            if student is None:
                raise ResourceNotFoundError("Student not found", details={"studentId": student_id})
            book.available_copies = max(0, book.available_copies - 1)
            if book.available_copies == 0:
                book.status = BookStatus.BORROWED
            return True, None

        book, _ = self._compare_and_set(self._store.library, book_id, "Book not found", lend)
        logger.info("Book %s issued to student %s, %d copies left", book.book_id, student.id, book.available_copies)
        return {'book': book.to_dict(), 'issuedTo': student.to_dict(), 'dueDate': due.isoformat()}

    def return_book(self, caller: Caller, book_id: Optional[str]) -> Book:
        self._gate.authorize(caller, Capabilities.CIRCULATE_BOOKS)
        if not book_id:
            raise ValidationError("Please provide bookId", details={"field": "bookId"})

        def take_back(book: Book):
            if not book.copies_out:
                raise ValidationError("Book is not currently borrowed")
            book.available_copies = min(book.total_copies, book.available_copies + 1)
            if book.status == BookStatus.BORROWED:
                book.status = BookStatus.AVAILABLE
            return True, None

        book, _ = self._compare_and_set(self._store.library, book_id, "Book not found", take_back)
        return book

    def search_books(self, caller: Caller, text: Optional[str]) -> List[Book]:
        self._gate.authorize(caller, Capabilities.VIEW_LIBRARY)
        if not text or not text.strip():
            raise ValidationError("Please provide search query", details={"field": "q"})
        return self._store.library.search(text.strip())

    def library_stats(self, caller: Caller) -> Dict[str, Any]:
        """Book counts per status and the five largest categories."""
        self._gate.authorize(caller, Capabilities.VIEW_LIBRARY)
        by_status = {status.value: 0 for status in BookStatus}
        by_category: Dict[str, int] = {}
        books = self._store.library.find_all()
        for book in books:
            by_status[book.status.value] += 1
            by_category[book.category] = by_category.get(book.category, 0) + 1

        top = sorted(by_category.items(), key=lambda entry: (-entry[1], entry[0]))[:5]
        stats: Dict[str, Any] = {'total': len(books)}
        stats.update(by_status)
        stats['topCategories'] = [{'category': name, 'count': count} for name, count in top]
        stats['booksByStatus'] = [{'status': name, 'count': count} for name, count in by_status.items() if count]
        return stats

    def _require_book(self, book_id: str) -> Book:
        book = self._store.library.find_by_id(book_id)
        if book is None:
            raise ResourceNotFoundError("Book not found", details={"id": book_id})
        return book

    def _require_course(self, course_id: str) -> Course:
        course = self._store.courses.find_by_id(course_id)
        if course is None:
            raise ResourceNotFoundError("Course not found", details={"courseId": course_id})
        return course
