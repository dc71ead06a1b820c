"""
Repository pattern implementations for data access.
"""

import json
import re
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Type, TypeVar, Generic, Iterable, Tuple

from ..core.entities import (
    AbstractEntity, User, Teacher, Student, Course, AttendanceRecord, GradeRecord,
    Assignment, Quiz, Vehicle, Transport, InventoryItem, Fee, Book, Expense
)
from ..core.interfaces import Repository
from ..core.exceptions import PersistenceError, ScholarisException
from .database import DatabaseManager

T = TypeVar('T', bound=AbstractEntity)

_FIELD_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


def _field(name: str) -> str:
    """JSON path expression for a top-level document field."""
    if not _FIELD_NAME.match(name):
        raise PersistenceError(f"Invalid field name: {name}")
    return f"json_extract(data, '$.{name}')"


def _sql_value(value: Any) -> Any:
    # json_extract yields 1/0 for JSON booleans
    if isinstance(value, bool):
        return int(value)
    return value


class BaseRepository(Repository[T], Generic[T]):
    """Base repository implementation with common functionality."""

    def __init__(self, database: DatabaseManager, entity_class: Type[T]):
        self._database = database
        self._entity_class = entity_class
        self._collection = entity_class.collection.value
        self._lock = threading.RLock()

    @property
    def collection(self) -> str:
        return self._collection

    def insert(self, entity: T) -> T:
        """Insert a new entity; a unique-index violation raises DuplicateEntityError."""
        query = """
            INSERT INTO documents (id, collection, data, created_at, updated_at, version)
            VALUES (?, ?, ?, ?, ?, ?)
        """
        params = (
            entity.id,
            self._collection,
            json.dumps(entity.to_dict()),
            entity.created_at.isoformat(),
            entity.updated_at.isoformat(),
            entity.version
        )
        self._execute_update(query, params)
        return entity

    def save(self, entity: T) -> T:
        """Save an entity, inserting it or overwriting the stored document."""
        with self._lock:
            existing = self._stored_version(entity.id)
            if existing is None:
                return self.insert(entity)

            entity.touch()
            query = """
                UPDATE documents
                SET data = ?, updated_at = ?, version = ?
                WHERE id = ? AND collection = ?
            """
            params = (
                json.dumps(entity.to_dict()),
                entity.updated_at.isoformat(),
                entity.version,
                entity.id,
                self._collection
            )
            self._execute_update(query, params)
            return entity

    def save_if_unchanged(self, entity: T) -> bool:
        """Conditional update against the version the entity was loaded at.

        Returns False, leaving the store untouched, when another writer has
        updated the document in between.
        """
        expected_version = entity.version
        entity.touch()
        query = """
            UPDATE documents
            SET data = ?, updated_at = ?, version = ?
            WHERE id = ? AND collection = ? AND version = ?
        """
        params = (
            json.dumps(entity.to_dict()),
            entity.updated_at.isoformat(),
            entity.version,
            entity.id,
            self._collection,
            expected_version
        )
        return self._execute_update(query, params) == 1

    def find_by_id(self, entity_id: str) -> Optional[T]:
        """Find entity by ID."""
        if not entity_id:
            return None
        query = "SELECT data FROM documents WHERE id = ? AND collection = ?"
        results = self._execute_query(query, (entity_id, self._collection))
        if results:
            return self._entity_from_dict(json.loads(results[0]["data"]))
        return None

    def find_by_ids(self, entity_ids: Iterable[str]) -> List[T]:
        """Find all entities whose id is in ``entity_ids``."""
        ids = [entity_id for entity_id in dict.fromkeys(entity_ids) if entity_id]
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        query = f"SELECT data FROM documents WHERE collection = ? AND id IN ({placeholders})"
        results = self._execute_query(query, tuple([self._collection] + ids))
        return [self._entity_from_dict(json.loads(row["data"])) for row in results]

    def find_all(self, filters: Optional[Dict[str, Any]] = None, order_by: Optional[str] = None,
                 descending: bool = False, skip: int = 0, limit: Optional[int] = None) -> List[T]:
        """Find all entities whose fields equal the given filters."""
        clauses, params = self._equality_clauses(filters)
        return self._find_where(clauses, params, order_by, descending, skip, limit)

    def find_one(self, filters: Dict[str, Any]) -> Optional[T]:
        found = self.find_all(filters, limit=1)
        return found[0] if found else None

    def delete(self, entity_id: str) -> bool:
        """Delete an entity by ID."""
        query = "DELETE FROM documents WHERE id = ? AND collection = ?"
        return self._execute_update(query, (entity_id, self._collection)) > 0

    def count(self, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count entities matching filters."""
        clauses, params = self._equality_clauses(filters)
        return self._count_where(clauses, params)

    def find_owned(self, owner_ids: Optional[List[str]] = None, filters: Optional[Dict[str, Any]] = None,
                   order_by: Optional[str] = None, descending: bool = True,
                   skip: int = 0, limit: Optional[int] = None) -> List[T]:
        """Documents whose ``student`` is one of ``owner_ids`` (None means any).

        Filters with an empty value are ignored.
        """
        if owner_ids is not None and not owner_ids:
            return []
        clauses, params = self._owned_clauses(owner_ids, filters)
        return self._find_where(clauses, params, order_by, descending, skip, limit)

    def count_owned(self, owner_ids: Optional[List[str]] = None,
                    filters: Optional[Dict[str, Any]] = None) -> int:
        if owner_ids is not None and not owner_ids:
            return 0
        clauses, params = self._owned_clauses(owner_ids, filters)
        return self._count_where(clauses, params)

    def _owned_clauses(self, owner_ids, filters):
        clauses, params = self._equality_clauses({k: v for k, v in (filters or {}).items() if v})
        if owner_ids is not None:
            placeholders = ", ".join("?" for _ in owner_ids)
            clauses.append(f"{_field('student')} IN ({placeholders})")
            params.extend(owner_ids)
        return clauses, params

    def _entity_from_dict(self, data: Dict[str, Any]) -> T:
        """Convert dictionary to entity instance."""
        return self._entity_class.from_dict(data)

    def _stored_version(self, entity_id: str) -> Optional[int]:
        query = "SELECT version FROM documents WHERE id = ? AND collection = ?"
        results = self._execute_query(query, (entity_id, self._collection))
        return results[0]["version"] if results else None

    def _equality_clauses(self, filters: Optional[Dict[str, Any]]) -> Tuple[List[str], List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        for key, value in (filters or {}).items():
            if value is None:
                clauses.append(f"{_field(key)} IS NULL")
            else:
                clauses.append(f"{_field(key)} = ?")
                params.append(_sql_value(value))
        return clauses, params

    def _find_where(self, clauses: List[str], params: List[Any], order_by: Optional[str] = None,
                    descending: bool = False, skip: int = 0, limit: Optional[int] = None) -> List[T]:
        query = "SELECT data FROM documents WHERE collection = ?"
        for clause in clauses:
            query += f" AND {clause}"
        direction = "DESC" if descending else "ASC"
        if order_by:
            query += f" ORDER BY {_field(order_by)} {direction}, created_at {direction}"
        else:
            query += f" ORDER BY created_at {direction}"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params = list(params) + [int(limit), int(skip)]
        results = self._execute_query(query, tuple([self._collection] + list(params)))
        return [self._entity_from_dict(json.loads(row["data"])) for row in results]

    def _count_where(self, clauses: List[str], params: List[Any]) -> int:
        query = "SELECT COUNT(*) AS count FROM documents WHERE collection = ?"
        for clause in clauses:
            query += f" AND {clause}"
        results = self._execute_query(query, tuple([self._collection] + list(params)))
        return results[0]["count"] if results else 0

    def _execute_query(self, query: str, params: tuple) -> List[Dict[str, Any]]:
        with self._lock:
            try:
                return self._database.execute_query(query, params)
            except ScholarisException:
                raise
            except Exception as e:
                raise PersistenceError(f"Failed to query {self._collection}: {str(e)}")

    def _execute_update(self, query: str, params: tuple) -> int:
        with self._lock:
            try:
                return self._database.execute_update(query, params)
            except ScholarisException:
                raise
            except Exception as e:
                raise PersistenceError(f"Failed to write {self._collection}: {str(e)}")


class UserRepository(BaseRepository[User]):
    """Repository for User accounts."""

    def __init__(self, database: DatabaseManager):
        super().__init__(database, User)

    def find_by_email(self, email: str) -> Optional[User]:
        return self.find_one({"email": email})


class TeacherRepository(BaseRepository[Teacher]):
    """Repository for Teacher profiles."""

    def __init__(self, database: DatabaseManager):
        super().__init__(database, Teacher)

    def find_by_user(self, user_id: str) -> Optional[Teacher]:
        """Find the teacher profile owned by an account."""
        return self.find_one({"user": user_id})


class StudentRepository(BaseRepository[Student]):
    """Repository for Student profiles."""

    def __init__(self, database: DatabaseManager):
        super().__init__(database, Student)

    def find_by_user(self, user_id: str) -> Optional[Student]:
        """Find the student profile owned by an account."""
        return self.find_one({"user": user_id})

    def find_by_student_id(self, student_id: str) -> Optional[Student]:
        return self.find_one({"studentId": student_id})

    def find_by_class(self, class_id: str, section: Optional[str] = None) -> List[Student]:
        filters = {"class": class_id}
        if section:
            filters["section"] = section
        return self.find_all(filters, order_by="rollNumber")

    def find_by_parent(self, parent_id: str) -> List[Student]:
        return self.find_all({"parent": parent_id})

    def find_by_biometric_id(self, biometric_id: str) -> Optional[Student]:
        if not biometric_id:
            return None
        return self.find_one({"biometricId": biometric_id})


class CourseRepository(BaseRepository[Course]):
    """Repository for Course entities."""

    def __init__(self, database: DatabaseManager):
        super().__init__(database, Course)

    def find_by_code(self, code: str) -> Optional[Course]:
        return self.find_one({"code": code})

    def find_by_instructor(self, teacher_id: str) -> List[Course]:
        return self.find_all({"instructor": teacher_id})


class AttendanceRepository(BaseRepository[AttendanceRecord]):
    """Repository for attendance records."""

    def __init__(self, database: DatabaseManager):
        super().__init__(database, AttendanceRecord)

    def find_for_day(self, student_id: str, course_id: Optional[str], day: str) -> Optional[AttendanceRecord]:
        """The record for (student, course, calendar day), if any."""
        return self.find_one({"student": student_id, "course": course_id, "day": day})

    def find_records(self, student_ids: Optional[List[str]] = None, course_id: Optional[str] = None,
                     start: Optional[datetime] = None, end: Optional[datetime] = None,
                     status: Optional[str] = None, method: Optional[str] = None,
                     skip: int = 0, limit: Optional[int] = None) -> List[AttendanceRecord]:
        """Records filtered by students, course, inclusive date range and status, newest first."""
        clauses, params = self._record_clauses(student_ids, course_id, start, end, status, method)
        if clauses is None:
            return []
        return self._find_where(clauses, params, order_by="date", descending=True, skip=skip, limit=limit)

    def count_records(self, student_ids: Optional[List[str]] = None, course_id: Optional[str] = None,
                      start: Optional[datetime] = None, end: Optional[datetime] = None,
                      status: Optional[str] = None) -> int:
        clauses, params = self._record_clauses(student_ids, course_id, start, end, status, None)
        if clauses is None:
            return 0
        return self._count_where(clauses, params)

    def _record_clauses(self, student_ids, course_id, start, end, status, method):
        filters = {}
        if course_id:
            filters["course"] = course_id
        if status:
            filters["status"] = status
        if method:
            filters["method"] = method
        clauses, params = self._equality_clauses(filters)

        if student_ids is not None:
            if not student_ids:
                return None, None
            placeholders = ", ".join("?" for _ in student_ids)
            clauses.append(f"{_field('student')} IN ({placeholders})")
            params.extend(student_ids)
        if start:
            clauses.append(f"{_field('date')} >= ?")
            params.append(start.isoformat())
        if end:
            clauses.append(f"{_field('date')} <= ?")
            params.append(end.isoformat())
        return clauses, params


class GradeRepository(BaseRepository[GradeRecord]):
    """Repository for grade records."""

    def __init__(self, database: DatabaseManager):
        super().__init__(database, GradeRecord)

    def find_by_student(self, student_id: str) -> List[GradeRecord]:
        return self.find_all({"student": student_id})

    def exists_for_assignment(self, assignment_id: str) -> bool:
        return self.count({"assignment": assignment_id}) > 0


class AssignmentRepository(BaseRepository[Assignment]):
    def __init__(self, database: DatabaseManager):
        super().__init__(database, Assignment)


class QuizRepository(BaseRepository[Quiz]):
    def __init__(self, database: DatabaseManager):
        super().__init__(database, Quiz)


class VehicleRepository(BaseRepository[Vehicle]):
    def __init__(self, database: DatabaseManager):
        super().__init__(database, Vehicle)


class TransportRepository(BaseRepository[Transport]):
    def __init__(self, database: DatabaseManager):
        super().__init__(database, Transport)


class InventoryRepository(BaseRepository[InventoryItem]):
    """Repository for inventory items."""

    _LOW_STOCK = f"{_field('quantity')} < {_field('minStockLevel')}"

    def __init__(self, database: DatabaseManager):
        super().__init__(database, InventoryItem)

    def find_by_sku(self, sku: str) -> Optional[InventoryItem]:
        return self.find_one({"sku": sku})

    def find_low_stock(self, skip: int = 0, limit: Optional[int] = None) -> List[InventoryItem]:
        """Items whose quantity is below their minimum stock level, lowest first."""
        return self._find_where([self._LOW_STOCK], [], order_by="quantity", skip=skip, limit=limit)

    def count_low_stock(self) -> int:
        return self._count_where([self._LOW_STOCK], [])


class FeeRepository(BaseRepository[Fee]):
    """Repository for fees."""

    def __init__(self, database: DatabaseManager):
        super().__init__(database, Fee)

    def find_by_student(self, student_id: str) -> List[Fee]:
        return self.find_all({"student": student_id}, order_by="dueDate", descending=True)


class LibraryRepository(BaseRepository[Book]):
    """Repository for library books."""

    _SEARCHED_FIELDS = ("title", "author", "isbn", "category")

    def __init__(self, database: DatabaseManager):
        super().__init__(database, Book)

    def find_by_book_id(self, book_id: str) -> Optional[Book]:
        return self.find_one({"bookId": book_id})

    def find_books(self, filters: Optional[Dict[str, Any]] = None, available_only: bool = False,
                   skip: int = 0, limit: Optional[int] = None) -> List[Book]:
        clauses, params = self._book_clauses(filters, available_only)
        return self._find_where(clauses, params, order_by="title", skip=skip, limit=limit)

    def count_books(self, filters: Optional[Dict[str, Any]] = None, available_only: bool = False) -> int:
        clauses, params = self._book_clauses(filters, available_only)
        return self._count_where(clauses, params)

    def search(self, text: str, limit: int = 20) -> List[Book]:
        """Case-insensitive substring match on title, author, isbn or category."""
        pattern = "%" + text.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
        clause = " OR ".join(
            f"LOWER(IFNULL({_field(name)}, '')) LIKE ? ESCAPE '\\'" for name in self._SEARCHED_FIELDS
        )
        return self._find_where([f"({clause})"], [pattern] * len(self._SEARCHED_FIELDS),
                                order_by="title", limit=limit)

    def _book_clauses(self, filters, available_only):
        clauses, params = self._equality_clauses({k: v for k, v in (filters or {}).items() if v})
        if available_only:
            clauses.append(f"{_field('availableCopies')} > 0")
        return clauses, params


class ExpenseRepository(BaseRepository[Expense]):
    """Repository for expenses."""

    def __init__(self, database: DatabaseManager):
        super().__init__(database, Expense)

    def find_expenses(self, filters: Optional[Dict[str, Any]] = None, start: Optional[datetime] = None,
                      end: Optional[datetime] = None, skip: int = 0,
                      limit: Optional[int] = None) -> List[Expense]:
        """Expenses matching the filters and inclusive date range, newest first."""
        clauses, params = self._expense_clauses(filters, start, end)
        return self._find_where(clauses, params, order_by="date", descending=True, skip=skip, limit=limit)

    def _expense_clauses(self, filters, start, end):
        clauses, params = self._equality_clauses({k: v for k, v in (filters or {}).items() if v})
        if start:
            clauses.append(f"{_field('date')} >= ?")
            params.append(start.isoformat())
        if end:
            clauses.append(f"{_field('date')} <= ?")
            params.append(end.isoformat())
        return clauses, params
