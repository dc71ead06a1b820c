"""
Database management and connection handling.

Entities are kept as JSON documents in a single ``documents`` table. Uniqueness
rules that must hold under concurrent writers (one attendance record per
student, course and day; unique course codes; unique SKUs) are expression
indexes, so the store rejects the losing insert itself.
"""

import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from ..core.exceptions import DuplicateEntityError, PersistenceError, ConfigurationError, ScholarisException

logger = logging.getLogger(__name__)


DOCUMENT_SCHEMA = {
    "documents": """
        CREATE TABLE IF NOT EXISTS documents (
            id TEXT PRIMARY KEY,
            collection TEXT NOT NULL,
            data TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            version INTEGER NOT NULL DEFAULT 1
        )
    """,
    "idx_documents_collection": """
        CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents (collection)
    """,
    "uq_attendance_student_course_day": """
        CREATE UNIQUE INDEX IF NOT EXISTS uq_attendance_student_course_day ON documents (
            json_extract(data, '$.student'),
            IFNULL(json_extract(data, '$.course'), ''),
            json_extract(data, '$.day')
        ) WHERE collection = 'attendance'
    """,
    "uq_course_code": """
        CREATE UNIQUE INDEX IF NOT EXISTS uq_course_code
        ON documents (json_extract(data, '$.code')) WHERE collection = 'course'
    """,
    "uq_inventory_sku": """
        CREATE UNIQUE INDEX IF NOT EXISTS uq_inventory_sku
        ON documents (json_extract(data, '$.sku')) WHERE collection = 'inventory'
    """,
    "uq_library_book_id": """
        CREATE UNIQUE INDEX IF NOT EXISTS uq_library_book_id
        ON documents (json_extract(data, '$.bookId')) WHERE collection = 'library'
    """,
}


class DatabaseManager(ABC):
    """Abstract base class for database management."""

    @abstractmethod
    def execute_query(self, query: str, params: Optional[tuple] = None) -> List[Dict[str, Any]]:
        """Execute a query and return results."""
        pass

    @abstractmethod
    def execute_update(self, query: str, params: Optional[tuple] = None) -> int:
        """Execute an update query and return affected rows."""
        pass

    @abstractmethod
    def create_tables(self, schema: Dict[str, str]) -> None:
        """Create database tables from schema."""
        pass


class SQLiteDatabase(DatabaseManager):
    """SQLite database implementation."""

    def __init__(self, database_path: str = "scholaris.db"):
        if database_path == ":memory:":
            # Every operation opens its own connection; a private in-memory
            # database would vanish between calls.
            raise ConfigurationError("An in-memory SQLite database is not supported; use a file path")
        self._database_path = database_path
        self._initialize_database()

    @property
    def database_path(self) -> str:
        return self._database_path

    def _initialize_database(self) -> None:
        """Initialize the database with the document schema."""
        self.create_tables(DOCUMENT_SCHEMA)
        logger.debug("Document store ready at %s", self._database_path)

    @contextmanager
    def _get_connection(self):
        """Get database connection with proper cleanup."""
        conn = None
        try:
            conn = sqlite3.connect(self._database_path, check_same_thread=False, timeout=10)
            conn.row_factory = sqlite3.Row
            yield conn
        except sqlite3.IntegrityError as e:
            if conn:
                conn.rollback()
            raise DuplicateEntityError(f"Unique constraint violated: {str(e)}")
        except ScholarisException:
            if conn:
                conn.rollback()
            raise
        except Exception as e:
            if conn:
                conn.rollback()
            raise PersistenceError(f"Database connection error: {str(e)}")
        finally:
            if conn:
                conn.close()

    def execute_query(self, query: str, params: Optional[tuple] = None) -> List[Dict[str, Any]]:
        """Execute a query and return results."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            if params:
                cursor.execute(query, params)
            else:
                cursor.execute(query)

            columns = [description[0] for description in cursor.description]
            results = []
            for row in cursor.fetchall():
                results.append(dict(zip(columns, row)))
            return results

    def execute_update(self, query: str, params: Optional[tuple] = None) -> int:
        """Execute an update query and return affected rows."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            if params:
                cursor.execute(query, params)
            else:
                cursor.execute(query)
            conn.commit()
            return cursor.rowcount

    def create_tables(self, schema: Dict[str, str]) -> None:
        """Create database tables from schema."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            for table_schema in schema.values():
                cursor.execute(table_schema)
            conn.commit()


class DatabaseFactory:
    """Factory for creating database instances."""

    @staticmethod
    def create_database(database_type: str, **kwargs) -> DatabaseManager:
        """Create a database instance based on type."""
        if database_type.lower() == "sqlite":
            return SQLiteDatabase(**kwargs)
        else:
            raise ConfigurationError(f"Unsupported database type: {database_type}")
