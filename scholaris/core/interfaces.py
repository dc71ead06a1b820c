"""
Core interfaces and abstract base classes for the Scholaris platform.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, TypeVar, Generic

from .enums import AccessScope


T = TypeVar('T')


class Repository(ABC, Generic[T]):
    """Generic repository interface."""

    @abstractmethod
    def save(self, entity: T) -> T:
        """Insert or overwrite an entity."""
        pass

    @abstractmethod
    def find_by_id(self, entity_id: str) -> Optional[T]:
        """Find entity by ID."""
        pass

    @abstractmethod
    def find_all(self, filters: Optional[Dict[str, Any]] = None) -> List[T]:
        """Find all entities whose fields equal the given filters."""
        pass

    @abstractmethod
    def delete(self, entity_id: str) -> bool:
        """Delete an entity by ID."""
        pass


class AccessPolicy(ABC):
    """Per-role decision used by the authorization gate."""

    @abstractmethod
    def allows_student(self, caller_id: str, student: Any, course: Optional[Any]) -> bool:
        """Decide access to a record owned through a student."""
        pass

    @abstractmethod
    def allows_course(self, caller_id: str, course: Any) -> bool:
        """Decide access to a record owned through a course."""
        pass

    def allows(self, caller_id: str, scope: AccessScope, student: Any = None, course: Any = None) -> bool:
        if scope == AccessScope.NONE:
            return True
        if scope == AccessScope.STUDENT:
            return student is not None and self.allows_student(caller_id, student, course)
        return course is not None and self.allows_course(caller_id, course)

    @abstractmethod
    def get_policy_name(self) -> str:
        """Get the name of this policy."""
        pass


class NotificationListener(ABC):
    """In-process receiver of published notifications."""

    @abstractmethod
    def on_notification(self, event_type: str, payload: Dict[str, Any], recipient: Optional[str]) -> None:
        pass
