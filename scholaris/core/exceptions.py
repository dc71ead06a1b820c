"""
Custom exceptions for the Scholaris platform.
"""

from typing import Optional, Any, Dict


class ScholarisException(Exception):
    """Base exception for all Scholaris-related errors."""

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}


class ValidationError(ScholarisException):
    """Raised when data validation fails."""
    pass


class AuthenticationError(ScholarisException):
    """Raised when the caller identity is missing or invalid."""
    pass


class AuthorizationError(ScholarisException):
    """Raised when access is denied."""
    pass


class ConcurrencyError(ScholarisException):
    """Raised when a conditional write loses against a concurrent writer."""
    pass


class ResourceNotFoundError(ScholarisException):
    """Raised when a requested resource is not found."""
    pass


class DuplicateEntityError(ScholarisException):
    """Raised when attempting to create a duplicate entity."""
    pass


class CapacityExceededError(ValidationError):
    """Raised when an admission would exceed a capacity bound."""
    pass


class DependencyError(ScholarisException):
    """Raised when a record cannot be removed because others reference it."""
    pass


class PersistenceError(ScholarisException):
    """Raised when persistence operations fail."""
    pass


class ConfigurationError(ScholarisException):
    """Raised when configuration is invalid."""
    pass
