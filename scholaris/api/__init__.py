"""
API module for the REST and WebSocket interface.
"""

from .rest_api import ScholarisRestAPI, status_for

__all__ = [
    "ScholarisRestAPI",
    "status_for",
]
