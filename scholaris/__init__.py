"""
Scholaris: A Multi-Tenant School Management Backend

Academics (courses, coursework, grades, attendance), operations (transport,
inventory, fees) and real-time notification fan-out over a REST and
WebSocket API.
"""

__version__ = "1.0.0"
__author__ = "Scholaris Development Team"
__description__ = "Multi-tenant school management backend"
