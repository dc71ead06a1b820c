"""
Main entry point for the Scholaris platform.
"""

import logging
from typing import Any, Dict, Optional

from .config import load_config, DEFAULT_CONFIG
from .core.entities import User, Teacher, Student, Course, InventoryItem, Vehicle, Book
from .core.enums import Role
from .core.exceptions import ConfigurationError
from .persistence import DatabaseFactory, RecordStore
from .services import (
    AuthorizationGate, ConnectionRegistry, NotificationEmitter, AttendanceService,
    GradeService, CapacityService, FeeService, CourseworkService, DirectoryService
)
from .api.rest_api import ScholarisRestAPI

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


class ScholarisPlatform:
    """Main platform class that wires the store, services and API together."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self._config = dict(DEFAULT_CONFIG)
        self._config.update(config or {})
        self._database = None
        self._store = None
        self._gate = None
        self._registry = None
        self._emitter = None
        self._rest_api = None

        # Initialize platform
        self._initialize_platform()

    def _initialize_platform(self):
        """Initialize the platform with all services."""
        logger.info("Initializing Scholaris platform...")

        self._database = DatabaseFactory.create_database(
            "sqlite", database_path=self._config['database_path']
        )
        self._store = RecordStore(self._database)
        logger.info("Record store ready at %s", self._config['database_path'])

        self._gate = AuthorizationGate(self._store.teachers, self._store.courses, self._store.users)
        self._registry = ConnectionRegistry()
        self._emitter = NotificationEmitter(self._registry)

        self.attendance_service = AttendanceService(
            self._store, self._gate, self._emitter,
            device_token=self._config.get('biometric_device_token')
        )
        self.grade_service = GradeService(self._store, self._gate, self._emitter)
        self.capacity_service = CapacityService(
            self._store, self._gate, self._emitter,
            retry_limit=self._config['capacity_retry_limit']
        )
        self.fee_service = FeeService(self._store, self._gate, self._emitter)
        self.coursework_service = CourseworkService(self._store, self._gate)
        self.directory_service = DirectoryService(self._store, self._gate)
        logger.info("Services initialized")

        if self._config.get('bootstrap_admin_id'):
            self._ensure_admin(self._config['bootstrap_admin_id'])

        self._rest_api = ScholarisRestAPI(
            self.attendance_service,
            self.grade_service,
            self.capacity_service,
            self.fee_service,
            self.coursework_service,
            self.directory_service,
            self._emitter,
            self._gate,
            cors_origins=self._config.get('cors_origins')
        )
        logger.info("Scholaris platform initialized")

    def _ensure_admin(self, user_id: str) -> User:
        """Make sure an administrator account with a known id exists for first-time setup."""
        admin = self._store.users.find_by_id(user_id)
        if admin is None:
            admin = self._store.users.insert(
                User("System", "Administrator", f"{user_id}@scholaris.local", Role.ADMIN, entity_id=user_id)
            )
            logger.info("Bootstrap administrator %s created", user_id)
        elif admin.role != Role.ADMIN:
            raise ConfigurationError(f"Bootstrap account {user_id} exists but is not an administrator")
        return admin

    @property
    def app(self):
        return self._rest_api.app

    @property
    def store(self) -> RecordStore:
        return self._store

    @property
    def gate(self) -> AuthorizationGate:
        return self._gate

    @property
    def emitter(self) -> NotificationEmitter:
        return self._emitter

    def start(self, host: Optional[str] = None, port: Optional[int] = None):
        """Serve the API with uvicorn until interrupted."""
        import uvicorn

        host = host or self._config['host']
        port = port or self._config['port']
        logger.info("Serving REST API on http://%s:%s (docs at /docs)", host, port)
        uvicorn.run(self.app, host=host, port=port, log_level=self._config['log_level'].lower())

    def create_sample_data(self) -> Dict[str, str]:
        """Create sample accounts, a course and stock for demonstration."""
        logger.info("Creating sample data...")
        users = self._store.users

        admin = users.insert(User("Ada", "Admin", "admin@school.example", Role.ADMIN))
        teacher_user = users.insert(User("Tom", "Teacher", "teacher@school.example", Role.TEACHER))
        parent = users.insert(User("Pat", "Parent", "parent@school.example", Role.PARENT))
        accountant = users.insert(User("Alex", "Accounts", "accounts@school.example", Role.ACCOUNTANT))
        driver = users.insert(User("Dana", "Driver", "driver@school.example", Role.DRIVER))

        teacher = self._store.teachers.insert(Teacher(teacher_user.id, "EMP001", department="Science"))
        course = Course("Introduction to Physics", "PHY101", teacher.id, max_enrollment=30)

        for number, (first, last) in enumerate([("Alice", "Johnson"), ("Bob", "Smith"), ("Carol", "Davis")], 1):
            account = users.insert(User(first, last, f"{first.lower()}@school.example", Role.STUDENT))
            student = self._store.students.insert(Student(
                account.id, f"S{number:03d}", str(number), "10", section="A", parent=parent.id
            ))
            course.enrolled_students.append(student.id)

        self._store.courses.insert(course)
        self._store.vehicles.insert(Vehicle("BUS-01", 40, model="Coach"))
        self._store.inventory.insert(InventoryItem(
            "Lab goggles", "Laboratory", "LAB-GOG-01", 12, "piece", unit_price=4.5, min_stock_level=10
        ))
        self._store.library.insert(Book("LIB-0001", "Concepts of Physics", "H. C. Verma", "Science", 3))

        logger.info("Sample data created")
        return {
            'admin': admin.id,
            'teacher': teacher_user.id,
            'parent': parent.id,
            'accountant': accountant.id,
            'driver': driver.id,
            'course': course.id,
        }


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Scholaris School Management Platform")
    parser.add_argument("--host", type=str, help="REST server host")
    parser.add_argument("--port", type=int, help="REST server port")
    parser.add_argument("--config", type=str, help="Configuration file path")
    parser.add_argument("--env-file", type=str, help="dotenv file with environment overrides")
    parser.add_argument("--sample-data", action="store_true", help="Create sample data before serving")

    args = parser.parse_args()

    config = load_config(args.config, env_file=args.env_file)
    configure_logging(config['log_level'])

    platform = ScholarisPlatform(config)
    if args.sample_data:
        ids = platform.create_sample_data()
        for role, entity_id in ids.items():
            logger.info("Sample %s: %s", role, entity_id)

    try:
        platform.start(args.host, args.port)
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
