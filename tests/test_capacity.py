import pytest

from conftest import caller_for

from scholaris.core.entities import Course
from scholaris.core.exceptions import (
    AuthorizationError, CapacityExceededError, ConcurrencyError, DuplicateEntityError,
    ResourceNotFoundError, ValidationError
)


@pytest.fixture
def small_course(platform, school):
    course = Course("Seminar", "SEM101", school.teacher.id, max_enrollment=2)
    course.enrolled_students = [school.s1.id]
    return platform.store.courses.insert(course)


@pytest.fixture
def transport(platform, school):
    admin = caller_for(school.admin)
    vehicle = platform.capacity_service.create_vehicle(admin, {"registrationNumber": "BUS-1", "capacity": 2})
    return platform.capacity_service.create_transport(admin, {
        "routeName": "North loop", "vehicle": vehicle.id, "driver": school.driver.id,
    })


def test_enrollment_is_all_or_nothing(platform, school, small_course):
    admin = caller_for(school.admin)

    with pytest.raises(CapacityExceededError, match="Cannot enroll more than 2 students in this course"):
        platform.capacity_service.enroll(admin, small_course.id, [school.s2.id, school.s3.id])

    stored = platform.store.courses.find_by_id(small_course.id)
    assert stored.enrolled_students == [school.s1.id]


def test_enrollment_succeeds_after_removal(platform, school, small_course):
    admin = caller_for(school.admin)
    platform.capacity_service.unenroll(admin, small_course.id, [school.s1.id])

    change = platform.capacity_service.enroll(admin, small_course.id, [school.s2.id, school.s3.id])

    assert change.changed == [school.s2.id, school.s3.id]
    assert platform.store.courses.find_by_id(small_course.id).enrolled_students == [school.s2.id, school.s3.id]


def test_enrollment_skips_already_enrolled(platform, school):
    change = platform.capacity_service.enroll(caller_for(school.teacher_user), school.course.id, [school.s1.id])
    assert change.changed == []


def test_enrollment_rejects_unknown_students(platform, school):
    with pytest.raises(ResourceNotFoundError, match="Students not found: ghost"):
        platform.capacity_service.enroll(caller_for(school.admin), school.course.id, [school.s3.id, "ghost"])
    assert school.s3.id not in platform.store.courses.find_by_id(school.course.id).enrolled_students


def test_enrollment_input_validation(platform, school):
    with pytest.raises(ValidationError):
        platform.capacity_service.enroll(caller_for(school.admin), school.course.id, [])
    with pytest.raises(ValidationError):
        platform.capacity_service.enroll(caller_for(school.admin), school.course.id, "not-a-list")


def test_teacher_manages_only_own_course(platform, school):
    with pytest.raises(AuthorizationError):
        platform.capacity_service.enroll(caller_for(school.teacher_user), school.other_course.id, [school.s1.id])


def test_lost_write_is_retried(platform, school, monkeypatch):
    repository = platform.store.courses
    real_save = repository.save_if_unchanged
    attempts = []

    def flaky_save(entity):
        attempts.append(entity.id)
        if len(attempts) == 1:
            return False
        return real_save(entity)

    monkeypatch.setattr(repository, "save_if_unchanged", flaky_save)
    change = platform.capacity_service.enroll(caller_for(school.admin), school.course.id, [school.s3.id])

    assert len(attempts) == 2
    assert change.changed == [school.s3.id]


def test_persistent_conflict_raises(platform, school, monkeypatch):
    monkeypatch.setattr(platform.store.courses, "save_if_unchanged", lambda entity: False)
    with pytest.raises(ConcurrencyError):
        platform.capacity_service.enroll(caller_for(school.admin), school.course.id, [school.s3.id])


def test_stale_copy_is_not_written(platform, school):
    stale = platform.store.courses.find_by_id(school.course.id)
    fresh = platform.store.courses.find_by_id(school.course.id)

    fresh.enrolled_students.append(school.s3.id)
    assert platform.store.courses.save_if_unchanged(fresh)

    stale.enrolled_students = []
    assert not platform.store.courses.save_if_unchanged(stale)
    assert school.s3.id in platform.store.courses.find_by_id(school.course.id).enrolled_students


def test_transport_capacity_defaults_to_vehicle(transport):
    assert transport.capacity == 2


def test_transport_guards_on_creation(platform, school):
    admin = caller_for(school.admin)
    vehicle = platform.capacity_service.create_vehicle(admin, {"registrationNumber": "VAN-1", "capacity": 8})

    with pytest.raises(ValidationError, match="exceed vehicle capacity"):
        platform.capacity_service.create_transport(admin, {
            "routeName": "South", "vehicle": vehicle.id, "driver": school.driver.id, "capacity": 9,
        })
    with pytest.raises(ResourceNotFoundError, match="Driver not found"):
        platform.capacity_service.create_transport(admin, {
            "routeName": "South", "vehicle": vehicle.id, "driver": school.teacher_user.id,
        })
    with pytest.raises(AuthorizationError):
        platform.capacity_service.create_vehicle(caller_for(school.accountant), {
            "registrationNumber": "VAN-2", "capacity": 8,
        })


def test_assignment_respects_capacity(platform, school, transport):
    admin = caller_for(school.admin)
    platform.capacity_service.assign_students(admin, transport.id, [school.s1.id, school.s2.id])

    with pytest.raises(CapacityExceededError) as excinfo:
        platform.capacity_service.assign_students(admin, transport.id, [school.s3.id])

    assert excinfo.value.message == "Adding 1 students would exceed capacity of 2. Current: 2"
    assert platform.store.students.find_by_id(school.s1.id).transport == transport.id
    assert platform.store.students.find_by_id(school.s3.id).transport is None


def test_inactive_transport_rejects_assignment(platform, school, transport):
    admin = caller_for(school.admin)
    platform.capacity_service.update_transport(admin, transport.id, {"status": "maintenance"})

    with pytest.raises(ValidationError, match="inactive transport"):
        platform.capacity_service.assign_students(admin, transport.id, [school.s1.id])


def test_capacity_cannot_drop_below_assigned(platform, school, transport):
    admin = caller_for(school.admin)
    platform.capacity_service.assign_students(admin, transport.id, [school.s1.id, school.s2.id])

    with pytest.raises(CapacityExceededError):
        platform.capacity_service.update_transport(admin, transport.id, {"capacity": 1})

    platform.capacity_service.remove_students(admin, transport.id, [school.s1.id])
    updated = platform.capacity_service.update_transport(admin, transport.id, {"capacity": 1})

    assert updated.capacity == 1
    assert platform.store.students.find_by_id(school.s1.id).transport is None


def _item(platform, school, **overrides):
    data = {
        "name": "Chalk", "category": "Stationery", "sku": "CHK-1",
        "quantity": 5, "unit": "box", "unitPrice": 2.0, "minStockLevel": 3,
    }
    data.update(overrides)
    return platform.capacity_service.create_item(caller_for(school.accountant), data)


def test_stock_is_clamped_at_zero(platform, school, listener):
    item = _item(platform, school)
    accountant = caller_for(school.accountant)

    emptied = platform.capacity_service.update_stock(accountant, item.id, -10)
    assert emptied.quantity == 0
    assert emptied.status.value == "damaged"
    assert listener.of_type("low_stock_alert")[-1][1]['currentQuantity'] == 0

    restocked = platform.capacity_service.update_stock(accountant, item.id, 4)
    assert restocked.quantity == 4
    assert restocked.status.value == "available"


def test_stock_change_must_be_integer(platform, school):
    item = _item(platform, school)
    with pytest.raises(ValidationError):
        platform.capacity_service.update_stock(caller_for(school.admin), item.id, None)
    with pytest.raises(ValidationError):
        platform.capacity_service.update_stock(caller_for(school.admin), item.id, "5")


def test_low_stock_listing_and_summary(platform, school):
    _item(platform, school)
    _item(platform, school, name="Markers", sku="MRK-1", quantity=1, minStockLevel=10, unitPrice=1.5)
    _item(platform, school, name="Beakers", category="Laboratory", sku="BKR-1", quantity=40, minStockLevel=5)

    low = platform.capacity_service.low_stock(caller_for(school.admin))
    assert [item['sku'] for item in low['lowStockItems']] == ["MRK-1"]

    summary = platform.capacity_service.inventory_summary(caller_for(school.accountant))
    assert summary['overall']['totalCategories'] == 2
    assert summary['overall']['totalItems'] == 3
    assert summary['summaryByCategory']['Stationery']['totalQuantity'] == 6
    assert summary['overall']['totalValue'] == pytest.approx(5 * 2.0 + 1 * 1.5 + 40 * 2.0)


def test_duplicate_sku_is_rejected(platform, school):
    _item(platform, school)
    with pytest.raises(DuplicateEntityError):
        _item(platform, school, name="More chalk")


def test_teacher_cannot_touch_inventory(platform, school):
    item = _item(platform, school)
    with pytest.raises(AuthorizationError):
        platform.capacity_service.update_stock(caller_for(school.teacher_user), item.id, 1)
