import pytest

from conftest import caller_for

from scholaris.core.exceptions import AuthorizationError, ConcurrencyError, ValidationError
from scholaris.services.fee_service import fee_summary


def _fee(platform, school, student=None, amount=500, due="2999-01-01", fee_type="tuition"):
    return platform.fee_service.create_fee(caller_for(school.accountant), {
        "student": (student or school.s1).id,
        "academicYear": "2024-2025",
        "feeType": fee_type,
        "amount": amount,
        "dueDate": due,
    })


def test_fee_created_notifies_student(platform, school, listener):
    fee = _fee(platform, school)

    events = listener.of_type("fee_created")
    assert events[0][2] == school.student_users[0].id
    assert events[0][1]['feeId'] == fee.id


def test_fee_validation(platform, school):
    with pytest.raises(ValidationError):
        platform.fee_service.create_fee(caller_for(school.admin), {"student": school.s1.id})
    with pytest.raises(ValidationError):
        _fee(platform, school, fee_type="bribe")
    with pytest.raises(ValidationError):
        _fee(platform, school, amount=0)
    with pytest.raises(AuthorizationError):
        platform.fee_service.create_fee(caller_for(school.teacher_user), {})


def test_pay_fee_once(platform, school, listener):
    fee = _fee(platform, school)
    accountant = caller_for(school.accountant)

    with pytest.raises(ValidationError):
        platform.fee_service.pay_fee(accountant, fee.id, None)

    paid = platform.fee_service.pay_fee(accountant, fee.id, "cash", receipt_number="R-1")
    assert paid.is_paid
    assert listener.of_type("fee_paid")[0][2] == school.student_users[0].id

    with pytest.raises(ValidationError, match="already paid"):
        platform.fee_service.pay_fee(accountant, fee.id, "cash")
    with pytest.raises(ValidationError, match="paid fee"):
        platform.fee_service.delete_fee(caller_for(school.admin), fee.id)


def test_concurrent_payment_conflict(platform, school, monkeypatch):
    fee = _fee(platform, school)
    monkeypatch.setattr(platform.store.fees, "save_if_unchanged", lambda entity: False)
    with pytest.raises(ConcurrencyError):
        platform.fee_service.pay_fee(caller_for(school.accountant), fee.id, "online")


def test_fee_listing_scope(platform, school):
    _fee(platform, school, student=school.s1)
    _fee(platform, school, student=school.s2)
    _fee(platform, school, student=school.s3)

    assert platform.fee_service.list_fees(caller_for(school.accountant))['pagination']['totalDocs'] == 3
    assert platform.fee_service.list_fees(caller_for(school.parent))['pagination']['totalDocs'] == 2
    own = platform.fee_service.list_fees(caller_for(school.student_users[2]))
    assert [fee['student'] for fee in own['fees']] == [school.s3.id]

    with pytest.raises(AuthorizationError):
        platform.fee_service.list_fees(caller_for(school.teacher_user))
    with pytest.raises(AuthorizationError):
        platform.fee_service.list_fees(caller_for(school.parent), student_id=school.s3.id)


def test_student_fee_summary(platform, school):
    overdue = _fee(platform, school, amount=100, due="2020-01-01")
    _fee(platform, school, amount=300)
    paid = _fee(platform, school, amount=50, fee_type="library")
    platform.fee_service.pay_fee(caller_for(school.admin), paid.id, "cash")

    summary = platform.fee_service.student_summary(caller_for(school.student_users[0]), school.s1.id)

    assert summary['totalFees'] == 3
    assert summary['totalAmount'] == 450
    assert summary['paidAmount'] == 50
    assert summary['pendingAmount'] == 400
    assert summary['overdueFees'] == 1
    assert summary['overdueAmount'] == overdue.amount
    assert summary['balance'] == 400


def test_fee_summary_of_nothing():
    assert fee_summary([])['balance'] == 0
