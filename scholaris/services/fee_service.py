"""
Fee records: raising, paying and summarizing charges against students, and
the expenses the school pays out.
"""

import logging
from typing import Any, Dict, List, Optional

from ..core.entities import Expense, Fee, Student
from ..core.enums import EventType, FeeStatus, Role
from ..core.exceptions import (
    AuthorizationError, ConcurrencyError, ResourceNotFoundError, ValidationError
)
from ..core.pagination import page_window, pagination
from ..core.timeutils import parse_datetime, utcnow
from ..persistence.record_store import RecordStore
from .authorization import AuthorizationGate, Caller, Capabilities
from .notifications import NotificationEmitter

logger = logging.getLogger(__name__)

_REQUIRED_FIELDS = ("student", "academicYear", "feeType", "amount", "dueDate")
_EXPENSE_FIELDS = ("expenseType", "category", "amount", "date")


def fee_summary(fees: List[Fee]) -> Dict[str, Any]:
    """Totals by payment state; pending fees past their due date count as overdue."""
    now = utcnow()
    paid = [fee for fee in fees if fee.status == FeeStatus.PAID]
    pending = [fee for fee in fees if fee.status == FeeStatus.PENDING]
    overdue = [fee for fee in pending if fee.due_date < now]
    total_amount = sum(fee.amount for fee in fees)
    paid_amount = sum(fee.amount for fee in paid)
    return {
        'totalFees': len(fees),
        'totalAmount': total_amount,
        'paidFees': len(paid),
        'paidAmount': paid_amount,
        'pendingFees': len(pending),
        'pendingAmount': sum(fee.amount for fee in pending),
        'overdueFees': len(overdue),
        'overdueAmount': sum(fee.amount for fee in overdue),
        'balance': total_amount - paid_amount,
    }


def expense_summary(expenses: List[Expense]) -> Dict[str, Any]:
    """Totals by expense type and by calendar month (YYYY-MM)."""
    by_type: Dict[str, Dict[str, Any]] = {}
    by_month: Dict[str, float] = {}
    total_amount = 0
    for expense in expenses:
        entry = by_type.setdefault(expense.expense_type.value, {
            'type': expense.expense_type.value,
            'count': 0,
            'totalAmount': 0,
        })
        entry['count'] += 1
        entry['totalAmount'] += expense.amount
        month = expense.date.strftime("%Y-%m")
        by_month[month] = by_month.get(month, 0) + expense.amount
        total_amount += expense.amount

    return {
        'summaryByType': by_type,
        'expensesByMonth': dict(sorted(by_month.items())),
        'overall': {
            'totalExpenses': len(expenses),
            'totalAmount': total_amount,
            'averageExpense': total_amount / len(expenses) if expenses else 0,
        },
    }


def _date_window(date_from: Optional[str], date_to: Optional[str]):
    start = parse_datetime(date_from, "dateFrom") if date_from else None
    end = parse_datetime(date_to, "dateTo") if date_to else None
    if start and end and start > end:
        raise ValidationError("dateFrom must not be after dateTo", details={"field": "dateFrom"})
    return start, end


class FeeService:
    """Raises and collects fees; every read and write is gated on the owning student."""

    def __init__(self, store: RecordStore, gate: AuthorizationGate, emitter: NotificationEmitter):
        self._store = store
        self._gate = gate
        self._emitter = emitter

    def create_fee(self, caller: Caller, data: Dict[str, Any]) -> Fee:
        self._gate.authorize(caller, Capabilities.MANAGE_FEES)
        if any(data.get(name) in (None, "") for name in _REQUIRED_FIELDS):
            raise ValidationError(
                "Please provide all required fields: student, academicYear, feeType, amount, dueDate"
            )
        student = self._require_student(data["student"])

        fee = Fee(
            student.id, data["academicYear"], data["feeType"], data["amount"], data["dueDate"],
            created_by=caller.id, notes=data.get("notes")
        )
        self._store.fees.insert(fee)
        logger.info("Fee %s of %s raised for student %s", fee.id, fee.amount, student.id)

        self._emitter.publish(EventType.FEE_CREATED, {
            'feeId': fee.id,
            'studentId': student.id,
            'feeType': fee.fee_type.value,
            'amount': fee.amount,
            'dueDate': fee.due_date.isoformat(),
        }, recipient=student.user)
        return fee

    def list_fees(self, caller: Caller, student_id: Optional[str] = None, status: Optional[str] = None,
                  fee_type: Optional[str] = None, academic_year: Optional[str] = None,
                  page: int = 1, limit: int = 10) -> Dict[str, Any]:
        skip, limit = page_window(page, limit)
        if student_id:
            student = self._require_student(student_id)
            self._gate.authorize(caller, Capabilities.VIEW_FEES, student=student)
            student_ids = [student.id]
        else:
            student_ids = self._visible_students(caller)

        filters = {'status': status, 'feeType': fee_type, 'academicYear': academic_year}
        fees = self._store.fees.find_owned(student_ids, filters, order_by="dueDate", skip=skip, limit=limit)
        total = self._store.fees.count_owned(student_ids, filters)
        return {
            'fees': [fee.to_dict() for fee in fees],
            'pagination': pagination(page, limit, total),
        }

    def _visible_students(self, caller: Caller) -> Optional[List[str]]:
        self._gate.require_role(caller, Capabilities.VIEW_FEES)
        if caller.role == Role.STUDENT:
            own = self._store.students.find_by_user(caller.id)
            if own is None:
                raise AuthorizationError("No student record found for this user")
            return [own.id]
        if caller.role == Role.PARENT:
            children = self._store.students.find_by_parent(caller.id)
            if not children:
                raise AuthorizationError("No student records found for this parent")
            return [child.id for child in children]
        return None

    def get_fee(self, caller: Caller, fee_id: str) -> Fee:
        fee = self._require_fee(fee_id)
        self._gate.authorize(caller, Capabilities.VIEW_FEES, student=self._store.students.find_by_id(fee.student))
        return fee

    def pay_fee(self, caller: Caller, fee_id: str, payment_method: Optional[str],
                transaction_id: Optional[str] = None, receipt_number: Optional[str] = None) -> Fee:
        fee = self._require_fee(fee_id)
        student = self._store.students.find_by_id(fee.student)
        self._gate.authorize(caller, Capabilities.PAY_FEE, student=student)

        if fee.is_paid:
            raise ValidationError("Fee is already paid")
        if not payment_method:
            raise ValidationError("paymentMethod is required", details={"field": "paymentMethod"})

        fee.mark_paid(payment_method, transaction_id, receipt_number)
        if not self._store.fees.save_if_unchanged(fee):
            raise ConcurrencyError("Fee was modified concurrently, please retry", details={"feeId": fee_id})

        logger.info("Fee %s paid via %s", fee.id, fee.payment_method.value)
        self._emitter.publish(EventType.FEE_PAID, {
            'feeId': fee.id,
            'studentId': fee.student,
            'amount': fee.amount,
        }, recipient=student.user)
        return fee

    def delete_fee(self, caller: Caller, fee_id: str) -> None:
        self._gate.authorize(caller, Capabilities.DELETE_FEE)
        fee = self._require_fee(fee_id)
        if fee.is_paid:
            raise ValidationError("Cannot delete a paid fee record")
        self._store.fees.delete(fee.id)

    def student_summary(self, caller: Caller, student_id: str) -> Dict[str, Any]:
        student = self._require_student(student_id)
        self._gate.authorize(caller, Capabilities.VIEW_FEES, student=student)
        return fee_summary(self._store.fees.find_by_student(student.id))

    # Expenses

    def create_expense(self, caller: Caller, data: Dict[str, Any]) -> Expense:
        """Record an expense paid by the caller and broadcast it."""
        self._gate.authorize(caller, Capabilities.MANAGE_EXPENSES)
        if any(data.get(name) in (None, "") for name in _EXPENSE_FIELDS):
            raise ValidationError("Please provide required fields: expenseType, category, amount, date")

        expense = Expense(
            data["expenseType"], data["category"], data["amount"], data["date"], paid_by=caller.id,
            description=data.get("description"), receipt=data.get("receipt"),
            payment_method=data.get("paymentMethod")
        )
        self._store.expenses.insert(expense)
        logger.info("Expense %s of %s recorded under %s", expense.id, expense.amount, expense.category)

        self._emitter.publish(EventType.EXPENSE_CREATED, {
            'expenseId': expense.id,
            'amount': expense.amount,
            'category': expense.category,
            'date': expense.date.isoformat(),
        })
        return expense

    def list_expenses(self, caller: Caller, expense_type: Optional[str] = None, category: Optional[str] = None,
                      paid_by: Optional[str] = None, date_from: Optional[str] = None,
                      date_to: Optional[str] = None, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        self._gate.authorize(caller, Capabilities.VIEW_EXPENSES)
        skip, limit = page_window(page, limit)
        start, end = _date_window(date_from, date_to)
        filters = {'expenseType': expense_type, 'category': category, 'paidBy': paid_by}

        expenses = self._store.expenses.find_expenses(filters, start, end, skip=skip, limit=limit)
        matching = self._store.expenses.find_expenses(filters, start, end)
        return {
            'expenses': [expense.to_dict() for expense in expenses],
            'totalAmount': sum(expense.amount for expense in matching),
            'pagination': pagination(page, limit, len(matching)),
        }

    def get_expense(self, caller: Caller, expense_id: str) -> Expense:
        self._gate.authorize(caller, Capabilities.VIEW_EXPENSES)
        return self._require_expense(expense_id)

    def update_expense(self, caller: Caller, expense_id: str, patch: Dict[str, Any]) -> Expense:
        self._gate.authorize(caller, Capabilities.MANAGE_EXPENSES)
        expense = self._require_expense(expense_id)
        if patch.get("amount") is not None:
            if patch["amount"] <= 0:
                raise ValidationError("Amount must be greater than 0", details={"field": "amount"})
            expense.amount = patch["amount"]
        if patch.get("description") is not None:
            expense.description = patch["description"]
        if patch.get("receipt") is not None:
            expense.receipt = patch["receipt"]
        if patch.get("paymentMethod") is not None:
            expense.payment_method = patch["paymentMethod"]

        if not self._store.expenses.save_if_unchanged(expense):
            raise ConcurrencyError("Expense was modified concurrently, please retry",
                                   details={"expenseId": expense_id})
        return expense

    def delete_expense(self, caller: Caller, expense_id: str) -> None:
        self._gate.authorize(caller, Capabilities.DELETE_EXPENSE)
        self._store.expenses.delete(self._require_expense(expense_id).id)

    def expense_totals(self, caller: Caller, date_from: Optional[str] = None,
                       date_to: Optional[str] = None) -> Dict[str, Any]:
        self._gate.authorize(caller, Capabilities.VIEW_EXPENSES)
        start, end = _date_window(date_from, date_to)
        return expense_summary(self._store.expenses.find_expenses(start=start, end=end))

    def expense_categories(self, caller: Caller) -> List[Dict[str, Any]]:
        """Count, total and mean per category, largest total first."""
        self._gate.authorize(caller, Capabilities.VIEW_EXPENSES)
        grouped: Dict[str, List[float]] = {}
        for expense in self._store.expenses.find_all():
            grouped.setdefault(expense.category, []).append(expense.amount)
        categories = [
            {
                'category': category,
                'count': len(amounts),
                'totalAmount': sum(amounts),
                'averageAmount': sum(amounts) / len(amounts),
            }
            for category, amounts in grouped.items()
        ]
        return sorted(categories, key=lambda entry: entry['totalAmount'], reverse=True)

    def _require_expense(self, expense_id: str) -> Expense:
        expense = self._store.expenses.find_by_id(expense_id)
        if expense is None:
            raise ResourceNotFoundError("Expense not found", details={"expenseId": expense_id})
        return expense

    def _require_fee(self, fee_id: str) -> Fee:
        fee = self._store.fees.find_by_id(fee_id)
        if fee is None:
            raise ResourceNotFoundError("Fee record not found", details={"feeId": fee_id})
        return fee

    def _require_student(self, student_id: str) -> Student:
        student = self._store.students.find_by_id(student_id)
        if student is None:
            raise ResourceNotFoundError("Student not found", details={"studentId": student_id})
        return student
