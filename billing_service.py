# billing_service.py
"""Customer billing operations on top of the database.

Every write that touches billing state ends in ``_save``, which runs the
status derivation from :mod:`billing_engine` before committing. Profile
edits and the bulk reset deliberately skip it.

All database work happens inside ``storage(...)``: any SQLAlchemy failure
rolls the session back and surfaces as ``StorageError``.
"""
import logging
import random
import string
import threading
import time
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import joinedload

from billing_engine import (
    DUE_BUT_ACTIVE,
    MONTHLY,
    OVERDUE,
    PAID,
    PLANS,
    STATUSES,
    advance_overdue_due_date,
    apply_derivation,
    as_day,
    compute_next_due_date,
    is_past_due,
    payment_amount,
    today_or,
)
from errors import BillingError, NotFoundError, StorageError, ValidationError
from models import Customer, Payment, db

logger = logging.getLogger(__name__)

SERIAL_ATTEMPTS = 3
DETAIL_FIELDS = ('account_number', 'mobile_number', 'address', 'pin_code', 'city', 'caf', 'vc_number')

_locks_guard = threading.Lock()
_customer_locks = {}  # customer id -> [lock, number of holders and waiters]


@contextmanager
def customer_lock(customer_id):
    """Serialize writers of the same customer within this process."""
    with _locks_guard:
        entry = _customer_locks.setdefault(customer_id, [threading.Lock(), 0])
        entry[1] += 1
    try:
        with entry[0]:
            yield
    finally:
        with _locks_guard:
            entry[1] -= 1
            if entry[1] == 0:
                del _customer_locks[customer_id]


@contextmanager
def storage(action):
    """Run one unit of work; roll back on any failure."""
    try:
        yield db.session
    except SQLAlchemyError as exc:
        db.session.rollback()
        if isinstance(exc, IntegrityError):
            logger.warning("Constraint violation while trying to %s: %s", action, exc.orig)
        else:
            logger.exception("Storage failure while trying to %s", action)
        raise StorageError(f"Could not {action}") from exc
    except BillingError:
        db.session.rollback()
        raise


def generate_serial_number():
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"AUTO-{int(time.time() * 1000)}-{suffix}"


def _save(customer, today, *extra):
    apply_derivation(customer, today)
    customer.updated_at = datetime.utcnow()
    db.session.add(customer)
    for obj in extra:
        db.session.add(obj)
    db.session.commit()
    return customer


def _check_plan(plan):
    if plan not in PLANS:
        raise ValidationError(f"Unknown payment plan: {plan!r}")


def _check_status(status):
    if status not in STATUSES:
        raise ValidationError(f"Unknown status: {status!r}")


def _clean_text(value, field):
    if value is None:
        return ''
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be text")
    return value.strip()


def _clean_name(name):
    name = _clean_text(name, 'name')
    if not name:
        raise ValidationError("Customer name is required")
    return name


def _load_customer(customer_id):
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise NotFoundError("Customer not found")
    return customer


def get_customer(customer_id):
    with storage("load customer"):
        return _load_customer(customer_id)


def get_payment(payment_id):
    with storage("load payment"):
        payment = db.session.get(Payment, payment_id)
    if payment is None:
        raise NotFoundError("Payment not found")
    return payment


def create_customer(name, plan=None, first_payment_date=None, notes='',
                    serial_number=None, today=None, **details):
    name = _clean_name(name)
    plan = plan or MONTHLY
    _check_plan(plan)
    unknown = set(details) - set(DETAIL_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown customer fields: {', '.join(sorted(unknown))}")
    details = {field: _clean_text(value, field) for field, value in details.items()}
    notes = _clean_text(notes, 'notes')
    serial_number = _clean_text(serial_number, 'serial_number') or None
    today = today_or(today)
    first_payment_date = as_day(first_payment_date)

    for attempt in range(1, SERIAL_ATTEMPTS + 1):
        customer = Customer(
            serial_number=serial_number or generate_serial_number(),
            name=name,
            payment_plan=plan,
            status=DUE_BUT_ACTIVE,
            days_overdue=0,
            notes=notes,
            **details,
        )
        if first_payment_date is not None:
            customer.last_paid_date = first_payment_date
            customer.next_due_date = compute_next_due_date(plan, first_payment_date)
            customer.status = PAID
        try:
            with storage("create customer"):
                _save(customer, today)
        except StorageError as exc:
            if not isinstance(exc.__cause__, IntegrityError):
                raise
            if serial_number:
                raise ValidationError(f"Serial number {serial_number!r} is already in use") from exc
            logger.warning("Generated serial number collided (attempt %d)", attempt)
            continue
        logger.info("Created customer %s (%s)", customer.id, customer.serial_number)
        return customer

    raise StorageError("Could not generate a unique serial number")


def record_payment(customer_id, payment_date=None, status=None, plan=None, note='', today=None):
    """Apply an operator payment event and append it to the history.

    Returns ``(customer, payment)``; ``payment`` is None when neither a
    payment date nor a status was given.
    """
    today = today_or(today)
    payment_date = as_day(payment_date)
    note = _clean_text(note, 'note')
    if plan is not None:
        _check_plan(plan)
    if status is not None:
        _check_status(status)

    with customer_lock(customer_id), storage("record payment"):
        customer = _load_customer(customer_id)
        # Overdue always needs a due date to count the days from.
        if status == OVERDUE and payment_date is None and customer.next_due_date is None:
            raise ValidationError("Cannot mark a customer Overdue without a due date")

        if plan is not None:
            customer.payment_plan = plan

        if payment_date is not None:
            customer.last_paid_date = payment_date
            customer.next_due_date = compute_next_due_date(customer.payment_plan, payment_date)

        if status is not None:
            customer.status = status
            if status != OVERDUE:
                customer.days_overdue = 0
            if status == DUE_BUT_ACTIVE and is_past_due(customer.next_due_date, today):
                customer.next_due_date = advance_overdue_due_date(customer.payment_plan, customer.next_due_date)
        elif payment_date is not None:
            customer.status = PAID
            customer.days_overdue = 0

        payment = None
        if payment_date is not None or status is not None:
            payment = Payment(
                customer=customer,
                amount=payment_amount(customer.payment_plan),
                payment_date=payment_date or today,
                payment_plan=customer.payment_plan,
                status=status or (PAID if payment_date is not None else customer.status),
                notes=note,
            )

        # Derivation runs last and can overrule the explicit status.
        _save(customer, today, *([payment] if payment else []))
        logger.info("Recorded payment event for customer %s: status=%s next_due=%s",
                    customer.id, customer.status, customer.next_due_date)
    return customer, payment


def update_profile(customer_id, name=None, plan=None, notes=None):
    """Edit name, plan or notes without touching billing state."""
    if name is not None:
        name = _clean_name(name)
    if plan is not None:
        _check_plan(plan)
    if notes is not None:
        notes = _clean_text(notes, 'notes')
    with customer_lock(customer_id), storage("update customer"):
        customer = _load_customer(customer_id)
        if name is not None:
            customer.name = name
        if plan is not None:
            customer.payment_plan = plan
        if notes is not None:
            customer.notes = notes
        customer.updated_at = datetime.utcnow()
        db.session.commit()
    return customer


def delete_customer(customer_id):
    with customer_lock(customer_id), storage("delete customer"):
        customer = _load_customer(customer_id)
        deleted_payments = len(customer.payments)
        db.session.delete(customer)
        db.session.commit()
    logger.info("Deleted customer %s and %d payment record(s)", customer_id, deleted_payments)
    return deleted_payments


def reset_all_billing(clear_history=False):
    """Wipe billing state for every customer. Not a billing event."""
    with storage("reset billing data"):
        customers_updated = Customer.query.update(
            {
                Customer.last_paid_date: None,
                Customer.next_due_date: None,
                Customer.status: DUE_BUT_ACTIVE,
                Customer.days_overdue: 0,
                Customer.updated_at: datetime.utcnow(),
            },
            synchronize_session=False,
        )
        records_deleted = 0
        if clear_history:
            records_deleted = Payment.query.delete(synchronize_session=False)
        db.session.commit()
    logger.info("Reset billing for %d customer(s); deleted %d payment record(s)",
                customers_updated, records_deleted)
    return {
        'customers_updated': customers_updated,
        'records_deleted': records_deleted,
        'history_cleared': bool(clear_history),
    }


def list_customers():
    with storage("list customers"):
        return Customer.query.order_by(Customer.name).all()


def search_customers(name=None, status=None, plan=None, due_from=None, due_to=None):
    query = Customer.query
    if name and name.strip():
        term = name.strip().replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
        query = query.filter(Customer.name.ilike(f"%{term}%", escape='\\'))
    if status and status != 'all':
        query = query.filter(Customer.status == status)
    if plan and plan != 'all':
        query = query.filter(Customer.payment_plan == plan)
    if due_from is not None:
        query = query.filter(Customer.next_due_date >= as_day(due_from))
    if due_to is not None:
        query = query.filter(Customer.next_due_date <= as_day(due_to))
    with storage("search customers"):
        return query.order_by(Customer.name).all()


def payment_history(customer_id, limit=50):
    with storage("load payment history"):
        _load_customer(customer_id)
        return (Payment.query
                .filter_by(customer_id=customer_id)
                .order_by(Payment.payment_date.desc(), Payment.id.desc())
                .limit(limit)
                .all())


def list_payments(start_date=None, end_date=None, limit=100):
    query = Payment.query
    if start_date is not None:
        query = query.filter(Payment.payment_date >= as_day(start_date))
    if end_date is not None:
        query = query.filter(Payment.payment_date <= as_day(end_date))
    with storage("list payments"):
        return (query.options(joinedload(Payment.customer))
                .order_by(Payment.payment_date.desc(), Payment.id.desc())
                .limit(limit)
                .all())


def clear_payment_history(customer_id):
    with customer_lock(customer_id), storage("clear payment history"):
        _load_customer(customer_id)
        deleted = Payment.query.filter_by(customer_id=customer_id).delete(synchronize_session=False)
        db.session.commit()
    logger.info("Cleared %d payment record(s) for customer %s", deleted, customer_id)
    return deleted


def mark_payment_paid(payment_id):
    payment = get_payment(payment_id)
    with storage("mark payment as paid"):
        payment.status = PAID
        db.session.commit()
    return payment
