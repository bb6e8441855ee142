# billing_engine.py
"""Due-date and status rules for subscription billing.

Everything here is pure: no database, no clock. Callers pass "today"
explicitly so the same inputs always produce the same answer.
"""
from datetime import date, datetime, timedelta

MONTHLY = 'Monthly'
HALF_YEARLY = 'Half-Yearly'
YEARLY = 'Yearly'
PLANS = (MONTHLY, HALF_YEARLY, YEARLY)

PAID = 'Paid'
DUE_BUT_ACTIVE = 'Due but Active'
OVERDUE = 'Overdue'
STATUSES = (PAID, DUE_BUT_ACTIVE, OVERDUE)

BILLING_PERIOD_DAYS = {
    MONTHLY: 30,
    HALF_YEARLY: 180,
    YEARLY: 365,
}
DEFAULT_PERIOD_DAYS = 30

# Amount charged per recorded payment. Clients depend on these exact values.
PLAN_AMOUNTS = {
    MONTHLY: 250,
    HALF_YEARLY: 1500,
    YEARLY: 3000,
}
DEFAULT_AMOUNT = 250


def as_day(value):
    """Truncate a datetime to its calendar day; dates and None pass through."""
    if isinstance(value, datetime):
        return value.date()
    return value


def billing_period_days(plan):
    return BILLING_PERIOD_DAYS.get(plan, DEFAULT_PERIOD_DAYS)


def payment_amount(plan):
    return PLAN_AMOUNTS.get(plan, DEFAULT_AMOUNT)


def compute_next_due_date(plan, from_date):
    """Return ``from_date`` plus one billing period of ``plan``.

    Unknown plans bill like Monthly.
    """
    return as_day(from_date) + timedelta(days=billing_period_days(plan))


def advance_overdue_due_date(plan, stale_next_due_date):
    """Push a lapsed due date forward by exactly one billing period.

    Used only when an operator explicitly marks a customer as
    'Due but Active' after their due date has passed.
    """
    return compute_next_due_date(plan, stale_next_due_date)


def is_past_due(next_due_date, today):
    if next_due_date is None:
        return False
    return as_day(next_due_date) < as_day(today)


def derive_status(next_due_date, current_status, today, current_days_overdue=0):
    """Recompute ``(status, days_overdue)`` from the due date.

    With no due date nothing can be derived and the current values are
    returned as they are.
    """
    if next_due_date is None:
        return current_status, current_days_overdue

    due = as_day(next_due_date)
    today = as_day(today)
    if due < today:
        return OVERDUE, max(0, (today - due).days)
    if current_status == PAID:
        return PAID, 0
    return DUE_BUT_ACTIVE, 0


def apply_derivation(customer, today):
    """Write the derived status back onto ``customer``."""
    customer.status, customer.days_overdue = derive_status(
        customer.next_due_date,
        customer.status,
        today,
        customer.days_overdue or 0,
    )
    return customer


def today_or(value=None):
    return as_day(value) if value is not None else date.today()
