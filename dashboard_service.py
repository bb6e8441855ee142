# dashboard_service.py
from datetime import timedelta

from billing_engine import DUE_BUT_ACTIVE, OVERDUE, PAID, as_day, compute_next_due_date, today_or
from billing_service import storage
from models import Customer, db


def dashboard_stats(today=None, window_days=7, limit=20):
    """Status totals plus the customers falling due within ``window_days``."""
    today = today_or(today)
    with storage("load dashboard"):
        counts = dict(
            db.session.query(Customer.status, db.func.count(Customer.id))
            .group_by(Customer.status)
            .all()
        )
        upcoming = (Customer.query
                    .filter(Customer.next_due_date >= today,
                            Customer.next_due_date <= today + timedelta(days=window_days),
                            Customer.status != PAID)
                    .order_by(Customer.next_due_date)
                    .limit(limit)
                    .all())
    return {
        'total_customers': sum(counts.values()),
        'paid_customers': counts.get(PAID, 0),
        'due_customers': counts.get(DUE_BUT_ACTIVE, 0),
        'overdue_customers': counts.get(OVERDUE, 0),
        'upcoming_due': upcoming,
    }


def project_due_dates(plan, from_date, periods):
    # Assumes every period is paid exactly on its due date.
    due_dates = []
    current = as_day(from_date)
    for _ in range(periods):
        current = compute_next_due_date(plan, current)
        due_dates.append(current)
    return due_dates
