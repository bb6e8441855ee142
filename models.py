# models.py
from datetime import datetime

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


class Customer(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    serial_number = db.Column(db.String(64), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False, index=True)
    payment_plan = db.Column(db.String(20), nullable=False, default='Monthly')  # 'Monthly', 'Half-Yearly' or 'Yearly'
    last_paid_date = db.Column(db.Date)
    next_due_date = db.Column(db.Date, index=True)
    status = db.Column(db.String(20), nullable=False, default='Due but Active')  # 'Paid', 'Due but Active', 'Overdue'
    days_overdue = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text, default='')
    account_number = db.Column(db.String(64), default='')
    mobile_number = db.Column(db.String(32), default='')
    address = db.Column(db.String(255), default='')
    pin_code = db.Column(db.String(16), default='')
    city = db.Column(db.String(100), default='')
    caf = db.Column(db.String(64), default='')
    vc_number = db.Column(db.String(64), default='')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)
    version = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {'version_id_col': version}


class Payment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey('customer.id'), nullable=False, index=True)
    amount = db.Column(db.Integer, nullable=False, default=250)
    payment_date = db.Column(db.Date, nullable=False, index=True)
    payment_plan = db.Column(db.String(20), nullable=False)  # plan in effect when recorded
    status = db.Column(db.String(20), nullable=False)  # status snapshot; may later move to 'Paid'
    notes = db.Column(db.Text, default='')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    customer = db.relationship(
        'Customer',
        backref=db.backref('payments', lazy=True, cascade='all, delete-orphan'),
    )
