# app.py
import logging
from datetime import date, datetime

import click
from flask import Flask, current_app, jsonify, request

import billing_service
from billing_engine import MONTHLY, as_day
from config import Config
from dashboard_service import dashboard_stats, project_due_dates
from errors import BillingError, ValidationError
from models import db

logger = logging.getLogger(__name__)


def create_app(config=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    app.config.from_prefixed_env()
    if isinstance(config, dict):
        app.config.update(config)
    elif config is not None:
        app.config.from_object(config)

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    db.init_app(app)

    # Initialize database
    with app.app_context():
        db.create_all()

    register_routes(app)
    register_error_handlers(app)
    register_commands(app)
    return app


# Request parsing helpers
def parse_date(value, field):
    if value in (None, ''):
        return None
    if isinstance(value, str) and value.endswith('Z'):
        # JavaScript toISOString() output
        value = value[:-1] + '+00:00'
    try:
        return as_day(datetime.fromisoformat(value))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid date for {field}: {value!r}")


def parse_int(value, field, default):
    if value in (None, ''):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid integer for {field}: {value!r}")
    if number < 0:
        raise ValidationError(f"{field} must not be negative")
    return number


def json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def iso(value):
    return value.isoformat() if value is not None else None


def customer_json(customer):
    return {
        'id': customer.id,
        'serialNumber': customer.serial_number,
        'name': customer.name,
        'paymentPlan': customer.payment_plan,
        'lastPaidDate': iso(customer.last_paid_date),
        'nextDueDate': iso(customer.next_due_date),
        'status': customer.status,
        'daysOverdue': customer.days_overdue,
        'notes': customer.notes,
        'accountNumber': customer.account_number,
        'mobileNumber': customer.mobile_number,
        'address': customer.address,
        'pinCode': customer.pin_code,
        'city': customer.city,
        'caf': customer.caf,
        'vcNumber': customer.vc_number,
        'createdAt': iso(customer.created_at),
        'updatedAt': iso(customer.updated_at),
    }


def payment_json(payment, with_customer=False):
    data = {
        'id': payment.id,
        'customerId': payment.customer_id,
        'amount': payment.amount,
        'paymentDate': iso(payment.payment_date),
        'paymentPlan': payment.payment_plan,
        'status': payment.status,
        'notes': payment.notes,
        'createdAt': iso(payment.created_at),
    }
    if with_customer:
        data['customer'] = {
            'name': payment.customer.name,
            'serialNumber': payment.customer.serial_number,
        }
    return data


def register_routes(app):
    @app.before_request
    def log_request():
        logger.info("%s %s", request.method, request.path)

    @app.route('/api/health', methods=['GET'])
    def health():
        return jsonify({'status': 'ok', 'timestamp': datetime.utcnow().isoformat()})

    # Customers
    @app.route('/api/customers', methods=['GET'])
    def list_customers():
        customers = billing_service.list_customers()
        return jsonify({'count': len(customers), 'customers': [customer_json(c) for c in customers]})

    @app.route('/api/customers/search', methods=['GET'])
    def search_customers():
        args = request.args
        customers = billing_service.search_customers(
            name=args.get('name'),
            status=args.get('status'),
            plan=args.get('paymentPlan'),
            due_from=parse_date(args.get('startDate'), 'startDate'),
            due_to=parse_date(args.get('endDate'), 'endDate'),
        )
        return jsonify({'count': len(customers), 'customers': [customer_json(c) for c in customers]})

    @app.route('/api/customers', methods=['POST'])
    def create_customer():
        data = json_body()
        plan = data.get('paymentPlan')
        first_payment_date = parse_date(data.get('firstPaymentDate'), 'firstPaymentDate')
        # Picking a plan on the operator form means the first period is paid today.
        if plan and first_payment_date is None:
            first_payment_date = date.today()
        customer = billing_service.create_customer(
            name=data.get('name'),
            plan=plan or MONTHLY,
            first_payment_date=first_payment_date,
            notes=data.get('notes', ''),
            serial_number=data.get('serialNumber'),
            account_number=data.get('accountNumber', ''),
            mobile_number=data.get('mobileNumber', ''),
            address=data.get('address', ''),
            pin_code=data.get('pinCode', ''),
            city=data.get('city', ''),
            caf=data.get('caf', ''),
            vc_number=data.get('vcNumber', ''),
        )
        return jsonify(customer_json(customer)), 201

    @app.route('/api/customers/<int:customer_id>', methods=['GET'])
    def get_customer(customer_id):
        return jsonify(customer_json(billing_service.get_customer(customer_id)))

    @app.route('/api/customers/<int:customer_id>', methods=['PUT'])
    def update_customer(customer_id):
        data = json_body()
        customer = billing_service.update_profile(
            customer_id,
            name=data.get('name'),
            plan=data.get('paymentPlan') or None,
            notes=data.get('notes'),
        )
        return jsonify(customer_json(customer))

    @app.route('/api/customers/<int:customer_id>/payment', methods=['PUT'])
    def record_payment(customer_id):
        data = json_body()
        customer, payment = billing_service.record_payment(
            customer_id,
            payment_date=parse_date(data.get('paymentDate'), 'paymentDate'),
            status=data.get('status') or None,
            plan=data.get('paymentPlan') or None,
            note=data.get('paymentNotes', ''),
        )
        return jsonify({
            'customer': customer_json(customer),
            'payment': payment_json(payment) if payment is not None else None,
        })

    @app.route('/api/customers/<int:customer_id>', methods=['DELETE'])
    def delete_customer(customer_id):
        deleted = billing_service.delete_customer(customer_id)
        return jsonify({'id': customer_id, 'deletedPayments': deleted})

    @app.route('/api/customers/reset-payment-data', methods=['POST'])
    def reset_payment_data():
        clear_history = request.args.get('clearHistory') == 'true'
        result = billing_service.reset_all_billing(clear_history=clear_history)
        return jsonify({
            'customersUpdated': result['customers_updated'],
            'paymentHistoryCleared': result['history_cleared'],
            'deletedPaymentsCount': result['records_deleted'],
        })

    # Payment history
    @app.route('/api/payments', methods=['GET'])
    def list_payments():
        args = request.args
        payments = billing_service.list_payments(
            start_date=parse_date(args.get('startDate'), 'startDate'),
            end_date=parse_date(args.get('endDate'), 'endDate'),
            limit=parse_int(args.get('limit'), 'limit', current_app.config['PAYMENTS_LIMIT']),
        )
        return jsonify({'count': len(payments),
                        'payments': [payment_json(p, with_customer=True) for p in payments]})

    @app.route('/api/payments/customer/<int:customer_id>', methods=['GET'])
    def payment_history(customer_id):
        limit = parse_int(request.args.get('limit'), 'limit', current_app.config['HISTORY_LIMIT'])
        payments = billing_service.payment_history(customer_id, limit=limit)
        return jsonify({'count': len(payments), 'payments': [payment_json(p) for p in payments]})

    @app.route('/api/payments/customer/<int:customer_id>', methods=['DELETE'])
    def clear_payment_history(customer_id):
        deleted = billing_service.clear_payment_history(customer_id)
        return jsonify({'deletedCount': deleted})

    @app.route('/api/payments/<int:payment_id>/mark-paid', methods=['PUT'])
    def mark_payment_paid(payment_id):
        return jsonify(payment_json(billing_service.mark_payment_paid(payment_id)))

    # Dashboard
    @app.route('/api/dashboard', methods=['GET'])
    def dashboard():
        stats = dashboard_stats(
            window_days=current_app.config['UPCOMING_DUE_DAYS'],
            limit=current_app.config['UPCOMING_DUE_LIMIT'],
        )
        return jsonify({
            'totalCustomers': stats['total_customers'],
            'paidCustomers': stats['paid_customers'],
            'dueCustomers': stats['due_customers'],
            'overdueCustomers': stats['overdue_customers'],
            'upcomingDue': [
                {
                    'id': c.id,
                    'name': c.name,
                    'serialNumber': c.serial_number,
                    'nextDueDate': iso(c.next_due_date),
                    'status': c.status,
                    'paymentPlan': c.payment_plan,
                }
                for c in stats['upcoming_due']
            ],
        })

    @app.route('/api/dashboard/projection', methods=['GET'])
    def due_date_projection():
        args = request.args
        from_date = parse_date(args.get('from'), 'from') or date.today()
        periods = parse_int(args.get('periods'), 'periods', 3)
        if periods > 120:
            raise ValidationError("periods must be at most 120")
        due_dates = project_due_dates(args.get('paymentPlan', MONTHLY), from_date, periods)
        return jsonify({'dueDates': [d.isoformat() for d in due_dates]})


def register_error_handlers(app):
    @app.errorhandler(BillingError)
    def handle_billing_error(error):
        return jsonify({'error': error.message}), error.status_code

    @app.errorhandler(404)
    def handle_not_found(error):
        return jsonify({'error': 'Route not found'}), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(error):
        return jsonify({'error': 'Method not allowed'}), 405


def register_commands(app):
    @app.cli.command('reset-payment-data')
    @click.option('--clear-history', is_flag=True, help='Also delete all payment history records.')
    def reset_payment_data_command(clear_history):
        """Reset billing state of every customer for a fresh deployment."""
        result = billing_service.reset_all_billing(clear_history=clear_history)
        click.echo(f"Customers updated: {result['customers_updated']}")
        if clear_history:
            click.echo(f"Payment records deleted: {result['records_deleted']}")
        else:
            click.echo("Payment history kept (use --clear-history to clear)")


if __name__ == '__main__':
    create_app().run(debug=True)
