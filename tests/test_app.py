from datetime import date, timedelta

import billing_service
from billing_engine import DUE_BUT_ACTIVE, PAID
from models import Payment, db


def create(client, **payload):
    response = client.post('/api/customers', json=payload)
    assert response.status_code == 201, response.get_json()
    return response.get_json()


def test_health(client):
    response = client.get('/api/health')
    assert response.status_code == 200
    assert response.get_json()['status'] == 'ok'


def test_create_customer_with_plan_is_paid_today(client):
    data = create(client, name='Asha', paymentPlan='Yearly', mobileNumber='98765')
    today = date.today()
    assert data['status'] == PAID
    assert data['paymentPlan'] == 'Yearly'
    assert data['lastPaidDate'] == today.isoformat()
    assert data['nextDueDate'] == (today + timedelta(days=365)).isoformat()
    assert data['mobileNumber'] == '98765'


def test_create_customer_without_plan_has_no_dates(client):
    data = create(client, name='Ravi')
    assert data['status'] == DUE_BUT_ACTIVE
    assert data['paymentPlan'] == 'Monthly'
    assert data['lastPaidDate'] is None
    assert data['nextDueDate'] is None


def test_create_customer_with_first_payment_date(client):
    first = date.today() - timedelta(days=10)
    data = create(client, name='Meena', paymentPlan='Monthly', firstPaymentDate=first.isoformat())
    assert data['lastPaidDate'] == first.isoformat()
    assert data['nextDueDate'] == (first + timedelta(days=30)).isoformat()
    assert data['status'] == PAID


def test_create_customer_validation_errors(client):
    assert client.post('/api/customers', json={'name': '  '}).status_code == 400
    assert client.post('/api/customers', json={'name': 'X', 'paymentPlan': 'Weekly'}).status_code == 400
    response = client.post('/api/customers', json={'name': 'X', 'firstPaymentDate': 'yesterday'})
    assert response.status_code == 400
    assert 'firstPaymentDate' in response.get_json()['error']


def test_get_and_list_customers(client):
    created = create(client, name='Zoya')
    create(client, name='Anil')

    response = client.get(f"/api/customers/{created['id']}")
    assert response.status_code == 200
    assert response.get_json()['name'] == 'Zoya'

    listing = client.get('/api/customers').get_json()
    assert listing['count'] == 2
    assert [c['name'] for c in listing['customers']] == ['Anil', 'Zoya']

    assert client.get('/api/customers/999').status_code == 404


def test_search_customers(client):
    create(client, name='Asha Patel', paymentPlan='Monthly')
    create(client, name='Ravi Patel')
    response = client.get('/api/customers/search', query_string={'name': 'patel', 'status': PAID})
    body = response.get_json()
    assert body['count'] == 1
    assert body['customers'][0]['name'] == 'Asha Patel'


def test_record_payment_endpoint(client, app):
    customer = create(client, name='Ravi')
    paid_on = date.today() - timedelta(days=3)

    response = client.put(f"/api/customers/{customer['id']}/payment",
                          json={'paymentDate': paid_on.isoformat(), 'paymentNotes': 'UPI'})

    assert response.status_code == 200
    body = response.get_json()
    assert body['customer']['status'] == PAID
    assert body['customer']['nextDueDate'] == (paid_on + timedelta(days=30)).isoformat()
    assert body['payment']['status'] == PAID
    assert body['payment']['amount'] == 250
    assert body['payment']['notes'] == 'UPI'
    assert Payment.query.count() == 1


def test_record_payment_without_event_returns_no_payment(client):
    customer = create(client, name='Ravi')
    response = client.put(f"/api/customers/{customer['id']}/payment", json={'paymentPlan': 'Yearly'})
    body = response.get_json()
    assert body['payment'] is None
    assert body['customer']['paymentPlan'] == 'Yearly'


def test_record_payment_errors(client):
    assert client.put('/api/customers/999/payment', json={'status': PAID}).status_code == 404
    customer = create(client, name='Ravi')
    response = client.put(f"/api/customers/{customer['id']}/payment", json={'status': 'Frozen'})
    assert response.status_code == 400


def test_update_customer_keeps_billing_fields(client):
    customer = create(client, name='Asha', paymentPlan='Monthly')
    response = client.put(f"/api/customers/{customer['id']}", json={'name': 'Asha K', 'notes': 'vip'})
    body = response.get_json()
    assert body['name'] == 'Asha K'
    assert body['notes'] == 'vip'
    for field in ('status', 'nextDueDate', 'lastPaidDate', 'daysOverdue'):
        assert body[field] == customer[field]


def test_delete_customer(client):
    customer = create(client, name='Asha', paymentPlan='Monthly')
    client.put(f"/api/customers/{customer['id']}/payment", json={'paymentDate': date.today().isoformat()})

    response = client.delete(f"/api/customers/{customer['id']}")

    assert response.status_code == 200
    assert response.get_json()['deletedPayments'] == 1
    assert client.get(f"/api/customers/{customer['id']}").status_code == 404
    assert client.delete(f"/api/customers/{customer['id']}").status_code == 404


def test_reset_payment_data_endpoint(client):
    customer = create(client, name='Asha', paymentPlan='Monthly')
    client.put(f"/api/customers/{customer['id']}/payment", json={'paymentDate': date.today().isoformat()})

    response = client.post('/api/customers/reset-payment-data', query_string={'clearHistory': 'true'})

    assert response.get_json() == {
        'customersUpdated': 1,
        'paymentHistoryCleared': True,
        'deletedPaymentsCount': 1,
    }
    after = client.get(f"/api/customers/{customer['id']}").get_json()
    assert after['status'] == DUE_BUT_ACTIVE
    assert after['nextDueDate'] is None
    assert after['lastPaidDate'] is None


def test_payment_history_endpoints(client):
    customer = create(client, name='Asha', paymentPlan='Monthly')
    url = f"/api/customers/{customer['id']}/payment"
    client.put(url, json={'paymentDate': (date.today() - timedelta(days=40)).isoformat()})
    client.put(url, json={'status': DUE_BUT_ACTIVE})

    history = client.get(f"/api/payments/customer/{customer['id']}").get_json()
    assert history['count'] == 2

    everything = client.get('/api/payments', query_string={'limit': 1}).get_json()
    assert everything['count'] == 1
    assert everything['payments'][0]['customer']['name'] == 'Asha'

    pending = next(p for p in history['payments'] if p['status'] == DUE_BUT_ACTIVE)
    marked = client.put(f"/api/payments/{pending['id']}/mark-paid").get_json()
    assert marked['status'] == PAID
    assert client.put('/api/payments/999/mark-paid').status_code == 404

    cleared = client.delete(f"/api/payments/customer/{customer['id']}").get_json()
    assert cleared['deletedCount'] == 2
    assert client.get(f"/api/payments/customer/{customer['id']}").get_json()['count'] == 0

    assert client.get('/api/payments', query_string={'limit': 'many'}).status_code == 400


def test_dashboard(client, app):
    billing_service.create_customer('Soon', first_payment_date=date.today() - timedelta(days=27))
    soon = billing_service.search_customers(name='Soon')[0]
    billing_service.record_payment(soon.id, status=DUE_BUT_ACTIVE)
    create(client, name='Ahead', paymentPlan='Monthly')

    body = client.get('/api/dashboard').get_json()

    assert body['totalCustomers'] == 2
    assert body['paidCustomers'] == 1
    assert body['dueCustomers'] == 1
    assert body['overdueCustomers'] == 0
    assert [c['name'] for c in body['upcomingDue']] == ['Soon']


def test_due_date_projection(client):
    response = client.get('/api/dashboard/projection',
                          query_string={'paymentPlan': 'Half-Yearly', 'from': '2024-01-01', 'periods': 2})
    assert response.get_json() == {'dueDates': ['2024-06-29', '2024-12-26']}
    assert client.get('/api/dashboard/projection', query_string={'periods': 500}).status_code == 400


def test_unknown_route_is_json_404(client):
    response = client.get('/api/nothing-here')
    assert response.status_code == 404
    assert response.get_json() == {'error': 'Route not found'}


def test_reset_payment_data_command(app):
    billing_service.create_customer('Asha', first_payment_date=date.today())
    runner = app.test_cli_runner()

    result = runner.invoke(args=['reset-payment-data', '--clear-history'])

    assert result.exit_code == 0
    assert 'Customers updated: 1' in result.output
    assert 'Payment records deleted: 0' in result.output
    assert billing_service.list_customers()[0].status == DUE_BUT_ACTIVE


def test_record_payment_accepts_javascript_timestamps(client):
    customer = create(client, name='Ravi')
    response = client.put(f"/api/customers/{customer['id']}/payment",
                          json={'paymentDate': '2024-01-01T00:00:00.000Z'})
    assert response.status_code == 200
    assert response.get_json()['customer']['lastPaidDate'] == '2024-01-01'


def test_non_text_fields_are_bad_requests(client):
    assert client.post('/api/customers', json={'name': 'Ravi', 'serialNumber': 17}).status_code == 400
    assert client.post('/api/customers', json={'name': 'Ravi', 'city': 5}).status_code == 400
    customer = create(client, name='Ravi')
    assert client.put(f"/api/customers/{customer['id']}", json={'notes': 3}).status_code == 400


def test_storage_failure_is_json_500(client, app):
    create(client, name='Ravi')
    db.session.execute(db.text("DROP TABLE payment"))
    db.session.commit()

    response = client.get('/api/payments')
    assert response.status_code == 500
    assert response.get_json() == {'error': 'Could not list payments'}

    response = client.post('/api/customers/reset-payment-data', query_string={'clearHistory': 'true'})
    assert response.status_code == 500
    assert response.get_json() == {'error': 'Could not reset billing data'}

    assert client.get('/api/customers').get_json()['count'] == 1
