import hashlib
import hmac

import pytest
import requests

from formbuilder_crm.models import db, Payment, Submission
from formbuilder_crm.services import payment_service
from formbuilder_crm.services.payment_service import PaymentService

RAZORPAY_SECRET = 'rzp_test_secret'


def sign(order_id, payment_id, secret=RAZORPAY_SECRET):
    return hmac.new(secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


def verify(client, order_id, payment_id, signature, submission_id):
    return client.post('/payments/verify', json={
        'orderId': order_id,
        'paymentId': payment_id,
        'signature': signature,
        'submissionId': submission_id,
    })


def load(app, paid_submission):
    with app.app_context():
        payment = Payment.query.filter_by(order_id=paid_submission['order_id']).one()
        submission = db.session.get(Submission, paid_submission['submission_id'])
        return payment.to_dict(), submission.to_dict()


def test_signature_helper_matches_gateway_scheme(app):
    with app.app_context():
        assert PaymentService.compute_signature('order_1', 'pay_1') == sign('order_1', 'pay_1', RAZORPAY_SECRET)
        assert PaymentService.is_authentic('order_1', 'pay_1', sign('order_1', 'pay_1'))
        assert not PaymentService.is_authentic('order_1', 'pay_2', sign('order_1', 'pay_1'))


def test_valid_signature_marks_both_records_paid(app, client, paid_submission):
    response = verify(client, 'order_123', 'pay_456', sign('order_123', 'pay_456'), paid_submission['submission_id'])

    assert response.status_code == 200
    assert response.get_json() == {
        'success': True,
        'message': 'Payment verified successfully',
        'paymentId': 'pay_456',
        'orderId': 'order_123',
    }
    payment, submission = load(app, paid_submission)
    assert payment['status'] == 'success'
    assert payment['paymentId'] == 'pay_456'
    assert payment['paidAt'] is not None
    assert submission['paymentStatus'] == 'success'
    assert submission['paymentId'] == 'pay_456'
    assert submission['paymentOrderId'] == 'order_123'
    assert submission['paymentCompletedAt'] is not None


def test_gateway_field_names_are_accepted(app, client, paid_submission):
    response = client.post('/payments/verify', json={
        'razorpay_order_id': 'order_123',
        'razorpay_payment_id': 'pay_456',
        'razorpay_signature': sign('order_123', 'pay_456'),
        'submissionId': paid_submission['submission_id'],
    })
    assert response.status_code == 200


def test_bad_signature_marks_both_records_failed(app, client, paid_submission):
    response = verify(client, 'order_123', 'pay_456', 'f' * 64, paid_submission['submission_id'])

    assert response.status_code == 400
    assert response.get_json() == {'success': False, 'error': 'Payment verification failed - invalid signature'}
    payment, submission = load(app, paid_submission)
    assert payment['status'] == 'failed'
    assert payment['error'] == 'Signature verification failed'
    assert payment['failedAt'] is not None
    assert submission['paymentStatus'] == 'failed'
    assert submission['paymentError'] == 'Signature verification failed'


def test_paid_records_are_not_reversed(app, client, paid_submission):
    submission_id = paid_submission['submission_id']
    assert verify(client, 'order_123', 'pay_456', sign('order_123', 'pay_456'), submission_id).status_code == 200
    assert verify(client, 'order_123', 'pay_456', 'bad', submission_id).status_code == 400

    payment, submission = load(app, paid_submission)
    assert payment['status'] == 'success'
    assert submission['paymentStatus'] == 'success'


def test_valid_signature_after_failure_keeps_failed_state(app, client, paid_submission):
    submission_id = paid_submission['submission_id']
    assert verify(client, 'order_123', 'pay_1', 'tampered', submission_id).status_code == 400

    response = verify(client, 'order_123', 'pay_1', sign('order_123', 'pay_1'), submission_id)

    assert response.status_code == 400
    payment, submission = load(app, paid_submission)
    assert payment['status'] == 'failed'
    assert payment['paymentId'] is None
    assert submission['paymentStatus'] == 'failed'
    assert submission['paymentError'] == 'Signature verification failed'
    assert submission['paymentCompletedAt'] is None


def test_non_ascii_signature_is_rejected(app, client, paid_submission):
    response = verify(client, 'order_123', 'pay_456', 'ÿbad', paid_submission['submission_id'])

    assert response.status_code == 400
    assert response.get_json()['error'] == 'Payment verification failed - invalid signature'
    payment, submission = load(app, paid_submission)
    assert payment['status'] == 'failed'
    assert payment['error'] == 'Signature verification failed'
    assert submission['paymentStatus'] == 'failed'
    assert submission['paymentError'] == 'Signature verification failed'


def test_missing_payment_record_still_updates_submission(app, client, make_form, make_submission):
    form_id = make_form(settings={'userType': 'lead', 'acceptPayments': True, 'paymentAmount': 100})
    submission_id = make_submission(form_id, 'lead', payment_status='pending')

    response = verify(client, 'order_lost', 'pay_1', sign('order_lost', 'pay_1'), submission_id)

    assert response.status_code == 200
    with app.app_context():
        assert db.session.get(Submission, submission_id).payment_status == 'success'


def test_missing_verification_fields(client, paid_submission):
    response = client.post('/payments/verify', json={'orderId': 'order_123', 'paymentId': 'pay_456'})
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Missing required payment verification fields'


def test_error_during_verification_marks_submission_failed(app, client, paid_submission, monkeypatch):
    def broken_record(*args, **kwargs):
        raise RuntimeError('database went away')

    monkeypatch.setattr(PaymentService, '_record_on_payment', staticmethod(broken_record))
    response = verify(client, 'order_123', 'pay_456', sign('order_123', 'pay_456'), paid_submission['submission_id'])

    assert response.status_code == 500
    assert response.get_json() == {'success': False, 'error': 'Failed to verify payment'}
    payment, submission = load(app, paid_submission)
    assert payment['status'] == 'created'
    assert submission['paymentStatus'] == 'failed'
    assert submission['paymentError'] == 'Verification process error'


# ------------------------------------------------------------------
# Status push
# ------------------------------------------------------------------

def test_update_status_on_lead(app, client, make_submission):
    submission_id = make_submission(collection='lead', payment_status='pending')
    response = client.post('/payments/status', json={
        'submissionId': submission_id,
        'status': 'success',
        'paymentId': 'pay_upi_1',
        'orderId': 'order_upi_1',
    })

    assert response.status_code == 200
    body = response.get_json()
    assert body['message'] == 'Payment status updated to success'
    assert body['submission'] == {'id': submission_id, 'paymentStatus': 'success', 'paymentId': 'pay_upi_1'}
    with app.app_context():
        submission = db.session.get(Submission, submission_id)
        assert submission.payment_method == 'upi'
        assert submission.payment_order_id == 'order_upi_1'


def test_update_status_on_swayamsevak(app, client, make_submission):
    submission_id = make_submission(collection='swayamsevak', payment_status='pending')
    response = client.post('/payments/status', json={
        'submissionId': submission_id,
        'status': 'failed',
        'error': 'User cancelled',
        'paymentMethod': 'card',
    })

    assert response.status_code == 200
    with app.app_context():
        submission = db.session.get(Submission, submission_id)
        assert submission.payment_status == 'failed'
        assert submission.payment_error == 'User cancelled'
        assert submission.payment_method == 'card'


def test_update_status_ignores_generic_responses(client, make_submission):
    submission_id = make_submission(collection='form_response')
    response = client.post('/payments/status', json={'submissionId': submission_id, 'status': 'success'})
    assert response.status_code == 404


def test_update_status_validation(client, make_submission):
    assert client.post('/payments/status', json={'status': 'success'}).status_code == 400
    submission_id = make_submission(collection='lead')
    assert client.post('/payments/status', json={'submissionId': submission_id, 'status': 'refunded'}).status_code == 400


# ------------------------------------------------------------------
# Orders
# ------------------------------------------------------------------

class FakeResponse:

    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = str(payload)

    def json(self):
        return self._payload


@pytest.fixture
def gateway(monkeypatch):
    calls = []

    def fake_post(url, json=None, auth=None, timeout=None):
        calls.append({'url': url, 'json': json, 'auth': auth, 'timeout': timeout})
        return FakeResponse(200, {'id': 'order_new', 'amount': json['amount'], 'currency': json['currency']})

    monkeypatch.setattr(payment_service.requests, 'post', fake_post)
    return calls


def test_create_order(app, client, gateway, make_form, make_submission):
    form_id = make_form(settings={'userType': 'lead', 'acceptPayments': True, 'paymentAmount': 500})
    submission_id = make_submission(form_id, 'lead', customer_details={'name': 'Asha', 'email': 'a@example.com', 'contact': '1'})

    response = client.post('/payments/orders', json={'formId': form_id, 'submissionId': submission_id, 'amount': 500})

    assert response.status_code == 200
    body = response.get_json()
    assert body['orderId'] == 'order_new'
    assert body['amount'] == 50000
    assert body['keyId'] == 'rzp_test_key'

    call = gateway[0]
    assert call['url'] == 'https://razorpay.test/v1/orders'
    assert call['json']['receipt'] == f'receipt_{submission_id}'
    assert call['auth'] == ('rzp_test_key', RAZORPAY_SECRET)
    assert call['timeout'] == 15

    with app.app_context():
        payment = Payment.query.filter_by(order_id='order_new').one()
        assert payment.amount == 50000
        assert payment.customer_details['name'] == 'Asha'
        submission = db.session.get(Submission, submission_id)
        assert submission.payment_status == 'pending'
        assert submission.payment_order_id == 'order_new'


def test_create_order_rejects_zero_amount(client, gateway, make_submission):
    submission_id = make_submission(collection='lead')
    response = client.post('/payments/orders', json={'formId': 'f', 'submissionId': submission_id, 'amount': 0})
    assert response.status_code == 400
    assert gateway == []


def test_create_order_gateway_failure(client, monkeypatch, make_form, make_submission):
    def failing_post(*args, **kwargs):
        raise requests.ConnectionError('connection refused')

    monkeypatch.setattr(payment_service.requests, 'post', failing_post)
    form_id = make_form()
    submission_id = make_submission(form_id, 'lead')

    response = client.post('/payments/orders', json={'formId': form_id, 'submissionId': submission_id, 'amount': 10})
    assert response.status_code == 502
    assert response.get_json()['error'] == 'Failed to create payment order'


def test_create_order_for_other_form(client, gateway, make_form, make_submission):
    form_id = make_form()
    submission_id = make_submission(form_id, 'lead')
    response = client.post('/payments/orders', json={'formId': 'another', 'submissionId': submission_id, 'amount': 10})
    assert response.status_code == 400


# ------------------------------------------------------------------
# Reads
# ------------------------------------------------------------------

def test_get_payment_details(client, paid_submission):
    response = client.get('/payments/order_123')

    assert response.status_code == 200
    payment = response.get_json()['payment']
    assert payment['amount'] == 500
    assert payment['formTitle'] == 'Youth Camp'
    assert payment['submission']['collection'] == 'lead'


def test_get_unknown_payment(client):
    assert client.get('/payments/order_missing').status_code == 404


def test_admin_payment_listing(client, super_admin, login, paid_submission):
    login()
    response = client.get('/admin/payments', query_string={'search': 'asha'})

    assert response.status_code == 200
    body = response.get_json()
    assert [p['orderId'] for p in body['payments']] == ['order_123']
    assert body['summary']['totalPayments'] == 1
    assert body['summary']['statusCounts'] == {'created': 1}
    assert body['pagination']['total'] == 1
