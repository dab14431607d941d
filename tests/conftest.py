import copy

import pytest

from formbuilder_crm import create_app
from formbuilder_crm.models import (
    db, Admin, Form, LeadResponse, Payment, SwayamsevakResponse, FormResponse,
    ADMIN_ACTIVE, DEFAULT_SETTINGS, FORM_PUBLISHED, ROLE_ADMIN, ROLE_SUPER_ADMIN,
    PAYMENT_CREATED, PAYMENT_PENDING,
)

RAZORPAY_SECRET = 'rzp_test_secret'
PASSWORD = 'password123'

SECTIONS = [
    {
        'id': 'sec-1',
        'title': 'Your details',
        'order': 0,
        'fields': [
            {'id': 'full-name', 'type': 'text', 'label': 'Full Name', 'required': True},
            {'id': 'email', 'type': 'email', 'label': 'Email Address'},
            {'id': 'phone', 'type': 'text', 'label': 'Mobile Number'},
            {'id': 'sangha', 'type': 'sangha', 'label': 'Sangha'},
            {'id': 'how-heard', 'type': 'source', 'label': 'How did you hear about us?'},
            {'id': 'whatsapp', 'type': 'whatsapp_optin', 'label': 'Join the WhatsApp group'},
        ],
    }
]


@pytest.fixture
def app():
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SECRET_KEY': 'test-secret',
        'JWT_SECRET': 'test-jwt-secret',
        'RAZORPAY_KEY_ID': 'rzp_test_key',
        'RAZORPAY_KEY_SECRET': RAZORPAY_SECRET,
        'RAZORPAY_API_URL': 'https://razorpay.test/v1',
        'RESEND_API_KEY': None,
        'APP_BASE_URL': 'http://forms.test',
    })
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_admin(app):
    def _make(email='super@example.com', role=ROLE_SUPER_ADMIN, password=PASSWORD,
              status=ADMIN_ACTIVE, created_by_id=None):
        with app.app_context():
            admin = Admin(email=email, role=role, status=status, created_by_id=created_by_id)
            if password:
                admin.set_password(password)
            db.session.add(admin)
            db.session.commit()
            return admin.id
    return _make


@pytest.fixture
def super_admin(make_admin):
    return make_admin('super@example.com', ROLE_SUPER_ADMIN)


@pytest.fixture
def admin(make_admin, super_admin):
    return make_admin('admin@example.com', ROLE_ADMIN, created_by_id=super_admin)


@pytest.fixture
def login(client):
    def _login(email='super@example.com', password=PASSWORD):
        response = client.post('/auth/login', json={'email': email, 'password': password})
        assert response.status_code == 200, response.get_json()
        return response
    return _login


@pytest.fixture
def make_form(app):
    def _make(title='Youth Camp', custom_slug='youth-camp', status=FORM_PUBLISHED,
              is_active=None, settings=None, expires_at=None, created_by_id=None):
        with app.app_context():
            merged = dict(DEFAULT_SETTINGS)
            merged.update(settings or {})
            form = Form(
                title=title,
                sections=copy.deepcopy(SECTIONS),
                settings=merged,
                status=status,
                is_active=(status == FORM_PUBLISHED) if is_active is None else is_active,
                custom_slug=custom_slug,
                expires_at=expires_at,
                created_by_id=created_by_id,
            )
            db.session.add(form)
            db.session.commit()
            return form.id
    return _make


@pytest.fixture
def make_submission(app):
    classes = {'lead': LeadResponse, 'swayamsevak': SwayamsevakResponse, 'form_response': FormResponse}

    def _make(form_id=None, collection='lead', responses=None, **fields):
        with app.app_context():
            submission = classes[collection](
                form_id=form_id,
                form_title='Youth Camp',
                responses=responses if responses is not None else [
                    {'fieldId': 'full-name', 'fieldType': 'text', 'fieldLabel': 'Full Name', 'value': 'Asha Rao'},
                ],
                **fields
            )
            db.session.add(submission)
            db.session.commit()
            return submission.id
    return _make


@pytest.fixture
def paid_submission(app, make_form, make_submission):
    """A pending lead submission with a created payment for order_123."""
    form_id = make_form(settings={'userType': 'lead', 'acceptPayments': True, 'paymentAmount': 500})
    submission_id = make_submission(
        form_id, 'lead',
        payment_status=PAYMENT_PENDING,
        payment_amount=500,
        payment_order_id='order_123',
    )
    with app.app_context():
        db.session.add(Payment(
            order_id='order_123',
            form_id=form_id,
            submission_id=submission_id,
            amount=50000,
            currency='INR',
            status=PAYMENT_CREATED,
            customer_details={'name': 'Asha Rao', 'email': 'asha@example.com', 'contact': '9999999999'},
        ))
        db.session.commit()
    return {'form_id': form_id, 'submission_id': submission_id, 'order_id': 'order_123'}
