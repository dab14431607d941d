import uuid
from datetime import datetime, timezone

from flask_login import UserMixin
from flask_sqlalchemy import SQLAlchemy
from werkzeug.security import generate_password_hash, check_password_hash

from .utils import parse_datetime


def get_now():
    """Current UTC time as a naive datetime (the way it is stored)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id():
    return str(uuid.uuid4())


def isoformat(value):
    return value.isoformat() if value else None


db = SQLAlchemy()

# Admin roles / lifecycle
ROLE_ADMIN = 'admin'
ROLE_SUPER_ADMIN = 'super_admin'
ADMIN_ROLES = (ROLE_ADMIN, ROLE_SUPER_ADMIN)

ADMIN_PENDING = 'pending'
ADMIN_ACTIVE = 'active'

# Form lifecycle
FORM_DRAFT = 'draft'
FORM_PUBLISHED = 'published'
FORM_STATUSES = (FORM_DRAFT, FORM_PUBLISHED)

USER_TYPE_LEAD = 'lead'
USER_TYPE_SWAYAMSEVAK = 'swayamsevak'

FIELD_TYPES = (
    'text', 'email', 'number', 'textarea', 'select', 'radio', 'checkbox',
    'date', 'sangha', 'file', 'whatsapp_optin', 'arratai_optin',
    'readonly_text', 'source',
)
RULE_OPERATORS = ('equals', 'not_equals', 'contains', 'greater_than', 'less_than')

DEFAULT_THEME = {
    'primaryColor': '#7C3AED',
    'backgroundColor': '#FFFFFF',
    'textColor': '#1F2937',
    'fontFamily': 'Inter',
}

DEFAULT_IMAGES = {'logo': '', 'banner': '', 'background': ''}

DEFAULT_SETTINGS = {
    'userType': USER_TYPE_SWAYAMSEVAK,
    'limitResponses': False,
    'maxResponses': 1000,
    'acceptPayments': False,
    'paymentAmount': 0,
    'currency': 'INR',
    'enableCustomSlug': False,
    'allowMultipleResponses': False,
    'enableProgressSave': True,
    'collectEmail': False,
    'showGroupLinks': False,
    'whatsappGroupLink': '',
    'arrataiGroupLink': '',
}

# Submission collections (stored discriminator)
COLLECTION_FORM_RESPONSE = 'form_response'
COLLECTION_LEAD = 'lead'
COLLECTION_SWAYAMSEVAK = 'swayamsevak'
COLLECTIONS = (COLLECTION_FORM_RESPONSE, COLLECTION_LEAD, COLLECTION_SWAYAMSEVAK)

# Submission payment sub-state
PAYMENT_NOT_REQUIRED = 'not_required'
PAYMENT_PENDING = 'pending'
PAYMENT_SUCCESS = 'success'
PAYMENT_FAILED = 'failed'
SUBMISSION_PAYMENT_STATUSES = (PAYMENT_NOT_REQUIRED, PAYMENT_PENDING, PAYMENT_SUCCESS, PAYMENT_FAILED)

# Payment record lifecycle
PAYMENT_CREATED = 'created'
PAYMENT_ATTEMPTED = 'attempted'
PAYMENT_TERMINAL_STATUSES = (PAYMENT_SUCCESS, PAYMENT_FAILED)

LEAD_STATUSES = ('new', 'contacted', 'qualified', 'converted', 'rejected')


class Admin(UserMixin, db.Model):
    __tablename__ = 'admin'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=True) # Set on activation
    role = db.Column(db.String(20), nullable=False, default=ROLE_ADMIN)
    status = db.Column(db.String(20), nullable=False, default=ADMIN_PENDING)
    invitation_token = db.Column(db.String(128), unique=True, nullable=True)
    invitation_expires = db.Column(db.DateTime, nullable=True)
    created_by_id = db.Column(db.String(36), db.ForeignKey('admin.id'), nullable=True)
    last_login = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=get_now)
    updated_at = db.Column(db.DateTime, default=get_now, onupdate=get_now)

    created_by = db.relationship('Admin', remote_side=[id], backref='invited_admins')

    @property
    def is_super_admin(self):
        return self.role == ROLE_SUPER_ADMIN

    @property
    def is_pending(self):
        return self.status == ADMIN_PENDING

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        if not self.password_hash:
            return False
        return check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'role': self.role,
            'status': self.status,
            'createdBy': self.created_by.email if self.created_by else None,
            'lastLogin': isoformat(self.last_login),
            'createdAt': isoformat(self.created_at),
        }


class Form(db.Model):
    __tablename__ = 'form'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    title = db.Column(db.String(200), nullable=False)
    form_name = db.Column(db.String(200), nullable=True) # Internal name
    description = db.Column(db.Text, nullable=True)

    theme = db.Column(db.JSON, nullable=False, default=lambda: dict(DEFAULT_THEME))
    images = db.Column(db.JSON, nullable=False, default=lambda: dict(DEFAULT_IMAGES))
    sections = db.Column(db.JSON, nullable=False, default=list)
    settings = db.Column(db.JSON, nullable=False, default=lambda: dict(DEFAULT_SETTINGS))

    # Queried settings live in their own columns
    status = db.Column(db.String(20), nullable=False, default=FORM_DRAFT, index=True)
    custom_slug = db.Column(db.String(100), nullable=True, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=False, index=True)
    expires_at = db.Column(db.DateTime, nullable=True)

    created_by_id = db.Column(db.String(36), db.ForeignKey('admin.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=get_now)
    updated_at = db.Column(db.DateTime, default=get_now, onupdate=get_now)

    created_by = db.relationship('Admin', backref='forms')
    submissions = db.relationship('Submission', backref='form', cascade='all, delete-orphan')

    def setting(self, key, default=None):
        value = (self.settings or {}).get(key)
        if value is None:
            return DEFAULT_SETTINGS.get(key, default)
        return value

    @property
    def public_slug(self):
        return self.custom_slug or self.id

    @property
    def user_type(self):
        if self.setting('userType') == USER_TYPE_LEAD:
            return USER_TYPE_LEAD
        return USER_TYPE_SWAYAMSEVAK

    @property
    def requires_payment(self):
        amount = self.setting('paymentAmount') or 0
        try:
            amount = float(amount)
        except (TypeError, ValueError):
            return False
        return bool(self.setting('acceptPayments')) and amount > 0

    def is_expired(self, now=None):
        if not self.expires_at:
            return False
        return (now or get_now()) > self.expires_at

    def is_publicly_reachable(self, now=None):
        return self.status == FORM_PUBLISHED and self.is_active and not self.is_expired(now)

    def field_map(self):
        """Field id -> field definition, nested fields included."""
        fields = {}
        for section in self.sections or []:
            for field in section.get('fields') or []:
                fields[field.get('id')] = field
                for nested in field.get('nestedFields') or []:
                    fields[nested.get('id')] = nested
        return fields

    def apply_settings(self, settings):
        """Merge incoming settings, lifting the queried keys into columns."""
        settings = dict(settings or {})
        if 'customSlug' in settings:
            self.custom_slug = (settings.pop('customSlug') or '').strip() or None
        if 'isActive' in settings:
            self.is_active = bool(settings.pop('isActive'))
        if 'expiresAt' in settings:
            self.expires_at = parse_datetime(settings.pop('expiresAt'))

        merged = dict(self.settings or {})
        merged.update(settings)
        self.settings = merged

    def validate(self):
        errors = []
        if not (self.title or '').strip():
            errors.append('title: Form title is required')
        elif len(self.title) > 100:
            errors.append('title: Form title cannot exceed 100 characters')
        if self.form_name and len(self.form_name) > 100:
            errors.append('form_name: Form name cannot exceed 100 characters')
        if self.status not in FORM_STATUSES:
            errors.append(f'status: `{self.status}` is not a valid status')

        for s_index, section in enumerate(self.sections or []):
            if not isinstance(section, dict):
                errors.append(f'sections.{s_index}: Section must be an object')
                continue
            for f_index, field in enumerate(section.get('fields') or []):
                path = f'sections.{s_index}.fields.{f_index}'
                if not field.get('id'):
                    errors.append(f'{path}.id: Field id is required')
                if field.get('type') not in FIELD_TYPES:
                    errors.append(f"{path}.type: `{field.get('type')}` is not a valid field type")
                for r_index, rule in enumerate(field.get('conditionalRules') or []):
                    if rule.get('operator') not in RULE_OPERATORS:
                        errors.append(f"{path}.conditionalRules.{r_index}.operator: `{rule.get('operator')}` is not a valid operator")

        user_type = (self.settings or {}).get('userType')
        if user_type and user_type not in (USER_TYPE_LEAD, USER_TYPE_SWAYAMSEVAK):
            errors.append(f'settings.userType: `{user_type}` is not a valid user type')
        return errors

    def full_settings(self):
        settings = dict(DEFAULT_SETTINGS)
        settings.update(self.settings or {})
        settings['customSlug'] = self.custom_slug or ''
        settings['isActive'] = bool(self.is_active)
        settings['expiresAt'] = isoformat(self.expires_at)
        return settings

    def to_public_dict(self):
        settings = self.full_settings()
        return {
            'id': self.id,
            'title': self.title,
            'description': self.description,
            'slug': self.public_slug,
            'theme': dict(DEFAULT_THEME, **(self.theme or {})),
            'images': dict(DEFAULT_IMAGES, **(self.images or {})),
            'sections': self.sections or [],
            'settings': {
                key: settings.get(key)
                for key in ('userType', 'acceptPayments', 'paymentAmount', 'currency',
                            'enableProgressSave', 'collectEmail', 'showGroupLinks',
                            'whatsappGroupLink', 'arrataiGroupLink', 'expiresAt')
            },
        }

    def to_dict(self):
        data = self.to_public_dict()
        data.update({
            'formName': self.form_name,
            'status': self.status,
            'settings': self.full_settings(),
            'createdBy': self.created_by_id,
            'createdAt': isoformat(self.created_at),
            'updatedAt': isoformat(self.updated_at),
        })
        return data


class Submission(db.Model):
    """
    Common part of every stored response. The `collection` column names
    the variant; lead and volunteer variants keep their extra columns in
    their own tables.
    """
    __tablename__ = 'submission'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    collection = db.Column(db.String(20), nullable=False, index=True)
    form_id = db.Column(db.String(36), db.ForeignKey('form.id'), nullable=True, index=True)
    form_title = db.Column(db.String(200), nullable=True)
    form_slug = db.Column(db.String(100), nullable=True)
    responses = db.Column(db.JSON, nullable=False, default=list) # [{fieldId, fieldType, fieldLabel, value}]

    submitted_at = db.Column(db.DateTime, default=get_now, index=True)
    updated_at = db.Column(db.DateTime, default=get_now, onupdate=get_now)
    ip_address = db.Column(db.String(255), nullable=False, default='unknown')
    user_agent = db.Column(db.String(512), nullable=False, default='unknown')

    payment_status = db.Column(db.String(20), nullable=False, default=PAYMENT_NOT_REQUIRED)
    payment_amount = db.Column(db.Float, default=0)
    payment_order_id = db.Column(db.String(100), nullable=True)
    payment_id = db.Column(db.String(100), nullable=True)
    payment_method = db.Column(db.String(30), nullable=True)
    payment_error = db.Column(db.String(255), nullable=True)
    payment_completed_at = db.Column(db.DateTime, nullable=True)
    customer_details = db.Column(db.JSON, nullable=True)

    source = db.Column(db.String(100), nullable=True)
    name = db.Column(db.String(200), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(50), nullable=True)

    __mapper_args__ = {'polymorphic_on': collection}

    # Fields an admin may edit through the response manager
    EDITABLE_FIELDS = ('responses', 'payment_status', 'source', 'name', 'email', 'phone')

    def answer(self, field_id):
        for response in self.responses or []:
            if response.get('fieldId') == field_id:
                return response.get('value')
        return None

    def extra_dict(self):
        return {}

    def to_dict(self):
        data = {
            'id': self.id,
            'collection': self.collection,
            'formId': self.form_id,
            'formTitle': self.form_title,
            'formSlug': self.form_slug,
            'responses': self.responses or [],
            'submittedAt': isoformat(self.submitted_at),
            'updatedAt': isoformat(self.updated_at),
            'ipAddress': self.ip_address,
            'userAgent': self.user_agent,
            'paymentStatus': self.payment_status,
            'paymentAmount': self.payment_amount,
            'paymentOrderId': self.payment_order_id,
            'paymentId': self.payment_id,
            'paymentMethod': self.payment_method,
            'paymentError': self.payment_error,
            'paymentCompletedAt': isoformat(self.payment_completed_at),
            'customerDetails': self.customer_details,
            'source': self.source,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
        }
        data.update(self.extra_dict())
        return data


class FormResponse(Submission):
    __mapper_args__ = {'polymorphic_identity': COLLECTION_FORM_RESPONSE}


class LeadResponse(Submission):
    __tablename__ = 'lead_response'
    id = db.Column(db.String(36), db.ForeignKey('submission.id', ondelete='CASCADE'), primary_key=True)
    lead_score = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default='new')
    khanda = db.Column(db.String(100), nullable=True)
    valaya = db.Column(db.String(100), nullable=True)
    milan_ghat = db.Column(db.String(100), nullable=True)

    __mapper_args__ = {'polymorphic_identity': COLLECTION_LEAD}

    EDITABLE_FIELDS = Submission.EDITABLE_FIELDS + ('lead_score', 'status', 'khanda', 'valaya', 'milan_ghat')

    def extra_dict(self):
        return {
            'leadScore': self.lead_score,
            'status': self.status,
            'khanda': self.khanda,
            'valaya': self.valaya,
            'milanGhat': self.milan_ghat,
        }


class SwayamsevakResponse(Submission):
    __tablename__ = 'swayamsevak_response'
    id = db.Column(db.String(36), db.ForeignKey('submission.id', ondelete='CASCADE'), primary_key=True)
    swayamsevak_id = db.Column(db.String(100), nullable=True)
    sangha = db.Column(db.String(200), nullable=True)
    khanda = db.Column(db.String(100), nullable=True)
    valaya = db.Column(db.String(100), nullable=True)
    milan_ghat = db.Column(db.String(100), nullable=True)
    area = db.Column(db.String(200), nullable=True)
    district = db.Column(db.String(100), nullable=True)
    state = db.Column(db.String(100), nullable=True)
    date_of_birth = db.Column(db.String(20), nullable=True)

    __mapper_args__ = {'polymorphic_identity': COLLECTION_SWAYAMSEVAK}

    EDITABLE_FIELDS = Submission.EDITABLE_FIELDS + (
        'swayamsevak_id', 'sangha', 'khanda', 'valaya', 'milan_ghat',
        'area', 'district', 'state', 'date_of_birth',
    )

    def extra_dict(self):
        return {
            'swayamsevakId': self.swayamsevak_id,
            'sangha': self.sangha,
            'khanda': self.khanda,
            'valaya': self.valaya,
            'milanGhat': self.milan_ghat,
            'area': self.area,
            'district': self.district,
            'state': self.state,
            'dateOfBirth': self.date_of_birth,
        }


SUBMISSION_CLASSES = {
    COLLECTION_FORM_RESPONSE: FormResponse,
    COLLECTION_LEAD: LeadResponse,
    COLLECTION_SWAYAMSEVAK: SwayamsevakResponse,
}


class Payment(db.Model):
    __tablename__ = 'payment'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    order_id = db.Column(db.String(100), unique=True, nullable=False, index=True)
    payment_id = db.Column(db.String(100), nullable=True, index=True)
    form_id = db.Column(db.String(36), nullable=False, index=True)
    submission_id = db.Column(db.String(36), nullable=False, index=True)
    amount = db.Column(db.Integer, nullable=False) # Minor units (paise)
    currency = db.Column(db.String(3), nullable=False, default='INR')
    status = db.Column(db.String(20), nullable=False, default=PAYMENT_CREATED, index=True)
    customer_details = db.Column(db.JSON, nullable=True) # {name, email, contact}
    gateway_signature = db.Column(db.String(255), nullable=True)
    error = db.Column(db.String(255), nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    failed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=get_now, index=True)
    updated_at = db.Column(db.DateTime, default=get_now, onupdate=get_now)

    @property
    def is_terminal(self):
        return self.status in PAYMENT_TERMINAL_STATUSES

    def to_dict(self):
        return {
            'id': self.id,
            'orderId': self.order_id,
            'paymentId': self.payment_id,
            'formId': self.form_id,
            'submissionId': self.submission_id,
            'amount': self.amount / 100.0,
            'currency': self.currency,
            'status': self.status,
            'customerDetails': self.customer_details or {},
            'error': self.error,
            'paidAt': isoformat(self.paid_at),
            'failedAt': isoformat(self.failed_at),
            'createdAt': isoformat(self.created_at),
        }


class Source(db.Model):
    __tablename__ = 'source'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    sort_order = db.Column('order', db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=get_now)
    updated_at = db.Column(db.DateTime, default=get_now, onupdate=get_now)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'isActive': self.is_active,
            'order': self.sort_order,
            'createdAt': isoformat(self.created_at),
        }


class BulkUpload(db.Model):
    __tablename__ = 'bulk_upload'
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    filename = db.Column(db.String(255), nullable=False)
    form_id = db.Column(db.String(36), nullable=True)
    target_collection = db.Column(db.String(20), nullable=False)
    upload_type = db.Column(db.String(20), nullable=False, default='csv')
    source = db.Column(db.String(100), nullable=True)
    status = db.Column(db.String(20), nullable=False, default='processing') # processing, completed, failed, partial
    total_records = db.Column(db.Integer, default=0)
    successful_records = db.Column(db.Integer, default=0)
    failed_records = db.Column(db.Integer, default=0)
    errors = db.Column(db.JSON, nullable=False, default=list)
    uploaded_by_id = db.Column(db.String(36), db.ForeignKey('admin.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=get_now)
    completed_at = db.Column(db.DateTime, nullable=True)

    uploaded_by = db.relationship('Admin')

    def to_dict(self):
        return {
            'id': self.id,
            'filename': self.filename,
            'formId': self.form_id,
            'collection': self.target_collection,
            'uploadType': self.upload_type,
            'source': self.source,
            'status': self.status,
            'totalRecords': self.total_records,
            'successfulRecords': self.successful_records,
            'failedRecords': self.failed_records,
            'errors': self.errors or [],
            'uploadedBy': self.uploaded_by.email if self.uploaded_by else None,
            'createdAt': isoformat(self.created_at),
            'completedAt': isoformat(self.completed_at),
        }
