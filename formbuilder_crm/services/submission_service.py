import logging
from collections import namedtuple

from sqlalchemy import or_

from ..errors import Expired, FormUnavailable, LimitReached, ValidationFailed
from ..models import (
    db, Form, Submission, LeadResponse, SwayamsevakResponse, get_now,
    COLLECTION_FORM_RESPONSE, COLLECTION_LEAD, COLLECTION_SWAYAMSEVAK,
    FORM_PUBLISHED, PAYMENT_NOT_REQUIRED, PAYMENT_PENDING, USER_TYPE_LEAD,
)
from ..utils import parse_datetime

logger = logging.getLogger(__name__)

SubmissionLookup = namedtuple('SubmissionLookup', ['collection', 'submission'])

# Lookup preference orders
PAYMENT_COLLECTIONS = (COLLECTION_LEAD, COLLECTION_SWAYAMSEVAK)
ALL_COLLECTIONS = (COLLECTION_FORM_RESPONSE, COLLECTION_LEAD, COLLECTION_SWAYAMSEVAK)

SANGHA_LEVELS = ('vibhaag', 'khanda', 'valaya', 'milan')
DEFAULT_LEAD_SOURCE = 'form_submission'


def split_sangha_field_id(field_id):
    """'abc-khanda' -> ('abc', 'khanda'); None when not a sangha sub-answer."""
    base, sep, level = (field_id or '').rpartition('-')
    if sep and base and level in SANGHA_LEVELS:
        return base, level
    return None


def join_sangha(parts):
    """Present levels in hierarchy order, 'North > K1'; None when none are set."""
    return ' > '.join(str(parts[level]) for level in SANGHA_LEVELS if parts.get(level)) or None


class SubmissionService:

    @staticmethod
    def find_submission(submission_id, collections=ALL_COLLECTIONS):
        """
        Single lookup across the submission variants. Loads by id, then
        dispatches on the stored `collection`; only collections named in
        `collections` are eligible, in that order of preference.
        Returns SubmissionLookup or None.
        """
        if not submission_id:
            return None
        submission = db.session.get(Submission, submission_id)
        if submission is None:
            return None
        for collection in collections:
            if submission.collection == collection:
                return SubmissionLookup(collection, submission)
        return None

    @staticmethod
    def normalize_responses(form, responses):
        """
        Ordered [{fieldId, fieldType, fieldLabel, value}] enriched from the
        form definition. Accepts a list of answers or a {fieldId: value} map.
        """
        if isinstance(responses, dict):
            responses = [{'fieldId': k, 'value': v} for k, v in responses.items()]
        if not isinstance(responses, list):
            raise ValidationFailed('Invalid responses format')

        field_map = form.field_map()
        normalized = []
        for index, item in enumerate(responses):
            if not isinstance(item, dict) or not item.get('fieldId'):
                raise ValidationFailed('Invalid responses format', details=[f'responses.{index}.fieldId: Field id is required'])
            field_id = str(item['fieldId'])
            field = field_map.get(field_id) or {}
            normalized.append({
                'fieldId': field_id,
                'fieldType': field.get('type') or item.get('fieldType') or 'unknown',
                'fieldLabel': field.get('label') or item.get('fieldLabel') or field_id,
                'value': item.get('value'),
            })
        return normalized

    @staticmethod
    def extract_customer_details(responses):
        name = email = contact = None
        for response in responses:
            label = str(response.get('fieldLabel') or '').lower()
            value = response.get('value')
            if name is None and 'name' in label:
                name = value
            if email is None and response.get('fieldType') == 'email':
                email = value
            if contact is None and ('phone' in label or 'mobile' in label):
                contact = value
        return {
            'name': name or 'Customer',
            'email': email or '',
            'contact': contact or '',
        }

    @staticmethod
    def sangha_parts(responses):
        parts = {}
        for response in responses:
            split = split_sangha_field_id(response.get('fieldId'))
            if split and response.get('value'):
                parts[split[1]] = str(response['value'])
        return parts

    @staticmethod
    def _answer_of_type(responses, field_type):
        for response in responses:
            if response.get('fieldType') == field_type and response.get('value'):
                return response['value']
        return None

    @staticmethod
    def enforce_response_cap(form):
        # Count-then-insert; concurrent submissions near the cap may both pass
        if not form.setting('limitResponses'):
            return
        try:
            max_responses = int(form.setting('maxResponses'))
        except (TypeError, ValueError):
            return
        count = Submission.query.filter_by(form_id=form.id).count()
        if count >= max_responses:
            raise LimitReached()

    @staticmethod
    def build_submission(form, responses, submitted_at=None, ip_address=None, user_agent=None):
        """Unsaved variant instance chosen by the form's declared user type."""
        customer = SubmissionService.extract_customer_details(responses)
        sangha = SubmissionService.sangha_parts(responses)
        requires_payment = form.requires_payment

        common = dict(
            form_id=form.id,
            form_title=form.title,
            form_slug=form.public_slug,
            responses=responses,
            submitted_at=parse_datetime(submitted_at) or get_now(),
            ip_address=ip_address or 'unknown',
            user_agent=user_agent or 'unknown',
            payment_status=PAYMENT_PENDING if requires_payment else PAYMENT_NOT_REQUIRED,
            payment_amount=float(form.setting('paymentAmount') or 0) if requires_payment else 0,
            customer_details=customer,
            name=customer['name'] if customer['name'] != 'Customer' else None,
            email=customer['email'] or None,
            phone=customer['contact'] or None,
            source=SubmissionService._answer_of_type(responses, 'source'),
        )

        if form.user_type == USER_TYPE_LEAD:
            if not common['source']:
                common['source'] = DEFAULT_LEAD_SOURCE
            return LeadResponse(
                lead_score=0,
                status='new',
                khanda=sangha.get('khanda'),
                valaya=sangha.get('valaya'),
                milan_ghat=sangha.get('milan'),
                **common
            )

        return SwayamsevakResponse(
            sangha=join_sangha(sangha),
            khanda=sangha.get('khanda'),
            valaya=sangha.get('valaya'),
            milan_ghat=sangha.get('milan'),
            **common
        )

    @staticmethod
    def _persist(form, responses, submitted_at, ip_address, user_agent):
        normalized = SubmissionService.normalize_responses(form, responses)
        SubmissionService.enforce_response_cap(form)

        submission = SubmissionService.build_submission(
            form, normalized, submitted_at=submitted_at,
            ip_address=ip_address, user_agent=user_agent,
        )
        db.session.add(submission)
        db.session.commit()
        logger.info("Submission %s stored in %s for form %s", submission.id, submission.collection, form.id)
        return submission

    @staticmethod
    def submit(form_id, form_slug, responses, submitted_at=None, ip_address=None, user_agent=None):
        """
        Intake for a client that already holds the form id and the slug it
        was served under. Both must point at the same published, active form.
        """
        # 1. Re-resolve by id and slug together
        form = None
        if form_id and form_slug:
            form = (Form.query
                    .filter(Form.id == str(form_id), Form.status == FORM_PUBLISHED, Form.is_active.is_(True))
                    .filter(or_(Form.custom_slug == form_slug, Form.id == form_slug))
                    .first())
        if not form:
            raise FormUnavailable()

        # 2. Expiry
        if form.is_expired():
            raise Expired()

        # 3. Cap + persist
        return SubmissionService._persist(form, responses, submitted_at, ip_address, user_agent)

    @staticmethod
    def submit_to_form(form, responses, submitted_at=None, ip_address=None, user_agent=None):
        """Intake for a form already resolved through the registry."""
        return SubmissionService._persist(form, responses, submitted_at, ip_address, user_agent)

    @staticmethod
    def public_receipt(form, submission):
        """What the live form page needs after a successful submit."""
        responses = submission.responses or []

        def opted_in(field_type):
            return any(
                r.get('fieldType') == field_type and str(r.get('value')).lower() in ('true', 'agreed', 'yes')
                for r in responses
            )

        return {
            'success': True,
            'message': 'Form response submitted successfully',
            'submissionId': submission.id,
            'formTitle': form.title,
            'userType': form.user_type,
            'paymentRequired': submission.payment_status == PAYMENT_PENDING,
            'paymentAmount': submission.payment_amount or 0,
            'customerDetails': submission.customer_details,
            'groupLinks': {
                'showGroupLinks': bool(form.setting('showGroupLinks')),
                'whatsappGroupLink': form.setting('whatsappGroupLink') or '',
                'arrataiGroupLink': form.setting('arrataiGroupLink') or '',
            },
            'optIns': {
                'whatsapp': opted_in('whatsapp_optin'),
                'arratai': opted_in('arratai_optin'),
            },
        }
