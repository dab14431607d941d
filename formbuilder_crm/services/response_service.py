import logging

from sqlalchemy import or_

from ..errors import Forbidden, NotFound, ValidationFailed
from ..models import (
    db, Form, Submission, COLLECTIONS, LEAD_STATUSES, SUBMISSION_PAYMENT_STATUSES,
)
from .submission_service import ALL_COLLECTIONS, SANGHA_LEVELS, SubmissionService, join_sangha, split_sangha_field_id

logger = logging.getLogger(__name__)

CONSENT_FIELDS = {
    'whatsapp_optin_consent': 'WhatsApp Consent',
    'arratai_optin_consent': 'Arratai Consent',
}

# API name -> column
EDITABLE_ALIASES = {
    'responses': 'responses',
    'paymentStatus': 'payment_status',
    'source': 'source',
    'name': 'name',
    'email': 'email',
    'phone': 'phone',
    'leadScore': 'lead_score',
    'status': 'status',
    'khanda': 'khanda',
    'valaya': 'valaya',
    'milanGhat': 'milan_ghat',
    'swayamsevakId': 'swayamsevak_id',
    'sangha': 'sangha',
    'area': 'area',
    'district': 'district',
    'state': 'state',
    'dateOfBirth': 'date_of_birth',
}


def organize_responses(submission, form=None):
    """
    Answers keyed by field id with labels from the current form definition.
    Sangha sub-answers are folded into one 'vibhaag > khanda > valaya > milan'
    entry; consent fields are rendered as Yes/No.
    """
    field_map = form.field_map() if form else {}
    organized = {}
    sangha_groups = {}

    for response in submission.responses or []:
        field_id = response.get('fieldId')
        if field_id in CONSENT_FIELDS:
            organized[field_id] = {
                'label': CONSENT_FIELDS[field_id],
                'value': 'Yes' if response.get('value') == 'agreed' else 'No',
                'type': 'consent',
            }
            continue

        split = split_sangha_field_id(field_id)
        if split:
            base_id, level = split
            sangha_groups.setdefault(base_id, dict.fromkeys(SANGHA_LEVELS, ''))[level] = response.get('value') or ''
            continue

        field = field_map.get(field_id) or {}
        organized[field_id] = {
            'label': field.get('label') or response.get('fieldLabel') or field_id,
            'value': response.get('value'),
            'type': field.get('type') or response.get('fieldType'),
        }

    for base_id, parts in sangha_groups.items():
        field = field_map.get(base_id) or {}
        organized[base_id] = {
            'label': field.get('label') or base_id,
            'value': join_sangha(parts) or '',
            'type': 'sangha_hierarchy',
            'details': parts,
        }
    return organized


class ResponseService:

    @staticmethod
    def visible_query(admin):
        query = Submission.query
        if not admin.is_super_admin:
            own_forms = db.select(Form.id).where(Form.created_by_id == admin.id)
            query = query.filter(Submission.form_id.in_(own_forms))
        return query

    @staticmethod
    def filtered_query(admin, collection=None, form_id=None, payment_status=None, search=None):
        query = ResponseService.visible_query(admin)
        if collection:
            if collection not in COLLECTIONS:
                raise ValidationFailed(f'Invalid collection: {collection}')
            query = query.filter(Submission.collection == collection)
        if form_id:
            query = query.filter(Submission.form_id == form_id)
        if payment_status:
            query = query.filter(Submission.payment_status == payment_status)
        if search:
            like = f"%{search}%"
            query = query.filter(or_(
                Submission.name.ilike(like),
                Submission.email.ilike(like),
                Submission.phone.ilike(like),
                Submission.form_title.ilike(like),
            ))
        return query

    @staticmethod
    def list_responses(admin, page=1, limit=20, **filters):
        query = ResponseService.filtered_query(admin, **filters)
        total = query.count()
        submissions = (query.order_by(Submission.submitted_at.desc())
                       .offset((page - 1) * limit)
                       .limit(limit)
                       .all())

        form_ids = {s.form_id for s in submissions if s.form_id}
        forms = {f.id: f for f in Form.query.filter(Form.id.in_(form_ids)).all()} if form_ids else {}

        rows = []
        for submission in submissions:
            form = forms.get(submission.form_id)
            row = submission.to_dict()
            row['formTitle'] = form.title if form else (submission.form_title or 'Unknown Form')
            row['organizedResponses'] = organize_responses(submission, form)
            rows.append(row)
        return rows, total

    @staticmethod
    def get_for_admin(admin, submission_id):
        lookup = SubmissionService.find_submission(submission_id, ALL_COLLECTIONS)
        if not lookup:
            raise NotFound('Response not found')
        submission = lookup.submission
        if not admin.is_super_admin:
            form = db.session.get(Form, submission.form_id) if submission.form_id else None
            if not form or form.created_by_id != admin.id:
                raise Forbidden()
        return lookup

    @staticmethod
    def _apply_updates(submission, updates):
        applied = []
        errors = []
        for key, value in (updates or {}).items():
            column = EDITABLE_ALIASES.get(key)
            if not column or column not in submission.EDITABLE_FIELDS:
                errors.append(f'{key}: Field cannot be edited for {submission.collection} responses')
                continue
            if column == 'payment_status' and value not in SUBMISSION_PAYMENT_STATUSES:
                errors.append(f'{key}: `{value}` is not a valid payment status')
                continue
            if column == 'status' and value not in LEAD_STATUSES:
                errors.append(f'{key}: `{value}` is not a valid lead status')
                continue
            if column == 'lead_score':
                try:
                    value = int(value)
                except (TypeError, ValueError):
                    errors.append(f'{key}: Lead score must be a number')
                    continue
                if not 0 <= value <= 100:
                    errors.append(f'{key}: Lead score must be between 0 and 100')
                    continue
            if column == 'responses' and not isinstance(value, list):
                errors.append(f'{key}: Responses must be a list')
                continue
            setattr(submission, column, value)
            applied.append(key)
        return applied, errors

    @staticmethod
    def update(admin, submission_id, updates):
        lookup = ResponseService.get_for_admin(admin, submission_id)
        applied, errors = ResponseService._apply_updates(lookup.submission, updates)
        if errors:
            raise ValidationFailed('Validation failed', details=errors)
        db.session.commit()
        logger.info("Response %s updated (%s)", submission_id, ', '.join(applied))
        return lookup.submission

    @staticmethod
    def delete(admin, submission_id):
        lookup = ResponseService.get_for_admin(admin, submission_id)
        db.session.delete(lookup.submission)
        db.session.commit()
        logger.info("Response %s deleted from %s", submission_id, lookup.collection)

    @staticmethod
    def _visible_by_ids(admin, response_ids):
        if not isinstance(response_ids, list) or not response_ids:
            raise ValidationFailed('Invalid response IDs')
        return ResponseService.visible_query(admin).filter(Submission.id.in_(response_ids)).all()

    @staticmethod
    def bulk_delete(admin, response_ids):
        submissions = ResponseService._visible_by_ids(admin, response_ids)
        for submission in submissions:
            db.session.delete(submission)
        db.session.commit()
        logger.info("Bulk delete: %s of %s responses removed", len(submissions), len(response_ids))
        return len(submissions)

    @staticmethod
    def bulk_update(admin, response_ids, updates):
        if not isinstance(updates, dict) or not updates:
            raise ValidationFailed('Updates required for update operation')
        submissions = ResponseService._visible_by_ids(admin, response_ids)

        modified = 0
        errors = []
        for submission in submissions:
            applied, row_errors = ResponseService._apply_updates(submission, updates)
            if applied:
                modified += 1
            errors.extend(f'{submission.id}: {e}' for e in row_errors)
        db.session.commit()
        return {'matchedCount': len(submissions), 'modifiedCount': modified, 'errors': errors}
