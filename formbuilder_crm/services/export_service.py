import csv
import io
import logging
import re

from flask import current_app

from ..errors import ValidationFailed
from ..models import (
    db, BulkUpload, FormResponse, LeadResponse, SwayamsevakResponse, Submission,
    get_now, isoformat, COLLECTION_FORM_RESPONSE, COLLECTION_LEAD, COLLECTION_SWAYAMSEVAK,
    COLLECTIONS, LEAD_STATUSES,
)
from ..utils import parse_datetime
from .form_service import FormService
from .response_service import ResponseService

logger = logging.getLogger(__name__)

BULK_SOURCE = 'bulk_upload'

EXPORT_COLUMNS = [
    ('Response ID', 'id'),
    ('Collection', 'collection'),
    ('Form ID', 'form_id'),
    ('Form Title', 'form_title'),
    ('Submitted At', 'submitted_at'),
    ('Name', 'name'),
    ('Email', 'email'),
    ('Phone', 'phone'),
    ('Source', 'source'),
    ('Payment Status', 'payment_status'),
    ('Payment Amount', 'payment_amount'),
    ('Payment ID', 'payment_id'),
    ('IP Address', 'ip_address'),
]

# Header keywords used to guess the target collection (checked in this order)
SWAYAMSEVAK_KEYWORDS = ('swayamsevakid', 'sangha', 'area', 'district', 'state', 'ghata', 'valaya', 'khanda', 'vibhaag')
LEAD_KEYWORDS = ('name', 'email', 'phone', 'mobile', 'contact', 'address', 'location', 'locality')

# Normalised header -> column
HEADER_ALIASES = {
    'name': 'name', 'fullname': 'name',
    'email': 'email', 'emailaddress': 'email',
    'phone': 'phone', 'mobile': 'phone', 'contact': 'phone',
    'phonenumber': 'phone', 'mobilenumber': 'phone', 'contactnumber': 'phone',
    'source': 'source',
    'status': 'status',
    'leadscore': 'lead_score', 'score': 'lead_score',
    'swayamsevakid': 'swayamsevak_id',
    'sangha': 'sangha',
    'khanda': 'khanda',
    'valaya': 'valaya',
    'milan': 'milan_ghat', 'milanghat': 'milan_ghat', 'ghata': 'milan_ghat',
    'area': 'area',
    'district': 'district',
    'state': 'state',
    'dateofbirth': 'date_of_birth', 'dob': 'date_of_birth',
    'submittedat': 'submitted_at',
}

EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

COLLECTION_ALIASES = {
    'leads': COLLECTION_LEAD,
    'lead': COLLECTION_LEAD,
    'swayamsevak': COLLECTION_SWAYAMSEVAK,
    'form_responses': COLLECTION_FORM_RESPONSE,
    'form_response': COLLECTION_FORM_RESPONSE,
}


def normalize_header(header):
    return re.sub(r'[\s_\-]+', '', (header or '').strip().lower())


def detect_collection(headers):
    keys = [normalize_header(h) for h in headers]
    if any(word in key for word in SWAYAMSEVAK_KEYWORDS for key in keys):
        return COLLECTION_SWAYAMSEVAK
    if any(word in key for word in LEAD_KEYWORDS for key in keys):
        return COLLECTION_LEAD
    return COLLECTION_FORM_RESPONSE


class ResponseExportService:

    @staticmethod
    def export_csv(admin, **filters):
        submissions = (ResponseService.filtered_query(admin, **filters)
                       .order_by(Submission.submitted_at.desc())
                       .all())

        # One column per distinct answer label, in first-seen order
        labels = []
        for submission in submissions:
            for response in submission.responses or []:
                label = response.get('fieldLabel') or response.get('fieldId')
                if label and label not in labels:
                    labels.append(label)

        si = io.StringIO()
        cw = csv.writer(si)
        cw.writerow([title for title, _ in EXPORT_COLUMNS] + labels)

        for submission in submissions:
            answers = {}
            for response in submission.responses or []:
                label = response.get('fieldLabel') or response.get('fieldId')
                value = response.get('value')
                if isinstance(value, list):
                    value = ', '.join(str(v) for v in value)
                answers[label] = '' if value is None else value

            row = []
            for _, attr in EXPORT_COLUMNS:
                value = getattr(submission, attr)
                if attr == 'submitted_at':
                    value = isoformat(value)
                row.append('' if value is None else value)
            cw.writerow(row + [answers.get(label, '') for label in labels])

        output = si.getvalue()
        si.close()
        return output, len(submissions)

    # ------------------------------------------------------------------
    # Bulk import
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_submission(row, collection, form, source, row_number):
        """Builds an unsaved submission from a CSV row; raises ValueError on bad data."""
        mapped = {}
        responses = []
        field_map = {}
        if form:
            for field in form.field_map().values():
                field_map[(field.get('label') or '').strip().lower()] = field
                field_map[(field.get('id') or '').strip().lower()] = field

        for header, value in row.items():
            if header is None:
                continue
            value = (value or '').strip()
            if not value:
                continue
            column = HEADER_ALIASES.get(normalize_header(header))
            if column and column not in mapped:
                mapped[column] = value
                if column in ('name', 'email', 'phone', 'source', 'status', 'lead_score', 'submitted_at'):
                    continue
            field = field_map.get(header.strip().lower()) or {}
            responses.append({
                'fieldId': field.get('id') or header.strip(),
                'fieldType': field.get('type') or 'text',
                'fieldLabel': field.get('label') or header.strip(),
                'value': value,
            })

        email = mapped.get('email')
        if email and not EMAIL_PATTERN.match(email):
            raise ValueError(f'Invalid email: {email}')

        common = dict(
            form_id=form.id if form else None,
            form_title=form.title if form else None,
            form_slug=form.public_slug if form else None,
            responses=responses,
            submitted_at=parse_datetime(mapped.get('submitted_at')) or get_now(),
            ip_address=BULK_SOURCE,
            user_agent=BULK_SOURCE,
            name=mapped.get('name'),
            email=email,
            phone=mapped.get('phone'),
            source=mapped.get('source') or source or BULK_SOURCE,
        )

        if collection == COLLECTION_LEAD:
            if not (common['name'] or common['email'] or common['phone']):
                raise ValueError('A lead needs a name, email or phone')
            try:
                score = int(mapped.get('lead_score') or 0)
            except ValueError:
                raise ValueError(f"Lead score must be a number, got {mapped['lead_score']}")
            if not 0 <= score <= 100:
                raise ValueError('Lead score must be between 0 and 100')
            status = (mapped.get('status') or 'new').lower()
            if status not in LEAD_STATUSES:
                raise ValueError(f'Invalid lead status: {status}')
            return LeadResponse(
                lead_score=score,
                status=status,
                khanda=mapped.get('khanda'),
                valaya=mapped.get('valaya'),
                milan_ghat=mapped.get('milan_ghat'),
                **common
            )

        if collection == COLLECTION_SWAYAMSEVAK:
            if not common['name']:
                raise ValueError('Name is required')
            return SwayamsevakResponse(
                swayamsevak_id=mapped.get('swayamsevak_id') or f'SW{row_number:05d}-{get_now():%Y%m%d%H%M%S}',
                sangha=mapped.get('sangha'),
                khanda=mapped.get('khanda'),
                valaya=mapped.get('valaya'),
                milan_ghat=mapped.get('milan_ghat'),
                area=mapped.get('area'),
                district=mapped.get('district'),
                state=mapped.get('state'),
                date_of_birth=mapped.get('date_of_birth'),
                **common
            )

        if not responses and not (common['name'] or common['email'] or common['phone']):
            raise ValueError('Row has no data')
        return FormResponse(**common)

    @staticmethod
    def import_csv(file_storage, admin, form_id=None, collection=None, source=None):
        """
        Imports one CSV upload. Per-row failures are collected as
        'Row N: message' and do not stop the import.
        """
        filename = getattr(file_storage, 'filename', None) or ''
        if not filename:
            raise ValidationFailed('No file uploaded')
        if not filename.lower().endswith('.csv'):
            raise ValidationFailed('Only CSV files are supported')

        if collection:
            collection = COLLECTION_ALIASES.get(collection, collection)
            if collection not in COLLECTIONS:
                raise ValidationFailed(f'Invalid collection: {collection}')

        form = None
        if form_id:
            form = FormService.get_for_admin(form_id, admin)

        content = file_storage.read()
        if isinstance(content, bytes):
            content = content.decode('utf-8-sig', errors='replace')
        reader = csv.DictReader(io.StringIO(content, newline=''))
        headers = reader.fieldnames or []
        if not headers:
            raise ValidationFailed('CSV file is empty')

        target = collection or detect_collection(headers)
        upload = BulkUpload(
            filename=filename,
            form_id=form.id if form else None,
            target_collection=target,
            upload_type='csv',
            source=source,
            status='processing',
            uploaded_by_id=admin.id,
        )
        db.session.add(upload)

        max_rows = current_app.config['MAX_BULK_UPLOAD_ROWS']
        success = 0
        errors = []
        total = 0
        truncated = False
        for index, row in enumerate(reader, start=1):
            if index > max_rows:
                # Rows past the limit are not read
                truncated = True
                errors.append(f'Upload limit of {max_rows} rows exceeded; remaining rows were not imported')
                break
            total += 1
            try:
                submission = ResponseExportService._row_to_submission(row, target, form, source, index)
            except (ValueError, ValidationFailed) as e:
                message = e.message if isinstance(e, ValidationFailed) else str(e)
                errors.append(f'Row {index}: {message}')
                continue
            db.session.add(submission)
            success += 1

        upload.total_records = total
        upload.successful_records = success
        upload.failed_records = total - success
        upload.errors = errors
        if total and success == total and not truncated:
            upload.status = 'completed'
        elif success:
            upload.status = 'partial'
        else:
            upload.status = 'failed'
        upload.completed_at = get_now()
        db.session.commit()

        logger.info("Bulk upload %s into %s: %s/%s rows imported", filename, target, success, total)
        return upload

    @staticmethod
    def list_uploads(admin):
        query = BulkUpload.query
        if not admin.is_super_admin:
            query = query.filter(BulkUpload.uploaded_by_id == admin.id)
        return query.order_by(BulkUpload.created_at.desc()).all()
