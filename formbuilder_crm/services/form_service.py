import copy
import logging
import re

from sqlalchemy import func, or_

from ..errors import Conflict, Expired, Forbidden, FormUnavailable, NotFound, ValidationFailed
from ..models import (
    db, Form, Submission, DEFAULT_IMAGES, DEFAULT_SETTINGS, DEFAULT_THEME,
    FORM_DRAFT, FORM_PUBLISHED, FORM_STATUSES, isoformat,
)

logger = logging.getLogger(__name__)

SLUG_PATTERN = re.compile(r'^[a-z0-9-]+$')
SLUG_MIN_LENGTH = 3

SLUG_TOO_SHORT = 'Slug must be at least 3 characters'
SLUG_BAD_CHARSET = 'Only lowercase letters, numbers, and hyphens allowed'
SLUG_AVAILABLE = 'Slug is available!'
SLUG_TAKEN = 'Slug is already taken'


class FormService:

    # ------------------------------------------------------------------
    # Public resolution / slugs
    # ------------------------------------------------------------------

    @staticmethod
    def resolve_for_public_access(slug):
        """
        Published, active form reachable at `slug` (custom slug or raw id).
        Raises FormUnavailable when nothing matches, Expired when the match is past expiry.
        """
        if not slug:
            raise FormUnavailable()
        form = (Form.query
                .filter(Form.status == FORM_PUBLISHED, Form.is_active.is_(True))
                .filter(or_(Form.custom_slug == slug, Form.id == slug))
                .order_by((Form.custom_slug == slug).desc())
                .first())
        if not form:
            raise FormUnavailable()
        if form.is_expired():
            raise Expired()
        return form

    @staticmethod
    def slug_format_error(slug):
        if len(slug) < SLUG_MIN_LENGTH:
            return SLUG_TOO_SHORT
        if not SLUG_PATTERN.match(slug):
            return SLUG_BAD_CHARSET
        return None

    @staticmethod
    def slug_in_use(slug, excluding_form_id=None):
        # Slugs and raw ids share one lookup namespace
        query = Form.query.filter(Form.is_active.is_(True),
                                  or_(Form.custom_slug == slug, Form.id == slug))
        if excluding_form_id:
            query = query.filter(Form.id != excluding_form_id)
        return db.session.query(query.exists()).scalar()

    @staticmethod
    def check_slug_available(slug, excluding_form_id=None):
        """Returns (available, message)."""
        error = FormService.slug_format_error(slug)
        if error:
            return False, error
        if FormService.slug_in_use(slug, excluding_form_id):
            return False, SLUG_TAKEN
        return True, SLUG_AVAILABLE

    # ------------------------------------------------------------------
    # Admin CRUD
    # ------------------------------------------------------------------

    @staticmethod
    def visible_forms_query(admin):
        query = Form.query
        if not admin.is_super_admin:
            query = query.filter(Form.created_by_id == admin.id)
        return query

    @staticmethod
    def get_for_admin(form_id, admin):
        form = db.session.get(Form, form_id)
        if not form:
            raise NotFound('Form not found')
        if not admin.is_super_admin and form.created_by_id != admin.id:
            raise Forbidden()
        return form

    @staticmethod
    def _ensure_valid(form):
        errors = form.validate()
        if errors:
            raise ValidationFailed('Validation failed', details=errors)

    @staticmethod
    def create_form(data, admin):
        theme = dict(DEFAULT_THEME)
        theme.update(data.get('theme') or {})
        images = dict(DEFAULT_IMAGES)
        images.update(data.get('images') or {})

        form = Form(
            title=(data.get('title') or '').strip(),
            form_name=data.get('formName'),
            description=data.get('description') or '',
            theme=theme,
            images=images,
            sections=data.get('sections') or [],
            settings=dict(DEFAULT_SETTINGS),
            status=FORM_DRAFT,
            is_active=False,
            created_by_id=admin.id,
        )
        form.apply_settings(data.get('settings'))
        # New forms always start as drafts
        form.is_active = False
        FormService._ensure_valid(form)

        db.session.add(form)
        db.session.commit()
        logger.info("Form %s created by %s", form.id, admin.email)
        return form

    @staticmethod
    def update_form(form, data):
        """Full update of the builder document (sections, theme, images, settings)."""
        for key, attr in (('title', 'title'), ('formName', 'form_name'), ('description', 'description')):
            if key in data:
                setattr(form, attr, data[key])
        if 'sections' in data:
            form.sections = data.get('sections') or []
        if 'theme' in data:
            theme = dict(form.theme or DEFAULT_THEME)
            theme.update(data.get('theme') or {})
            form.theme = theme
        if 'images' in data:
            images = dict(form.images or DEFAULT_IMAGES)
            images.update(data.get('images') or {})
            form.images = images
        if 'settings' in data:
            settings = dict(data.get('settings') or {})
            # Publication flags only change through update_settings
            settings.pop('isActive', None)
            settings.pop('customSlug', None)
            form.apply_settings(settings)

        FormService._ensure_valid(form)
        db.session.commit()
        return form

    @staticmethod
    def patch_form(form, data):
        """Partial update of the listing fields: title, formName, description, status."""
        if 'title' in data:
            form.title = (data.get('title') or '').strip()
        if 'formName' in data:
            form.form_name = (data.get('formName') or '').strip() or None
        if 'description' in data:
            form.description = data.get('description') or ''
        if data.get('status'):
            # Status changes go through the publish transition
            return FormService.update_settings(form, status=data['status'])

        FormService._ensure_valid(form)
        db.session.commit()
        return form

    @staticmethod
    def update_settings(form, status=None, settings=None, theme=None):
        """
        Publish transition. Publishing with a custom slug re-checks the slug
        at this moment; the check and the write are not atomic.
        """
        status = status or form.status
        if status not in FORM_STATUSES:
            raise ValidationFailed('Validation failed', details=[f'status: `{status}` is not a valid status'])

        settings = dict(settings or {})
        enable_custom_slug = bool(settings.get('enableCustomSlug', form.setting('enableCustomSlug')))
        custom_slug = (settings.get('customSlug') or '').strip() if 'customSlug' in settings else form.custom_slug

        if enable_custom_slug and custom_slug:
            error = FormService.slug_format_error(custom_slug)
            if error:
                raise ValidationFailed(error)
        if status == FORM_PUBLISHED and enable_custom_slug and custom_slug:
            if FormService.slug_in_use(custom_slug, excluding_form_id=form.id):
                raise Conflict('The chosen slug is already taken by another form')

        form.apply_settings(settings)
        form.status = status
        form.is_active = status == FORM_PUBLISHED
        form.custom_slug = custom_slug if enable_custom_slug and custom_slug else None

        if theme:
            merged = dict(form.theme or DEFAULT_THEME)
            merged.update(theme)
            form.theme = merged

        FormService._ensure_valid(form)
        db.session.commit()
        logger.info("Form %s settings updated (status=%s, slug=%s)", form.id, form.status, form.public_slug)
        return form

    @staticmethod
    def duplicate(form, admin):
        settings = copy.deepcopy(form.settings or {})
        copy_form = Form(
            title=f"{form.title} (Copy)"[:100],
            form_name=form.form_name,
            description=form.description,
            theme=copy.deepcopy(form.theme),
            images=copy.deepcopy(form.images),
            sections=copy.deepcopy(form.sections),
            settings=settings,
            status=FORM_DRAFT,
            is_active=False,
            custom_slug=None,
            expires_at=form.expires_at,
            created_by_id=admin.id,
        )
        db.session.add(copy_form)
        db.session.commit()
        return copy_form

    @staticmethod
    def delete(form):
        # Submissions go with the form (relationship cascade)
        form_id = form.id
        db.session.delete(form)
        db.session.commit()
        logger.info("Form %s deleted", form_id)

    @staticmethod
    def response_counts(form_ids):
        if not form_ids:
            return {}
        rows = (db.session.query(Submission.form_id, func.count(Submission.id))
                .filter(Submission.form_id.in_(form_ids))
                .group_by(Submission.form_id)
                .all())
        return dict(rows)

    @staticmethod
    def list_forms(admin, status=None, search=None):
        query = FormService.visible_forms_query(admin)
        if status:
            query = query.filter(Form.status == status)
        if search:
            like = f"%{search}%"
            query = query.filter(or_(Form.title.ilike(like), Form.form_name.ilike(like)))
        forms = query.order_by(Form.created_at.desc()).all()
        counts = FormService.response_counts([f.id for f in forms])
        result = []
        for form in forms:
            data = form.to_dict()
            data['responseCount'] = counts.get(form.id, 0)
            result.append(data)
        return result

    @staticmethod
    def dashboard_stats(admin):
        query = FormService.visible_forms_query(admin)
        form_ids = [row[0] for row in query.with_entities(Form.id).all()]
        recent = query.order_by(Form.created_at.desc()).limit(5).all()
        counts = FormService.response_counts(form_ids)

        return {
            'totalForms': len(form_ids),
            'publishedForms': query.filter(Form.status == FORM_PUBLISHED).count(),
            'draftForms': query.filter(Form.status == FORM_DRAFT).count(),
            'totalResponses': sum(counts.values()),
            'recentForms': [
                {
                    'id': f.id,
                    'title': f.title,
                    'status': f.status,
                    'slug': f.public_slug,
                    'responseCount': counts.get(f.id, 0),
                    'createdAt': isoformat(f.created_at),
                }
                for f in recent
            ],
        }
