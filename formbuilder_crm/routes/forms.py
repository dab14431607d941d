from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from ..errors import ValidationFailed
from ..services.form_service import FormService
from ..services.submission_service import SubmissionService
from ..utils import get_client_ip, get_json_body, get_user_agent

forms_bp = Blueprint('forms', __name__)

# ==========================================
# PUBLIC ROUTES
# ==========================================

@forms_bp.route('/forms/check-slug', methods=['GET'])
def check_slug():
    slug = request.args.get('slug')
    if not slug:
        raise ValidationFailed('Slug is required')

    available, message = FormService.check_slug_available(slug, request.args.get('formId'))
    return jsonify({'available': available, 'message': message})


@forms_bp.route('/forms/<slug>', methods=['GET'])
def get_public_form(slug):
    """
    Public Endpoint: form definition for the live form page.
    404 when unknown/unpublished/inactive, 410 when expired.
    """
    form = FormService.resolve_for_public_access(slug)
    return jsonify({'success': True, 'form': form.to_public_dict()})


@forms_bp.route('/forms/<slug>/submit', methods=['POST'])
def submit_by_slug(slug):
    """
    Public Endpoint: submit answers to the form served at `slug`.
    Body: { responses: [{fieldId, value}], submittedAt? }
    """
    data = get_json_body()
    form = FormService.resolve_for_public_access(slug)

    submission = SubmissionService.submit_to_form(
        form,
        data.get('responses'),
        submitted_at=data.get('submittedAt'),
        ip_address=get_client_ip(),
        user_agent=get_user_agent(),
    )
    return jsonify(SubmissionService.public_receipt(form, submission)), 201


@forms_bp.route('/submissions', methods=['POST'])
def create_submission():
    """
    Public Endpoint: submit answers for a form id + slug pair.
    Body: { formId, formSlug, responses[], submittedAt }
    """
    data = get_json_body()
    submission = SubmissionService.submit(
        data.get('formId'),
        data.get('formSlug'),
        data.get('responses'),
        submitted_at=data.get('submittedAt'),
        ip_address=get_client_ip(),
        user_agent=get_user_agent(),
    )
    return jsonify({
        'success': True,
        'message': 'Response submitted successfully',
        'responseId': submission.id,
    }), 201

# ==========================================
# ADMIN ROUTES
# ==========================================

@forms_bp.route('/admin/forms', methods=['GET'])
@login_required
def list_forms():
    forms = FormService.list_forms(
        current_user,
        status=request.args.get('status'),
        search=request.args.get('search'),
    )
    return jsonify({'success': True, 'forms': forms})


@forms_bp.route('/admin/forms', methods=['POST'])
@login_required
def create_form():
    form = FormService.create_form(get_json_body(), current_user)
    current_app.logger.info(f"Form created: {form.id} by {current_user.email}")
    return jsonify({'success': True, 'form': form.to_dict()}), 201


@forms_bp.route('/admin/forms/<form_id>', methods=['GET'])
@login_required
def get_form(form_id):
    form = FormService.get_for_admin(form_id, current_user)
    return jsonify({'success': True, 'form': form.to_dict()})


@forms_bp.route('/admin/forms/<form_id>', methods=['PUT'])
@login_required
def update_form(form_id):
    form = FormService.get_for_admin(form_id, current_user)
    form = FormService.update_form(form, get_json_body())
    return jsonify({'success': True, 'form': form.to_dict()})


@forms_bp.route('/admin/forms/<form_id>', methods=['PATCH'])
@login_required
def patch_form(form_id):
    form = FormService.get_for_admin(form_id, current_user)
    form = FormService.patch_form(form, get_json_body())
    return jsonify({'success': True, 'form': form.to_dict()})


@forms_bp.route('/admin/forms/<form_id>', methods=['DELETE'])
@login_required
def delete_form(form_id):
    form = FormService.get_for_admin(form_id, current_user)
    FormService.delete(form)
    return jsonify({'success': True, 'message': 'Form deleted successfully'})


@forms_bp.route('/admin/forms/<form_id>/settings', methods=['POST'])
@login_required
def update_form_settings(form_id):
    """
    Publish transition.
    Body: { status, settings: {enableCustomSlug, customSlug, ...}, theme }
    """
    data = get_json_body()
    form = FormService.get_for_admin(form_id, current_user)
    form = FormService.update_settings(
        form,
        status=data.get('status'),
        settings=data.get('settings'),
        theme=data.get('theme'),
    )
    return jsonify({
        'success': True,
        'message': 'Settings updated successfully',
        'form': form.to_dict(),
        'publicUrl': f"{current_app.config['APP_BASE_URL'].rstrip('/')}/forms/{form.public_slug}",
    })


@forms_bp.route('/admin/forms/<form_id>/duplicate', methods=['POST'])
@login_required
def duplicate_form(form_id):
    form = FormService.get_for_admin(form_id, current_user)
    copy_form = FormService.duplicate(form, current_user)
    return jsonify({'success': True, 'form': copy_form.to_dict()}), 201


@forms_bp.route('/admin/stats', methods=['GET'])
@login_required
def dashboard_stats():
    return jsonify({'success': True, 'stats': FormService.dashboard_stats(current_user)})
