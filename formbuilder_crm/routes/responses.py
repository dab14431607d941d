from flask import Blueprint, Response, jsonify, request
from flask_login import current_user, login_required

from ..errors import ValidationFailed
from ..services.export_service import ResponseExportService
from ..services.response_service import ResponseService, organize_responses
from ..utils import get_json_body, get_pagination, pagination_meta

responses_bp = Blueprint('responses', __name__, url_prefix='/admin/responses')


def _filters():
    return {
        'collection': request.args.get('collection'),
        'form_id': request.args.get('formId'),
        'payment_status': request.args.get('paymentStatus'),
        'search': request.args.get('search'),
    }


@responses_bp.route('', methods=['GET'])
@login_required
def list_responses():
    page, limit = get_pagination()
    rows, total = ResponseService.list_responses(current_user, page=page, limit=limit, **_filters())
    return jsonify({
        'success': True,
        'responses': rows,
        'pagination': pagination_meta(page, limit, total),
    })


@responses_bp.route('/export', methods=['GET'])
@login_required
def export_responses():
    output, _ = ResponseExportService.export_csv(current_user, **_filters())
    return Response(
        output,
        mimetype="text/csv",
        headers={"Content-disposition": "attachment; filename=responses_export.csv"}
    )


@responses_bp.route('/import', methods=['POST'])
@login_required
def import_responses():
    """
    multipart/form-data: file (CSV), formId?, collection?, source?
    """
    if 'file' not in request.files:
        raise ValidationFailed('No file uploaded')

    upload = ResponseExportService.import_csv(
        request.files['file'],
        current_user,
        form_id=request.form.get('formId'),
        collection=request.form.get('collection'),
        source=request.form.get('source'),
    )
    return jsonify({'success': upload.status != 'failed', 'upload': upload.to_dict()})


@responses_bp.route('/imports', methods=['GET'])
@login_required
def list_imports():
    uploads = ResponseExportService.list_uploads(current_user)
    return jsonify({'success': True, 'uploads': [u.to_dict() for u in uploads]})


@responses_bp.route('/bulk', methods=['DELETE'])
@login_required
def bulk_delete():
    data = get_json_body()
    deleted = ResponseService.bulk_delete(current_user, data.get('responseIds'))
    return jsonify({
        'success': True,
        'deletedCount': deleted,
        'message': f'{deleted} responses deleted successfully',
    })


@responses_bp.route('/bulk', methods=['POST'])
@login_required
def bulk_update():
    """
    Body: { operation: 'update', responseIds: [...], updates: {...} }
    """
    data = get_json_body()
    if data.get('operation', 'update') != 'update':
        raise ValidationFailed('Invalid operation')
    result = ResponseService.bulk_update(current_user, data.get('responseIds'), data.get('updates'))
    return jsonify({'success': True, **result})


@responses_bp.route('/<response_id>', methods=['GET'])
@login_required
def get_response(response_id):
    lookup = ResponseService.get_for_admin(current_user, response_id)
    data = lookup.submission.to_dict()
    data['organizedResponses'] = organize_responses(lookup.submission, lookup.submission.form)
    return jsonify({'success': True, 'collection': lookup.collection, 'response': data})


@responses_bp.route('/<response_id>', methods=['PUT'])
@login_required
def update_response(response_id):
    submission = ResponseService.update(current_user, response_id, get_json_body())
    return jsonify({'success': True, 'response': submission.to_dict()})


@responses_bp.route('/<response_id>', methods=['DELETE'])
@login_required
def delete_response(response_id):
    ResponseService.delete(current_user, response_id)
    return jsonify({'success': True, 'message': 'Response deleted successfully'})
