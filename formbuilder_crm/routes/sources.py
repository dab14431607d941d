from flask import Blueprint, jsonify
from flask_login import login_required

from ..errors import Conflict, NotFound, ValidationFailed
from ..models import db, Source
from ..utils import get_json_body

sources_bp = Blueprint('sources', __name__)


def _get_source(source_id):
    source = db.session.get(Source, source_id)
    if not source:
        raise NotFound('Source not found')
    return source


def _name_taken(name, excluding_id=None):
    query = Source.query.filter(db.func.lower(Source.name) == name.lower())
    if excluding_id:
        query = query.filter(Source.id != excluding_id)
    return query.first() is not None


@sources_bp.route('/sources', methods=['GET'])
def public_sources():
    """Active source names for the `source` field of live forms."""
    sources = (Source.query.filter_by(is_active=True)
               .order_by(Source.sort_order.asc(), Source.name.asc())
               .all())
    return jsonify({'success': True, 'sources': [s.name for s in sources]})


@sources_bp.route('/admin/sources', methods=['GET'])
@login_required
def list_sources():
    sources = Source.query.order_by(Source.sort_order.asc(), Source.name.asc()).all()
    return jsonify({'success': True, 'sources': [s.to_dict() for s in sources]})


@sources_bp.route('/admin/sources', methods=['POST'])
@login_required
def create_source():
    data = get_json_body()
    name = (data.get('name') or '').strip()
    if not name:
        raise ValidationFailed('Source name is required')
    if _name_taken(name):
        raise Conflict('Source with this name already exists')

    try:
        order = int(data.get('order') or 0)
    except (TypeError, ValueError):
        raise ValidationFailed('Order must be a number')

    source = Source(
        name=name,
        description=(data.get('description') or '').strip() or None,
        is_active=bool(data.get('isActive', True)),
        sort_order=order,
    )
    db.session.add(source)
    db.session.commit()
    return jsonify({'success': True, 'source': source.to_dict()}), 201


@sources_bp.route('/admin/sources/<source_id>', methods=['GET'])
@login_required
def get_source(source_id):
    return jsonify({'success': True, 'source': _get_source(source_id).to_dict()})


@sources_bp.route('/admin/sources/<source_id>', methods=['PUT'])
@login_required
def update_source(source_id):
    source = _get_source(source_id)
    data = get_json_body()

    if 'name' in data:
        name = (data.get('name') or '').strip()
        if not name:
            raise ValidationFailed('Source name is required')
        if _name_taken(name, excluding_id=source.id):
            raise Conflict('Source with this name already exists')
        source.name = name
    if 'description' in data:
        source.description = (data.get('description') or '').strip() or None
    if 'isActive' in data:
        source.is_active = bool(data['isActive'])
    if 'order' in data:
        try:
            source.sort_order = int(data['order'])
        except (TypeError, ValueError):
            raise ValidationFailed('Order must be a number')

    db.session.commit()
    return jsonify({'success': True, 'source': source.to_dict()})


@sources_bp.route('/admin/sources/<source_id>', methods=['DELETE'])
@login_required
def delete_source(source_id):
    source = _get_source(source_id)
    db.session.delete(source)
    db.session.commit()
    return jsonify({'success': True, 'message': 'Source deleted successfully'})
