from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from ..services.admin_service import AdminService
from ..utils import get_json_body

admin_bp = Blueprint('admin', __name__, url_prefix='/admin')


@admin_bp.route('/invitations', methods=['POST'])
@login_required
def invite_admin():
    """
    Body: { email, role }
    Re-inviting a pending admin refreshes the same invitation.
    """
    data = get_json_body()
    admin, resent, email_sent = AdminService.invite(data.get('email'), data.get('role'), current_user)

    return jsonify({
        'success': True,
        'message': 'Invitation resent successfully' if resent else 'Invitation sent successfully',
        'emailSent': email_sent,
        'admin': admin.to_dict(),
    })


@admin_bp.route('/invitations/validate', methods=['GET'])
def validate_invitation():
    invitation = AdminService.validate_invitation(request.args.get('token'))
    return jsonify({'success': True, **invitation})


@admin_bp.route('/accounts/activate', methods=['POST'])
def activate_account():
    """
    Body: { token, password }
    """
    data = get_json_body()
    admin = AdminService.activate(data.get('token'), data.get('password'))
    current_app.logger.info(f"Admin account activated: {admin.email}")
    return jsonify({'success': True, 'message': 'Account setup successfully'})


@admin_bp.route('/users', methods=['GET'])
@login_required
def list_admins():
    admins = AdminService.list_admins(current_user)
    return jsonify({'success': True, 'admins': [a.to_dict() for a in admins]})


@admin_bp.route('/users/<admin_id>', methods=['DELETE'])
@login_required
def delete_admin(admin_id):
    AdminService.delete_admin(current_user, admin_id)
    return jsonify({'success': True, 'message': 'Admin deleted successfully'})
