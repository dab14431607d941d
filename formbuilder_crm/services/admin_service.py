import logging
from datetime import timedelta

from flask import current_app

from ..errors import AlreadyExists, Forbidden, NotFound, ValidationFailed
from ..models import (
    db, Admin, BulkUpload, Form, get_now,
    ADMIN_ACTIVE, ADMIN_PENDING, ADMIN_ROLES, ROLE_ADMIN, ROLE_SUPER_ADMIN,
)
from ..utils import generate_token
from .email_service import EmailService

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6
INVALID_INVITATION = 'Invalid or expired invitation token'


class AdminService:

    @staticmethod
    def invitation_link(token):
        return f"{current_app.config['APP_BASE_URL'].rstrip('/')}/admin/setup-account?token={token}"

    @staticmethod
    def invite(email, role, inviter):
        """
        Invite or re-invite an admin. Returns (admin, resent, email_sent).
        Re-inviting a pending admin refreshes the same record.
        """
        if email is not None and not isinstance(email, str):
            raise ValidationFailed('A valid email is required')
        email = (email or '').strip().lower()
        role = role or ROLE_ADMIN
        if not email or '@' not in email:
            raise ValidationFailed('A valid email is required')
        if role not in ADMIN_ROLES:
            raise ValidationFailed(f'Invalid role: {role}')
        if role == ROLE_SUPER_ADMIN and not inviter.is_super_admin:
            raise Forbidden('Only super admins can invite super admins')

        token = generate_token(32)
        expires = get_now() + timedelta(hours=current_app.config['INVITATION_TTL_HOURS'])

        admin = Admin.query.filter_by(email=email).first()
        if admin and admin.status == ADMIN_ACTIVE:
            raise AlreadyExists()

        resent = admin is not None
        if admin:
            admin.invitation_token = token
            admin.invitation_expires = expires
            admin.role = role
        else:
            admin = Admin(
                email=email,
                role=role,
                status=ADMIN_PENDING,
                invitation_token=token,
                invitation_expires=expires,
                created_by_id=inviter.id,
            )
            db.session.add(admin)
        db.session.commit()

        email_sent, result = EmailService.send_admin_invitation(email, AdminService.invitation_link(token), role)
        if not email_sent:
            logger.warning("Invitation for %s saved but email not sent: %s", email, result)

        logger.info("Admin invitation %s for %s by %s", 'resent' if resent else 'created', email, inviter.email)
        return admin, resent, email_sent

    @staticmethod
    def _pending_by_token(token):
        if not token:
            return None
        admin = Admin.query.filter_by(invitation_token=token, status=ADMIN_PENDING).first()
        if not admin or not admin.invitation_expires or admin.invitation_expires < get_now():
            return None
        return admin

    @staticmethod
    def validate_invitation(token):
        admin = AdminService._pending_by_token(token)
        if not admin:
            raise ValidationFailed(INVALID_INVITATION)
        return {'email': admin.email, 'role': admin.role}

    @staticmethod
    def activate(token, password):
        if not token or not password:
            raise ValidationFailed('Token and password are required')
        if not isinstance(token, str) or not isinstance(password, str):
            raise ValidationFailed('Token and password must be strings')
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationFailed('Password must be at least 6 characters')

        admin = AdminService._pending_by_token(token)
        if not admin:
            raise ValidationFailed(INVALID_INVITATION)

        admin.set_password(password)
        admin.status = ADMIN_ACTIVE
        # Single-use token
        admin.invitation_token = None
        admin.invitation_expires = None
        db.session.commit()

        logger.info("Admin %s activated", admin.email)
        return admin

    @staticmethod
    def list_admins(requester):
        query = Admin.query
        if not requester.is_super_admin:
            query = query.filter(Admin.created_by_id == requester.id)
        return query.order_by(Admin.created_at.desc()).all()

    @staticmethod
    def delete_admin(requester, target_id):
        if not requester.is_super_admin:
            raise Forbidden()
        if target_id == requester.id:
            raise ValidationFailed('Cannot delete your own account')

        admin = db.session.get(Admin, target_id)
        if not admin:
            raise NotFound('Admin not found')

        email = admin.email
        # Detach records that reference this admin
        Admin.query.filter_by(created_by_id=admin.id).update({'created_by_id': None})
        Form.query.filter_by(created_by_id=admin.id).update({'created_by_id': None})
        BulkUpload.query.filter_by(uploaded_by_id=admin.id).update({'uploaded_by_id': None})
        db.session.delete(admin)
        db.session.commit()
        logger.info("Admin %s deleted by %s", email, requester.email)

    @staticmethod
    def create_or_reset(email, password, role=ROLE_SUPER_ADMIN):
        """Bootstrap path for the CLI: active admin with the given password."""
        email = email.strip().lower()
        if role not in ADMIN_ROLES:
            raise ValidationFailed(f'Invalid role: {role}')
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationFailed('Password must be at least 6 characters')

        admin = Admin.query.filter_by(email=email).first()
        created = admin is None
        if created:
            admin = Admin(email=email)
            db.session.add(admin)
        admin.role = role
        admin.status = ADMIN_ACTIVE
        admin.invitation_token = None
        admin.invitation_expires = None
        admin.set_password(password)
        db.session.commit()
        return admin, created
