from datetime import timedelta
from functools import wraps

import jwt
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from .errors import Forbidden, InvalidToken, Unauthenticated, ValidationFailed
from .models import db, Admin, ADMIN_ACTIVE, get_now
from .utils import get_json_body

TOKEN_COOKIE = 'token'

auth = Blueprint('auth', __name__, url_prefix='/auth')


def issue_token(admin):
    """Signed identity token for an admin: {adminId, email, role, exp}."""
    payload = {
        'adminId': admin.id,
        'email': admin.email,
        'role': admin.role,
        'exp': get_now() + timedelta(days=current_app.config['TOKEN_TTL_DAYS']),
    }
    return jwt.encode(payload, current_app.config['JWT_SECRET'], algorithm='HS256')


def verify_token(token):
    if not token:
        raise InvalidToken()
    try:
        return jwt.decode(token, current_app.config['JWT_SECRET'], algorithms=['HS256'])
    except jwt.PyJWTError as e:
        raise InvalidToken() from e


def token_from_request():
    token = request.cookies.get(TOKEN_COOKIE)
    if token:
        return token
    auth_header = request.headers.get('Authorization', '')
    if auth_header.startswith('Bearer '):
        return auth_header.split(' ', 1)[1]
    return None


def load_admin_from_request(req):
    """Flask-Login request loader: cookie (or bearer) token -> active Admin."""
    token = token_from_request()
    if not token:
        return None
    try:
        payload = verify_token(token)
    except InvalidToken:
        current_app.logger.info('Rejected admin token on %s', req.path)
        return None
    admin = db.session.get(Admin, payload.get('adminId'))
    if not admin or admin.status != ADMIN_ACTIVE:
        return None
    return admin


def role_required(*roles):
    def decorator(f):
        @wraps(f)
        @login_required
        def decorated(*args, **kwargs):
            if current_user.role not in roles:
                raise Forbidden()
            return f(*args, **kwargs)
        return decorated
    return decorator


def set_token_cookie(response, token):
    response.set_cookie(
        TOKEN_COOKIE,
        token,
        max_age=int(timedelta(days=current_app.config['TOKEN_TTL_DAYS']).total_seconds()),
        httponly=True,
        secure=current_app.config['SESSION_COOKIE_SECURE'],
        samesite='Lax',
        path='/',
    )
    return response


@auth.route('/login', methods=['POST'])
def login():
    data = get_json_body()
    email = data.get('email') or ''
    password = data.get('password') or ''
    if not isinstance(email, str) or not isinstance(password, str):
        raise ValidationFailed('Email and password are required')
    email = email.strip().lower()
    if not email or not password:
        raise ValidationFailed('Email and password are required')

    admin = Admin.query.filter_by(email=email, status=ADMIN_ACTIVE).first()
    if not admin or not admin.check_password(password):
        current_app.logger.warning('Failed login for %s', email)
        raise Unauthenticated('Invalid credentials')

    admin.last_login = get_now()
    db.session.commit()

    response = jsonify({'success': True, 'admin': admin.to_dict()})
    return set_token_cookie(response, issue_token(admin))


@auth.route('/logout', methods=['POST'])
def logout():
    response = jsonify({'success': True, 'message': 'Logged out successfully'})
    response.delete_cookie(TOKEN_COOKIE, path='/')
    return response


@auth.route('/me', methods=['GET'])
@login_required
def me():
    return jsonify({'success': True, 'admin': current_user.to_dict()})
