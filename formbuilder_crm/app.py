import logging
import os

import click
from dotenv import load_dotenv
from flask import Flask, jsonify
from flask_login import LoginManager
from flask_migrate import Migrate
from sqlalchemy.exc import IntegrityError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from .auth import auth, load_admin_from_request
from .errors import AppError, Conflict, ValidationFailed
from .models import db, Admin, ADMIN_ACTIVE, ROLE_SUPER_ADMIN

load_dotenv() # Load env vars before anything else


def build_config():
    # 1. Normalize Postgres URL
    database_url = os.environ.get('DATABASE_URL', 'sqlite:///formbuilder.db')
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    secret_key = os.environ.get('SECRET_KEY', 'formbuilder-dev-secret-key')

    return {
        'SECRET_KEY': secret_key,
        'JWT_SECRET': os.environ.get('JWT_SECRET') or secret_key,
        'TOKEN_TTL_DAYS': 7,
        'INVITATION_TTL_HOURS': 24,
        'SQLALCHEMY_DATABASE_URI': database_url,
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'RAZORPAY_KEY_ID': os.environ.get('RAZORPAY_KEY_ID'),
        'RAZORPAY_KEY_SECRET': os.environ.get('RAZORPAY_KEY_SECRET'),
        'RAZORPAY_API_URL': os.environ.get('RAZORPAY_API_URL', 'https://api.razorpay.com/v1'),
        'RESEND_API_KEY': os.environ.get('RESEND_API_KEY'),
        'EMAIL_FROM': os.environ.get('EMAIL_FROM', 'no-reply@formbuilder.local'),
        'EMAIL_NAME': os.environ.get('EMAIL_NAME', 'FormBuilder'),
        'APP_BASE_URL': os.environ.get('APP_BASE_URL', 'http://localhost:5000'),
        'SESSION_COOKIE_SECURE': os.environ.get('FLASK_ENV') == 'production',
        'MAX_BULK_UPLOAD_ROWS': 5000,
        'LOG_LEVEL': os.environ.get('LOG_LEVEL', 'INFO'),
    }


def register_error_handlers(app):

    @app.errorhandler(AppError)
    def handle_app_error(error):
        db.session.rollback()
        if error.status_code >= 500:
            app.logger.error(f"{type(error).__name__}: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(IntegrityError)
    def handle_integrity_error(error):
        db.session.rollback()
        app.logger.warning(f"Integrity error: {error.orig}")
        conflict = Conflict()
        return jsonify(conflict.to_dict()), conflict.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        return jsonify({'success': False, 'error': error.description}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        db.session.rollback()
        app.logger.exception(f"Unhandled error: {error}")
        return jsonify({'success': False, 'error': 'Internal server error'}), 500


def register_commands(app):

    @app.cli.command('create-admin')
    @click.argument('email')
    @click.argument('password')
    @click.option('--role', default=ROLE_SUPER_ADMIN, show_default=True)
    def create_admin(email, password, role):
        """Create or reset an active admin account."""
        from .services.admin_service import AdminService
        try:
            admin, created = AdminService.create_or_reset(email, password, role)
        except ValidationFailed as e:
            raise click.ClickException(e.message)
        click.echo(f"{'Created' if created else 'Updated'} {admin.role} {admin.email}")


def create_app(test_config=None):
    app = Flask(__name__)
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    # --- CONFIGURATION ---
    app.config.from_mapping(build_config())
    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(getattr(logging, str(app.config['LOG_LEVEL']).upper(), logging.INFO))

    # --- INITIALIZE EXTENSIONS ---
    # The engine is owned by this app and disposed with it
    db.init_app(app)
    Migrate(app, db)

    login_manager = LoginManager()
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(admin_id):
        admin = db.session.get(Admin, admin_id)
        return admin if admin and admin.status == ADMIN_ACTIVE else None

    login_manager.request_loader(load_admin_from_request)

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'success': False, 'error': 'Not authenticated'}), 401

    # --- BLUEPRINTS ---
    from .routes.admin import admin_bp
    from .routes.forms import forms_bp
    from .routes.payments import payments_bp
    from .routes.responses import responses_bp
    from .routes.sources import sources_bp

    app.register_blueprint(auth)
    app.register_blueprint(forms_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(responses_bp)
    app.register_blueprint(sources_bp)

    register_error_handlers(app)
    register_commands(app)

    @app.route('/health')
    def health():
        return jsonify({'status': 'ok'})

    with app.app_context():
        db.create_all()

    return app
