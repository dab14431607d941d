import logging
from enum import Enum

import resend
from flask import current_app, render_template

from ..models import get_now

logger = logging.getLogger(__name__)


class EMAIL_TEMPLATES(Enum):
    admin_invitation = "admin_invitation"


class EmailService:

    # Mapping Enum -> Filename
    TEMPLATE_FILES = {
        EMAIL_TEMPLATES.admin_invitation: "admin_invitation.html",
    }

    @staticmethod
    def send_email(to, subject, template=None, context=None, html_content=None):
        """
        Main entry point for sending emails. Never raises.
        :param to: List of recipients or single email string.
        :param subject: Email subject.
        :param template: (Optional) EMAIL_TEMPLATES Enum member.
        :return: (ok, provider response or error message)
        """
        api_key = current_app.config.get('RESEND_API_KEY')
        if not api_key:
            logger.warning("Email not sent to %s: missing RESEND_API_KEY", to)
            return False, "Missing API Key"

        resend.api_key = api_key

        from_name = current_app.config['EMAIL_NAME']
        from_full = f"{from_name} <{current_app.config['EMAIL_FROM']}>"

        if isinstance(to, str):
            to = [to]

        # 1. Resolve Template
        if template:
            if not isinstance(template, EMAIL_TEMPLATES):
                logger.error("Invalid template type %s", type(template))
                return False, "Invalid template type"

            filename = EmailService.TEMPLATE_FILES.get(template)
            if not filename:
                return False, f"No file mapped for template {template.name}"

            context = dict(context or {})
            context['app_name'] = from_name
            context['now'] = get_now()

            try:
                html_content = render_template(f"emails/{filename}", **context)
            except Exception as e:
                logger.exception("Template render error for %s", filename)
                return False, f"Template error: {e}"

        # 2. Send via Resend
        try:
            params = {
                "from": from_full,
                "to": to,
                "subject": subject,
                "html": html_content,
            }
            response = resend.Emails.send(params)
            logger.info("Email '%s' sent to %s", subject, to[0] if to else "N/A")
            return True, response
        except Exception as e:
            logger.error("Resend error sending '%s' to %s: %s", subject, to, e)
            return False, str(e)

    @staticmethod
    def send_admin_invitation(email, invitation_link, role):
        return EmailService.send_email(
            to=email,
            subject=f"Invitation to Join {current_app.config['EMAIL_NAME']} Admin",
            template=EMAIL_TEMPLATES.admin_invitation,
            context={
                'invitation_link': invitation_link,
                'role_label': role.replace('_', ' '),
                'expires_in_hours': current_app.config['INVITATION_TTL_HOURS'],
            },
        )
