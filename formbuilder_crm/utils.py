import secrets
from datetime import datetime, timezone

from flask import request

from .errors import ValidationFailed


def parse_datetime(value):
    """Accepts ISO-8601 strings (with or without `Z`) and datetimes; returns naive UTC."""
    if value in (None, ''):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationFailed(f'Invalid date: {value}')
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def get_json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationFailed('Request body must be a JSON object')
    return data


def get_client_ip():
    """X-Forwarded-For as sent, then X-Real-IP, else 'unknown'."""
    return request.headers.get('X-Forwarded-For') or request.headers.get('X-Real-IP') or 'unknown'


def get_user_agent():
    return request.headers.get('User-Agent') or 'unknown'


def generate_token(nbytes=32):
    return secrets.token_hex(nbytes)


def get_pagination(default_limit=20, max_limit=100):
    try:
        page = max(int(request.args.get('page', 1)), 1)
    except (TypeError, ValueError):
        page = 1
    try:
        limit = int(request.args.get('limit', default_limit))
    except (TypeError, ValueError):
        limit = default_limit
    return page, min(max(limit, 1), max_limit)


def pagination_meta(page, limit, total):
    return {
        'page': page,
        'limit': limit,
        'total': total,
        'pages': (total + limit - 1) // limit if limit else 0,
    }
