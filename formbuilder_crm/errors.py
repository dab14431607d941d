class AppError(Exception):
    """Base for every error that is turned into a JSON response."""
    status_code = 500
    message = 'Internal server error'

    def __init__(self, message=None, details=None):
        self.message = message or self.message
        self.details = details
        super().__init__(self.message)

    def to_dict(self):
        payload = {'success': False, 'error': self.message}
        if self.details:
            payload['details'] = self.details
        return payload


class Unauthenticated(AppError):
    status_code = 401
    message = 'Authentication required'


class InvalidToken(Unauthenticated):
    message = 'Invalid or expired token'


class Forbidden(AppError):
    status_code = 403
    message = 'Access denied'


class NotFound(AppError):
    status_code = 404
    message = 'Not found'


class FormUnavailable(NotFound):
    message = 'Form not found or inactive'


class Expired(AppError):
    status_code = 410
    message = 'Form has expired'


class Conflict(AppError):
    status_code = 409
    message = 'Resource already exists'


class AlreadyExists(Conflict):
    # Admin invitations report duplicates as a plain bad request
    status_code = 400
    message = 'Admin with this email already exists'


class LimitReached(AppError):
    status_code = 429
    message = 'Form has reached maximum response limit'


class ValidationFailed(AppError):
    status_code = 400
    message = 'Validation failed'


class GatewayError(AppError):
    status_code = 502
    message = 'Payment gateway error'
