from flask import jsonify


class MarketplaceError(Exception):
    """Base error. Every subclass carries an HTTP status and a stable code."""
    status_code = 500
    code = 'INTERNAL_ERROR'

    def __init__(self, message, code=None, details=None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self):
        return {
            'success': False,
            'error': self.message,
            'code': self.code,
            'details': self.details
        }


class ValidationError(MarketplaceError):
    status_code = 400
    code = 'VALIDATION_FAILED'

    def __init__(self, message, fields=None, code=None):
        super().__init__(message, code=code, details={'fields': fields or {}})
        self.fields = fields or {}


class AuthenticationError(MarketplaceError):
    status_code = 401
    code = 'UNAUTHENTICATED'


class AuthorizationError(MarketplaceError):
    status_code = 403
    code = 'FORBIDDEN'


class NotFoundError(MarketplaceError):
    status_code = 404
    code = 'NOT_FOUND'


class StateConflictError(MarketplaceError):
    # "Someone else got there first" as opposed to "you're not allowed"
    status_code = 409
    code = 'STALE_STATE'


class StoreUnavailableError(MarketplaceError):
    status_code = 503
    code = 'STORE_UNAVAILABLE'


def register_error_handlers(app):
    @app.errorhandler(MarketplaceError)
    def handle_marketplace_error(error):
        if error.status_code >= 500:
            app.logger.error(f"❌ {error.code}: {error.message}")
        return jsonify(error.to_dict()), error.status_code


def register_jwt_handlers(jwt):
    """Token failures answer in the same error shape as everything else."""
    @jwt.unauthorized_loader
    def missing_token(reason):
        return jsonify(AuthenticationError(reason, code='TOKEN_MISSING').to_dict()), 401

    @jwt.invalid_token_loader
    def invalid_token(reason):
        return jsonify(AuthenticationError(reason, code='TOKEN_INVALID').to_dict()), 401

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        return jsonify(AuthenticationError('Token has expired', code='TOKEN_EXPIRED').to_dict()), 401
