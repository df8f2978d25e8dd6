from flask import jsonify


class LifecycleError(Exception):
    """
    Base for every error the engine reports to its caller.
    Each subclass carries a stable `kind` and the HTTP status it maps to.
    """
    kind = 'error'
    status_code = 500

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {'error': self.message, 'kind': self.kind}


class NotFound(LifecycleError):
    kind = 'not_found'
    status_code = 404


class Forbidden(LifecycleError):
    kind = 'forbidden'
    status_code = 403


class Conflict(LifecycleError):
    kind = 'conflict'
    status_code = 409


class DuplicateClaim(Conflict):
    kind = 'duplicate_claim'


class Expired(LifecycleError):
    kind = 'expired'
    status_code = 410


class InvalidCode(LifecycleError):
    # Recoverable: the user may re-enter the code until the claim deadline
    kind = 'invalid_code'
    status_code = 400


class ValidationError(LifecycleError):
    kind = 'validation_error'
    status_code = 400


def register_error_handlers(app):
    @app.errorhandler(LifecycleError)
    def handle_lifecycle_error(error):
        return jsonify(error.to_dict()), error.status_code
