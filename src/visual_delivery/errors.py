"""
Error taxonomy shared by the store, repository, HTTP boundary and agent client.

Every error that reaches an HTTP caller carries a machine-readable ``code``
and the status it maps to, so the server can render ``{error: {code, message}}``
without a lookup table.
"""


class DeliveryError(Exception):
    code = 'INTERNAL_ERROR'
    http_status = 500

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {'error': {'code': self.code, 'message': self.message}}


class ValidationError(DeliveryError):
    """Malformed request body or content shape. Never retried."""
    code = 'INVALID_REQUEST'
    http_status = 400


class NotFound(DeliveryError):
    code = 'NOT_FOUND'
    http_status = 404


class Conflict(DeliveryError):
    """Request refers to an alignment thread or delivery that is no longer current."""
    code = 'CONFLICT'
    http_status = 409


class LockTimeout(DeliveryError):
    code = 'LOCK_TIMEOUT'
    http_status = 500


class CorruptedRecord(DeliveryError):
    """
    A persisted file failed to parse.

    Raised inside the store only; the store quarantines the file and recovers
    with an empty default, so callers never see it.
    """
    code = 'CORRUPTED_RECORD'


class ServerUnreachable(DeliveryError):
    """Agent side: the server did not answer after all retries."""
    code = 'SERVER_UNREACHABLE'
    http_status = 503


class PayloadTooLarge(ValidationError):
    code = 'PAYLOAD_TOO_LARGE'
    http_status = 413
