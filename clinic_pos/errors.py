"""Error kinds surfaced by the clinic POS relay."""
from __future__ import annotations


class PosError(Exception):
    """Base error. ``status_code`` is what the HTTP layer answers with."""
    status_code = 500
    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"ok": False, "error": self.message, "kind": self.kind}


class ConfigurationError(PosError):
    status_code = 500
    kind = "configuration"


class ValidationError(PosError):
    status_code = 400
    kind = "validation"


class NotFoundError(PosError):
    status_code = 404
    kind = "not_found"


class PreconditionError(PosError):
    status_code = 409
    kind = "precondition"


class UpstreamError(PosError):
    """Any failure reported by Stripe, network failures included."""
    status_code = 502
    kind = "upstream"

    def __init__(self, message: str, http_status=None, code=None):
        super().__init__(message)
        self.http_status = http_status
        self.code = code
