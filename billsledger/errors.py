"""
Error taxonomy shared by the HTTP layer and the realtime router.

Each error carries the HTTP status it maps to and a short machine code that
ends up in the ``error`` field of the JSON body.
"""


class LedgerError(Exception):
    status_code = 500
    code = "internal_failure"

    default_detail = "Internal server error"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class AuthenticationFailure(LedgerError):
    status_code = 401
    code = "authentication_failure"
    default_detail = "Authentication required"


class AuthorizationFailure(LedgerError):
    status_code = 403
    code = "authorization_failure"
    default_detail = "Not allowed"


class NotFound(LedgerError):
    status_code = 404
    code = "not_found"
    default_detail = "Resource not found"


class Conflict(LedgerError):
    status_code = 409
    code = "conflict"
    default_detail = "Conflict"


class AlreadyPaid(Conflict):
    code = "already_paid"
    default_detail = "You have already paid this bill"


class ValidationFailure(LedgerError):
    status_code = 400
    code = "validation_failure"
    default_detail = "Invalid request"


class InternalFailure(LedgerError):
    pass
