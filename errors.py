# MiastoAlert error taxonomy
# Every engine failure is one of these. The API maps them to status codes;
# the sweep is the only caller that logs and swallows them.


class MiastoAlertError(Exception):
    """Base class for all engine errors."""

    code = "error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(MiastoAlertError):
    """Malformed or missing input. The caller must correct it."""

    code = "validation_error"
    status_code = 400


class DuplicateReport(MiastoAlertError):
    """A matching report already exists nearby within the duplicate window."""

    code = "duplicate_report"
    status_code = 429


class AlreadyConfirmed(MiastoAlertError):
    code = "already_confirmed"
    status_code = 400


class NotFound(MiastoAlertError):
    code = "not_found"
    status_code = 404


class Unauthorized(MiastoAlertError):
    """Missing, unknown or expired credential."""

    code = "unauthorized"
    status_code = 401


class Forbidden(MiastoAlertError):
    """Role gate or ban gate failed."""

    code = "forbidden"
    status_code = 403


class StoreFailure(MiastoAlertError):
    """Underlying persistence unavailable or rejected the statement."""

    code = "store_failure"
    status_code = 500
