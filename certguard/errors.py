class CertGuardError(Exception):
    """Base class for every error raised by certguard."""

    status_code = 500
    kind = "error"


class MalformedInputError(CertGuardError):
    status_code = 400
    kind = "malformed_input"


class NotFoundError(CertGuardError):
    status_code = 404
    kind = "not_found"


class PolicyViolationError(CertGuardError):
    status_code = 409
    kind = "policy_violation"


class DuplicateCertificateError(PolicyViolationError):
    pass


class AlreadyBlacklistedError(PolicyViolationError):
    pass


class UnauthorizedIssuerError(CertGuardError):
    status_code = 401
    kind = "unauthorized"


class PersistenceError(CertGuardError):
    """The store was unavailable or rejected a write. Never retried silently."""

    status_code = 503
    kind = "persistence"


class WatermarkCapacityError(CertGuardError):
    status_code = 422
    kind = "watermark_capacity"
