"""PharmaSeal exception hierarchy.

Every error carries a machine-readable ``code`` and the HTTP status the API
surface maps it to.
"""


class PharmaSealError(Exception):
    """Base exception for all PharmaSeal errors."""

    http_status = 500

    def __init__(self, message: str = "", code: str = "PHARMASEAL_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class ValidationError(PharmaSealError):
    """Raised for malformed input. Never retried."""

    http_status = 400

    def __init__(self, message: str = "Invalid input"):
        super().__init__(message, code="VALIDATION_ERROR")


class UnauthorizedError(PharmaSealError):
    """Raised when proof of identity is missing or invalid."""

    http_status = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, code="UNAUTHORIZED")


class SessionInvalidError(UnauthorizedError):
    """Raised for a malformed, tampered, revoked or reused token."""

    def __init__(self, message: str = "Invalid session token"):
        super().__init__(message)
        self.code = "INVALID_TOKEN"


class SessionExpiredError(UnauthorizedError):
    """Raised when a token is presented after its expiry."""

    def __init__(self, message: str = "Session token expired"):
        super().__init__(message)
        self.code = "TOKEN_EXPIRED"


class ForbiddenError(PharmaSealError):
    """Raised when an authenticated caller may not perform an action."""

    http_status = 403

    def __init__(self, message: str = "Action not permitted"):
        super().__init__(message, code="FORBIDDEN")


class BatchNotFoundError(PharmaSealError):
    http_status = 404

    def __init__(self, message: str = "Batch not found"):
        super().__init__(message, code="BATCH_NOT_FOUND")


class StakeholderNotFoundError(PharmaSealError):
    http_status = 404

    def __init__(self, message: str = "Stakeholder not found"):
        super().__init__(message, code="STAKEHOLDER_NOT_FOUND")


class DocumentNotFoundError(PharmaSealError):
    """Raised when the document store does not know a content identifier."""

    http_status = 404

    def __init__(self, message: str = "Document not found"):
        super().__init__(message, code="DOCUMENT_NOT_FOUND")


class LedgerRecordNotFoundError(PharmaSealError):
    """Raised when the ledger has no record for a token id."""

    http_status = 404

    def __init__(self, message: str = "Ledger record not found"):
        super().__init__(message, code="LEDGER_RECORD_NOT_FOUND")


class StalePreconditionError(PharmaSealError):
    """Raised when a batch changed underneath a request (lost a race)."""

    http_status = 409

    def __init__(self, message: str = "Batch state changed; precondition no longer holds"):
        super().__init__(message, code="STALE_PRECONDITION")


class DuplicateBatchError(PharmaSealError):
    http_status = 409

    def __init__(self, message: str = "Batch already exists"):
        super().__init__(message, code="DUPLICATE_BATCH")


class AmbiguousIdentifierError(PharmaSealError):
    """Raised when an identifier is one batch's token id and another's batch id."""

    http_status = 409

    def __init__(self, message: str = "Identifier matches more than one batch"):
        super().__init__(message, code="AMBIGUOUS_IDENTIFIER")


class DuplicateStakeholderError(PharmaSealError):
    http_status = 409

    def __init__(self, message: str = "Stakeholder already registered"):
        super().__init__(message, code="DUPLICATE_STAKEHOLDER")


class LedgerRejectedError(PharmaSealError):
    """Raised when the ledger refuses an operation as invalid. Never retried."""

    http_status = 422

    def __init__(self, message: str = "Ledger rejected the operation"):
        super().__init__(message, code="LEDGER_REJECTED")


class ServiceUnavailableError(PharmaSealError):
    """Raised for a transient collaborator failure. Retryable."""

    http_status = 503

    def __init__(self, message: str = "Service unavailable"):
        super().__init__(message, code="SERVICE_UNAVAILABLE")


class ServiceDegradedError(PharmaSealError):
    """Raised once retries or reconciliation are exhausted."""

    http_status = 503

    def __init__(self, message: str = "Service degraded; retry later"):
        super().__init__(message, code="SERVICE_DEGRADED")


class LedgerTimeoutError(PharmaSealError):
    """Raised when a confirmation wait elapses. The outcome is ambiguous."""

    http_status = 503

    def __init__(self, message: str = "Timed out waiting for ledger confirmation"):
        super().__init__(message, code="LEDGER_TIMEOUT")


class InvariantViolationError(PharmaSealError):
    """Raised when stored state breaks a model invariant. Fatal to the operation."""

    http_status = 500

    def __init__(self, message: str = "Internal invariant violated"):
        super().__init__(message, code="INVARIANT_VIOLATION")
