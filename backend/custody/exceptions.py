"""
Error kinds raised by the custody engine.

Every error carries a stable ``code`` tag and a human readable message.
Extra keyword context (for example ``remaining``) is kept on the instance
and rendered next to the message by the API exception handler.
"""


class CustodyError(Exception):
    """Base exception for all custody engine errors"""

    code = "custody_error"
    status_code = 400

    def __init__(self, message: str, **context):
        self.message = message
        self.context = context
        super().__init__(self.message)

    def as_dict(self) -> dict:
        return {"error": self.code, "detail": self.message, **self.context}


class ValidationError(CustodyError):
    """Raised when input is malformed or out of range"""

    code = "validation_error"


class NotFoundError(CustodyError):
    """Raised when a referenced entry, locker or challenge does not exist"""

    code = "not_found"
    status_code = 404


class InvalidStateError(CustodyError):
    """Raised when an entry or challenge is in a status that forbids the operation"""

    code = "invalid_state"
    status_code = 409


class LockerUnavailableError(InvalidStateError):
    """Raised when a locker is already occupied by another active entry"""

    code = "locker_unavailable"


class InsufficientInventoryError(CustodyError):
    """Raised when more pots are requested than remain in a locker"""

    code = "insufficient_inventory"
    status_code = 409

    def __init__(self, message: str, remaining: int, **context):
        self.remaining = remaining
        super().__init__(message, remaining=remaining, **context)


class OverReleaseError(CustodyError):
    """Raised when a release would push potsDelivered above totalPots"""

    code = "over_release"
    status_code = 409

    def __init__(self, message: str, remaining: int, **context):
        self.remaining = remaining
        super().__init__(message, remaining=remaining, **context)


class ExpiredError(CustodyError):
    """Raised when an OTP challenge has expired or was superseded"""

    code = "otp_expired"


class AttemptsExhaustedError(CustodyError):
    """Raised when an OTP challenge has no attempts left"""

    code = "otp_attempts_exhausted"
    status_code = 429


class TransactionConflictError(CustodyError):
    """Raised when a concurrent write changed a document between read and write"""

    code = "transaction_conflict"
    status_code = 409
