class TrustGateError(Exception):
    """Base exception for trust-and-access failures."""

    status_code = 400
    default_message = "Request could not be processed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(TrustGateError):
    """Raised when an input is malformed (e.g. a code that is not 6 digits)."""

    default_message = "Invalid input"


class InvalidCodeError(TrustGateError):
    """Raised when a TOTP or backup code does not verify.

    The message is identical for both checks so callers cannot tell which one failed.
    """

    default_message = "Invalid 2FA code"


class AlreadyEnabledError(TrustGateError):
    """Raised when 2FA setup is requested for a user who already has it enabled."""

    default_message = "2FA is already enabled"


class NotEnabledError(TrustGateError):
    """Raised when a 2FA operation requires an enabled credential."""

    default_message = "2FA is not enabled"


class ResolutionUnavailableError(TrustGateError):
    status_code = 503
    default_message = "Geolocation is temporarily unavailable"


class PersistenceError(TrustGateError):
    """Raised when a store read or write fails or times out."""

    status_code = 503
    default_message = "Storage is temporarily unavailable"


class RateExceededError(TrustGateError):
    status_code = 429
    default_message = "Too many requests"


class BlacklistedError(TrustGateError):
    """Raised when a blacklisted IP reaches a guarded operation."""

    status_code = 403
    default_message = "Your IP address has been blocked due to suspicious activity"

    def __init__(self, message: str | None = None, reason: str | None = None):
        super().__init__(message)
        self.reason = reason
