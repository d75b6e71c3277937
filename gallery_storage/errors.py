"""
Shared error taxonomy for the storage layer.

Provider adapters translate raw HTTP/transport failures into these types so
callers never branch on a provider-specific error. `user_message` is the only
text that may reach an end user; `str(exc)` can carry internal detail and is
for logs and audit rows.
"""


class StorageError(Exception):
    """Base class for every error raised by the storage layer."""

    retryable = False
    user_message = "Storage operation failed"

    def __init__(self, message: str, *, provider: str | None = None):
        self.msg = message
        self.provider = provider
        super().__init__(message)


class AuthenticationError(StorageError):
    """Credential invalid or expired; the user must reconnect the provider."""

    user_message = "Storage connection expired; please reconnect your storage provider"

    def __init__(self, message: str, *, provider: str | None = None, requires_password: bool = False):
        super().__init__(message, provider=provider)
        self.requires_password = requires_password


class TokenExpiredError(AuthenticationError):
    """Access token expired and could not be refreshed."""


class RateLimitedError(StorageError):
    """Provider quota exceeded or the rate governor is backing off."""

    retryable = True
    user_message = "Storage provider temporarily unavailable; please try again later"

    def __init__(self, message: str, *, provider: str | None = None, retry_after: int | None = None):
        super().__init__(message, provider=provider)
        self.retry_after = retry_after


class NotFoundError(StorageError):
    """Resource absent at the provider or in a local mapping."""

    user_message = "Not found"


class TransientNetworkError(StorageError):
    """Connection failure, timeout or provider 5xx."""

    retryable = True
    user_message = "Upload failed, please retry"


class ValidationError(StorageError):
    """Bad input; retrying will not help."""

    user_message = "Invalid request"

    def __init__(self, message: str, *, provider: str | None = None):
        super().__init__(message, provider=provider)
        # Validation messages are written for the caller
        self.user_message = message


class ConflictError(StorageError):
    """Sync found local and remote state diverging; logged, not auto-resolved."""

    user_message = "Conflicting change detected"
