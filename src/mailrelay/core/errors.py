"""Custom exception types for mailrelay.

Error messages should say what failed, where, and how to fix it when the
caller can act on it. Request-facing errors carry the HTTP status the web
layer maps them to.
"""


class MailRelayError(Exception):
    """Base exception for all mailrelay errors."""

    status_code: int = 500


class ConfigValidationError(MailRelayError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(MailRelayError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class DatabaseError(MailRelayError):
    """Raised when SQLite operations fail."""

    pass


class UnauthorizedError(MailRelayError):
    """Raised when a request carries no valid API key."""

    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class NotFoundError(MailRelayError):
    """Raised when an ownership or existence check fails.

    Attributes:
        resource: Kind of record that was looked up ("email", "delivery", ...)
        resource_id: The ID that was not found
    """

    status_code = 404

    def __init__(self, message: str, resource: str | None = None, resource_id: str | None = None):
        super().__init__(message)
        self.resource = resource
        self.resource_id = resource_id


class InvalidStateError(MailRelayError):
    """Raised when a record exists but is not in a state that allows the operation.

    Example: retrying a delivery whose endpoint has been deactivated.
    """

    status_code = 400


class RateLimitExceeded(MailRelayError):
    """Raised when an API key has exhausted its request budget."""

    status_code = 429


class DeliveryError(MailRelayError):
    """Raised when an outgoing SMTP send fails.

    Attributes:
        recipients: Addresses the message was addressed to
    """

    def __init__(self, message: str, recipients: list[str] | None = None):
        super().__init__(message)
        self.recipients = recipients or []


class DispatchError(MailRelayError):
    """Raised when routing an email to its endpoint did not succeed.

    Attributes:
        email_id: The email that was being dispatched
        delivery_ids: Delivery records created (and marked failed) by the attempt
    """

    def __init__(self, message: str, email_id: str | None = None, delivery_ids: list[str] | None = None):
        super().__init__(message)
        self.email_id = email_id
        self.delivery_ids = delivery_ids or []
