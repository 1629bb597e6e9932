"""HookRelay exception hierarchy.

Provides structured exceptions for error handling throughout the codebase.
All exceptions inherit from HookRelayError for easy catching.
"""

from __future__ import annotations


class HookRelayError(Exception):
    """Root of the HookRelay exception tree.

    The API maps subclasses to HTTP statuses; anything else derived
    from this class becomes a 500 with the same JSON error body.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code for API responses.
    """

    code: str = "hookrelay_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }


class ValidationError(HookRelayError):
    """Invalid input provided.

    Raised at the management boundary when input fails validation
    (malformed endpoint URL, empty event type, retry of a delivered
    webhook, etc.).

    Attributes:
        field: The field that failed validation.
        message: Description of the validation failure.
    """

    code: str = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "field": self.field,
                "message": self.message,
            }
        }


class NotFoundError(HookRelayError):
    """Resource not found.

    Raised when an endpoint or delivery id does not resolve.

    Attributes:
        resource_type: Type of resource (e.g., "endpoint", "delivery").
        resource_id: ID of the missing resource.
    """

    code: str = "not_found"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "resource_type": self.resource_type,
                "resource_id": self.resource_id,
                "message": self.message,
            }
        }


class StorageError(HookRelayError):
    """Storage operation failed.

    Raised when the endpoint/delivery store cannot complete an operation.
    """

    code: str = "storage_error"


class ConfigurationError(HookRelayError):
    """Configuration error.

    Raised when required configuration is missing or invalid.
    """

    code: str = "configuration_error"


class DeliveryError(HookRelayError):
    """A single delivery attempt failed.

    Carries the HTTP status code (when a response was received) so the
    retry strategy can tell transient failures from permanent rejections.
    Never raised to event publishers.

    Attributes:
        status_code: HTTP status returned by the subscriber, if any.
        retry_after: Seconds the subscriber asked us to wait, if any.
        response_body: Body of the rejecting response, if any.
    """

    code: str = "delivery_error"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
        response_body: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.retry_after = retry_after
        self.response_body = response_body
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "status_code": self.status_code,
                "message": self.message,
            }
        }
