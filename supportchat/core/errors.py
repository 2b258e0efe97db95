"""Error taxonomy shared by the synchronous and background paths."""

from __future__ import annotations


class SupportChatError(RuntimeError):
    """Base class for errors raised by the support chat core."""


class ValidationError(SupportChatError):
    """Raised when caller supplied input is malformed.

    ``errors`` maps field names to human readable messages so HTTP handlers
    can hand them back to the user unchanged.
    """

    def __init__(self, errors: dict[str, list[str]]) -> None:
        self.errors = {field: list(messages) for field, messages in errors.items()}
        summary = "; ".join(
            f"{field}: {', '.join(messages)}" for field, messages in self.errors.items()
        )
        super().__init__(summary or "invalid input")

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationError":
        return cls({field: [message]})


class NotFoundError(SupportChatError):
    """Raised when a referenced conversation, message or analysis is missing."""


class Unauthorized(SupportChatError):
    """Raised when a session tries to act on a conversation it does not own."""


class TransientExternalError(SupportChatError):
    """Failure talking to an external dependency that is worth retrying."""

    def __init__(self, message: str, *, timeout: bool = False) -> None:
        super().__init__(message)
        self.timeout = timeout


class WebhookDeliveryError(TransientExternalError):
    """Raised when an outbound webhook answers non-2xx or cannot be reached."""

    def __init__(
        self, message: str, *, status_code: int | None = None, timeout: bool = False
    ) -> None:
        super().__init__(message, timeout=timeout)
        self.status_code = status_code


class DeliveryBestEffortFailure(SupportChatError):
    """A push to one live subscriber failed. Logged by the hub, never propagated."""
