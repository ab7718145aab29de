from __future__ import annotations


class ResearchError(Exception):
    """Base for every classified error raised by the orchestration engine."""

    code = "research.error"
    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(ResearchError):
    code = "research.not_found"
    http_status = 404

    def __init__(self, session_id: str):
        super().__init__(f"Research {session_id} was not found")
        self.session_id = session_id


class InvalidTransitionError(ResearchError):
    code = "research.invalid_transition"
    http_status = 409

    def __init__(self, current: str, next_status: str, *, scope: str = "research"):
        super().__init__(f"Cannot transition {scope} from {current} to {next_status}")
        self.current = current
        self.next_status = next_status


class InvalidStateError(ResearchError):
    code = "research.invalid_state"
    http_status = 409


class InvalidInputError(ResearchError):
    code = "research.invalid_input"
    http_status = 400


class InvalidCursorError(ResearchError):
    code = "research.invalid_cursor"
    http_status = 400

    def __init__(self) -> None:
        super().__init__("Invalid pagination cursor")


class NonRetryableError(Exception):
    """Marks a failure that will never succeed on repetition."""


class ProviderError(ResearchError):
    code = "provider.error"
    http_status = 502

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        status_code: int | None = None,
        retry_after_ms: int | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.retry_after_ms = retry_after_ms


class ProviderTransientError(ProviderError):
    code = "provider.transient"


class ProviderPermanentError(ProviderError, NonRetryableError):
    code = "provider.permanent"


class DeliveryError(ResearchError):
    """Email delivery failed. Recorded on the report, never raised out of finalize."""

    code = "delivery.failed"
    http_status = 502
    retry_after_ms: int | None = None


class PermanentDeliveryError(DeliveryError, NonRetryableError):
    code = "delivery.rejected"
