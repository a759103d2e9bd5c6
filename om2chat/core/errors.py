from __future__ import annotations


class Om2ChatError(Exception):
    """Base error for om2chat."""


class ProviderConfigError(Om2ChatError):
    """Missing or invalid provider configuration."""


class ProviderError(Om2ChatError):
    """Upstream LLM provider returned a failure."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class EmbeddingError(Om2ChatError):
    """Embedding request failed or returned an unexpected payload."""


class PdfExtractionError(Om2ChatError):
    """PDF bytes could not be parsed into text."""


class DocumentFetchError(Om2ChatError):
    """Remote document bytes could not be downloaded."""


class RetrievalError(Om2ChatError):
    """Retrieval layer failure."""


class RateLimitBackendError(Om2ChatError):
    """Rate limit storage is unreachable or returned garbage."""


class BillingError(Om2ChatError):
    """Stripe call failed."""


class EmailDeliveryError(Om2ChatError):
    """Transactional email could not be sent."""
