"""Provider (Evolution API) error taxonomy."""


class ProviderError(Exception):
    """Base class for failures talking to the WhatsApp provider."""


class ProviderSendError(ProviderError):
    """Provider definitively rejected the request (after auth fallbacks)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderTimeoutError(ProviderError):
    """Provider did not answer in time. Retryable."""
