"""
Error taxonomy shared by every layer.

Validation problems are reported to the caller, storage problems degrade
gracefully, provider problems are handled by the CLI's silence policy.
"""


class LlmshError(Exception):
    """Base class for all llmsh errors."""


class ValidationError(LlmshError):
    """Raised when a request is missing or has malformed fields."""


class StorageError(LlmshError):
    """Raised when the cache or the usage ledger cannot be read or written."""


class ProviderError(LlmshError):
    """Raised when the LLM provider call fails at the transport or API level."""


class EmptyResponseError(ProviderError):
    """Raised when the provider answers without any completion choices."""

    def __init__(self, message: str = "empty response from API"):
        super().__init__(message)
