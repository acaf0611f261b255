"""Exception hierarchy for the support chat pipeline.

Every error carries the HTTP status it maps to and the apology shown to the
end user. Internal detail stays in the exception message and the logs.
"""

GENERIC_APOLOGY = "Sorry, something went wrong. Please try again."


class SupportChatError(Exception):
    """Base class for all pipeline errors."""

    status_code = 500
    public_message = GENERIC_APOLOGY

    def __init__(self, message: str = "", public_message: str | None = None) -> None:
        super().__init__(message)
        if public_message is not None:
            self.public_message = public_message


class ConfigurationError(SupportChatError):
    """Missing or unusable credentials / endpoints. Never retried."""

    public_message = "The assistant is not configured. Please contact support."


class InvalidRequestError(SupportChatError):
    """Malformed or empty request."""

    status_code = 400
    public_message = "No message provided"


class UpstreamTimeout(SupportChatError):
    """A model or store call exceeded the request deadline."""

    status_code = 408
    public_message = "Sorry, the request timed out. Please try again."


class StoreUnavailable(SupportChatError):
    """The vector store could not be reached after all retries."""


class EmbeddingFailure(SupportChatError):
    """The embedding provider rejected or failed the request."""


class ClassificationError(SupportChatError):
    """The relevance classifier could not produce a result."""


class GenerationError(SupportChatError):
    """The language model failed to produce a completion."""


class DegradedFeatureFailure(SupportChatError):
    """An optional stage failed; callers absorb it and continue."""
