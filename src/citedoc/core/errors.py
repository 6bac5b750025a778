"""Error taxonomy for ingestion, retrieval and answer generation."""

from typing import Optional


class CiteDocError(Exception):
    """Base class for all citedoc errors."""

    user_message = "Internal Server Error"

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        if user_message is not None:
            self.user_message = user_message


class ConfigurationError(CiteDocError):
    """Required settings or upstream credentials are missing."""

    user_message = "Server not configured."


class AuthorizationError(CiteDocError):
    """No authenticated identity was supplied."""

    user_message = "Unauthorized"


class NotFoundError(CiteDocError):
    """A conversation or document does not exist or belongs to someone else."""

    user_message = "Not found"


class EmbeddingError(CiteDocError):
    """An embedding request failed upstream (transient, degraded by callers)."""


class StoreError(CiteDocError):
    """The fragment/document store could not be reached or rejected a query."""


class RetrievalError(CiteDocError):
    """Retrieval aborted because the underlying store failed."""


class GenerationError(CiteDocError):
    """The language model call failed while producing an answer."""

    user_message = "AI generation failed."


class IngestionError(CiteDocError):
    """A document could not be processed; partial artifacts were removed."""

    user_message = "Failed to process file."
