"""
Error taxonomy for the image pipeline.

Every failure the pipeline can recover from has its own type so the
orchestrator can decide, per stage, whether budget was consumed.
"""

from typing import Optional


class ImagePipelineError(Exception):
    """Base class for all pipeline failures."""


class ConfigurationError(ImagePipelineError):
    """Raised when a required credential or setting is missing."""


class GenerationError(ImagePipelineError):
    """Base class for failures of the external generation call."""


class ExternalServiceError(GenerationError):
    """Raised when the generation service answers with a non-success status.

    ``status`` is None when the request never produced a response
    (connection refused, DNS failure, read timeout).
    """
    def __init__(self, status: Optional[int], body: str):
        super().__init__(f"Generation service error: {status} - {body}")
        self.status = status
        self.body = body


class MalformedResponseError(GenerationError):
    """Raised when a successful response carries no inline image payload."""


class StorageError(ImagePipelineError):
    """Raised when the generated image cannot be persisted."""


class LedgerError(ImagePipelineError):
    """Raised when the spend ledger cannot be read or written."""


class CacheWriteError(ImagePipelineError):
    """Raised when a cache entry cannot be inserted."""
