"""
Transcoder error types.

Synchronous errors (raised to the submitting caller) carry a stable ``code``
that the HTTP layer maps onto a status. In-job errors are recorded on the job
record and never reach the caller directly.
"""


class TranscoderError(Exception):
    """Base exception for all transcoder failures."""

    code = "InternalError"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidInput(TranscoderError):
    """Bad request shape, or no supported output left after preset resolution."""

    code = "InvalidInput"


class SourceNotFound(TranscoderError):
    """The source media reference does not exist in object storage."""

    code = "SourceNotFound"

    def __init__(self, media_ref: str):
        self.media_ref = media_ref
        super().__init__(f"Media file not found: {media_ref}")


class SourceTypeUnsupported(TranscoderError):
    """The source media is not a video."""

    code = "SourceTypeUnsupported"

    def __init__(self, media_ref: str):
        self.media_ref = media_ref
        super().__init__(f"Media file is not a supported video type: {media_ref}")


class ServiceUnavailable(TranscoderError):
    """Queue or job store unreachable at submission time."""

    code = "ServiceUnavailable"


class EngineFailure(TranscoderError):
    """The transcoding engine failed to produce one output."""

    code = "EngineFailure"

    def __init__(self, output_id: str, reason: str):
        self.output_id = output_id
        self.reason = reason
        super().__init__(reason)


class DeliveryFailure(TranscoderError):
    """Webhook could not be delivered after exhausting retries (logged only)."""

    code = "DeliveryFailure"

    def __init__(self, url: str, attempts: int, reason: str):
        self.url = url
        self.attempts = attempts
        self.reason = reason
        super().__init__(f"Webhook delivery to {url} failed after {attempts} attempts: {reason}")


class CleanupFailure(TranscoderError):
    """Temporary workspace removal failed (logged only)."""

    code = "CleanupFailure"

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to remove workspace {path}: {reason}")
