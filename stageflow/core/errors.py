"""Error taxonomy for the scheduling engine.

Configuration errors surface synchronously to configuration API callers.
Send errors are recorded on the scheduled execution row and never raised to
end users. Store failures are not wrapped here: they propagate out of the
sweep and halt it.
"""


class StageflowError(Exception):
    """Base exception for engine errors."""

    pass


class ConfigurationError(StageflowError):
    """Invalid automation/campaign configuration (rejected at write time)."""

    pass


class NotFoundError(StageflowError):
    """Requested record does not exist in the caller's organization."""

    pass


class DedupSkip(StageflowError):
    """Insert collided with an existing dedupe key. Not an error for callers."""

    def __init__(self, dedupe_key: str):
        super().__init__(f"Already scheduled: {dedupe_key}")
        self.dedupe_key = dedupe_key


class SendError(StageflowError):
    """Base class for sender failures."""

    retryable = False


class TransientSendError(SendError):
    """Provider timeout, 5xx or rate limit. Retried with backoff."""

    retryable = True


class PermanentSendError(SendError):
    """Invalid recipient, missing content, rejected payload. Never retried."""

    retryable = False


class StaleClaimError(TransientSendError):
    """A worker claimed the row and never finished (crash mid-send)."""

    pass
