class ValidationError(ValueError):
    """Malformed input, rejected before it reaches the store or the reconciler."""


class ConflictError(Exception):
    """
    A reading already occupies the (day, period) slot.

    `existing` is the stored reading so the caller can offer keep vs. overwrite.
    """

    def __init__(self, existing, message: str = None):
        self.existing = existing
        super().__init__(message or f"A {existing.period} reading already exists for this day")


class UpstreamUnavailable(Exception):
    """Storage or notification backend failed. Safe to retry."""

    retryable = True
