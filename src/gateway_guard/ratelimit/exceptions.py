"""Rate limiting errors.

None of these ever reach an API caller: store failures are absorbed by the
local fallback and everything else fails open in the service.
"""


class RateLimitError(Exception):
    """Base class for rate limiting errors."""


class StoreUnavailableError(RateLimitError):
    """The shared counter store could not be reached."""


class StoreTimeoutError(StoreUnavailableError):
    """A shared counter store call exceeded its time budget."""


class UnsupportedAlgorithmError(RateLimitError):
    """A policy names an algorithm no limiter implements."""

    def __init__(self, algorithm: str):
        super().__init__(f"Unsupported rate limit algorithm: {algorithm}")
        self.algorithm = algorithm


class PolicyConfigError(RateLimitError):
    """A policy table could not be loaded."""
