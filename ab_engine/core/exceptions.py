class ABEngineError(Exception):
    """Base class for errors raised by the experiment engine."""


class InvalidTestConfiguration(ABEngineError, ValueError):
    """Raised when a test's variant set cannot be used for allocation.

    Covers an empty variant list, negative or non-finite weights, and a set
    whose weights sum to zero. Never corrected silently.
    """
