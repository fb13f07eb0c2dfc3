"""
Error types for the retrieval engine.

Provider errors are expected at the edges and degrade the operation;
DimensionMismatch and NotFound signal misuse and always propagate.
"""


class RecallError(Exception):
    """Base class for all retrieval engine errors."""


class ProviderUnavailable(RecallError):
    """No embedding provider is configured (the feature is disabled)."""


class ProviderError(RecallError):
    """The embedding provider failed after the retry budget was exhausted."""


class DimensionMismatch(RecallError, ValueError):
    """Two vectors of different dimension were compared."""

    def __init__(self, left: int, right: int):
        super().__init__(f"Vector dimensions differ: {left} != {right}")
        self.left = left
        self.right = right


class NotFound(RecallError, LookupError):
    """A referenced row does not exist or belongs to another scope."""
