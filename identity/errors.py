# identity/errors.py
"""
Error kinds raised by the identity registry.

Every error surfaces synchronously to the caller of a registry operation and
the operation's transaction is rolled back. Nothing here is retried.
"""

from __future__ import annotations


class RegistryError(Exception):
    """Base class for all identity registry errors."""


class NotFound(RegistryError):
    """Raised when a referenced person, cluster or embedding id does not exist."""


class DimensionMismatch(RegistryError):
    """Raised when two vectors of different lengths are compared or combined."""

    def __init__(self, left: int, right: int):
        super().__init__(f"Vector length mismatch: {left} vs {right}")
        self.left = left
        self.right = right


class InvalidOperation(RegistryError):
    """Raised when an operation is not allowed, e.g. merging a person with itself."""


class InvalidRequest(InvalidOperation):
    """Raised when the caller's input is rejected before any write happens."""


class InconsistentState(RegistryError):
    """
    Raised when the store contradicts its own invariants.

    Examples: an embedding points at a cluster that no longer exists, or a
    cluster's sample_count disagrees with the embeddings referencing it.
    This indicates corruption and is never repaired silently.
    """


class LockTimeout(RegistryError):
    """Raised when a per-type clustering lock cannot be acquired in time."""
