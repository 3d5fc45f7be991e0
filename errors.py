"""Domain errors for allocation import, tree creation and activation.

A wallet missing from a tree (or no active tree at all) is not an error:
lookups return None / False and callers treat that as "not eligible".
"""

from __future__ import annotations


class MerkleError(Exception):
    """Base class; ``reason`` is safe to show to the admin caller."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InvalidAllocationError(MerkleError):
    """Malformed allocation source. The whole import is aborted."""

    def __init__(self, reason: str, index: int | None = None):
        if index is not None:
            reason = f"Invalid allocation at index {index}: {reason}"
        super().__init__(reason)
        self.index = index


class InvalidNameError(MerkleError):
    """Tree name missing or unusable."""


class DuplicateNameError(MerkleError):
    def __init__(self, name: str):
        super().__init__(f"Merkle tree with name '{name}' already exists")
        self.name = name


class IntegrityError(MerkleError):
    """Tree failed validation; activation is refused."""


class TreeNotFoundError(MerkleError):
    def __init__(self, tree_id):
        super().__init__(f"Merkle tree {tree_id} not found")
        self.tree_id = tree_id


class ActivationConflictError(MerkleError):
    """Another activation committed first; the caller may retry."""

    def __init__(self, reason: str = "Concurrent activation detected; active tree unchanged"):
        super().__init__(reason)
