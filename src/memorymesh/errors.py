"""Exception types raised by the memory-mesh engine."""

from __future__ import annotations


class MeshError(Exception):
    """Base class for engine errors."""


class MemoryNotFoundError(MeshError, LookupError):
    """A memory id did not resolve to a stored memory for the given owner."""

    def __init__(self, memory_id: str, owner_id: str | None = None) -> None:
        self.memory_id = memory_id
        self.owner_id = owner_id
        if owner_id is None:
            super().__init__(f"Memory {memory_id!r} not found")
        else:
            super().__init__(f"Memory {memory_id!r} not found for owner {owner_id!r}")


class ArbitrationError(MeshError):
    """The arbitration collaborator failed or returned unusable output."""
