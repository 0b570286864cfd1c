"""memorymesh -- relationship graph engine for captured web memories.

Quick start::

    from memorymesh import MeshEngine

    async def main():
        engine = MeshEngine()
        await engine.initialize()

        await engine.process_memory("m-42", owner_id="alice")
        mesh = await engine.get_mesh("alice", limit=50)

        await engine.shutdown()

For lower-level access, import from submodules::

    from memorymesh.candidates import RelationCandidateGenerator, merge_candidates
    from memorymesh.filtering import ConfidenceTieredFilter
    from memorymesh.relations import RelationStore, RELATION_TYPES
    from memorymesh.graph import GraphPostProcessor
    from memorymesh.layout import SpatialLayoutEngine
    from memorymesh.clustering import ClusterDetector
"""

from __future__ import annotations

__version__ = "0.1.0"

# Public API exports
from memorymesh.engine import MeshEngine
from memorymesh.errors import ArbitrationError, MemoryNotFoundError, MeshError
from memorymesh.memories import Memory, MemoryMetadata
from memorymesh.relations import RELATION_TYPES, Relation, UpsertOutcome

__all__ = [
    "__version__",
    "MeshEngine",
    "Memory",
    "MemoryMetadata",
    "Relation",
    "RELATION_TYPES",
    "UpsertOutcome",
    "MeshError",
    "MemoryNotFoundError",
    "ArbitrationError",
]
