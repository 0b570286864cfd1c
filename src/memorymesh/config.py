"""Central configuration for the memory-mesh engine.

All tunables live here with sensible defaults.  Values can be overridden
through environment variables prefixed with ``MEMORYMESH_`` (nested keys use
double underscores, e.g. ``MEMORYMESH_FILTER__AUTO_ACCEPT=0.75``).

Usage::

    from memorymesh.config import get_config

    cfg = get_config()
    print(cfg.db_path)
    print(cfg.filter.auto_accept)
"""

from __future__ import annotations

import os
import sys
import types
import typing
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TypeVar, get_type_hints

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Nested configuration sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CandidateConfig:
    """Parameters for the three candidate generators and the merger."""

    semantic_threshold: float = 0.3
    """Minimum embedding similarity for a semantic candidate."""
    semantic_limit: int = 12
    topical_threshold: float = 0.25
    """Minimum combined metadata-overlap score for a topical candidate."""
    topical_limit: int = 8
    temporal_threshold: float = 0.2
    """Minimum time-proximity score for a temporal candidate."""
    temporal_limit: int = 5

    topic_weight: float = 0.4
    category_weight: float = 0.3
    key_point_weight: float = 0.2
    searchable_term_weight: float = 0.1
    same_domain_boost: float = 0.1
    """Added to a topical score when both memories come from the same host."""

    candidate_pool: int = 500
    """Most recent memories of the owner scanned by the topical generator."""

    merge_tie_margin: float = 0.15
    """Scores within this distance count as a tie when merging; the more
    specific relation type wins a tie and keeps its own score."""

    score_rules_path: Path | None = None
    """Optional JSON file replacing the default pairwise score rules."""


@dataclass(frozen=True, slots=True)
class FilterConfig:
    """Thresholds for the confidence-tiered relation filter."""

    auto_accept: float = 0.7
    """Candidates at or above this score are accepted without checks (tier 1)."""
    heuristic_floor: float = 0.5
    """Lower bound of the heuristic tier (tier 2)."""
    arbitration_floor: float = 0.4
    """Lower bound of the arbitrated tier (tier 3).  Below this, dropped."""
    heuristic_accept: float = 0.3
    """Minimum heuristic score for a tier 2 candidate to be accepted."""

    heuristic_topic_weight: float = 0.6
    heuristic_category_weight: float = 0.3
    heuristic_domain_boost: float = 0.1

    arbitration_min_topics: int = 3
    """Both memories need at least this many topics to be arbitrated."""
    arbitration_max_age_days: int = 7
    """Both memories must be created within this many days of each other."""
    max_arbitrations: int = 3
    """Upper bound on arbitrated candidates per source memory."""
    arbitration_accept: float = 0.3
    """Minimum arbitrated relevance score for acceptance."""

    max_relations: int = 8
    """Maximum accepted relations per source memory."""
    fallback_count: int = 3
    """Candidates kept when every tier rejected everything."""
    fallback_min_score: float = 0.3


@dataclass(frozen=True, slots=True)
class ArbitrationConfig:
    """LLM arbitration collaborator and its verdict cache."""

    ollama_url: str = "http://localhost:11434"
    model: str = "llama3.2:3b"
    timeout_seconds: float = 20.0
    """Bound on a single batched arbitration call."""
    cache_backend: str = "memory"
    """``memory`` for a per-process cache, ``sqlite`` to share verdicts
    between processes through the database."""
    cache_ttl_seconds: int = 86_400
    sweep_interval_seconds: int = 600


@dataclass(frozen=True, slots=True)
class RelationConfig:
    """Relation upsert rules and periodic maintenance."""

    update_margin: float = 0.05
    """A stored relation is overwritten when the new score beats it by more
    than this, or beats it at all with a more specific type."""
    prune_below: float = 0.3
    max_per_source: int = 10
    stale_after_days: int = 30
    stale_below: float = 0.4
    maintenance_interval_seconds: int = 3600

    cluster_min_score: float = 0.3
    """Relations at or below this score are not followed by ``get_cluster``."""
    cluster_fanout: int = 5
    """Strongest relations followed per memory by ``get_cluster``."""


@dataclass(frozen=True, slots=True)
class MeshConfig:
    """Mesh assembly, pruning and degree guarantees."""

    default_limit: int = 50
    max_nodes: int = 200
    similarity_threshold: float = 0.3

    mutual_k: int = 3
    min_degree_cap: int = 2
    max_degree_cap: int = 5

    semantic_bonus: float = 0.05
    topical_bonus: float = 0.02
    temporal_bonus: float = 0.0

    min_degree: int = 1
    """Nodes below this degree after pruning get candidates added back."""

    proximity_neighbors: int = 6
    """Nearest projected neighbours scored per node when recomputing edges."""
    same_source_boost: float = 0.05
    same_domain_boost: float = 0.05
    close_in_time_boost: float = 0.05
    close_in_time_hours: int = 24


@dataclass(frozen=True, slots=True)
class LayoutConfig:
    """Spatial layout of mesh nodes."""

    dimensions: int = 3
    extent: float = 100.0
    """Coordinates are normalised into ``[-extent, extent]``."""
    min_embedded: int = 3
    jitter_fraction: float = 0.15
    """Grid jitter as a fraction of the grid cell size."""

    force_iterations: int = 150
    repulsion: float = 2000.0
    attraction: float = 0.01
    max_force: float = 10.0
    initial_damping: float = 0.9
    final_damping: float = 0.1
    aspect: float = 0.6
    """Height / width ratio of the force-directed bounding rectangle."""


@dataclass(frozen=True, slots=True)
class ClusterConfig:
    """Density-based clustering over laid-out coordinates."""

    epsilon: float = 20.0
    min_points: int = 3


# ---------------------------------------------------------------------------
# Top-level configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class MemoryMeshConfig:
    """Root configuration object for the memory-mesh engine.

    All paths are stored as resolved :class:`~pathlib.Path` instances with
    ``~`` expanded.
    """

    db_path: Path = field(default_factory=lambda: Path("~/.memorymesh/mesh.db"))
    backup_dir: Path = field(default_factory=lambda: Path("~/.memorymesh/backups"))
    backup_count: int = 5
    embedding_dims: int = 768
    concurrent_jobs: int = 4

    candidates: CandidateConfig = field(default_factory=CandidateConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)
    arbitration: ArbitrationConfig = field(default_factory=ArbitrationConfig)
    relations: RelationConfig = field(default_factory=RelationConfig)
    mesh: MeshConfig = field(default_factory=MeshConfig)
    layout: LayoutConfig = field(default_factory=LayoutConfig)
    clustering: ClusterConfig = field(default_factory=ClusterConfig)

    def __post_init__(self) -> None:
        # Expand ~ in path fields.  We use object.__setattr__ because the
        # dataclass is frozen.
        object.__setattr__(self, "db_path", self.db_path.expanduser())
        object.__setattr__(self, "backup_dir", self.backup_dir.expanduser())


# ---------------------------------------------------------------------------
# Environment-variable loader
# ---------------------------------------------------------------------------

_ENV_PREFIX = "MEMORYMESH_"
_NESTED_SEP = "__"


def _resolve_type_hints(dc_type: type) -> dict[str, type]:
    """Resolve stringified annotations back to real types.

    ``from __future__ import annotations`` turns all annotations into
    strings.  :func:`typing.get_type_hints` evaluates them in the correct
    module namespace so we get the actual :class:`type` objects.
    """
    module = sys.modules.get(dc_type.__module__, None)
    globalns = getattr(module, "__dict__", {}) if module else {}
    return get_type_hints(dc_type, globalns=globalns)


def _unwrap_optional(target_type: object) -> object:
    """Return ``X`` for ``X | None``; any other type is returned unchanged."""
    if isinstance(target_type, types.UnionType) or typing.get_origin(target_type) is typing.Union:
        args = [a for a in typing.get_args(target_type) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return target_type


def _coerce(value: str, target_type: type[T]) -> T | None:
    """Cast an env-var string to the target field type."""
    target = _unwrap_optional(target_type)
    if target is not target_type and value == "":
        return None
    if target is bool:
        return value.lower() in ("1", "true", "yes")  # type: ignore[return-value]
    return target(value)  # type: ignore[operator,return-value]


def _load_dataclass(dc_type: type[T], prefix: str) -> T:
    """Recursively build a dataclass from env-var overrides + defaults."""
    hints = _resolve_type_hints(dc_type)
    kwargs: dict[str, object] = {}

    for f in fields(dc_type):  # type: ignore[arg-type]
        field_type = hints[f.name]
        nested_prefix = f"{prefix}{f.name}{_NESTED_SEP}".upper()

        # Determine if this field is itself a dataclass.
        if hasattr(field_type, "__dataclass_fields__"):
            kwargs[f.name] = _load_dataclass(field_type, nested_prefix)
        else:
            env_key = f"{prefix}{f.name}".upper()
            raw = os.environ.get(env_key)
            if raw is not None:
                kwargs[f.name] = _coerce(raw, field_type)

    return dc_type(**kwargs)  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

_cached_config: MemoryMeshConfig | None = None


def get_config(*, reload: bool = False) -> MemoryMeshConfig:
    """Return the current :class:`MemoryMeshConfig`.

    On the first call the config is built by merging defaults with any
    ``MEMORYMESH_*`` environment variables.  The result is cached for the
    lifetime of the process unless *reload* is ``True``.

    Parameters
    ----------
    reload:
        Force re-reading environment variables and rebuilding the config.
    """
    global _cached_config  # noqa: PLW0603
    if _cached_config is None or reload:
        _cached_config = _load_dataclass(MemoryMeshConfig, _ENV_PREFIX)
    return _cached_config
