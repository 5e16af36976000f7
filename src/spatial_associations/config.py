"""
Process-wide configuration for spatial query construction.

A ``SpatialConfig`` is built once (usually the module-level
``DEFAULT_CONFIG``) and injected into the builders. It is frozen so it can
be shared freely between threads.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from sqlalchemy.dialects import postgresql

from .relationships import DEFAULT_SPATIAL_REGISTRY, SpatialRelationshipRegistry

if TYPE_CHECKING:
    from sqlalchemy.engine import Dialect

SPATIAL_JOIN_ALIAS = "__spatial_ids_join__"
SPATIAL_IDS_LABEL = "__spatial_ids__"
SPATIAL_OWNER_LABEL = "__spatial_owner_id__"
SPATIAL_MATCHES_ALIAS = "__spatial_matches__"


def _default_dialect() -> Dialect:
    # Positional paramstyle keeps bound parameters in placeholder order.
    return postgresql.dialect(paramstyle="format")  # type: ignore[no-any-return]


@dataclass(frozen=True)
class SpatialConfig:
    """
    Immutable settings shared by every spatial query builder.

    Attributes:
        registry: Whitelist of supported spatial relationships.
        join_alias: Reserved alias for the owner side of a batch join and
            default ``table_alias`` of structured geometry descriptors.
        ids_label: Label of the aggregated target-id column.
        owner_label: Label of the owner-id grouping column.
        matches_alias: Alias of the distinct, ordered owner/target pairs a
            batch preload aggregates.
        delimiter: Separator used when aggregating target ids.
        dialect: Dialect used to render predicates for inspection.
    """

    registry: SpatialRelationshipRegistry = field(
        default_factory=lambda: DEFAULT_SPATIAL_REGISTRY
    )
    join_alias: str = SPATIAL_JOIN_ALIAS
    ids_label: str = SPATIAL_IDS_LABEL
    owner_label: str = SPATIAL_OWNER_LABEL
    matches_alias: str = SPATIAL_MATCHES_ALIAS
    delimiter: str = ","
    dialect: Any = field(default_factory=_default_dialect, compare=False)

    def with_registry(self, registry: SpatialRelationshipRegistry) -> SpatialConfig:
        """Return a copy using ``registry`` as the relationship whitelist."""
        return replace(self, registry=registry)


DEFAULT_CONFIG = SpatialConfig()

__all__ = [
    "DEFAULT_CONFIG",
    "SPATIAL_IDS_LABEL",
    "SPATIAL_JOIN_ALIAS",
    "SPATIAL_MATCHES_ALIAS",
    "SPATIAL_OWNER_LABEL",
    "SpatialConfig",
]
