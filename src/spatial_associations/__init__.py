"""Spatial associations for SQLAlchemy."""

from __future__ import annotations

from .batch import (
    BatchPreloadAggregator,
    BatchQuerySpec,
    aggregate_ids,
    parse_batch_rows,
)
from .chain import (
    AssociationChainLink,
    ChainAssembly,
    ChainResolver,
    ForeignKeyCondition,
    SpatialJoin,
    TypeFilter,
)
from .config import DEFAULT_CONFIG, SpatialConfig
from .declarations import (
    AssociationSpec,
    PlainAssociationSpec,
    SpatialAssociationSpec,
    ThroughHop,
    get_association,
    has_many,
    has_many_spatially,
    spatial_associations_of,
)
from .exceptions import (
    ChainResolutionError,
    ConfigurationError,
    EmptyBatchError,
    InvalidRelationshipError,
    SpatialAssociationError,
)
from .geometry import (
    ColumnRef,
    GeometryOperandDescriptor,
    OperandContext,
    ResolvedOperand,
    StructuredGeom,
    normalize_geometry,
    resolve_operand,
)
from .loader import (
    SpatialAssociationLoader,
    SpatialCollection,
    cached_association,
    reset_association,
)
from .predicates import ResolvedPredicate, ScopeOptions, SpatialPredicateBuilder
from .reflection import EntityInfo
from .relationships import (
    DEFAULT_SPATIAL_REGISTRY,
    SpatialOperator,
    SpatialRelationship,
    SpatialRelationshipRegistry,
    build_default_spatial_registry,
)
from .scopes import (
    AssociationKind,
    AssociationScope,
    PlainAssociationScope,
    SpatialAssociationScope,
    scope_for,
)

__all__ = [
    # Declarations
    "has_many_spatially",
    "has_many",
    "get_association",
    "spatial_associations_of",
    "AssociationSpec",
    "PlainAssociationSpec",
    "SpatialAssociationSpec",
    "ThroughHop",
    # Configuration / whitelist
    "SpatialConfig",
    "DEFAULT_CONFIG",
    "SpatialRelationship",
    "SpatialOperator",
    "SpatialRelationshipRegistry",
    "DEFAULT_SPATIAL_REGISTRY",
    "build_default_spatial_registry",
    # Geometry operands
    "ColumnRef",
    "StructuredGeom",
    "GeometryOperandDescriptor",
    "OperandContext",
    "ResolvedOperand",
    "normalize_geometry",
    "resolve_operand",
    # Predicates / chains / batches
    "ScopeOptions",
    "ResolvedPredicate",
    "SpatialPredicateBuilder",
    "AssociationChainLink",
    "ChainAssembly",
    "ChainResolver",
    "ForeignKeyCondition",
    "SpatialJoin",
    "TypeFilter",
    "BatchPreloadAggregator",
    "BatchQuerySpec",
    "aggregate_ids",
    "parse_batch_rows",
    # Scopes
    "AssociationKind",
    "AssociationScope",
    "PlainAssociationScope",
    "SpatialAssociationScope",
    "scope_for",
    # Loading
    "SpatialAssociationLoader",
    "SpatialCollection",
    "cached_association",
    "reset_association",
    # Reflection
    "EntityInfo",
    # Exceptions
    "SpatialAssociationError",
    "ConfigurationError",
    "InvalidRelationshipError",
    "ChainResolutionError",
    "EmptyBatchError",
]
