"""
Association declaration API.

``has_many_spatially`` declares that records of one mapped class relate to
records of another through a spatial predicate rather than a foreign key::

    has_many_spatially(
        Region,
        "cities",
        target=City,
        relationship="contains",
        geom="boundary",
        foreign_geom="location",
    )

The relationship is validated immediately; both geometry references are
normalized once. The resulting ``SpatialAssociationSpec`` is immutable and
stored on the owner class, where loaders look it up by name.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from .chain import (
    AssociationChainLink,
    ForeignKeyCondition,
    SpatialJoin,
    TypeFilter,
)
from .exceptions import ConfigurationError
from .geometry import GeometryOperandDescriptor, normalize_geometry
from .predicates import ScopeOptions
from .reflection import EntityInfo
from .relationships import (
    DEFAULT_SPATIAL_REGISTRY,
    SpatialRelationship,
    SpatialRelationshipRegistry,
)
from .scopes import AssociationKind

logger = logging.getLogger(__name__)

_REGISTRY_ATTR = "__spatial_associations__"


class ThroughHop(BaseModel):
    """
    Intermediate entity on the way from the owner to the target.

    Attributes:
        entity: Mapped class of the intermediate table.
        foreign_key: Column holding the reference. ``None`` infers the join
            from foreign keys.
        references: Column referenced by ``foreign_key``.
        foreign_key_on_source: ``True`` when ``foreign_key`` lives on the
            previous hop instead of on ``entity``.
        type_column: Discriminator on ``entity`` that must equal the base
            type name of the previous hop (polymorphic hop).
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    entity: type[Any]
    foreign_key: str | None = None
    references: str = "id"
    foreign_key_on_source: bool = False
    type_column: str | None = None


class AssociationSpec(BaseModel, ABC):
    """Fields shared by every declared association."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True, extra="forbid")

    kind: ClassVar[AssociationKind]

    name: str
    owner: type[Any]
    target: type[Any]
    through: tuple[ThroughHop, ...] = ()
    conditions: tuple[Any, ...] = ()
    type_column: str | None = None
    extension: type[Any] | None = None

    def chain_links(self) -> list[AssociationChainLink]:
        """Hops from the owner to the target, terminal hop last."""
        links: list[AssociationChainLink] = []
        source = self.owner
        for position, hop in enumerate(self.through):
            condition = (
                ForeignKeyCondition(
                    hop.foreign_key, hop.references, hop.foreign_key_on_source
                )
                if hop.foreign_key
                else None
            )
            links.append(
                AssociationChainLink(
                    source=source,
                    target=hop.entity,
                    position=position,
                    condition=condition,
                    type_filter=_type_filter(hop.type_column, source),
                )
            )
            source = hop.entity
        links.append(self._terminal_link(source, len(links)))
        return links

    @abstractmethod
    def _terminal_link(
        self, source: type[Any], position: int
    ) -> AssociationChainLink:
        """The hop that reaches ``target``."""
        ...


class PlainAssociationSpec(AssociationSpec):
    """Association joined by foreign key on every hop."""

    kind: ClassVar[AssociationKind] = AssociationKind.PLAIN

    foreign_key: str | None = None
    references: str = "id"

    def _terminal_link(self, source: type[Any], position: int) -> AssociationChainLink:
        return AssociationChainLink(
            source=source,
            target=self.target,
            position=position,
            condition=(
                ForeignKeyCondition(self.foreign_key, self.references)
                if self.foreign_key
                else None
            ),
            type_filter=_type_filter(self.type_column, source),
            conditions=self.conditions,
        )


class SpatialAssociationSpec(AssociationSpec):
    """
    Declared spatial association.

    ``relationship`` is evaluated as ``<relationship>(geom, foreign_geom)``:
    the owner side (or the last intermediate hop) first, the target second.
    """

    kind: ClassVar[AssociationKind] = AssociationKind.SPATIAL

    relationship: SpatialRelationship
    geom: GeometryOperandDescriptor
    foreign_geom: GeometryOperandDescriptor
    scope_options: ScopeOptions = ScopeOptions()

    @field_validator("geom", "foreign_geom", mode="before")
    @classmethod
    def _normalize_geometry(cls, value: Any) -> GeometryOperandDescriptor:
        return normalize_geometry(value)

    @field_validator("scope_options", mode="before")
    @classmethod
    def _coerce_scope_options(cls, value: Any) -> ScopeOptions:
        return ScopeOptions.coerce(value)

    @model_validator(mode="after")
    def _check_owner_alias(self) -> SpatialAssociationSpec:
        # Only a spatial hop leaving the owner may rename the owner alias.
        if self.through and self.geom.structured and self.geom.table_alias:
            raise ConfigurationError(
                f"geom of '{self.name}' names table_alias "
                f"'{self.geom.table_alias}', which is unreachable after "
                f"{len(self.through)} through hop(s)",
                option="geom",
            )
        return self

    def spatial_join(self) -> SpatialJoin:
        return SpatialJoin(
            relationship=self.relationship,
            geom=self.geom,
            foreign_geom=self.foreign_geom,
            scope_options=self.scope_options,
        )

    def _terminal_link(self, source: type[Any], position: int) -> AssociationChainLink:
        return AssociationChainLink(
            source=source,
            target=self.target,
            position=position,
            spatial=self.spatial_join(),
            type_filter=_type_filter(self.type_column, source),
            conditions=self.conditions,
        )


def _type_filter(column: str | None, source: type[Any]) -> TypeFilter | None:
    if column is None:
        return None
    return TypeFilter(column=column, type_name=EntityInfo.of(source).base_type_name)


def has_many_spatially(
    owner: type[Any],
    name: str,
    *,
    target: type[Any],
    relationship: SpatialRelationship | str,
    geom: Any,
    foreign_geom: Any = None,
    scope_options: ScopeOptions | Mapping[str, Any] | None = None,
    through: Sequence[ThroughHop | Mapping[str, Any]] = (),
    conditions: Sequence[Any] = (),
    type_column: str | None = None,
    extension: type[Any] | None = None,
    registry: SpatialRelationshipRegistry | None = None,
) -> SpatialAssociationSpec:
    """
    Declare a spatially-related collection ``name`` on ``owner``.

    Args:
        owner: Mapped class that owns the association.
        name: Association name, unique per class.
        target: Mapped class of the related records.
        relationship: Spatial relationship name (``contains``, ``within``...).
        geom: Owner-side geometry: a column name or a structured descriptor.
        foreign_geom: Target-side geometry; defaults to ``geom``'s column.
        scope_options: ``use_index`` / ``filters`` merged into the predicate.
        through: Intermediate hops between the owner and the target.
        conditions: Extra row filters on the target rows.
        type_column: Discriminator on the target holding the base type
            name of the hop before it.
        extension: Mixin class whose methods are added to loaded collections.
        registry: Relationship whitelist; defaults to the built-in one.

    Raises:
        InvalidRelationshipError: If ``relationship`` is not whitelisted.
        ConfigurationError: For malformed geometry, scope options, a
            duplicate association name, or a ``geom`` table alias combined
            with ``through`` hops.
    """
    rel = (registry or DEFAULT_SPATIAL_REGISTRY).validate(relationship)
    geom_descriptor = normalize_geometry(geom)
    if foreign_geom is None:
        if not geom_descriptor.column:
            raise ConfigurationError(
                "foreign_geom is required when geom names no column",
                option="foreign_geom",
            )
        foreign_geom = geom_descriptor.column

    spec = SpatialAssociationSpec(
        name=name,
        owner=owner,
        target=target,
        relationship=rel,
        geom=geom_descriptor,
        foreign_geom=foreign_geom,
        scope_options=scope_options,
        through=tuple(through),
        conditions=tuple(conditions),
        type_column=type_column,
        extension=extension,
    )
    _register(owner, spec)
    logger.debug(
        "Declared spatial association %s.%s (%s %s)",
        owner.__name__,
        name,
        rel.value,
        target.__name__,
    )
    return spec


def has_many(
    owner: type[Any],
    name: str,
    *,
    target: type[Any],
    foreign_key: str | None = None,
    references: str = "id",
    through: Sequence[ThroughHop | Mapping[str, Any]] = (),
    conditions: Sequence[Any] = (),
    type_column: str | None = None,
    extension: type[Any] | None = None,
) -> PlainAssociationSpec:
    """Declare a foreign-key collection loaded through the same machinery."""
    spec = PlainAssociationSpec(
        name=name,
        owner=owner,
        target=target,
        foreign_key=foreign_key,
        references=references,
        through=tuple(through),
        conditions=tuple(conditions),
        type_column=type_column,
        extension=extension,
    )
    _register(owner, spec)
    return spec


def _register(owner: type[Any], spec: AssociationSpec) -> None:
    declared: dict[str, AssociationSpec] = dict(owner.__dict__.get(_REGISTRY_ATTR, {}))
    if spec.name in declared:
        raise ConfigurationError(
            f"{owner.__name__} already declares an association named '{spec.name}'",
            option="name",
        )
    declared[spec.name] = spec
    setattr(owner, _REGISTRY_ATTR, declared)


def spatial_associations_of(owner: type[Any]) -> dict[str, AssociationSpec]:
    """Associations declared on ``owner`` and its bases, nearest first."""
    found: dict[str, AssociationSpec] = {}
    for klass in owner.__mro__:
        for name, spec in klass.__dict__.get(_REGISTRY_ATTR, {}).items():
            found.setdefault(name, spec)
    return found


def get_association(owner: type[Any], name: str) -> AssociationSpec:
    """
    Look up association ``name`` on ``owner``.

    Raises:
        ConfigurationError: If no such association is declared.
    """
    declared = spatial_associations_of(owner)
    if name not in declared:
        raise ConfigurationError(
            f"{owner.__name__} declares no association named '{name}'",
            option="name",
        )
    return declared[name]


__all__ = [
    "AssociationSpec",
    "PlainAssociationSpec",
    "SpatialAssociationSpec",
    "ThroughHop",
    "get_association",
    "has_many",
    "has_many_spatially",
    "spatial_associations_of",
]
