"""
Association chain resolution.

Walks an ordered chain of hops from an owner record to the association's
target rows and produces a single ``Select``::

    SELECT <target>.*
    FROM <owner> AS __spatial_ids_join__
    JOIN <hop 1> ON [type filter AND] <foreign key | spatial predicate>
    ...
    JOIN <target> ON [type filter AND] <spatial predicate [AND scope filters]>
    WHERE __spatial_ids_join__.<pk> = :owner_id [AND <row filters>]

The terminal hop is always the spatial one. When a spatial hop starts at
the owner itself, the owner geometry is bound as a value instead of being
read from the owner's column.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union

from sqlalchemy import and_, inspect, select, text
from sqlalchemy.exc import ArgumentError
from sqlalchemy.sql import ClauseElement
from sqlalchemy.sql.util import ClauseAdapter, join_condition

from .config import DEFAULT_CONFIG, SpatialConfig
from .exceptions import ChainResolutionError
from .geometry import GeometryOperandDescriptor, OperandContext, resolve_operand
from .predicates import ScopeOptions, SpatialPredicateBuilder
from .reflection import EntityInfo

if TYPE_CHECKING:
    from sqlalchemy import ColumnElement, Select

    from .relationships import SpatialRelationship

logger = logging.getLogger(__name__)

#: SQL text (``{table}`` is replaced by the quoted target alias), a callable
#: ``(target_alias, owner) -> expression`` or an expression over the
#: unaliased target table.
RowFilter = Union[str, Callable[[Any, Any], Any], ClauseElement]


@dataclass(frozen=True)
class TypeFilter:
    """Discriminator equality ``<column> = <type_name>`` on the joined table."""

    column: str
    type_name: str


@dataclass(frozen=True)
class ForeignKeyCondition:
    """
    Plain equality join between two hops.

    ``foreign_key`` lives on the joined (target) side unless
    ``foreign_key_on_source`` is set.
    """

    foreign_key: str
    references: str = "id"
    foreign_key_on_source: bool = False

    def __call__(self, source: Any, target: Any) -> ColumnElement[bool]:
        if self.foreign_key_on_source:
            source, target = target, source
        fk = getattr(target, self.foreign_key)
        return fk == getattr(source, self.references)  # type: ignore[no-any-return]


@dataclass(frozen=True)
class SpatialJoin:
    """Spatial condition of a hop: ``<relationship>(geom, foreign_geom)``."""

    relationship: SpatialRelationship | str
    geom: GeometryOperandDescriptor
    foreign_geom: GeometryOperandDescriptor
    scope_options: ScopeOptions = field(default_factory=ScopeOptions)


@dataclass(frozen=True)
class AssociationChainLink:
    """
    One hop of an association chain.

    Attributes:
        source: Mapped class the hop starts from.
        target: Mapped class the hop joins.
        position: Zero-based position in the chain.
        condition: ``(source_alias, target_alias) -> expression`` join
            condition for non-spatial hops. ``None`` infers it from foreign
            keys, which at most one hop per chain may rely on.
        spatial: Spatial condition, set on the spatial hop.
        type_filter: Discriminator filter on the joined table.
        conditions: Row filters on the final target rows (terminal hop only).
    """

    source: type[Any]
    target: type[Any]
    position: int
    condition: Callable[[Any, Any], Any] | None = None
    spatial: SpatialJoin | None = None
    type_filter: TypeFilter | None = None
    conditions: tuple[RowFilter, ...] = ()

    @property
    def is_spatial(self) -> bool:
        return self.spatial is not None


@dataclass(frozen=True)
class ChainAssembly:
    """Aliases and joins of a resolved chain, before any owner filtering."""

    owner_info: EntityInfo
    owner_alias: Any
    target_info: EntityInfo
    target_alias: Any
    target_name: str
    joins: tuple[tuple[Any, ColumnElement[bool]], ...]

    def select_from(self, *columns: Any) -> Select[Any]:
        """``SELECT <columns> FROM owner JOIN ...`` over the assembled joins."""
        stmt = select(*columns).select_from(self.owner_alias)
        for alias, onclause in self.joins:
            stmt = stmt.join(alias, onclause)
        return stmt


class ChainResolver:
    """Builds the lazy-load query of a spatial association for one owner."""

    def __init__(self, config: SpatialConfig | None = None) -> None:
        self.config = config or DEFAULT_CONFIG
        self.predicates = SpatialPredicateBuilder(self.config)

    def resolve(self, links: Sequence[AssociationChainLink], owner: Any) -> Select[Any]:
        """
        Build the query selecting the targets of ``links`` for ``owner``.

        Raises:
            ChainResolutionError: If the chain is structurally broken.
            ConfigurationError: If a geometry operand cannot be resolved.
            InvalidRelationshipError: If the spatial relationship is unknown.
        """
        assembly = self.assemble(links, owner)
        owner_info = assembly.owner_info
        pk = owner_info.primary_key
        owner_id = getattr(owner, pk)

        stmt = assembly.select_from(assembly.target_alias).where(
            owner_info.column(assembly.owner_alias, pk) == owner_id
        )
        stmt = self.apply_row_filters(stmt, links, assembly, owner)

        logger.debug(
            "Resolved %d-hop chain %s -> %s for owner %s=%r",
            len(links),
            owner_info.name,
            assembly.target_info.name,
            pk,
            owner_id,
        )
        return stmt

    def assemble(
        self,
        links: Sequence[AssociationChainLink],
        owner: Any = None,
        *,
        require_spatial: bool = True,
    ) -> ChainAssembly:
        """
        Alias every hop and build its join condition.

        With an ``owner`` the spatial hop leaving the owner binds the owner's
        geometry value; without one every operand stays a column reference.
        ``require_spatial=False`` accepts plain foreign-key chains.
        """
        self._validate(links, owner, require_spatial=require_spatial)

        owner_info = EntityInfo.of(links[0].source)
        owner_name = self._owner_alias_name(links)
        owner_alias = owner_info.alias(owner_name)
        tables: dict[str, Any] = {owner_name: owner_alias}

        current_name, current, info = owner_name, owner_alias, owner_info
        joins: list[tuple[Any, ColumnElement[bool]]] = []
        for link in links:
            info = EntityInfo.of(link.target)
            alias_name = f"{info.table_name}_{link.position}"
            alias = info.alias(alias_name)
            tables[alias_name] = alias

            # Type filter first so the rendered condition is stable.
            clauses: list[ColumnElement[bool]] = []
            if link.type_filter is not None:
                type_column = info.column(alias, link.type_filter.column)
                clauses.append(type_column == link.type_filter.type_name)
            if link.spatial is not None:
                clauses.extend(
                    self._spatial_clauses(
                        link.spatial,
                        owner=owner,
                        source_name=current_name,
                        target_name=alias_name,
                        tables=tables,
                        bind=owner is not None and current_name == owner_name,
                    )
                )
            else:
                clauses.append(self._join_condition(link, current, alias))

            joins.append((alias, and_(*clauses)))
            current_name, current = alias_name, alias

        return ChainAssembly(
            owner_info=owner_info,
            owner_alias=owner_alias,
            target_info=info,
            target_alias=current,
            target_name=current_name,
            joins=tuple(joins),
        )

    def apply_row_filters(
        self,
        stmt: Select[Any],
        links: Sequence[AssociationChainLink],
        assembly: ChainAssembly,
        owner: Any = None,
    ) -> Select[Any]:
        """AND the terminal hop's row filters into ``stmt``."""
        for condition in links[-1].conditions:
            stmt = stmt.where(
                self._row_filter(
                    condition, assembly.target_alias, assembly.target_name, owner
                )
            )
        return stmt

    def _owner_alias_name(self, links: Sequence[AssociationChainLink]) -> str:
        # A structured owner geometry may rename the owner alias.
        first = links[0].spatial
        if first is not None and first.geom.structured and first.geom.table_alias:
            return first.geom.table_alias
        return self.config.join_alias

    def _validate(
        self,
        links: Sequence[AssociationChainLink],
        owner: Any,
        *,
        require_spatial: bool = True,
    ) -> None:
        if not links:
            raise ChainResolutionError("Association chain is empty")
        if owner is not None and not isinstance(owner, links[0].source):
            raise ChainResolutionError(
                f"Owner {type(owner).__name__} cannot start a chain from "
                f"{links[0].source.__name__}",
                position=0,
            )

        previous: type[Any] | None = None
        for index, link in enumerate(links):
            if link.position != index:
                raise ChainResolutionError(
                    f"Link at index {index} declares position {link.position}",
                    position=index,
                )
            if previous is not None and not issubclass(previous, link.source):
                raise ChainResolutionError(
                    f"{link.source.__name__} is not reachable from "
                    f"{previous.__name__}",
                    position=index,
                )
            previous = link.target

        if require_spatial and not links[-1].is_spatial:
            raise ChainResolutionError(
                "The terminal hop of a spatial association must be spatial",
                position=len(links) - 1,
            )
        undefined = [
            link.position
            for link in links
            if link.condition is None and not link.is_spatial
        ]
        if len(undefined) > 1:
            raise ChainResolutionError(
                f"Hops {undefined} have no join condition; at most one may be "
                "inferred from foreign keys",
                position=undefined[1],
            )

    def _spatial_clauses(
        self,
        spatial: SpatialJoin,
        *,
        owner: Any,
        source_name: str,
        target_name: str,
        tables: Mapping[str, Any],
        bind: bool,
    ) -> tuple[ColumnElement[bool], ...]:
        left = resolve_operand(
            spatial.geom,
            OperandContext(
                default_alias=source_name,
                tables=tables,
                owner=owner,
                bind=bind,
                structured_alias=source_name,
            ),
        )
        right = resolve_operand(
            spatial.foreign_geom,
            OperandContext(
                default_alias=target_name,
                tables=tables,
                structured_alias=target_name,
            ),
        )
        predicate = self.predicates.build(
            spatial.relationship,
            left,
            right,
            spatial.scope_options,
            tables=tables,
        )
        return predicate.clauses

    @staticmethod
    def _join_condition(
        link: AssociationChainLink, source: Any, target: Any
    ) -> ColumnElement[bool]:
        if link.condition is not None:
            return link.condition(source, target)  # type: ignore[no-any-return]
        try:
            return join_condition(  # type: ignore[return-value]
                inspect(source).selectable, inspect(target).selectable
            )
        except ArgumentError as exc:
            raise ChainResolutionError(
                f"Cannot infer a join between {link.source.__name__} and "
                f"{link.target.__name__}: {exc}",
                position=link.position,
            ) from exc

    def _row_filter(
        self, condition: RowFilter, target: Any, target_name: str, owner: Any
    ) -> Any:
        if isinstance(condition, str):
            quoted = self.config.dialect.identifier_preparer.quote(target_name)
            return text(condition.replace("{table}", quoted))
        if isinstance(condition, ClauseElement):
            return ClauseAdapter(inspect(target).selectable).traverse(condition)
        return condition(target, owner)


__all__ = [
    "AssociationChainLink",
    "ChainAssembly",
    "ChainResolver",
    "ForeignKeyCondition",
    "RowFilter",
    "SpatialJoin",
    "TypeFilter",
]
