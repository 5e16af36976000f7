"""
Geometry operand declarations and their resolution.

A geometry reference is declared either as a bare column name or as a
structured descriptor (entity, table alias, column, owner attribute name,
literal value). ``normalize_geometry`` folds both shapes into a single
``GeometryOperandDescriptor`` once, at declaration time, so query
construction never has to sniff the shape again.

``resolve_operand`` then turns a descriptor into a ``ResolvedOperand`` for
one query build, either as a table-qualified column (join conditions) or as
a value read from a concrete owner (lazy loading).
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union

from sqlalchemy import inspect, literal
from sqlalchemy.sql import FromClause

from .config import SPATIAL_JOIN_ALIAS
from .exceptions import ConfigurationError

if TYPE_CHECKING:
    from sqlalchemy import ColumnElement

logger = logging.getLogger(__name__)

_STRUCTURED_KEYS = frozenset(
    {"class", "entity", "table_alias", "column", "name", "value"}
)


@dataclass(frozen=True)
class ColumnRef:
    """Bare column on the implicit table of the resolution context."""

    column: str


@dataclass(frozen=True)
class StructuredGeom:
    """Geometry reference with an explicit entity, alias or owner attribute."""

    entity: type[Any] | None = None
    table_alias: str | None = None
    column: str | None = None
    name: str | None = None
    value: Any = None


GeometryDeclaration = Union[ColumnRef, StructuredGeom]


@dataclass(frozen=True)
class GeometryOperandDescriptor:
    """
    Normalized geometry reference.

    ``column`` is used when comparing two tables; ``name`` (falling back to
    ``column``) names the owner attribute read when comparing against a
    concrete owner; ``value`` short-circuits that read.
    """

    column: str | None = None
    entity: type[Any] | None = None
    table_alias: str | None = None
    name: str | None = None
    value: Any = None
    structured: bool = False

    @property
    def attribute(self) -> str | None:
        """Owner attribute holding the geometry value."""
        return self.name or self.column


def normalize_geometry(raw: Any) -> GeometryOperandDescriptor:
    """
    Fold any accepted geometry declaration into a descriptor.

    Accepts a column name, a ``ColumnRef``, a ``StructuredGeom``, an existing
    descriptor, or a mapping with ``class``/``entity``, ``table_alias``,
    ``column``, ``name`` and ``value`` keys.

    Raises:
        ConfigurationError: For any other shape or unknown mapping keys.
    """
    if isinstance(raw, GeometryOperandDescriptor):
        return raw
    if isinstance(raw, str):
        raw = ColumnRef(raw)
    elif isinstance(raw, Mapping):
        raw = _structured_from_mapping(raw)

    if isinstance(raw, ColumnRef):
        if not raw.column:
            raise ConfigurationError("Geometry column name is empty", option="geom")
        return GeometryOperandDescriptor(column=raw.column)
    if isinstance(raw, StructuredGeom):
        return GeometryOperandDescriptor(
            column=raw.column,
            entity=raw.entity,
            table_alias=raw.table_alias,
            name=raw.name,
            value=raw.value,
            structured=True,
        )
    raise ConfigurationError(
        f"Unsupported geometry declaration {raw!r}: expected a column name "
        "or a structured descriptor",
        option="geom",
    )


def _structured_from_mapping(raw: Mapping[str, Any]) -> StructuredGeom:
    unknown = set(raw) - _STRUCTURED_KEYS
    if unknown:
        raise ConfigurationError(
            f"Unknown geometry descriptor keys: {', '.join(sorted(unknown))}",
            option="geom",
        )
    return StructuredGeom(
        entity=raw.get("entity", raw.get("class")),
        table_alias=raw.get("table_alias"),
        column=raw.get("column"),
        name=raw.get("name"),
        value=raw.get("value"),
    )


@dataclass(frozen=True)
class OperandContext:
    """
    Per-build resolution context.

    Attributes:
        default_alias: Table alias used for bare column references.
        tables: ``{alias: selectable}`` for the tables in the current query.
        owner: Concrete owner record for owner-bound operands.
        bind: ``True`` to read the operand value from ``owner``.
        structured_alias: Alias used for structured descriptors that do not
            name a ``table_alias`` of their own.
    """

    default_alias: str
    tables: Mapping[str, Any] = field(default_factory=dict)
    owner: Any = None
    bind: bool = False
    structured_alias: str = SPATIAL_JOIN_ALIAS


@dataclass(frozen=True)
class ResolvedOperand:
    """Uniform operand: either ``table.column`` or a bound ``value``."""

    table: str | None = None
    column: str | None = None
    value: Any = None
    bound: bool = False
    type_: Any = None

    @property
    def value_bearing(self) -> bool:
        return self.bound

    def expression(self, tables: Mapping[str, Any]) -> ColumnElement[Any]:
        """Render the operand against the aliases of the current query."""
        if self.bound:
            return literal(self.value, type_=self.type_)
        if self.table not in tables:
            raise ConfigurationError(
                f"Geometry operand refers to unknown table alias '{self.table}'",
                option="table_alias",
            )
        return column_of(tables[self.table], self.column or "")


def column_of(source: Any, name: str) -> Any:
    """Column ``name`` of a table, table alias, mapped class or ORM alias."""
    if isinstance(source, FromClause):
        if name not in source.c:
            raise ConfigurationError(
                f"Table '{source.name}' has no column '{name}'", option="column"
            )
        return source.c[name]
    attr = getattr(source, name, None)
    if attr is None:
        raise ConfigurationError(f"{source!r} has no column '{name}'", option="column")
    return attr


def resolve_operand(
    descriptor: GeometryOperandDescriptor,
    context: OperandContext,
) -> ResolvedOperand:
    """
    Resolve ``descriptor`` for one query build.

    Raises:
        ConfigurationError: When neither a column nor an owner value can be
            determined.
    """
    if context.bind:
        return _resolve_bound(descriptor, context)

    if not descriptor.column:
        raise ConfigurationError(
            "Geometry descriptor has no column to compare against", option="column"
        )
    if descriptor.structured:
        table = descriptor.table_alias or context.structured_alias
    else:
        table = context.default_alias
    return ResolvedOperand(table=table, column=descriptor.column)


def _resolve_bound(
    descriptor: GeometryOperandDescriptor,
    context: OperandContext,
) -> ResolvedOperand:
    attribute = descriptor.attribute
    if descriptor.value is not None:
        return ResolvedOperand(
            value=descriptor.value,
            bound=True,
            type_=_column_type(type(context.owner), attribute),
        )
    if attribute is None:
        raise ConfigurationError(
            "Geometry descriptor has neither a column, a name nor a value",
            option="geom",
        )
    owner = context.owner
    if owner is None or not hasattr(owner, attribute):
        raise ConfigurationError(
            f"Owner {owner!r} has no geometry attribute '{attribute}'",
            option="name",
        )
    logger.debug("Binding owner geometry %s.%s", type(owner).__name__, attribute)
    return ResolvedOperand(
        value=getattr(owner, attribute),
        bound=True,
        type_=_column_type(type(owner), attribute),
    )


def _column_type(owner_cls: type[Any], attribute: str | None) -> Any:
    """SQL type of ``attribute`` on a mapped owner class, if known."""
    if attribute is None:
        return None
    mapper = inspect(owner_cls, raiseerr=False)
    column_attrs = getattr(mapper, "column_attrs", None)
    if column_attrs is None or attribute not in column_attrs:
        return None
    return column_attrs[attribute].columns[0].type


__all__ = [
    "ColumnRef",
    "GeometryDeclaration",
    "GeometryOperandDescriptor",
    "OperandContext",
    "ResolvedOperand",
    "StructuredGeom",
    "column_of",
    "normalize_geometry",
    "resolve_operand",
]
