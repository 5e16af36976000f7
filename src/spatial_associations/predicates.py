"""
Spatial predicate construction.

``SpatialPredicateBuilder.build`` turns a relationship name and two resolved
geometry operands into a ``ResolvedPredicate``: the spatial clause first,
followed by one AND-ed clause per scope filter, in declaration order.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, literal

from .config import DEFAULT_CONFIG, SpatialConfig
from .exceptions import ConfigurationError
from .geometry import ResolvedOperand, column_of

if TYPE_CHECKING:
    from sqlalchemy import ColumnElement
    from sqlalchemy.engine import Dialect

    from .relationships import SpatialRelationship

logger = logging.getLogger(__name__)

_SCOPE_OPTION_KEYS = frozenset({"use_index", "filters"})


@dataclass(frozen=True)
class ScopeOptions:
    """
    Extra options merged into every predicate of an association.

    Attributes:
        use_index: ``False`` uses the non-indexed ``_ST_*`` function variant.
        filters: ``{column: value}`` on the target side. A scalar compares
            for equality, ``None`` tests ``IS NULL``, a 2-tuple is an
            inclusive ``BETWEEN`` range and a list or set is an ``IN`` list.
    """

    use_index: bool = True
    filters: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, raw: ScopeOptions | Mapping[str, Any] | None) -> ScopeOptions:
        if raw is None:
            return cls()
        if isinstance(raw, ScopeOptions):
            return raw
        unknown = set(raw) - _SCOPE_OPTION_KEYS
        if unknown:
            raise ConfigurationError(
                f"Unknown scope options: {', '.join(sorted(unknown))}",
                option="scope_options",
            )
        return cls(
            use_index=bool(raw.get("use_index", True)),
            filters=dict(raw.get("filters") or {}),
        )


@dataclass(frozen=True)
class ResolvedPredicate:
    """
    A boolean SQL fragment and its bound parameters.

    ``clauses[0]`` is always the spatial clause; scope filters follow.
    """

    clauses: tuple[ColumnElement[bool], ...]
    dialect: Any = field(default=None, compare=False, repr=False)

    @property
    def clause(self) -> ColumnElement[bool]:
        if len(self.clauses) == 1:
            return self.clauses[0]
        return and_(*self.clauses)

    def compile(self, dialect: Dialect | None = None) -> tuple[str, list[Any]]:
        """Render the fragment and its parameters in placeholder order."""
        compiled = self.clause.compile(
            dialect=dialect or self.dialect or DEFAULT_CONFIG.dialect
        )
        params = compiled.params
        # Named paramstyles: bind_names follows the order the compiler
        # rendered the placeholders in.
        names = compiled.positiontup or list(
            dict.fromkeys(compiled.bind_names.values())
        )
        return str(compiled), [params[name] for name in names]

    @property
    def sql(self) -> str:
        return self.compile()[0]

    @property
    def params(self) -> list[Any]:
        return self.compile()[1]


class SpatialPredicateBuilder:
    """Builds relationship predicates against an injected whitelist."""

    def __init__(self, config: SpatialConfig | None = None) -> None:
        self.config = config or DEFAULT_CONFIG

    def build(
        self,
        relationship: SpatialRelationship | str,
        left: ResolvedOperand,
        right: ResolvedOperand,
        scope_options: ScopeOptions | Mapping[str, Any] | None = None,
        *,
        tables: Mapping[str, Any] | None = None,
    ) -> ResolvedPredicate:
        """
        Build ``<relationship>(left, right) [AND filter ...]``.

        Args:
            relationship: Relationship name; re-validated against the registry.
            left: Owner-side operand.
            right: Target-side operand.
            scope_options: Options merged into the predicate.
            tables: ``{alias: selectable}`` for column operands.

        Raises:
            InvalidRelationshipError: If ``relationship`` is not whitelisted.
            ConfigurationError: If an operand or scope filter cannot be rendered.
        """
        registry = self.config.registry
        rel = registry.validate(relationship)
        options = ScopeOptions.coerce(scope_options)
        aliases = tables or {}

        spatial = registry.apply(
            rel,
            left.expression(aliases),
            right.expression(aliases),
            use_index=options.use_index,
        )
        clauses = [spatial]
        if options.filters:
            clauses.extend(self._filter_clauses(options.filters, left, right, aliases))

        logger.debug(
            "Built %s predicate with %d scope filter(s)", rel.value, len(clauses) - 1
        )
        return ResolvedPredicate(tuple(clauses), dialect=self.config.dialect)

    def _filter_clauses(
        self,
        filters: Mapping[str, Any],
        left: ResolvedOperand,
        right: ResolvedOperand,
        tables: Mapping[str, Any],
    ) -> list[ColumnElement[bool]]:
        anchor = right if not right.bound else left
        if anchor.bound or anchor.table not in tables:
            raise ConfigurationError(
                "Scope filters need a column operand to qualify their columns",
                option="scope_options",
            )
        source = tables[anchor.table]
        return [
            _filter_clause(column_of(source, column), value)
            for column, value in filters.items()
        ]


def _filter_clause(column: Any, value: Any) -> ColumnElement[bool]:
    if value is None:
        return column.is_(None)  # type: ignore[no-any-return]
    if isinstance(value, tuple):
        if len(value) != 2:
            raise ConfigurationError(
                f"Range filter on {column} needs exactly two bounds",
                option="scope_options",
            )
        low, high = value
        return column.between(low, high)  # type: ignore[no-any-return]
    if isinstance(value, (list, set, frozenset)):
        # One placeholder per element instead of an expanding IN parameter.
        items = sorted(value, key=repr) if not isinstance(value, list) else value
        return column.in_(  # type: ignore[no-any-return]
            [literal(item, type_=column.type) for item in items]
        )
    return column == value  # type: ignore[no-any-return]


__all__ = [
    "ResolvedPredicate",
    "ScopeOptions",
    "SpatialPredicateBuilder",
]
