"""
Batch preloading of spatial associations.

One query resolves the association for many owners at once: the owner
geometry stays a column reference, owners are restricted with ``IN`` and
the distinct matched target ids are aggregated, in ascending order, into one
delimited string per owner::

    SELECT m.__spatial_owner_id__,
           array_to_string(array_agg(m.__spatial_ids__ ORDER BY m.__spatial_ids__),
                           ',') AS __spatial_ids__
    FROM (
        SELECT DISTINCT __spatial_ids_join__.id AS __spatial_owner_id__,
                        t.id AS __spatial_ids__
        FROM owners AS __spatial_ids_join__
        JOIN targets AS t ON ST_Contains(__spatial_ids_join__.geom, t.geom)
        WHERE __spatial_ids_join__.id IN (...)
        ORDER BY __spatial_owner_id__, __spatial_ids__
    ) AS m
    GROUP BY m.__spatial_owner_id__

A target reached through several intermediate rows is aggregated once.
Owners without any match are absent from the result.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy import String, literal, select
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.functions import FunctionElement

from .chain import ChainResolver
from .config import DEFAULT_CONFIG, SpatialConfig
from .exceptions import EmptyBatchError

if TYPE_CHECKING:
    from sqlalchemy import Select
    from sqlalchemy.sql.compiler import SQLCompiler

    from .chain import AssociationChainLink

logger = logging.getLogger(__name__)


class aggregate_ids(FunctionElement[str]):  # noqa: N801
    """Order-stable, delimiter-joined aggregate of an id column."""

    type = String()
    name = "aggregate_ids"
    inherit_cache = True

    def __init__(self, column: Any, delimiter: str = ",") -> None:
        super().__init__(column, literal(delimiter))


@compiles(aggregate_ids)
def _aggregate_ids_default(element: Any, compiler: SQLCompiler, **kw: Any) -> str:
    column, delimiter = list(element.clauses)
    col = compiler.process(column, **kw)
    sep = compiler.process(delimiter, **kw)
    return f"array_to_string(array_agg({col} ORDER BY {col}), {sep})"


@compiles(aggregate_ids, "sqlite")
def _aggregate_ids_sqlite(element: Any, compiler: SQLCompiler, **kw: Any) -> str:
    """
    SQLite / SpatiaLite have no arrays. ``group_concat`` keeps input order,
    which the ordered match subquery of a batch preload fixes.
    """
    column, delimiter = list(element.clauses)
    col = compiler.process(column, **kw)
    sep = compiler.process(delimiter, **kw)
    return f"group_concat({col}, {sep})"


@dataclass(frozen=True)
class BatchQuerySpec:
    """
    One preload batch.

    Attributes:
        owner_ids: Owner primary keys covered by the batch.
        group_by: Owner primary-key column (grouping key).
        projection: Labelled aggregate of matched target ids.
        statement: The query to execute.
    """

    owner_ids: tuple[Any, ...]
    group_by: Any
    projection: Any
    statement: Select[Any]


class BatchPreloadAggregator:
    """Builds the single aggregated query behind a batch preload."""

    def __init__(self, config: SpatialConfig | None = None) -> None:
        self.config = config or DEFAULT_CONFIG
        self.resolver = ChainResolver(self.config)

    def build_batch(
        self,
        links: Sequence[AssociationChainLink],
        owner_ids: Iterable[Any],
        *,
        name: str | None = None,
    ) -> Select[Any]:
        """
        Build the aggregated query for ``owner_ids``.

        Raises:
            EmptyBatchError: If ``owner_ids`` is empty.
            ChainResolutionError: If the chain is structurally broken.
        """
        return self.plan(links, owner_ids, name=name).statement

    def plan(
        self,
        links: Sequence[AssociationChainLink],
        owner_ids: Iterable[Any],
        *,
        name: str | None = None,
    ) -> BatchQuerySpec:
        ids = tuple(dict.fromkeys(owner_ids))
        if not ids:
            raise EmptyBatchError(name)

        assembly = self.resolver.assemble(links)
        owner_info = assembly.owner_info
        target_info = assembly.target_info

        owner_pk = owner_info.column(assembly.owner_alias, owner_info.primary_key)
        target_pk = target_info.column(
            assembly.target_alias, target_info.primary_key
        )
        owner_col = owner_pk.label(self.config.owner_label)
        target_col = target_pk.label(self.config.ids_label)

        # One row per owner/target pair, however many hops lead there.
        matches = assembly.select_from(owner_col, target_col).where(
            owner_pk.in_(ids)
        )
        matches = (
            self.resolver.apply_row_filters(matches, links, assembly)
            .distinct()
            .order_by(owner_col, target_col)
            .subquery(self.config.matches_alias)
        )

        group_by = matches.c[self.config.owner_label]
        projection = aggregate_ids(
            matches.c[self.config.ids_label], self.config.delimiter
        ).label(self.config.ids_label)
        stmt = select(group_by, projection).group_by(group_by)

        logger.debug(
            "Built batch preload %s for %d %s owner(s)",
            name or target_info.name,
            len(ids),
            owner_info.name,
        )
        return BatchQuerySpec(
            owner_ids=ids,
            group_by=group_by,
            projection=projection,
            statement=stmt,
        )


def parse_batch_rows(
    rows: Iterable[Sequence[Any]],
    delimiter: str = ",",
    *,
    convert: Any = int,
) -> dict[Any, list[Any]]:
    """
    Turn ``(owner_id, "id1,id2")`` rows into ``{owner_id: [id1, id2]}``.

    Owners missing from ``rows`` have no related targets; callers look them
    up with ``.get(owner_id, [])``. Repeated ids are kept once, in first-seen
    order.
    """
    result: dict[Any, list[Any]] = {}
    for owner_id, aggregated in rows:
        if not aggregated:
            continue
        ids = result.setdefault(owner_id, [])
        for part in str(aggregated).split(delimiter):
            if not part:
                continue
            value = convert(part)
            if value not in ids:
                ids.append(value)
    return result


__all__ = [
    "BatchPreloadAggregator",
    "BatchQuerySpec",
    "aggregate_ids",
    "parse_batch_rows",
]
