"""
Loading declared associations through a SQLAlchemy ``Session``.

``SpatialAssociationLoader.load`` runs the per-owner query of one
association; ``preload`` resolves it for many owners with one aggregated
query plus one fetch of the matched targets by primary key.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from .batch import BatchPreloadAggregator, parse_batch_rows
from .config import DEFAULT_CONFIG, SpatialConfig
from .declarations import get_association
from .exceptions import ConfigurationError
from .reflection import EntityInfo
from .scopes import AssociationKind, scope_for

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from sqlalchemy import Select
    from sqlalchemy.orm import Session

    from .declarations import AssociationSpec

logger = logging.getLogger(__name__)

_CACHE_ATTR = "_spatial_association_cache"


class SpatialCollection(list[Any]):
    """Loaded targets of one association for one owner."""

    def __init__(
        self, items: Iterable[Any] = (), association: str | None = None
    ) -> None:
        super().__init__(items)
        self.association = association

    @property
    def ids(self) -> list[Any]:
        return [EntityInfo.of(type(item)).identity(item) for item in self]


@lru_cache(maxsize=None)
def _collection_class(extension: type[Any] | None) -> type[SpatialCollection]:
    if extension is None:
        return SpatialCollection
    return type(
        f"{extension.__name__}Collection", (extension, SpatialCollection), {}
    )


def _make_collection(
    association: AssociationSpec, items: Iterable[Any]
) -> SpatialCollection:
    return _collection_class(association.extension)(items, association=association.name)


def _cache_of(owner: Any) -> dict[str, SpatialCollection]:
    return vars(owner).setdefault(_CACHE_ATTR, {})  # type: ignore[no-any-return]


def cached_association(owner: Any, name: str) -> SpatialCollection | None:
    """Previously loaded or preloaded collection, if any."""
    return _cache_of(owner).get(name)


def reset_association(owner: Any, name: str | None = None) -> None:
    """Forget one (or every) loaded collection of ``owner``."""
    cache = _cache_of(owner)
    if name is None:
        cache.clear()
    else:
        cache.pop(name, None)


class SpatialAssociationLoader:
    """Executes association queries with a SQLAlchemy ``Session``."""

    def __init__(self, session: Session, config: SpatialConfig | None = None) -> None:
        self.session = session
        self.config = config or DEFAULT_CONFIG
        self.aggregator = BatchPreloadAggregator(self.config)

    def query(self, owner: Any, name: str) -> Select[Any]:
        """The per-owner query of association ``name``."""
        association = get_association(type(owner), name)
        return scope_for(association.kind, self.config).build(association, owner)

    def load(
        self, owner: Any, name: str, *, refresh: bool = False
    ) -> SpatialCollection:
        """
        Load association ``name`` of ``owner``.

        Results are cached on the owner; ``refresh=True`` reloads them.
        """
        cache = _cache_of(owner)
        if not refresh and name in cache:
            return cache[name]

        association = get_association(type(owner), name)
        if EntityInfo.of(association.owner).identity(owner) is None:
            # Transient owners have no rows to relate to yet.
            collection = _make_collection(association, ())
        else:
            stmt = scope_for(association.kind, self.config).build(association, owner)
            collection = _make_collection(
                association, self.session.scalars(stmt).unique().all()
            )
        cache[name] = collection
        return collection

    def preload(self, owners: Iterable[Any], name: str) -> dict[Any, SpatialCollection]:
        """
        Load association ``name`` for every owner in one round trip.

        Returns ``{owner_id: collection}``; owners without related records
        get an empty collection.
        """
        owners = list(owners)
        if not owners:
            return {}

        association = get_association(type(owners[0]), name)
        for owner in owners:
            if not isinstance(owner, association.owner):
                raise ConfigurationError(
                    f"Cannot preload '{name}' for {type(owner).__name__}: "
                    f"expected {association.owner.__name__} owners",
                    option="owners",
                )
        if association.kind is not AssociationKind.SPATIAL:
            return {
                self._owner_id(association, owner): self.load(owner, name, refresh=True)
                for owner in owners
            }

        owner_ids = [
            owner_id
            for owner_id in (self._owner_id(association, o) for o in owners)
            if owner_id is not None
        ]
        grouped: dict[Any, list[Any]] = {}
        targets: dict[Any, Any] = {}
        if owner_ids:
            plan = self.aggregator.plan(association.chain_links(), owner_ids, name=name)
            rows = self.session.execute(plan.statement).all()
            target_info = EntityInfo.of(association.target)
            grouped = parse_batch_rows(
                rows, self.config.delimiter, convert=_id_converter(target_info)
            )
            targets = self._fetch_targets(target_info, grouped)

        result: dict[Any, SpatialCollection] = {}
        for owner in owners:
            owner_id = self._owner_id(association, owner)
            collection = _make_collection(
                association,
                (targets[i] for i in grouped.get(owner_id, []) if i in targets),
            )
            _cache_of(owner)[name] = collection
            result[owner_id] = collection

        logger.debug(
            "Preloaded %s for %d owner(s), %d with matches",
            name,
            len(owners),
            len(grouped),
        )
        return result

    def _fetch_targets(
        self, target_info: EntityInfo, grouped: dict[Any, list[Any]]
    ) -> dict[Any, Any]:
        wanted = list(dict.fromkeys(i for ids in grouped.values() for i in ids))
        if not wanted:
            return {}
        pk_column = target_info.column(target_info.entity, target_info.primary_key)
        stmt = select(target_info.entity).where(pk_column.in_(wanted))
        return {
            target_info.identity(target): target
            for target in self.session.scalars(stmt).all()
        }

    @staticmethod
    def _owner_id(association: AssociationSpec, owner: Any) -> Any:
        return EntityInfo.of(association.owner).identity(owner)


def _id_converter(info: EntityInfo) -> Callable[[str], Any]:
    """Parse aggregated id strings back into primary-key values."""
    try:
        python_type = info.column_type(info.primary_key).python_type
    except NotImplementedError:
        return str
    return python_type  # type: ignore[no-any-return]


__all__ = [
    "SpatialAssociationLoader",
    "SpatialCollection",
    "cached_association",
    "reset_association",
]
