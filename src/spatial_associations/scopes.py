"""
Association scope contributors.

Every declared association has a ``kind``; ``scope_for(kind)`` returns the
contributor that builds its per-owner query. Plain associations join by
foreign key and match the owner's primary key; spatial associations go
through :class:`~spatial_associations.chain.ChainResolver`.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from .chain import ChainResolver
from .config import DEFAULT_CONFIG, SpatialConfig
from .exceptions import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy import Select

    from .chain import AssociationChainLink

logger = logging.getLogger(__name__)


class AssociationKind(str, Enum):
    PLAIN = "plain"
    SPATIAL = "spatial"


class AssociationDefinition(Protocol):
    """What a scope contributor needs from a declared association."""

    name: str

    @property
    def kind(self) -> AssociationKind: ...

    def chain_links(self) -> Sequence[AssociationChainLink]: ...


class AssociationScope(ABC):
    """Builds the query loading one association for one owner."""

    kind: AssociationKind

    def __init__(self, config: SpatialConfig | None = None) -> None:
        self.config = config or DEFAULT_CONFIG
        self.resolver = ChainResolver(self.config)

    @abstractmethod
    def build(self, association: AssociationDefinition, owner: Any) -> Select[Any]:
        """Return the ``Select`` of ``association``'s targets for ``owner``."""
        ...


class PlainAssociationScope(AssociationScope):
    """Foreign-key chain ending in an owner primary-key match."""

    kind = AssociationKind.PLAIN

    def build(self, association: AssociationDefinition, owner: Any) -> Select[Any]:
        links = association.chain_links()
        assembly = self.resolver.assemble(links, owner, require_spatial=False)
        owner_info = assembly.owner_info
        pk = owner_info.primary_key

        stmt = assembly.select_from(assembly.target_alias).where(
            owner_info.column(assembly.owner_alias, pk) == getattr(owner, pk)
        )
        return self.resolver.apply_row_filters(stmt, links, assembly, owner)


class SpatialAssociationScope(AssociationScope):
    """Chain whose terminal hop is a spatial predicate."""

    kind = AssociationKind.SPATIAL

    def build(self, association: AssociationDefinition, owner: Any) -> Select[Any]:
        return self.resolver.resolve(association.chain_links(), owner)


_SCOPES: dict[AssociationKind, type[AssociationScope]] = {
    AssociationKind.PLAIN: PlainAssociationScope,
    AssociationKind.SPATIAL: SpatialAssociationScope,
}


def scope_for(
    kind: AssociationKind | str,
    config: SpatialConfig | None = None,
) -> AssociationScope:
    """
    Return the scope contributor for ``kind``.

    Raises:
        ConfigurationError: If no contributor handles ``kind``.
    """
    try:
        scope_cls = _SCOPES[AssociationKind(kind)]
    except ValueError as exc:
        raise ConfigurationError(
            f"No association scope for kind '{kind}'", option="kind"
        ) from exc
    logger.debug("Using %s for %s associations", scope_cls.__name__, kind)
    return scope_cls(config)


__all__ = [
    "AssociationDefinition",
    "AssociationKind",
    "AssociationScope",
    "PlainAssociationScope",
    "SpatialAssociationScope",
    "scope_for",
]
