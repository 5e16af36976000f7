"""
Spatial relationship whitelist and predicate strategies.

Each supported relationship is a ``SpatialOperator`` registered in a
``SpatialRelationshipRegistry``. The registry *is* the whitelist: builders
receive it by injection and never consult module state directly.

Usage::

    from spatial_associations.relationships import DEFAULT_SPATIAL_REGISTRY

    clause = DEFAULT_SPATIAL_REGISTRY.apply("contains", region.geom, city.geom)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, Any, cast

# Importing geoalchemy2.functions registers the typed ST_* functions with
# ``sqlalchemy.func``, so ``func.ST_Contains`` returns a Boolean-typed element.
import geoalchemy2.functions  # noqa: F401
from sqlalchemy import Boolean, func
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.functions import FunctionElement

from .exceptions import InvalidRelationshipError

if TYPE_CHECKING:
    from sqlalchemy import ColumnElement
    from sqlalchemy.sql.compiler import SQLCompiler


class SpatialRelationship(str, Enum):
    """Supported spatial relationships (PostGIS predicate names)."""

    CONTAINS = "contains"
    CONTAINS_PROPERLY = "containsproperly"
    COVERS = "covers"
    COVERED_BY = "coveredby"
    CROSSES = "crosses"
    DISJOINT = "disjoint"
    EQUALS = "equals"
    INTERSECTS = "intersects"
    ORDERING_EQUALS = "orderingequals"
    OVERLAPS = "overlaps"
    TOUCHES = "touches"
    WITHIN = "within"


class SpatialOperator(ABC):
    """
    Strategy interface for compiling a spatial relationship between two
    geometry operands into a SQLAlchemy ``ColumnElement[bool]``.
    """

    @property
    @abstractmethod
    def name(self) -> SpatialRelationship:
        """The relationship this strategy handles."""
        ...

    @abstractmethod
    def apply(
        self,
        left: Any,
        right: Any,
        *,
        use_index: bool = True,
    ) -> ColumnElement[bool]:
        """
        Build the predicate ``<relationship>(left, right)``.

        Args:
            left: Owner-side geometry (column or bound value).
            right: Target-side geometry (column or bound value).
            use_index: ``False`` calls the non-indexed ``_ST_*`` variant.

        Returns:
            A SQLAlchemy boolean expression.
        """
        ...


class UnindexedPredicate(FunctionElement[bool]):
    """
    PostGIS ``_ST_*`` variant of a predicate, which skips the implicit
    bounding-box index test.

    One subclass exists per function so the statement cache keys on it.
    """

    type = Boolean()
    name = "unindexed_predicate"
    inherit_cache = True
    function_name: str = ""

    @classmethod
    def for_function(cls, function_name: str) -> type[UnindexedPredicate]:
        return type(
            f"_{function_name}",
            (cls,),
            {"function_name": function_name, "inherit_cache": True},
        )


@compiles(UnindexedPredicate)
def _unindexed_default(element: Any, compiler: SQLCompiler, **kw: Any) -> str:
    return f"_{element.function_name}({compiler.process(element.clauses, **kw)})"


@compiles(UnindexedPredicate, "sqlite")
def _unindexed_sqlite(element: Any, compiler: SQLCompiler, **kw: Any) -> str:
    """SpatiaLite has no _ST_* variants; its predicates never use an index."""
    return f"{element.function_name}({compiler.process(element.clauses, **kw)})"


class FunctionPredicateOperator(SpatialOperator):
    """Relationship evaluated by a single two-argument ``ST_*`` function."""

    def __init__(self, relationship: SpatialRelationship, function_name: str) -> None:
        self._relationship = relationship
        self.function_name = function_name
        self._unindexed = UnindexedPredicate.for_function(function_name)

    @property
    def name(self) -> SpatialRelationship:
        return self._relationship

    def apply(
        self,
        left: Any,
        right: Any,
        *,
        use_index: bool = True,
    ) -> ColumnElement[bool]:
        if not use_index:
            return cast("ColumnElement[bool]", self._unindexed(left, right))
        return cast(
            "ColumnElement[bool]", getattr(func, self.function_name)(left, right)
        )

    def __repr__(self) -> str:
        name = type(self).__name__
        return f"{name}({self._relationship.value!r}, {self.function_name!r})"


class SpatialRelationshipRegistry:
    """
    Registry of ``SpatialOperator`` instances keyed by
    :class:`SpatialRelationship`.
    """

    def __init__(self) -> None:
        self._operators: dict[SpatialRelationship, SpatialOperator] = {}

    def register(self, operator: SpatialOperator) -> None:
        self._operators[operator.name] = operator

    def register_all(self, *operators: SpatialOperator) -> None:
        for op in operators:
            self.register(op)

    # SpatialRelationship is a str enum, so plain names hash to the same keys.
    def unregister(self, name: SpatialRelationship | str) -> None:
        self._operators.pop(name, None)  # type: ignore[call-overload]

    def get(self, name: SpatialRelationship | str) -> SpatialOperator | None:
        return self._operators.get(name)  # type: ignore[call-overload]

    def has(self, name: SpatialRelationship | str) -> bool:
        return self.get(name) is not None

    @property
    def supported_relationships(self) -> set[SpatialRelationship]:
        return set(self._operators.keys())

    @property
    def names(self) -> list[str]:
        return sorted(rel.value for rel in self._operators)

    def validate(self, name: object) -> SpatialRelationship:
        """
        Return the registered relationship for ``name``.

        Raises:
            InvalidRelationshipError: If ``name`` is not registered.
        """
        key = name.value if isinstance(name, SpatialRelationship) else name
        if not isinstance(key, str) or not self.has(key.lower()):
            raise InvalidRelationshipError(name, self.names)
        return SpatialRelationship(key.lower())

    def apply(
        self,
        name: SpatialRelationship | str,
        left: Any,
        right: Any,
        *,
        use_index: bool = True,
    ) -> ColumnElement[bool]:
        """
        Look up the relationship and apply.

        Raises:
            InvalidRelationshipError: If the relationship is not registered.
        """
        relationship = self.validate(name)
        return self._operators[relationship].apply(left, right, use_index=use_index)


_FUNCTION_NAMES: dict[SpatialRelationship, str] = {
    SpatialRelationship.CONTAINS: "ST_Contains",
    SpatialRelationship.CONTAINS_PROPERLY: "ST_ContainsProperly",
    SpatialRelationship.COVERS: "ST_Covers",
    SpatialRelationship.COVERED_BY: "ST_CoveredBy",
    SpatialRelationship.CROSSES: "ST_Crosses",
    SpatialRelationship.DISJOINT: "ST_Disjoint",
    SpatialRelationship.EQUALS: "ST_Equals",
    SpatialRelationship.INTERSECTS: "ST_Intersects",
    SpatialRelationship.ORDERING_EQUALS: "ST_OrderingEquals",
    SpatialRelationship.OVERLAPS: "ST_Overlaps",
    SpatialRelationship.TOUCHES: "ST_Touches",
    SpatialRelationship.WITHIN: "ST_Within",
}


def build_default_spatial_registry() -> SpatialRelationshipRegistry:
    """Create a registry with every built-in spatial relationship."""
    registry = SpatialRelationshipRegistry()
    registry.register_all(
        *(
            FunctionPredicateOperator(relationship, function_name)
            for relationship, function_name in _FUNCTION_NAMES.items()
        )
    )
    return registry


DEFAULT_SPATIAL_REGISTRY: SpatialRelationshipRegistry = (
    build_default_spatial_registry()
)

__all__ = [
    "DEFAULT_SPATIAL_REGISTRY",
    "FunctionPredicateOperator",
    "SpatialOperator",
    "SpatialRelationship",
    "SpatialRelationshipRegistry",
    "UnindexedPredicate",
    "build_default_spatial_registry",
]
