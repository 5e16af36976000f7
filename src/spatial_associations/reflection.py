"""Schema reflection over SQLAlchemy mapped classes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from sqlalchemy import inspect
from sqlalchemy.orm import aliased

from .exceptions import ConfigurationError

if TYPE_CHECKING:
    from sqlalchemy.engine import Dialect
    from sqlalchemy.orm import Mapper
    from sqlalchemy.types import TypeEngine


@dataclass(frozen=True)
class EntityInfo:
    """
    Table, primary key and polymorphism facts for one mapped class.

    The query builders treat everything here as opaque names; rendering and
    quoting stay with SQLAlchemy.
    """

    entity: type[Any]
    mapper: Mapper[Any]

    @classmethod
    def of(cls, entity: type[Any]) -> EntityInfo:
        mapper = inspect(entity, raiseerr=False)
        if mapper is None or not hasattr(mapper, "local_table"):
            raise ConfigurationError(
                f"{entity!r} is not a mapped class", option="class"
            )
        return cls(entity=entity, mapper=mapper)

    @property
    def name(self) -> str:
        return self.entity.__name__

    @property
    def table_name(self) -> str:
        return str(self.mapper.local_table.name)

    def quoted_table_name(self, dialect: Dialect) -> str:
        return dialect.identifier_preparer.format_table(self.mapper.local_table)

    @property
    def primary_key(self) -> str:
        """Attribute name of the single-column primary key."""
        columns = self.mapper.primary_key
        if len(columns) != 1:
            raise ConfigurationError(
                f"{self.name} must have a single-column primary key, "
                f"found {len(columns)}",
                option="primary_key",
            )
        return self.mapper.get_property_by_column(columns[0]).key

    @property
    def base_type_name(self) -> str:
        """Name of the root class of the inheritance hierarchy."""
        return str(self.mapper.base_mapper.class_.__name__)

    def identity(self, instance: Any) -> Any:
        """Primary-key value of ``instance`` (``None`` while transient)."""
        return getattr(instance, self.primary_key)

    def has_column(self, name: str) -> bool:
        return name in self.mapper.column_attrs

    def column_type(self, name: str) -> TypeEngine[Any]:
        self._require(name)
        return self.mapper.column_attrs[name].columns[0].type

    def column(self, source: Any, name: str) -> Any:
        """Return attribute ``name`` of ``source`` (the class or an alias of it)."""
        self._require(name)
        return getattr(source, name)

    def alias(self, name: str) -> Any:
        return aliased(self.entity, name=name)

    def _require(self, name: str) -> None:
        if not self.has_column(name):
            raise ConfigurationError(
                f"{self.name} has no mapped column '{name}'", option="column"
            )


__all__ = ["EntityInfo"]
