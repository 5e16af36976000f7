from __future__ import annotations

import pytest
from sqlalchemy import column, table
from sqlalchemy.dialects import postgresql, sqlite

from spatial_associations import (
    DEFAULT_SPATIAL_REGISTRY,
    InvalidRelationshipError,
    SpatialRelationship,
    SpatialRelationshipRegistry,
)
from spatial_associations.relationships import FunctionPredicateOperator

regions = table("regions", column("boundary"))
cities = table("cities", column("location"))


class TestRegistry:
    def test_default_registry_whitelists_every_relationship(self, registry) -> None:
        assert registry.supported_relationships == set(SpatialRelationship)
        assert registry.names == sorted(r.value for r in SpatialRelationship)

    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("contains", SpatialRelationship.CONTAINS),
            ("Within", SpatialRelationship.WITHIN),
            (SpatialRelationship.COVERED_BY, SpatialRelationship.COVERED_BY),
        ],
    )
    def test_validate_normalizes_names(self, registry, name, expected) -> None:
        assert registry.validate(name) is expected

    def test_validate_rejects_unknown_name_with_suggestion(self, registry) -> None:
        with pytest.raises(InvalidRelationshipError) as exc_info:
            registry.validate("contain")

        err = exc_info.value
        assert err.relationship == "contain"
        assert "contains" in err.suggestions
        assert "Did you mean: contains" in str(err)
        assert err.to_dict()["error"] == "INVALID_RELATIONSHIP"

    @pytest.mark.parametrize("name", ["", "nearby", None, 42])
    def test_validate_rejects_non_whitelisted_values(self, registry, name) -> None:
        with pytest.raises(InvalidRelationshipError):
            registry.validate(name)

    def test_unregister_removes_relationship_from_whitelist(self, registry) -> None:
        registry.unregister("touches")

        assert not registry.has(SpatialRelationship.TOUCHES)
        with pytest.raises(InvalidRelationshipError):
            registry.validate("touches")
        # The shared default registry is untouched.
        assert DEFAULT_SPATIAL_REGISTRY.has("touches")

    def test_empty_registry_rejects_everything(self) -> None:
        registry = SpatialRelationshipRegistry()

        with pytest.raises(InvalidRelationshipError) as exc_info:
            registry.validate("contains")
        assert exc_info.value.valid_relationships == []

    def test_register_custom_operator(self) -> None:
        registry = SpatialRelationshipRegistry()
        registry.register(
            FunctionPredicateOperator(SpatialRelationship.INTERSECTS, "ST_3DIntersects")
        )

        clause = registry.apply("intersects", regions.c.boundary, cities.c.location)
        assert (
            str(clause.compile(dialect=postgresql.dialect()))
            == "ST_3DIntersects(regions.boundary, cities.location)"
        )


class TestOperators:
    @pytest.mark.parametrize(
        ("name", "function"),
        [
            ("contains", "ST_Contains"),
            ("containsproperly", "ST_ContainsProperly"),
            ("covers", "ST_Covers"),
            ("coveredby", "ST_CoveredBy"),
            ("crosses", "ST_Crosses"),
            ("disjoint", "ST_Disjoint"),
            ("equals", "ST_Equals"),
            ("intersects", "ST_Intersects"),
            ("orderingequals", "ST_OrderingEquals"),
            ("overlaps", "ST_Overlaps"),
            ("touches", "ST_Touches"),
            ("within", "ST_Within"),
        ],
    )
    def test_relationship_renders_postgis_function(
        self, registry, name, function
    ) -> None:
        clause = registry.apply(name, regions.c.boundary, cities.c.location)

        assert (
            str(clause.compile(dialect=postgresql.dialect()))
            == f"{function}(regions.boundary, cities.location)"
        )

    def test_unindexed_variant_on_postgresql(self, registry) -> None:
        clause = registry.apply(
            "within", regions.c.boundary, cities.c.location, use_index=False
        )

        assert (
            str(clause.compile(dialect=postgresql.dialect()))
            == "_ST_Within(regions.boundary, cities.location)"
        )

    def test_unindexed_variant_on_sqlite_falls_back_to_plain_function(
        self, registry
    ) -> None:
        clause = registry.apply(
            "within", regions.c.boundary, cities.c.location, use_index=False
        )

        assert (
            str(clause.compile(dialect=sqlite.dialect()))
            == "ST_Within(regions.boundary, cities.location)"
        )

    def test_operator_repr(self, registry) -> None:
        assert repr(registry.get("contains")) == (
            "FunctionPredicateOperator('contains', 'ST_Contains')"
        )
