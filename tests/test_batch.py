from __future__ import annotations

import pytest
from geoalchemy2 import Geometry
from sqlalchemy import Integer, String
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from spatial_associations import (
    AssociationChainLink,
    BatchPreloadAggregator,
    EmptyBatchError,
    SpatialConfig,
    SpatialJoin,
    normalize_geometry,
    parse_batch_rows,
)


class Base(DeclarativeBase):
    pass


class Region(Base):
    __tablename__ = "regions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    boundary = mapped_column(Geometry("POLYGON", srid=4326))


class City(Base):
    __tablename__ = "cities"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    status: Mapped[str] = mapped_column(String)
    location = mapped_column(Geometry("POINT", srid=4326))


def _links(**kw):
    return [
        AssociationChainLink(
            source=Region,
            target=City,
            position=0,
            spatial=SpatialJoin(
                relationship="contains",
                geom=normalize_geometry("boundary"),
                foreign_geom=normalize_geometry("location"),
            ),
            **kw,
        )
    ]


def _literal_sql(stmt, dialect=None):
    return str(
        stmt.compile(
            dialect=dialect or postgresql.dialect(),
            compile_kwargs={"literal_binds": True},
        )
    )


@pytest.fixture
def aggregator(config):
    return BatchPreloadAggregator(config)


class TestBuildBatch:
    def test_aggregated_query_on_postgresql(self, aggregator) -> None:
        sql = _literal_sql(aggregator.build_batch(_links(), [1, 2, 3]))

        assert sql.startswith(
            "SELECT __spatial_matches__.__spatial_owner_id__, "
            "array_to_string(array_agg(__spatial_matches__.__spatial_ids__ "
            "ORDER BY __spatial_matches__.__spatial_ids__), ',') AS __spatial_ids__"
        )
        assert (
            "SELECT DISTINCT __spatial_ids_join__.id AS __spatial_owner_id__, "
            "cities_0.id AS __spatial_ids__"
        ) in sql
        assert (
            "FROM regions AS __spatial_ids_join__ JOIN cities AS cities_0 "
            "ON ST_Contains(__spatial_ids_join__.boundary, cities_0.location)"
        ) in sql
        assert "WHERE __spatial_ids_join__.id IN (1, 2, 3)" in sql
        assert "ORDER BY __spatial_owner_id__, __spatial_ids__" in sql
        assert sql.endswith(
            "AS __spatial_matches__ GROUP BY __spatial_matches__.__spatial_owner_id__"
        )

    def test_owner_geometry_is_never_bound(self, aggregator) -> None:
        sql = _literal_sql(aggregator.build_batch(_links(), [1]))

        assert "ST_GeomFromEWKT" not in sql

    def test_group_concat_on_sqlite(self, aggregator) -> None:
        sql = _literal_sql(aggregator.build_batch(_links(), [1, 2]), sqlite.dialect())

        assert (
            "group_concat(__spatial_matches__.__spatial_ids__, ',') AS __spatial_ids__"
        ) in sql
        # group_concat keeps the order of the distinct pairs it aggregates.
        assert "SELECT DISTINCT" in sql
        assert "ORDER BY __spatial_owner_id__, __spatial_ids__" in sql
        assert "array_agg" not in sql

    def test_duplicate_owner_ids_collapse(self, aggregator) -> None:
        plan = aggregator.plan(_links(), [3, 1, 3, 1])

        assert plan.owner_ids == (3, 1)
        assert "IN (3, 1)" in _literal_sql(plan.statement)

    def test_row_filters_apply_to_batch(self, aggregator) -> None:
        sql = _literal_sql(
            aggregator.build_batch(_links(conditions=(City.status == "active",)), [1])
        )

        assert "AND cities_0.status = 'active'" in sql
        assert sql.index("cities_0.status") < sql.index("GROUP BY")

    def test_custom_labels_and_delimiter(self, registry) -> None:
        config = SpatialConfig(
            registry=registry, ids_label="ids", owner_label="owner", delimiter="|"
        )

        sql = _literal_sql(BatchPreloadAggregator(config).build_batch(_links(), [1]))

        assert "AS owner," in sql
        assert "'|') AS ids" in sql

    @pytest.mark.parametrize("owner_ids", [[], (), iter(())])
    def test_empty_batch_raises(self, aggregator, owner_ids) -> None:
        with pytest.raises(EmptyBatchError) as exc_info:
            aggregator.build_batch(_links(), owner_ids, name="cities")

        assert exc_info.value.association == "cities"
        assert "cities" in str(exc_info.value)
        assert exc_info.value.to_dict() == {
            "error": "EMPTY_BATCH",
            "association": "cities",
        }


class TestParseBatchRows:
    def test_groups_ids_per_owner(self) -> None:
        rows = [(1, "10,20"), (3, "30")]

        assert parse_batch_rows(rows) == {1: [10, 20], 3: [30]}

    def test_owners_without_matches_are_absent(self) -> None:
        result = parse_batch_rows([(1, "10,20"), (3, "30")])

        assert 2 not in result
        assert result.get(2, []) == []

    def test_empty_aggregates_are_skipped(self) -> None:
        assert parse_batch_rows([(1, None), (2, ""), (3, "7")]) == {3: [7]}

    def test_custom_delimiter_and_converter(self) -> None:
        rows = [("a", "x|y")]

        assert parse_batch_rows(rows, "|", convert=str) == {"a": ["x", "y"]}

    def test_repeated_ids_are_kept_once(self) -> None:
        assert parse_batch_rows([(1, "20,10,20,10")]) == {1: [20, 10]}
