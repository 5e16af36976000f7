"""Integration tests: load associations from an in-memory SQLite database.

Geometries are stored as plain text (``"minx miny maxx maxy"`` boxes and
``"x y"`` points) and the relationship functions are registered as Python
functions, so these tests need no spatial extension.
"""

from __future__ import annotations

import pytest
from sqlalchemy import ForeignKey, Integer, String, create_engine, event
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from spatial_associations import (
    BatchPreloadAggregator,
    ConfigurationError,
    SpatialAssociationLoader,
    SpatialCollection,
    ThroughHop,
    cached_association,
    get_association,
    has_many,
    has_many_spatially,
    reset_association,
)


def _numbers(value: str) -> list[float]:
    return [float(part) for part in value.split()]


def st_contains(outer: str | None, inner: str | None) -> bool | None:
    if outer is None or inner is None:
        return None
    minx, miny, maxx, maxy = _numbers(outer)
    coords = _numbers(inner)
    points = zip(coords[::2], coords[1::2])
    return all(minx <= x <= maxx and miny <= y <= maxy for x, y in points)


def st_within(inner: str | None, outer: str | None) -> bool | None:
    return st_contains(outer, inner)


# ---------------------------------------------------------------------------
# ORM models
# ---------------------------------------------------------------------------


class _Base(DeclarativeBase):
    pass


class Region(_Base):
    __tablename__ = "regions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    box: Mapped[str] = mapped_column(String)


class Depot(_Base):
    __tablename__ = "depots"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    region_id: Mapped[int] = mapped_column(ForeignKey("regions.id"))
    box: Mapped[str] = mapped_column(String)


class Place(_Base):
    __tablename__ = "places"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    point: Mapped[str] = mapped_column(String)


class PlaceFinders:
    def names(self) -> list[str]:
        return sorted(place.name for place in self)  # type: ignore[attr-defined]


has_many_spatially(
    Region,
    "places",
    target=Place,
    relationship="contains",
    geom="box",
    foreign_geom="point",
    extension=PlaceFinders,
)
has_many_spatially(
    Region,
    "active_places",
    target=Place,
    relationship="contains",
    geom="box",
    foreign_geom="point",
    scope_options={"filters": {"status": "active"}},
)
has_many_spatially(
    Region,
    "named_places",
    target=Place,
    relationship="contains",
    geom="box",
    foreign_geom="point",
    conditions=("{table}.name LIKE 'P%'",),
)
has_many_spatially(
    Region,
    "depot_places",
    target=Place,
    relationship="contains",
    geom="box",
    foreign_geom="point",
    through=[ThroughHop(entity=Depot, foreign_key="region_id")],
)
has_many_spatially(
    Place,
    "regions",
    target=Region,
    relationship="within",
    geom="point",
    foreign_geom="box",
)
has_many(Region, "depots", target=Depot)

_REGIONS = [
    {"id": 1, "name": "west", "box": "0 0 10 10"},
    {"id": 2, "name": "far", "box": "100 100 110 110"},
    {"id": 3, "name": "east", "box": "20 20 30 30"},
]
_DEPOTS = [
    {"id": 7, "region_id": 1, "box": "0 0 2 2"},
    {"id": 8, "region_id": 3, "box": "20 20 30 30"},
]
_PLACES = [
    {"id": 10, "name": "Pier", "status": "active", "point": "1 1"},
    {"id": 20, "name": "Mill", "status": "closed", "point": "5 5"},
    {"id": 30, "name": "Port", "status": "active", "point": "25 25"},
    {"id": 40, "name": "Moon", "status": "active", "point": "500 500"},
]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def engine():
    engine = create_engine("sqlite://")

    @event.listens_for(engine, "connect")
    def register_functions(dbapi_conn, connection_record):
        dbapi_conn.create_function("ST_Contains", 2, st_contains)
        dbapi_conn.create_function("ST_Within", 2, st_within)

    _Base.metadata.create_all(engine)
    with Session(engine) as session:
        session.add_all(Region(**row) for row in _REGIONS)
        session.add_all(Depot(**row) for row in _DEPOTS)
        session.add_all(Place(**row) for row in _PLACES)
        session.commit()
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def loader(session, config):
    return SpatialAssociationLoader(session, config)


@pytest.fixture
def regions(session):
    return {region.id: region for region in session.query(Region).all()}


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestLoad:
    def test_loads_contained_places(self, loader, regions) -> None:
        places = loader.load(regions[1], "places")

        assert isinstance(places, SpatialCollection)
        assert places.association == "places"
        assert sorted(places.ids) == [10, 20]

    def test_owner_without_matches_loads_empty(self, loader, regions) -> None:
        assert loader.load(regions[2], "places") == []

    def test_inverse_relationship(self, loader, session) -> None:
        port = session.get(Place, 30)

        assert loader.load(port, "regions").ids == [3]

    def test_scope_filters_narrow_results(self, loader, regions) -> None:
        assert loader.load(regions[1], "active_places").ids == [10]

    def test_row_conditions_narrow_results(self, loader, regions) -> None:
        assert loader.load(regions[1], "named_places").ids == [10]

    def test_through_hop(self, loader, regions) -> None:
        assert loader.load(regions[1], "depot_places").ids == [10]
        assert loader.load(regions[3], "depot_places").ids == [30]
        assert loader.load(regions[2], "depot_places").ids == []

    def test_plain_association(self, loader, regions) -> None:
        assert loader.load(regions[3], "depots").ids == [8]

    def test_extension_methods_are_available(self, loader, regions) -> None:
        places = loader.load(regions[1], "places")

        assert places.names() == ["Mill", "Pier"]

    def test_results_are_cached_until_refresh(self, loader, regions) -> None:
        first = loader.load(regions[1], "places")

        assert loader.load(regions[1], "places") is first
        assert cached_association(regions[1], "places") is first
        assert loader.load(regions[1], "places", refresh=True) is not first

    def test_reset_association(self, loader, regions) -> None:
        loader.load(regions[1], "places")
        loader.load(regions[1], "depots")

        reset_association(regions[1], "places")
        assert cached_association(regions[1], "places") is None
        assert cached_association(regions[1], "depots") is not None

        reset_association(regions[1])
        assert cached_association(regions[1], "depots") is None

    def test_transient_owner_loads_empty(self, loader) -> None:
        owner = Region(name="draft", box="0 0 10 10")

        assert loader.load(owner, "places") == []

    def test_query_is_not_executed(self, loader, regions) -> None:
        sql = str(loader.query(regions[1], "places"))

        assert "ST_Contains(" in sql
        assert cached_association(regions[1], "places") is None

    def test_unknown_association(self, loader, regions) -> None:
        with pytest.raises(ConfigurationError):
            loader.load(regions[1], "airports")


class TestPreload:
    def test_batch_rows_cover_only_owners_with_matches(
        self, session, config, regions
    ) -> None:
        links = get_association(Region, "places").chain_links()
        stmt = BatchPreloadAggregator(config).build_batch(links, [1, 2, 3])

        rows = session.execute(stmt).all()

        assert {owner_id for owner_id, _ in rows} == {1, 3}
        ids = {owner: sorted(int(i) for i in agg.split(",")) for owner, agg in rows}
        assert ids == {1: [10, 20], 3: [30]}

    def test_preload_groups_targets_per_owner(self, loader, regions) -> None:
        result = loader.preload(regions.values(), "places")

        assert {owner_id: sorted(c.ids) for owner_id, c in result.items()} == {
            1: [10, 20],
            2: [],
            3: [30],
        }

    def test_preload_fills_owner_cache(self, loader, regions) -> None:
        result = loader.preload(regions.values(), "places")

        for owner_id, region in regions.items():
            assert cached_association(region, "places") is result[owner_id]
        assert result[1].names() == ["Mill", "Pier"]

    def test_preload_through_hop(self, loader, regions) -> None:
        result = loader.preload(regions.values(), "depot_places")

        assert {k: v.ids for k, v in result.items()} == {1: [10], 2: [], 3: [30]}

    def test_preload_through_overlapping_hops_matches_load(
        self, loader, regions, session
    ) -> None:
        # Depots 7 and 9 both cover place 10.
        session.add(Depot(id=9, region_id=1, box="0 0 6 6"))
        session.flush()

        lazy = loader.load(regions[1], "depot_places", refresh=True)
        result = loader.preload(regions.values(), "depot_places")

        assert sorted(lazy.ids) == [10, 20]
        assert result[1].ids == [10, 20]

    def test_preload_orders_ids_numerically(self, loader, regions, session) -> None:
        session.add(Place(id=5, name="Quay", status="active", point="9 9"))
        session.flush()

        result = loader.preload(regions.values(), "places")

        assert result[1].ids == [5, 10, 20]

    def test_preload_plain_association(self, loader, regions) -> None:
        result = loader.preload(regions.values(), "depots")

        assert {k: v.ids for k, v in result.items()} == {1: [7], 2: [], 3: [8]}

    def test_preload_nothing(self, loader) -> None:
        assert loader.preload([], "places") == {}

    def test_preload_rejects_mixed_owners(self, loader, regions, session) -> None:
        with pytest.raises(ConfigurationError):
            loader.preload([regions[1], session.get(Place, 10)], "places")
