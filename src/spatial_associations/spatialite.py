"""SpatiaLite / GeoPackage dialect utilities.

PostGIS is the reference backend. SpatiaLite evaluates the same predicates
once its extension is loaded and a few function names are translated;
``aggregate_ids`` and the ``_ST_*`` predicate variants carry their own
``sqlite`` compilation rules.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from geoalchemy2.admin.dialects.sqlite import (
    register_sqlite_mapping as _register_sqlite_mapping,
)
from sqlalchemy import event

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

# ----------------------------------------------------------------------
# Function Mappings
# ----------------------------------------------------------------------

# Spatial relationship functions that SpatiaLite names differently
SPATIALITE_FUNCTION_MAPPINGS = {
    "ST_Covers": "Covers",
    "ST_CoveredBy": "CoveredBy",
}


def register_spatialite_mappings() -> None:
    """Register SpatiaLite function name translations globally (call once)."""
    _register_sqlite_mapping(SPATIALITE_FUNCTION_MAPPINGS)


def setup_spatialite_engine(engine: Engine, *, init_metadata: bool = True) -> None:
    """Register an event listener loading SpatiaLite on every new connection.

    Uses ``engine.sync_engine`` when given an async engine.

    Args:
        engine: SQLAlchemy Engine (or the async engine wrapping one).
        init_metadata: Run ``InitSpatialMetaData(1)`` after loading.
    """
    listen_engine = getattr(engine, "sync_engine", engine)

    @event.listens_for(listen_engine, "connect")
    def _load_spatialite(dbapi_conn: Any, _connection_record: Any) -> None:
        dbapi_conn.enable_load_extension(True)
        dbapi_conn.load_extension("mod_spatialite")
        if init_metadata:
            dbapi_conn.execute("SELECT InitSpatialMetaData(1)")
        logger.debug("Loaded mod_spatialite on %r", dbapi_conn)


def init_spatialite(engine: Engine, *, register_mappings: bool = True) -> None:
    """One-call setup: extension loading plus function name mappings."""
    setup_spatialite_engine(engine)
    if register_mappings:
        register_spatialite_mappings()


__all__ = [
    "SPATIALITE_FUNCTION_MAPPINGS",
    "init_spatialite",
    "register_spatialite_mappings",
    "setup_spatialite_engine",
]
