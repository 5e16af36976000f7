"""Shared fixtures for spatial association tests."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest
from sqlalchemy.dialects import postgresql

from spatial_associations import SpatialConfig, build_default_spatial_registry


@pytest.fixture
def registry():
    """Fresh registry holding every built-in relationship."""
    return build_default_spatial_registry()


@pytest.fixture
def config(registry):
    return SpatialConfig(registry=registry)


@pytest.fixture
def pg_sql() -> Callable[[Any], str]:
    """Render a statement or clause with the PostgreSQL dialect."""

    def _render(element: Any) -> str:
        return str(element.compile(dialect=postgresql.dialect()))

    return _render
