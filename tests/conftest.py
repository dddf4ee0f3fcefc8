"""Shared fixtures: small synthetic footprint sets in a projected CRS."""

from __future__ import annotations

import geopandas as gpd
import pytest
from shapely import affinity
from shapely.geometry import Polygon, box

from footprint_metrics import TemplateGrid

CRS = "EPSG:32633"


def square(x: float, y: float, size: float) -> Polygon:
    return box(x, y, x + size, y + size)


@pytest.fixture
def ten_footprints() -> gpd.GeoDataFrame:
    """Ten rectangles of different sizes spread along a row."""
    geoms = [box(i * 30.0, 0.0, i * 30.0 + 5.0 + i, 8.0 + 0.5 * i) for i in range(10)]
    return gpd.GeoDataFrame({"name": [f"b{i}" for i in range(10)]}, geometry=geoms, crs=CRS)


@pytest.fixture
def covering_zone() -> gpd.GeoDataFrame:
    return gpd.GeoDataFrame(geometry=[box(-10.0, -10.0, 400.0, 50.0)], crs=CRS)


@pytest.fixture
def two_zones() -> gpd.GeoDataFrame:
    """Two zones sharing the edge x = 10."""
    return gpd.GeoDataFrame(
        {"district": ["west", "east"]},
        geometry=[box(0, 0, 10, 10), box(10, 0, 20, 10)],
        crs=CRS,
    )


@pytest.fixture
def sized_footprints() -> gpd.GeoDataFrame:
    """Squares with areas 25, 100, 900 and 2500 m^2."""
    geoms = [square(0, 0, 5), square(100, 0, 10), square(200, 0, 30), square(300, 0, 50)]
    return gpd.GeoDataFrame(geometry=geoms, crs=CRS)


@pytest.fixture
def rotated_footprints() -> gpd.GeoDataFrame:
    """Rectangles 20 x 5 m rotated to known angles."""
    angles = [0.0, 30.0, 60.0, 120.0]
    geoms = [
        affinity.rotate(box(i * 100.0, 0.0, i * 100.0 + 20.0, 5.0), a, origin="centroid")
        for i, a in enumerate(angles)
    ]
    return gpd.GeoDataFrame({"expected": angles}, geometry=geoms, crs=CRS)


@pytest.fixture
def grid_footprints() -> gpd.GeoDataFrame:
    """A 6 x 6 block of 4 m squares on a 10 m pitch covering (0, 0)-(60, 60)."""
    geoms = [square(3 + 10 * c, 3 + 10 * r, 4) for r in range(6) for c in range(6)]
    return gpd.GeoDataFrame(geometry=geoms, crs=CRS)


@pytest.fixture
def grid_template() -> TemplateGrid:
    """6 x 6 cells of 10 m covering (0, 0)-(60, 60)."""
    return TemplateGrid.from_bounds((0.0, 0.0, 60.0, 60.0), 10.0, crs=CRS)
