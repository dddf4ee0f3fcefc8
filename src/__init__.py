"""
Footprint Metrics - Building footprint morphology summaries by zone and grid.

This package computes per-building geometric measures (area, perimeter,
orientation, shape, nearest-neighbour distance, ...) for large collections of
footprint polygons, summarises them within zones or raster cells, and writes
gridded summaries for areas too large to process in one piece.

Main Classes:
    FootprintAnalyzer: Loads inputs, validates options, runs summaries
    FootstatsConfig: All recognised options, validated up front
    TemplateGrid: Output raster extent, resolution and CRS

Convenience Functions:
    calculate_footstats: Zone summary table in one call
    calculate_bigfoot: Tiled raster summaries in one call

Building Blocks:
    compute_metrics: Per-footprint metric values
    index_zones: Footprint-to-zone spatial join (centroid, intersect, clip)
    aggregate: Per-zone summaries of metric values
    run_tiled: Tiled zonal or focal summaries written to rasters

Example:
    >>> from footprint_metrics import calculate_footstats, calculate_bigfoot
    >>>
    >>> # Mean area and orientation entropy per district
    >>> table = calculate_footstats(
    ...     "buildings.gpkg", "districts.gpkg",
    ...     what=[["area"], ["angle"]], how=[["mean"], ["entropy"]],
    ... )
    >>>
    >>> # Building counts within 200 m of every 100 m cell
    >>> result = calculate_bigfoot(
    ...     "buildings.gpkg", "grid_100m.tif",
    ...     what="settled", how="count",
    ...     output_path="out", focalRadius=200, parallel=True,
    ... )
"""

from .analyzer import FootprintAnalyzer, calculate_bigfoot, calculate_footstats
from .config import (
    AreaFilter,
    DistanceControl,
    ExecutionPlan,
    FootstatsConfig,
    UnitControl,
    ZoneControl,
    build_plan,
)
from .errors import (
    ConfigurationError,
    CRSMismatchError,
    EmptyZoneSetError,
    FootprintMetricsError,
    IncompatibleReducerError,
    InvalidGeometryError,
    TileProcessingError,
    UnknownMetricError,
    UnknownReducerError,
)
from .geometry import MetricTable, compute_metrics
from .io import TemplateGrid
from .registry import MetricKind, ReducerKind, list_metrics, list_reducers
from .summary import aggregate, summary_to_long
from .tiling import TiledResult, make_tiles, run_tiled
from .zonal import index_zones

__version__ = "0.1.0"
__author__ = "Jordan Pierce"
__all__ = [
    "FootprintAnalyzer",
    "calculate_footstats",
    "calculate_bigfoot",
    "FootstatsConfig",
    "ZoneControl",
    "DistanceControl",
    "UnitControl",
    "AreaFilter",
    "ExecutionPlan",
    "build_plan",
    "compute_metrics",
    "MetricTable",
    "index_zones",
    "aggregate",
    "summary_to_long",
    "run_tiled",
    "make_tiles",
    "TiledResult",
    "TemplateGrid",
    "MetricKind",
    "ReducerKind",
    "list_metrics",
    "list_reducers",
    "FootprintMetricsError",
    "ConfigurationError",
    "UnknownMetricError",
    "UnknownReducerError",
    "IncompatibleReducerError",
    "InvalidGeometryError",
    "CRSMismatchError",
    "EmptyZoneSetError",
    "TileProcessingError",
]
