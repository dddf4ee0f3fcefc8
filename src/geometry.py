"""
Geometry Metric Engine: per-footprint measurements.

This module turns a collection of footprint polygons into a table of metric
values, one row per footprint. Geometry primitives (area, length, rotated
rectangle, distance) come from Shapely; this module owns validation, area
filtering, unit conversion and the nearest-neighbour search policy.

Measurements are always taken in a projected coordinate system. Footprints
in a geographic CRS are projected to their local UTM zone first, and
projected CRSs whose linear unit is not the metre are rescaled using the
unit's conversion factor, so that every value starts life in metres.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
import geopandas as gpd
import shapely
from pyproj import CRS
from scipy.spatial import KDTree
from tqdm import tqdm

from .config import AreaFilter, DistanceControl, UnitControl
from .errors import CRSMismatchError, InvalidGeometryError
from .registry import MetricKind, resolve_metrics
from .units import area_factor
from .utils import report


FootprintInput = Union[gpd.GeoDataFrame, gpd.GeoSeries]


# =============================================================================
# RESULT CONTAINER
# =============================================================================


@dataclass
class MetricTable:
    """
    Metric values keyed by footprint index.

    Attributes:
        values (pd.DataFrame): One row per measured footprint, indexed by
            ``fid`` (position in the input collection), one column per metric.
        units (Dict[str, str]): Unit of each metric column.
        invalid (List[int]): Footprints rejected for empty/invalid geometry
            (only populated in lenient mode).
        filtered (List[int]): Footprints excluded by the area filter.
        crs (CRS): Coordinate system the measurements were taken in.
    """
    values: pd.DataFrame
    units: Dict[str, str]
    invalid: List[int] = field(default_factory=list)
    filtered: List[int] = field(default_factory=list)
    crs: Optional[CRS] = None

    @property
    def fids(self) -> np.ndarray:
        return self.values.index.to_numpy()

    def to_long(self) -> pd.DataFrame:
        """Return ``(fid, metric, value, unit)`` rows."""
        long_df = (
            self.values.reset_index()
            .melt(id_vars='fid', var_name='metric', value_name='value')
        )
        long_df['unit'] = long_df['metric'].map(self.units)
        return long_df


# =============================================================================
# COORDINATE HANDLING
# =============================================================================


def as_geoseries(footprints: FootprintInput) -> gpd.GeoSeries:
    """Return the geometry of ``footprints`` as a GeoSeries with a 0..n-1 index."""
    if isinstance(footprints, gpd.GeoDataFrame):
        geoms = footprints.geometry
    elif isinstance(footprints, gpd.GeoSeries):
        geoms = footprints
    else:
        geoms = gpd.GeoSeries(list(footprints))
    return geoms.reset_index(drop=True)


def metric_crs(crs: Optional[CRS], geoms: Optional[gpd.GeoSeries] = None) -> Optional[CRS]:
    """
    Choose the projected CRS measurements are taken in.

    Projected inputs are measured in their own CRS. Geographic inputs are
    measured in the UTM zone estimated from ``geoms``. A missing CRS is taken
    to be planar with metre units.
    """
    if crs is None:
        return None
    crs = CRS.from_user_input(crs)
    if crs.is_projected:
        return crs
    if geoms is None or len(geoms) == 0:
        raise ValueError("Cannot choose a projected CRS without geometries")
    return geoms.estimate_utm_crs()


def metres_per_unit(crs: Optional[CRS]) -> float:
    """
    Length of one CRS unit in metres (1.0 for metre-based or missing CRSs).

    Example:
        >>> metres_per_unit(CRS.from_epsg(2263))  # NY State Plane, US feet
        0.3048006096012192
    """
    if crs is None:
        return 1.0
    crs = CRS.from_user_input(crs)
    try:
        factor = crs.axis_info[0].unit_conversion_factor
    except (IndexError, AttributeError):
        return 1.0
    return float(factor) if factor else 1.0


def project(geoms: gpd.GeoSeries, crs: Optional[CRS]) -> gpd.GeoSeries:
    """Reproject ``geoms`` to ``crs`` when both are defined and differ."""
    if crs is None or geoms.crs is None or geoms.crs == crs:
        return geoms
    return geoms.to_crs(crs)


def check_crs(left: Optional[CRS], right: Optional[CRS]) -> None:
    """
    Raises:
        CRSMismatchError: If both CRSs are defined and not equivalent.
    """
    if left is None or right is None:
        return
    if not CRS.from_user_input(left).equals(CRS.from_user_input(right)):
        raise CRSMismatchError(left, right)


def invalid_mask(geoms: gpd.GeoSeries) -> np.ndarray:
    """True where a geometry is missing, empty, or invalid."""
    missing = geoms.isna().to_numpy()
    arr = geoms.to_numpy()
    bad = missing.copy()
    present = ~missing
    bad[present] = shapely.is_empty(arr[present]) | ~shapely.is_valid(arr[present])
    return bad


# =============================================================================
# MEASUREMENT
# =============================================================================


def _scale_for(metric: MetricKind, scale: float) -> float:
    if metric.unit_kind == 'area':
        return scale ** 2
    if metric.unit_kind == 'length':
        return scale
    return 1.0


def measure(
    geoms: gpd.GeoSeries,
    metrics: Sequence[MetricKind],
    units: UnitControl,
    crs: Optional[CRS] = None,
) -> Dict[MetricKind, np.ndarray]:
    """
    Calculate the per-footprint (non-neighbour) metrics for ``geoms``.

    Args:
        geoms: Valid footprint geometries.
        metrics: Metrics to calculate; neighbour metrics are skipped.
        units: Output units.
        crs: Projected CRS to measure in (chosen automatically if None).

    Returns:
        Dict mapping each metric to an array of values in output units.
    """
    if crs is None:
        crs = metric_crs(geoms.crs, geoms)
    arr = project(geoms, crs).to_numpy()
    scale = metres_per_unit(crs)
    out: Dict[MetricKind, np.ndarray] = {}
    for metric in metrics:
        if metric.calculate is None:
            continue
        raw = np.asarray(metric.calculate(arr), dtype=float)
        out[metric] = raw * _scale_for(metric, scale) * units.factor_for(metric)
    return out


def nearest_neighbor_distance(
    geoms: gpd.GeoSeries,
    neighbors: Optional[gpd.GeoSeries] = None,
    method: str = 'edge',
    max_search_radius: Optional[float] = None,
    scale: float = 1.0,
) -> np.ndarray:
    """
    Distance from each footprint to its nearest neighbour.

    Two methods are supported:

    - 'edge': Exact boundary-to-boundary distance, using a Shapely STRtree
              nearest query. Touching footprints are 0 apart.
    - 'centroid': Distance between centroids, using a KDTree. Faster on
                  large collections, at the cost of over-estimating gaps
                  between large or elongated footprints.

    The footprint itself is never its own neighbour. With the default
    comparison set (``neighbors=None``) every other footprint is a candidate,
    exact copies included (they are 0 apart). When a separate comparison set
    is given, a candidate identical to the footprint is treated as the
    footprint itself.

    Args:
        geoms: Footprints to measure, in a projected CRS.
        neighbors: Comparison set in the same CRS (defaults to ``geoms``).
        method: 'edge' or 'centroid'.
        max_search_radius: Search bound in metres, or None for no bound.
            Footprints without a neighbour inside the bound get NaN.
        scale: Metres per CRS unit.

    Returns:
        np.ndarray: Distances in metres.
    """
    same_set = neighbors is None
    if same_set:
        neighbors = geoms
    n = len(geoms)
    out = np.full(n, np.nan)
    if n == 0 or len(neighbors) == 0:
        return out

    radius = None if max_search_radius is None else max_search_radius / scale

    if method == 'centroid':
        # KDTree on centroids; k=2 so the footprint's own centroid can be skipped
        centroids = np.column_stack([geoms.centroid.x, geoms.centroid.y])
        candidates = np.column_stack([neighbors.centroid.x, neighbors.centroid.y])
        tree = KDTree(candidates)
        k = min(2, len(candidates))
        bound = np.inf if radius is None else radius
        distances, _ = tree.query(centroids, k=k, distance_upper_bound=bound)
        distances = np.asarray(distances, dtype=float).reshape(n, k)
        first = distances[:, 0]
        if k == 2:
            nearest = np.where(first == 0.0, distances[:, 1], first)
        else:
            nearest = np.where(first == 0.0, np.inf, first)
        out = np.where(np.isfinite(nearest), nearest, np.nan)

    else:  # method == 'edge'
        targets = neighbors.to_numpy()
        tree = shapely.STRtree(targets)
        (input_idx, _), dist = tree.query_nearest(
            geoms.to_numpy(),
            max_distance=radius,
            return_distance=True,
            exclusive=True,
            all_matches=False,
        )
        out[input_idx] = dist
        if same_set:
            # exclusive=True skips every equal geometry; copies of a footprint
            # at other positions are still its neighbours, at distance 0
            left, right = tree.query(targets, predicate='intersects')
            pairs = left != right
            left, right = left[pairs], right[pairs]
            copies = shapely.equals(targets[left], targets[right])
            out[left[copies]] = 0.0

    return out * scale


def compute_metrics(
    footprints: FootprintInput,
    metrics: Union[str, Sequence] = 'all',
    units: Optional[UnitControl] = None,
    distance: Optional[DistanceControl] = None,
    area_filter: Optional[AreaFilter] = None,
    neighbors: Optional[FootprintInput] = None,
    lenient: bool = False,
    verbose: bool = False,
) -> MetricTable:
    """
    Calculate metric values for every footprint.

    Processing order:
        1. Reject empty/invalid geometries (raise, or skip in lenient mode).
        2. Project to a metric CRS.
        3. Apply the area filter, computing area for every footprint even if
           area was not requested. Filtered footprints take no further part,
           not even as neighbours.
        4. Calculate each requested metric and convert to output units.

    Args:
        footprints: Non-empty footprint collection.
        metrics: Metric name(s), ``"all"`` or ``"nodist"``.
        units: Output units (defaults: m^2, m, m).
        distance: Nearest-neighbour method and search radius.
        area_filter: Inclusive area bounds in the output area unit.
        neighbors: Comparison set for nearest-neighbour distance. Defaults to
                   the footprints themselves (each excluding itself).
        lenient: Skip invalid footprints instead of raising.
        verbose: Print progress.

    Returns:
        MetricTable: Values indexed by footprint position.

    Raises:
        ValueError: If ``footprints`` is empty.
        UnknownMetricError: For an unregistered metric name.
        InvalidGeometryError: For invalid footprints when not lenient.
        CRSMismatchError: If ``neighbors`` uses a different CRS.

    Example:
        >>> table = compute_metrics(buildings, ['area', 'angle'])
        >>> table.values['area'].mean()
    """
    units = units or UnitControl()
    distance = distance or DistanceControl()
    area_filter = area_filter or AreaFilter()
    kinds = resolve_metrics(metrics)

    geoms = as_geoseries(footprints)
    if len(geoms) == 0:
        raise ValueError("Footprint collection is empty")

    report(f"\n[METRIC] Calculating {', '.join(k.label for k in kinds)} "
           f"for {len(geoms)} footprints...", verbose)

    # -------------------------------------------------------------------------
    # VALIDATION
    # -------------------------------------------------------------------------
    bad = invalid_mask(geoms)
    invalid = np.flatnonzero(bad).tolist()
    if invalid:
        if not lenient:
            raise InvalidGeometryError(invalid)
        report(f"[WARNING] Skipping {len(invalid)} footprint(s) with invalid geometry",
               True)
    keep = ~bad

    # -------------------------------------------------------------------------
    # PROJECTION
    # -------------------------------------------------------------------------
    crs = metric_crs(geoms.crs, geoms[keep])
    scale = metres_per_unit(crs)
    projected = project(geoms, crs)

    # -------------------------------------------------------------------------
    # AREA FILTER
    # -------------------------------------------------------------------------
    filtered: List[int] = []
    if area_filter.active:
        area = np.full(len(geoms), np.nan)
        area[keep] = (shapely.area(projected[keep].to_numpy())
                      * scale ** 2 * area_factor(units.area))
        in_range = keep.copy()
        if area_filter.min_area is not None:
            in_range &= area >= area_filter.min_area
        if area_filter.max_area is not None:
            in_range &= area <= area_filter.max_area
        filtered = np.flatnonzero(keep & ~in_range).tolist()
        keep = in_range
        report(f"[INFO] Area filter excluded {len(filtered)} footprint(s)", verbose)

    fids = np.flatnonzero(keep)
    subset = projected[keep]

    # -------------------------------------------------------------------------
    # METRICS
    # -------------------------------------------------------------------------
    columns: Dict[str, np.ndarray] = {}
    result_units: Dict[str, str] = {}

    per_footprint = [k for k in kinds if k.calculate is not None]
    values = measure(subset, per_footprint, units, crs=crs) if per_footprint else {}

    for kind in tqdm(kinds, desc="Computing metrics", unit="metric", disable=not verbose):
        if kind.uses_distance:
            if neighbors is None:
                comparison = None
            else:
                comparison_geoms = as_geoseries(neighbors)
                check_crs(geoms.crs, comparison_geoms.crs)
                comparison = project(comparison_geoms, crs)
                comparison = comparison[~invalid_mask(comparison)]
            raw = nearest_neighbor_distance(
                subset,
                comparison,
                method=distance.method,
                max_search_radius=distance.max_search_radius,
                scale=scale,
            )
            columns[kind.label] = raw * units.factor_for(kind)
        else:
            columns[kind.label] = values[kind]
        result_units[kind.label] = units.unit_for(kind)

    frame = pd.DataFrame(columns, index=pd.Index(fids, name='fid'))
    frame = frame[[k.label for k in kinds]]

    if verbose and len(frame) > 0:
        for kind in kinds:
            col = frame[kind.label]
            report(f"  → {kind.label}: mean={col.mean():.4f} "
                   f"{result_units[kind.label]} (n={col.notna().sum()})", verbose)

    return MetricTable(
        values=frame,
        units=result_units,
        invalid=invalid,
        filtered=filtered,
        crs=crs,
    )
