"""
Metric and summary-function registry.

Every metric the package can calculate is a member of ``MetricKind`` and every
summary function is a member of ``ReducerKind``. Names given by callers are
resolved to members once, when a configuration is built, so the calculation
code never matches strings.

Metrics:
    - area:       Footprint area
    - perimeter:  Footprint perimeter length
    - nndist:     Distance to the nearest neighbouring footprint
    - angle:      Orientation of the long side of the minimum rotated rectangle
    - shape:      Area / area of the minimum bounding circle
    - compact:    Polsby-Popper compactness, 4π × Area / Perimeter²
    - solidity:   Area / convex hull area
    - elongation: Short side / long side of the minimum rotated rectangle
    - settled:    Presence marker (1 per footprint)

Summary functions:
    count, sum, mean, median, min, max, sd, cv, entropy
"""

from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Union

import numpy as np
import shapely

from .errors import IncompatibleReducerError, UnknownMetricError, UnknownReducerError


# Angular bins used by the entropy summary, [0, 180) in 10 degree steps
ENTROPY_BIN_WIDTH = 10.0
ENTROPY_BINS = np.arange(0.0, 180.0 + ENTROPY_BIN_WIDTH, ENTROPY_BIN_WIDTH)


# =============================================================================
# PER-FOOTPRINT CALCULATIONS
# =============================================================================
# Each function takes an array of shapely geometries in a projected CRS and
# returns float64 values in base units (metres, square metres, degrees).


def _area(geoms: np.ndarray) -> np.ndarray:
    return shapely.area(geoms)


def _perimeter(geoms: np.ndarray) -> np.ndarray:
    return shapely.length(geoms)


def _rectangle_sides(geom) -> Optional[np.ndarray]:
    """Return the two side vectors of the minimum rotated rectangle."""
    rect = geom.minimum_rotated_rectangle
    if rect.geom_type != 'Polygon':
        return None
    coords = np.asarray(rect.exterior.coords)
    return np.array([coords[1] - coords[0], coords[2] - coords[1]])


def rotation_angle(geom) -> float:
    """
    Angle of the long side of the minimum rotated rectangle.

    The angle is measured counter-clockwise from the x-axis and normalised to
    [0, 180), so opposite directions along the same axis are identical.
    Degenerate footprints return NaN.
    """
    sides = _rectangle_sides(geom)
    if sides is None:
        return np.nan
    lengths = np.hypot(sides[:, 0], sides[:, 1])
    dx, dy = sides[int(np.argmax(lengths))]
    angle = np.degrees(np.arctan2(dy, dx)) % 180.0
    # Guard the upper bound against rounding (179.9999... % 180)
    if angle >= 180.0:
        angle = 0.0
    return float(angle)


def _angle(geoms: np.ndarray) -> np.ndarray:
    return np.array([rotation_angle(g) for g in geoms], dtype=float)


def _elongation(geoms: np.ndarray) -> np.ndarray:
    out = np.full(len(geoms), np.nan)
    for i, geom in enumerate(geoms):
        sides = _rectangle_sides(geom)
        if sides is None:
            continue
        lengths = np.hypot(sides[:, 0], sides[:, 1])
        if lengths.max() > 0:
            out[i] = lengths.min() / lengths.max()
    return out


def _shape(geoms: np.ndarray) -> np.ndarray:
    radius = shapely.minimum_bounding_radius(geoms)
    circle_area = np.pi * radius ** 2
    with np.errstate(divide='ignore', invalid='ignore'):
        ratio = shapely.area(geoms) / circle_area
    return np.where(circle_area > 0, ratio, np.nan)


def _compact(geoms: np.ndarray) -> np.ndarray:
    area = shapely.area(geoms)
    perimeter = shapely.length(geoms)
    with np.errstate(divide='ignore', invalid='ignore'):
        ratio = (4 * np.pi * area) / (perimeter ** 2)
    return np.where(perimeter > 0, np.clip(ratio, 0.0, 1.0), np.nan)


def _solidity(geoms: np.ndarray) -> np.ndarray:
    area = shapely.area(geoms)
    hull_area = shapely.area(shapely.convex_hull(geoms))
    with np.errstate(divide='ignore', invalid='ignore'):
        ratio = area / hull_area
    return np.where(hull_area > 0, np.clip(ratio, 0.0, 1.0), np.nan)


def _settled(geoms: np.ndarray) -> np.ndarray:
    return np.ones(len(geoms), dtype=float)


# =============================================================================
# METRIC KINDS
# =============================================================================


class MetricKind(Enum):
    """
    Registered footprint metrics.

    Each member carries:
        label (str): Name used in configuration and output columns.
        primitives (FrozenSet[str]): Geometry primitives the metric needs.
        unit_kind (str): One of 'area', 'length', 'angle', 'ratio', 'count'.
        angular (bool): Whether values are orientations in [0, 180).
        calculate (Callable): Per-footprint calculation, or None for metrics
            that need the whole collection (nearest-neighbour distance).
    """

    AREA = ('area', frozenset({'area'}), 'area', False, _area)
    PERIMETER = ('perimeter', frozenset({'perimeter'}), 'length', False, _perimeter)
    NNDIST = ('nndist', frozenset({'nndist'}), 'length', False, None)
    ANGLE = ('angle', frozenset({'mbr'}), 'angle', True, _angle)
    SHAPE = ('shape', frozenset({'area', 'circle'}), 'ratio', False, _shape)
    COMPACT = ('compact', frozenset({'area', 'perimeter'}), 'ratio', False, _compact)
    SOLIDITY = ('solidity', frozenset({'area', 'hull'}), 'ratio', False, _solidity)
    ELONGATION = ('elongation', frozenset({'mbr'}), 'ratio', False, _elongation)
    SETTLED = ('settled', frozenset(), 'count', False, _settled)

    def __init__(self, label, primitives, unit_kind, angular, calculate):
        self.label = label
        self.primitives = primitives
        self.unit_kind = unit_kind
        self.angular = angular
        self.calculate = calculate

    @property
    def uses_distance(self) -> bool:
        return 'nndist' in self.primitives

    @property
    def geometry_derived(self) -> bool:
        """True if the value changes when the footprint geometry is clipped."""
        return self.calculate is not None and self is not MetricKind.SETTLED

    def default_unit(self) -> str:
        return {
            'area': 'm^2',
            'length': 'm',
            'angle': 'degrees',
            'ratio': 'ratio',
            'count': 'count',
        }[self.unit_kind]

    def __str__(self) -> str:
        return self.label


_METRICS_BY_NAME: Dict[str, MetricKind] = {m.label: m for m in MetricKind}


def list_metrics() -> List[str]:
    """Names of every registered metric, in registry order."""
    return [m.label for m in MetricKind]


def get_metric(name: Union[str, MetricKind]) -> MetricKind:
    """
    Look up a metric by name.

    Raises:
        UnknownMetricError: If the name is not registered.
    """
    if isinstance(name, MetricKind):
        return name
    key = str(name).strip().lower()
    if key not in _METRICS_BY_NAME:
        raise UnknownMetricError(str(name))
    return _METRICS_BY_NAME[key]


def resolve_metrics(what: Union[str, MetricKind, Iterable]) -> List[MetricKind]:
    """
    Resolve a metric request to an ordered, de-duplicated list of kinds.

    Args:
        what: A metric name, a list of names, ``"all"`` for every registered
              metric, or ``"nodist"`` for every metric except those derived
              from nearest-neighbour distance (the slowest to compute).

    Raises:
        UnknownMetricError: If any name is not registered.

    Example:
        >>> [m.label for m in resolve_metrics(['area', 'angle', 'area'])]
        ['area', 'angle']
    """
    if isinstance(what, (str, MetricKind)):
        what = [what]

    resolved: List[MetricKind] = []
    for name in what:
        if isinstance(name, str) and name.strip().lower() == 'all':
            kinds = list(MetricKind)
        elif isinstance(name, str) and name.strip().lower() == 'nodist':
            kinds = [m for m in MetricKind if not m.uses_distance]
        else:
            kinds = [get_metric(name)]
        for kind in kinds:
            if kind not in resolved:
                resolved.append(kind)
    return resolved


# =============================================================================
# SUMMARY FUNCTIONS
# =============================================================================


def _count(values: np.ndarray) -> float:
    return float(len(values))


def _finite(values: np.ndarray) -> np.ndarray:
    return values[~np.isnan(values)]


def _sum(values: np.ndarray) -> float:
    values = _finite(values)
    return float(np.sum(values)) if len(values) else np.nan


def _mean(values: np.ndarray) -> float:
    values = _finite(values)
    return float(np.mean(values)) if len(values) else np.nan


def _median(values: np.ndarray) -> float:
    values = _finite(values)
    return float(np.median(values)) if len(values) else np.nan


def _min(values: np.ndarray) -> float:
    values = _finite(values)
    return float(np.min(values)) if len(values) else np.nan


def _max(values: np.ndarray) -> float:
    values = _finite(values)
    return float(np.max(values)) if len(values) else np.nan


def _sd(values: np.ndarray) -> float:
    values = _finite(values)
    return float(np.std(values, ddof=1)) if len(values) > 1 else np.nan


def _cv(values: np.ndarray) -> float:
    values = _finite(values)
    if len(values) < 2:
        return np.nan
    mean = np.mean(values)
    if mean == 0:
        return np.nan
    return float(np.std(values, ddof=1) / mean)


def orientation_entropy(angles: np.ndarray) -> float:
    """
    Normalised Shannon entropy of footprint orientations.

    Angles in [0, 180) are binned into 10 degree classes and the entropy of
    the class proportions is divided by its maximum, ln(18). A value of 0
    means every footprint shares one orientation; 1 means orientations are
    spread evenly over all classes.
    """
    angles = _finite(np.asarray(angles, dtype=float))
    if len(angles) == 0:
        return np.nan
    counts, _ = np.histogram(angles % 180.0, bins=ENTROPY_BINS)
    p = counts[counts > 0] / len(angles)
    h = -np.sum(p * np.log(p))
    return float(h / np.log(len(ENTROPY_BINS) - 1))


class ReducerKind(Enum):
    """
    Registered summary functions.

    ``count`` counts associated footprints (including those whose metric value
    is missing); every other function ignores missing values and returns NaN
    when nothing is left to summarise.
    """

    COUNT = ('count', _count, False)
    SUM = ('sum', _sum, False)
    MEAN = ('mean', _mean, False)
    MEDIAN = ('median', _median, False)
    MIN = ('min', _min, False)
    MAX = ('max', _max, False)
    SD = ('sd', _sd, False)
    CV = ('cv', _cv, False)
    ENTROPY = ('entropy', orientation_entropy, True)

    def __init__(self, label, reduce, angular_only):
        self.label = label
        self.reduce: Callable[[np.ndarray], float] = reduce
        self.angular_only = angular_only

    def check_compatible(self, metric: MetricKind) -> None:
        """
        Raises:
            IncompatibleReducerError: If this function cannot summarise ``metric``.
        """
        if self.angular_only and not metric.angular:
            raise IncompatibleReducerError(metric.label, self.label)

    def __str__(self) -> str:
        return self.label


_REDUCERS_BY_NAME: Dict[str, ReducerKind] = {r.label: r for r in ReducerKind}
_REDUCER_ALIASES = {'std': 'sd', 'stdev': 'sd', 'average': 'mean', 'n': 'count'}


def list_reducers() -> List[str]:
    return [r.label for r in ReducerKind]


def get_reducer(name: Union[str, ReducerKind]) -> ReducerKind:
    """
    Look up a summary function by name.

    Raises:
        UnknownReducerError: If the name is not supported.
    """
    if isinstance(name, ReducerKind):
        return name
    key = str(name).strip().lower()
    key = _REDUCER_ALIASES.get(key, key)
    if key not in _REDUCERS_BY_NAME:
        raise UnknownReducerError(str(name))
    return _REDUCERS_BY_NAME[key]


def resolve_reducers(how: Union[str, ReducerKind, Iterable]) -> List[ReducerKind]:
    """Resolve a summary-function request to an ordered list of kinds."""
    if isinstance(how, (str, ReducerKind)):
        how = [how]
    resolved: List[ReducerKind] = []
    for name in how:
        kind = get_reducer(name)
        if kind not in resolved:
            resolved.append(kind)
    return resolved
