"""
Configuration structures and the resolved execution plan.

User-facing options may be given with their long-standing names (``what``,
``how``, ``controlZone``, ``controlDistance``, ``controlUnits``, ``filter``,
``tileSize``, ``focalRadius``, ``outputPath``, ``outputTag``, ``parallel``,
``verbose``) or in snake_case. ``FootstatsConfig.from_options`` turns either
spelling into a validated ``FootstatsConfig``; ``build_plan`` turns the
``what``/``how`` pair into an ``ExecutionPlan`` of resolved kinds.
"""

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .errors import ConfigurationError
from .registry import (
    MetricKind,
    ReducerKind,
    resolve_metrics,
    resolve_reducers,
)
from .units import area_factor, length_factor, normalize_unit


ZONE_METHODS = ('centroid', 'intersect', 'clip')
DISTANCE_METHODS = ('edge', 'centroid')

# Default bound (metres) on the nearest-neighbour search
DEFAULT_SEARCH_RADIUS = 100.0


# =============================================================================
# CONTROL STRUCTURES
# =============================================================================


@dataclass(frozen=True)
class ZoneControl:
    """How footprints are joined to zones."""
    method: str = 'centroid'
    zone_field: Optional[str] = None

    def __post_init__(self):
        method = str(self.method).lower()
        if method not in ZONE_METHODS:
            raise ConfigurationError(
                f"Invalid zone method '{self.method}'. Use one of {ZONE_METHODS}."
            )
        object.__setattr__(self, 'method', method)


@dataclass(frozen=True)
class DistanceControl:
    """
    Nearest-neighbour search settings.

    Attributes:
        method: 'edge' for exact boundary-to-boundary distance, or 'centroid'
                for the faster centroid-to-centroid approximation.
        max_search_radius: Search bound in metres. ``None`` searches without a
                           bound, which is slower on large collections.
    """
    method: str = 'edge'
    max_search_radius: Optional[float] = DEFAULT_SEARCH_RADIUS

    def __post_init__(self):
        method = str(self.method).lower()
        if method not in DISTANCE_METHODS:
            raise ConfigurationError(
                f"Invalid distance method '{self.method}'. Use one of {DISTANCE_METHODS}."
            )
        object.__setattr__(self, 'method', method)
        if self.max_search_radius is not None and self.max_search_radius <= 0:
            raise ConfigurationError("max_search_radius must be positive or None")


@dataclass(frozen=True)
class UnitControl:
    """Output units for area, perimeter and distance, set independently."""
    area: str = 'm^2'
    perimeter: str = 'm'
    distance: str = 'm'

    def __post_init__(self):
        try:
            object.__setattr__(self, 'area', normalize_unit(self.area))
            object.__setattr__(self, 'perimeter', normalize_unit(self.perimeter))
            object.__setattr__(self, 'distance', normalize_unit(self.distance))
            area_factor(self.area)
            length_factor(self.perimeter)
            length_factor(self.distance)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

    def unit_for(self, metric: MetricKind) -> str:
        if metric is MetricKind.AREA:
            return self.area
        if metric is MetricKind.PERIMETER:
            return self.perimeter
        if metric.uses_distance:
            return self.distance
        return metric.default_unit()

    def factor_for(self, metric: MetricKind) -> float:
        """Factor converting base units (m, m^2) to the output unit."""
        if metric is MetricKind.AREA:
            return area_factor(self.area)
        if metric is MetricKind.PERIMETER:
            return length_factor(self.perimeter)
        if metric.uses_distance:
            return length_factor(self.distance)
        return 1.0


@dataclass(frozen=True)
class AreaFilter:
    """Inclusive area bounds, expressed in the configured area unit."""
    min_area: Optional[float] = None
    max_area: Optional[float] = None

    def __post_init__(self):
        if (self.min_area is not None and self.max_area is not None
                and self.min_area > self.max_area):
            raise ConfigurationError("filter min_area is greater than max_area")

    @property
    def active(self) -> bool:
        return self.min_area is not None or self.max_area is not None


# =============================================================================
# EXECUTION PLAN
# =============================================================================


@dataclass(frozen=True)
class SummaryGroup:
    """One set of metrics summarised by one set of functions."""
    metrics: Tuple[MetricKind, ...]
    reducers: Tuple[ReducerKind, ...]


@dataclass(frozen=True)
class ExecutionPlan:
    """
    Resolved metric × summary-function pairs.

    ``pairs`` holds every (metric, reducer) combination in request order,
    without duplicates, and determines the output column order.
    """
    groups: Tuple[SummaryGroup, ...]

    @property
    def pairs(self) -> List[Tuple[MetricKind, ReducerKind]]:
        seen: List[Tuple[MetricKind, ReducerKind]] = []
        for group in self.groups:
            for metric in group.metrics:
                for reducer in group.reducers:
                    if (metric, reducer) not in seen:
                        seen.append((metric, reducer))
        return seen

    @property
    def metrics(self) -> List[MetricKind]:
        out: List[MetricKind] = []
        for metric, _ in self.pairs:
            if metric not in out:
                out.append(metric)
        return out

    @property
    def columns(self) -> List[str]:
        return [column_name(m, r) for m, r in self.pairs]


def column_name(metric: MetricKind, reducer: ReducerKind) -> str:
    return f"{metric.label}_{reducer.label}"


def _is_nested(value: Any) -> bool:
    return (
        isinstance(value, (list, tuple))
        and len(value) > 0
        and all(isinstance(v, (list, tuple)) for v in value)
    )


def build_plan(what: Any, how: Any) -> ExecutionPlan:
    """
    Resolve ``what`` and ``how`` into an execution plan.

    A flat list of metrics with a flat list of functions applies every
    function to every metric. Lists of lists pair group *i* of metrics with
    group *i* of functions:

        >>> plan = build_plan([['area', 'perimeter'], ['angle']],
        ...                   [['mean', 'sd'], ['entropy']])
        >>> plan.columns
        ['area_mean', 'area_sd', 'perimeter_mean', 'perimeter_sd', 'angle_entropy']

    Raises:
        UnknownMetricError: For an unregistered metric name.
        UnknownReducerError: For an unsupported function name.
        IncompatibleReducerError: For ``entropy`` on a non-angular metric.
        ConfigurationError: If the nested groups do not line up.
    """
    if _is_nested(what) or _is_nested(how):
        what_groups = list(what) if _is_nested(what) else [what]
        how_groups = list(how) if _is_nested(how) else [how]
        if len(how_groups) == 1 and len(what_groups) > 1:
            how_groups = how_groups * len(what_groups)
        if len(what_groups) != len(how_groups):
            raise ConfigurationError(
                f"Got {len(what_groups)} metric groups but {len(how_groups)} "
                "summary-function groups"
            )
    else:
        what_groups, how_groups = [what], [how]

    groups = []
    for metrics_req, reducers_req in zip(what_groups, how_groups):
        metrics = resolve_metrics(metrics_req)
        reducers = resolve_reducers(reducers_req)
        if not metrics or not reducers:
            raise ConfigurationError("Each group needs at least one metric and one function")
        for metric in metrics:
            for reducer in reducers:
                reducer.check_compatible(metric)
        groups.append(SummaryGroup(tuple(metrics), tuple(reducers)))
    return ExecutionPlan(tuple(groups))


# =============================================================================
# TOP-LEVEL CONFIGURATION
# =============================================================================


# Short keys accepted inside control dicts besides the field names (snake_case
# or camelCase): ``filter={"min": 50, "max": 1000}``,
# ``controlDistance={"radius": 250}``, ``controlZone={"zone": "name"}`` or
# ``controlZone={"zoneName": "name"}``.
CONTROL_KEY_ALIASES = {
    'min': 'min_area',
    'max': 'max_area',
    'radius': 'max_search_radius',
    'zone': 'zone_field',
    'zone_name': 'zone_field',
}


def _coerce(cls, value):
    """
    Build a control dataclass from an instance, a dict, or a bare value.

    Dict keys may be field names in snake_case or camelCase, or one of
    ``CONTROL_KEY_ALIASES``. A bare string is the method of a zone or
    distance control.
    """
    if value is None:
        return cls()
    if isinstance(value, cls):
        return value
    if isinstance(value, dict):
        names = {f.name for f in fields(cls)}
        # Accept camelCase keys used by the option names
        renamed = {}
        for key, v in value.items():
            snake = ''.join('_' + c.lower() if c.isupper() else c for c in key)
            snake = CONTROL_KEY_ALIASES.get(snake, snake)
            if snake not in names:
                raise ConfigurationError(f"Unknown {cls.__name__} option '{key}'")
            renamed[snake] = v
        return cls(**renamed)
    if cls in (ZoneControl, DistanceControl) and isinstance(value, str):
        return cls(method=value)
    raise ConfigurationError(f"Cannot build {cls.__name__} from {value!r}")


def _tile_size(value: Union[int, Sequence[int]]) -> Tuple[int, int]:
    if isinstance(value, int):
        value = (value, value)
    rows, cols = (int(v) for v in value)
    if rows <= 0 or cols <= 0:
        raise ConfigurationError("tile_size must be positive")
    return rows, cols


@dataclass(frozen=True)
class FootstatsConfig:
    """
    All options recognised by the calculation entry points.

    Attributes:
        what: Metric name(s), nested groups, ``"all"`` or ``"nodist"``.
        how: Summary function name(s) or nested groups.
        control_zone: Zone join method and optional zone id field.
        control_distance: Nearest-neighbour method and search radius.
        control_units: Output units for area, perimeter and distance.
        filter: Inclusive area bounds applied before any calculation.
        tile_size: Tile (rows, cols) in template pixels.
        focal_radius: Moving-window radius in metres; switches tiled runs to
                      focal mode.
        output_path: Directory for tiled raster outputs.
        output_tag: Extra label appended to output file names.
        parallel: Process tiles in worker processes.
        max_workers: Worker process count (``None`` lets the pool decide).
        fail_fast: Stop a tiled run at the first failing tile.
        lenient: Skip invalid footprints instead of raising.
        overwrite: Replace existing output rasters.
        verbose: Print progress messages and bars.
    """
    what: Any = 'all'
    how: Any = 'mean'
    control_zone: ZoneControl = field(default_factory=ZoneControl)
    control_distance: DistanceControl = field(default_factory=DistanceControl)
    control_units: UnitControl = field(default_factory=UnitControl)
    filter: AreaFilter = field(default_factory=AreaFilter)
    tile_size: Tuple[int, int] = (1000, 1000)
    focal_radius: Optional[float] = None
    output_path: Optional[Path] = None
    output_tag: Optional[str] = None
    parallel: bool = False
    max_workers: Optional[int] = None
    fail_fast: bool = False
    lenient: bool = False
    overwrite: bool = False
    verbose: bool = False

    def __post_init__(self):
        object.__setattr__(self, 'control_zone', _coerce(ZoneControl, self.control_zone))
        object.__setattr__(self, 'control_distance',
                           _coerce(DistanceControl, self.control_distance))
        object.__setattr__(self, 'control_units', _coerce(UnitControl, self.control_units))
        object.__setattr__(self, 'filter', _coerce(AreaFilter, self.filter))
        object.__setattr__(self, 'tile_size', _tile_size(self.tile_size))
        if self.output_path is not None:
            object.__setattr__(self, 'output_path', Path(self.output_path))
        if self.focal_radius is not None and self.focal_radius <= 0:
            raise ConfigurationError("focal_radius must be positive")
        if self.max_workers is not None and self.max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")
        # Fail on bad metric/function names before any data is read
        build_plan(self.what, self.how)

    @property
    def plan(self) -> ExecutionPlan:
        return build_plan(self.what, self.how)

    def with_options(self, **options) -> 'FootstatsConfig':
        """Return a copy with some options replaced."""
        return replace(self, **_normalize_options(options))

    @classmethod
    def from_options(cls, **options) -> 'FootstatsConfig':
        """
        Build a configuration from keyword options.

        Both the documented option names (``controlZone``, ``tileSize``, ...)
        and their snake_case forms are accepted.

        Raises:
            ConfigurationError: For unknown option names or invalid values.
        """
        return cls(**_normalize_options(options))


_OPTION_NAMES: Dict[str, str] = {
    'controlZone': 'control_zone',
    'controlDistance': 'control_distance',
    'controlUnits': 'control_units',
    'tileSize': 'tile_size',
    'focalRadius': 'focal_radius',
    'outputPath': 'output_path',
    'outputTag': 'output_tag',
    'maxWorkers': 'max_workers',
    'failFast': 'fail_fast',
}


def _normalize_options(options: Dict[str, Any]) -> Dict[str, Any]:
    known = {f.name for f in fields(FootstatsConfig)}
    normalized = {}
    for key, value in options.items():
        name = _OPTION_NAMES.get(key, key)
        if name not in known:
            raise ConfigurationError(f"Unknown option '{key}'")
        normalized[name] = value
    return normalized


def required_metrics(plan: ExecutionPlan, area_filter: AreaFilter) -> List[MetricKind]:
    """Metrics the engine must calculate for a plan, including filter inputs."""
    metrics = plan.metrics
    if area_filter.active and MetricKind.AREA not in metrics:
        metrics = metrics + [MetricKind.AREA]
    return metrics

