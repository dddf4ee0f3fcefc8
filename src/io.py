"""
Input/output helpers: footprint and zone loading, template grids, and output
rasters.

Vector data is read with GeoPandas (any format Fiona/Pyogrio can open);
raster templates and outputs go through Rasterio. Output rasters are
single-band float32 GeoTIFFs with NaN as nodata, so "no footprints" is
distinguishable from a true zero.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple, Union

import numpy as np
import geopandas as gpd
import rasterio
import shapely
from rasterio.crs import CRS
from rasterio.transform import array_bounds, from_origin
from rasterio.windows import Window
from shapely.geometry import box
from shapely.geometry.base import BaseGeometry

from .config import ExecutionPlan
from .errors import ConfigurationError
from .registry import MetricKind, ReducerKind


VectorSource = Union[str, Path, gpd.GeoDataFrame, gpd.GeoSeries, Sequence[BaseGeometry]]
Bounds = Tuple[float, float, float, float]

OUTPUT_DTYPE = 'float32'
OUTPUT_NODATA = np.nan


# =============================================================================
# VECTOR INPUT
# =============================================================================


def is_path(source) -> bool:
    return isinstance(source, (str, Path))


def read_vector(
    source: VectorSource,
    bbox: Optional[Bounds] = None,
    crs=None,
    layer: Optional[str] = None,
) -> gpd.GeoDataFrame:
    """
    Load polygons from a file path or an in-memory collection.

    Args:
        source: Path to a vector file, a GeoDataFrame/GeoSeries, or a list of
                Shapely geometries.
        bbox: Optional (minx, miny, maxx, maxy) filter applied while reading;
              for in-memory inputs the spatial index does the same job.
        crs: CRS to assign to a plain list of geometries.
        layer: Layer name for multi-layer files (e.g. GeoPackage).

    Returns:
        gpd.GeoDataFrame: Polygons, index reset to 0..n-1.

    Raises:
        FileNotFoundError: If a path does not exist.
    """
    if is_path(source):
        path = Path(source)
        if not path.exists():
            raise FileNotFoundError(f"vector file not found: {path}")
        kwargs = {}
        if bbox is not None:
            kwargs['bbox'] = tuple(bbox)
        if layer is not None:
            kwargs['layer'] = layer
        gdf = gpd.read_file(path, **kwargs)
        return gdf.reset_index(drop=True)

    if isinstance(source, gpd.GeoDataFrame):
        gdf = source
    elif isinstance(source, gpd.GeoSeries):
        gdf = gpd.GeoDataFrame(geometry=source)
    else:
        gdf = gpd.GeoDataFrame(geometry=list(source), crs=crs)

    if bbox is not None:
        gdf = gdf.iloc[np.sort(gdf.sindex.query(box(*bbox)))]
    return gdf.reset_index(drop=True)


def read_bbox_subset(
    source: VectorSource,
    bounds: Bounds,
    layer: Optional[str] = None,
) -> gpd.GeoDataFrame:
    """
    Footprints intersecting ``bounds``, index reset to 0..n-1.

    A bounding-box pre-filter (file-level ``bbox`` read or spatial index query)
    runs first; the exact intersection test only sees its candidates. Input
    order is kept, and attribute columns pass through untouched.
    """
    extent = box(*bounds)
    gdf = read_vector(source, bbox=bounds, layer=layer)
    if len(gdf) == 0:
        return gdf
    hits = gdf.geometry.intersects(extent).to_numpy()
    return gdf[hits].reset_index(drop=True)


# =============================================================================
# TEMPLATE GRID
# =============================================================================


@dataclass(frozen=True)
class TemplateGrid:
    """
    The extent, resolution and CRS of an output raster.

    Attributes:
        transform (Affine): Pixel-to-map transform.
        width (int): Number of columns.
        height (int): Number of rows.
        crs (CRS): Coordinate reference system, or None.
    """
    transform: rasterio.Affine
    width: int
    height: int
    crs: Optional[CRS] = None

    @classmethod
    def from_raster(cls, source) -> 'TemplateGrid':
        """
        Read the grid definition from a raster path or an open dataset.

        Raises:
            FileNotFoundError: If a path does not exist.
        """
        if isinstance(source, TemplateGrid):
            return source
        if is_path(source):
            path = Path(source)
            if not path.exists():
                raise FileNotFoundError(f"template raster not found: {path}")
            with rasterio.open(path) as src:
                return cls(src.transform, src.width, src.height, src.crs)
        # Open rasterio dataset (file-backed or MemoryFile)
        return cls(source.transform, source.width, source.height, source.crs)

    @classmethod
    def from_bounds(
        cls,
        bounds: Bounds,
        resolution: Union[float, Tuple[float, float]],
        crs=None,
    ) -> 'TemplateGrid':
        """Build a north-up grid covering ``bounds`` at ``resolution``."""
        if isinstance(resolution, (int, float)):
            resolution = (float(resolution), float(resolution))
        xres, yres = resolution
        if xres <= 0 or yres <= 0:
            raise ConfigurationError("resolution must be positive")
        minx, miny, maxx, maxy = bounds
        width = int(np.ceil((maxx - minx) / xres))
        height = int(np.ceil((maxy - miny) / yres))
        if width <= 0 or height <= 0:
            raise ConfigurationError(f"bounds {bounds} produce an empty grid")
        transform = from_origin(minx, maxy, xres, yres)
        return cls(transform, width, height, CRS.from_user_input(crs) if crs else None)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.height, self.width

    @property
    def resolution(self) -> Tuple[float, float]:
        return abs(self.transform.a), abs(self.transform.e)

    def window_bounds(self, window: Window) -> Bounds:
        """Map bounds (minx, miny, maxx, maxy) of a pixel window."""
        transform = rasterio.windows.transform(window, self.transform)
        west, south, east, north = array_bounds(int(window.height), int(window.width),
                                                transform)
        return west, south, east, north

    def cell_polygons(self, window: Window) -> gpd.GeoSeries:
        """Cell polygons of ``window`` in row-major order."""
        transform = rasterio.windows.transform(window, self.transform)
        rows, cols = np.mgrid[0:int(window.height), 0:int(window.width)]
        xs0, ys0 = rasterio.transform.xy(transform, rows.ravel(), cols.ravel(),
                                         offset='ul')
        xs1, ys1 = rasterio.transform.xy(transform, rows.ravel(), cols.ravel(),
                                         offset='lr')
        xs0, ys0, xs1, ys1 = (np.asarray(v, dtype=float) for v in (xs0, ys0, xs1, ys1))
        cells = shapely.box(np.minimum(xs0, xs1), np.minimum(ys0, ys1),
                            np.maximum(xs0, xs1), np.maximum(ys0, ys1))
        return gpd.GeoSeries(cells, crs=self.crs)

    def cell_centers(self, window: Window) -> np.ndarray:
        """(n, 2) array of cell-centre coordinates of ``window`` in row-major order."""
        transform = rasterio.windows.transform(window, self.transform)
        rows, cols = np.mgrid[0:int(window.height), 0:int(window.width)]
        xs, ys = rasterio.transform.xy(transform, rows.ravel(), cols.ravel(),
                                       offset='center')
        return np.column_stack([np.asarray(xs, dtype=float), np.asarray(ys, dtype=float)])


# =============================================================================
# OUTPUT RASTERS
# =============================================================================


def format_radius(radius: float) -> str:
    """Radius label used in file names: 100.0 -> '100', 12.5 -> '12p5'."""
    if float(radius).is_integer():
        return str(int(radius))
    return f"{radius:g}".replace('.', 'p')


def output_name(
    metric: MetricKind,
    reducer: ReducerKind,
    focal_radius: Optional[float] = None,
    tag: Optional[str] = None,
) -> str:
    """
    File name for one metric/summary-function raster.

    Example:
        >>> output_name(MetricKind.AREA, ReducerKind.MEAN, 100, 'v2')
        'area_mean_100_v2.tif'
    """
    parts = [metric.label, reducer.label]
    if focal_radius is not None:
        parts.append(format_radius(focal_radius))
    if tag:
        parts.append(str(tag))
    return '_'.join(parts) + '.tif'


def output_paths(
    plan: ExecutionPlan,
    output_path: Path,
    focal_radius: Optional[float] = None,
    tag: Optional[str] = None,
) -> Dict[Tuple[MetricKind, ReducerKind], Path]:
    """Destination file for every pair in ``plan``."""
    return {
        (metric, reducer): Path(output_path) / output_name(metric, reducer, focal_radius, tag)
        for metric, reducer in plan.pairs
    }


def create_output_raster(
    path: Path,
    template: TemplateGrid,
    overwrite: bool = False,
    strip_rows: int = 512,
) -> Path:
    """
    Create an empty (all-nodata) output raster matching ``template``.

    Raises:
        FileExistsError: If ``path`` exists and ``overwrite`` is False.
    """
    path = Path(path)
    if path.exists() and not overwrite:
        raise FileExistsError(f"output raster already exists: {path}")
    path.parent.mkdir(parents=True, exist_ok=True)

    profile = {
        'driver': 'GTiff',
        'height': template.height,
        'width': template.width,
        'count': 1,
        'dtype': OUTPUT_DTYPE,
        'crs': template.crs,
        'transform': template.transform,
        'nodata': OUTPUT_NODATA,
    }
    with rasterio.open(path, 'w', **profile) as dst:
        for row in range(0, template.height, strip_rows):
            h = min(strip_rows, template.height - row)
            fill = np.full((h, template.width), OUTPUT_NODATA, dtype=OUTPUT_DTYPE)
            dst.write(fill, 1, window=Window(0, row, template.width, h))
    return path


def write_window(path: Path, array: np.ndarray, window: Window) -> None:
    """Write ``array`` into ``window`` of an existing output raster."""
    with rasterio.open(path, 'r+') as dst:
        dst.write(array.astype(OUTPUT_DTYPE), 1, window=window)


def read_raster(path: Path) -> np.ndarray:
    """Read band 1 of a raster as float64."""
    with rasterio.open(path) as src:
        return src.read(1).astype(np.float64)


def read_vector_crs(source: VectorSource, layer: Optional[str] = None):
    """CRS of a vector source, reading at most one feature from files."""
    if is_path(source):
        path = Path(source)
        if not path.exists():
            raise FileNotFoundError(f"vector file not found: {path}")
        kwargs = {'rows': 1}
        if layer is not None:
            kwargs['layer'] = layer
        return gpd.read_file(path, **kwargs).crs
    if isinstance(source, (gpd.GeoDataFrame, gpd.GeoSeries)):
        return source.crs
    return None
