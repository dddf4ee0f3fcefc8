"""
Tiling Engine: footprint summaries written to rasters of any size.

The template grid is split into row-major tiles. Each tile is an independent
unit of work:

    1. Compute the tile's map extent and, when a focal radius is set, a
       buffered extent that reaches ``focal_radius`` beyond it.
    2. Read only the footprints intersecting the buffered extent (bounding
       box pre-filter first, exact test second). When nearest-neighbour
       distance is requested, read again over the extent of those footprints
       widened by the search radius, so each of them sees every neighbour it
       would see in an untiled run.
    3. Calculate footprint metrics on that set.
    4. Summarise per cell, either
         - zonal mode (no radius): each cell polygon is a zone and footprints
           join every cell they intersect, or
         - focal mode: each cell gathers the footprints lying within
           ``focal_radius`` of its centre.
    5. Return one array per metric/summary pair covering the unbuffered tile.

The parent process owns the output rasters and writes each tile's arrays into
that tile's window. Windows never overlap, so the result does not depend on
the order tiles finish in, and serial and parallel runs are identical.

A tile that fails is reported with its coordinates and the run continues,
unless ``fail_fast`` is set. A ``cancel_event`` stops new tiles from being
scheduled and queued ones are cancelled; tiles already finished are still
written.
"""

import os
from concurrent.futures import FIRST_COMPLETED, ProcessPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import numpy as np
import geopandas as gpd
import shapely
from pyproj import CRS
from rasterio.windows import Window
from tqdm import tqdm

from .config import (
    AreaFilter,
    DistanceControl,
    ExecutionPlan,
    UnitControl,
    column_name,
    required_metrics,
)
from .errors import ConfigurationError, TileProcessingError
from .geometry import check_crs, compute_metrics, metres_per_unit
from .io import (
    Bounds,
    TemplateGrid,
    VectorSource,
    create_output_raster,
    is_path,
    output_paths,
    read_bbox_subset,
    read_vector,
    read_vector_crs,
    write_window,
)
from .registry import ReducerKind
from .summary import aggregate
from .utils import Timer, banner, report
from .zonal import DEFAULT_ZONE_FIELD, index_zones


# =============================================================================
# TILES
# =============================================================================


@dataclass(frozen=True)
class Tile:
    """
    A rectangular block of template cells.

    Attributes:
        row, col: Tile position in the tile grid.
        row_off, col_off: Pixel offset of the tile in the template.
        height, width: Tile size in pixels (edge tiles may be smaller).
        bounds: Map extent of the tile (minx, miny, maxx, maxy).
        buffered_bounds: ``bounds`` expanded by the focal radius; footprints
            intersecting it are the ones the tile's cells can gather. Used
            only to select footprints, never for output.
    """
    row: int
    col: int
    row_off: int
    col_off: int
    height: int
    width: int
    bounds: Bounds
    buffered_bounds: Bounds

    @property
    def window(self) -> Window:
        return Window(self.col_off, self.row_off, self.width, self.height)

    @property
    def n_cells(self) -> int:
        return self.height * self.width


def expand_bounds(bounds: Bounds, distance: float) -> Bounds:
    minx, miny, maxx, maxy = bounds
    return minx - distance, miny - distance, maxx + distance, maxy + distance


def context_bounds(
    footprints: gpd.GeoDataFrame,
    bounds: Bounds,
    search_radius: Optional[float],
) -> Bounds:
    """
    Extent holding every neighbour candidate of ``footprints``.

    The union of ``bounds`` and the footprints' own extent, expanded by the
    search radius (CRS units). A footprint that crosses the tile edge is
    searched from its own outline, not from the tile's.
    """
    if search_radius is None or len(footprints) == 0:
        return bounds
    minx, miny, maxx, maxy = footprints.total_bounds
    outer = (
        min(minx, bounds[0]),
        min(miny, bounds[1]),
        max(maxx, bounds[2]),
        max(maxy, bounds[3]),
    )
    return expand_bounds(outer, search_radius)


def make_tiles(
    template: TemplateGrid,
    tile_size: Tuple[int, int] = (1000, 1000),
    buffer: float = 0.0,
) -> List[Tile]:
    """
    Partition a template grid into tiles, row-major.

    Args:
        template: Output grid definition.
        tile_size: (rows, cols) per tile in pixels.
        buffer: Context margin in CRS units added to each tile's extent.

    Returns:
        List[Tile]: Tiles covering every cell exactly once.
    """
    tile_rows, tile_cols = tile_size
    if tile_rows <= 0 or tile_cols <= 0:
        raise ConfigurationError("tile_size must be positive")

    tiles = []
    for row, row_off in enumerate(range(0, template.height, tile_rows)):
        height = min(tile_rows, template.height - row_off)
        for col, col_off in enumerate(range(0, template.width, tile_cols)):
            width = min(tile_cols, template.width - col_off)
            window = Window(col_off, row_off, width, height)
            bounds = template.window_bounds(window)
            tiles.append(Tile(
                row=row,
                col=col,
                row_off=row_off,
                col_off=col_off,
                height=height,
                width=width,
                bounds=bounds,
                buffered_bounds=expand_bounds(bounds, buffer),
            ))
    return tiles


# =============================================================================
# PER-TILE WORK
# =============================================================================


@dataclass
class TileTask:
    """Everything a worker needs to process one tile."""
    tile: Tile
    source: Any
    template: TemplateGrid
    plan: ExecutionPlan
    units: UnitControl
    distance: DistanceControl
    area_filter: AreaFilter
    focal_radius: Optional[float] = None
    search_radius: Optional[float] = None
    lenient: bool = False
    layer: Optional[str] = None


@dataclass
class TileResult:
    """Arrays produced for one tile, or the error that stopped it."""
    tile: Tile
    arrays: Dict[str, np.ndarray] = field(default_factory=dict)
    n_footprints: int = 0
    error: Optional[TileProcessingError] = None


def empty_tile_arrays(tile: Tile, plan: ExecutionPlan) -> Dict[str, np.ndarray]:
    """Arrays for a tile without footprints: count 0, everything else NaN."""
    arrays = {}
    for metric, reducer in plan.pairs:
        fill = 0.0 if reducer is ReducerKind.COUNT else np.nan
        arrays[column_name(metric, reducer)] = np.full(
            (tile.height, tile.width), fill, dtype=np.float32
        )
    return arrays


def focal_associations(
    footprints: gpd.GeoDataFrame,
    centers: np.ndarray,
    radius: float,
) -> gpd.GeoDataFrame:
    """
    Footprints within ``radius`` of each cell centre.

    A footprint is gathered by a cell when the distance from the cell centre
    to the footprint geometry (not its centroid) is at most ``radius``.

    Returns:
        gpd.GeoDataFrame: ``fid`` (index of ``footprints``), ``zoneID`` (cell
        position, row-major) and the footprint geometry.
    """
    points = shapely.points(centers)
    tree = shapely.STRtree(footprints.geometry.to_numpy())
    cell_idx, geom_idx = tree.query(points, predicate='dwithin', distance=radius)
    order = np.lexsort((cell_idx, geom_idx))
    cell_idx, geom_idx = cell_idx[order], geom_idx[order]
    return gpd.GeoDataFrame(
        {
            'fid': footprints.index.to_numpy()[geom_idx],
            DEFAULT_ZONE_FIELD: cell_idx,
        },
        geometry=footprints.geometry.to_numpy()[geom_idx],
        crs=footprints.crs,
    )


def process_tile(task: TileTask) -> TileResult:
    """
    Compute the output arrays of one tile.

    Never raises: any error is wrapped in a TileProcessingError carrying the
    tile coordinates and returned in the result.
    """
    tile = task.tile
    try:
        footprints = read_bbox_subset(task.source, tile.buffered_bounds, layer=task.layer)
        if len(footprints) == 0:
            return TileResult(tile, empty_tile_arrays(tile, task.plan))
        if task.search_radius is not None:
            # Footprints outside the buffered extent only serve as neighbours:
            # they reach no cell in either mode
            extent = context_bounds(footprints, tile.buffered_bounds, task.search_radius)
            footprints = read_bbox_subset(task.source, extent, layer=task.layer)

        table = compute_metrics(
            footprints,
            required_metrics(task.plan, task.area_filter),
            units=task.units,
            distance=task.distance,
            area_filter=task.area_filter,
            lenient=task.lenient,
        )
        kept = footprints.loc[table.fids]
        if len(kept) == 0:
            return TileResult(tile, empty_tile_arrays(tile, task.plan), len(footprints))

        if task.focal_radius is None:
            cells = task.template.cell_polygons(tile.window)
            associations = index_zones(kept, cells, method='intersect')
        else:
            radius = task.focal_radius / metres_per_unit(task.template.crs)
            associations = focal_associations(
                kept, task.template.cell_centers(tile.window), radius
            )

        summary = aggregate(
            table,
            associations,
            task.plan,
            zone_ids=range(tile.n_cells),
            zone_col=DEFAULT_ZONE_FIELD,
        )
        arrays = {
            name: summary[name].to_numpy(dtype=np.float64)
                  .reshape(tile.height, tile.width).astype(np.float32)
            for name in task.plan.columns
        }
        return TileResult(tile, arrays, len(footprints))

    except Exception as e:
        return TileResult(tile, error=TileProcessingError(tile.row, tile.col, e))


# =============================================================================
# RUN
# =============================================================================


@dataclass
class TiledResult:
    """
    Outcome of a tiled run.

    Attributes:
        outputs (Dict[str, Path]): Raster path per ``<metric>_<function>``.
        tiles (int): Number of tiles in the template.
        completed (int): Tiles whose arrays were written.
        failures (List[TileProcessingError]): Tiles that failed.
        cancelled (bool): Whether the run stopped on ``cancel_event``.
    """
    outputs: Dict[str, Path]
    tiles: int
    completed: int = 0
    failures: List[TileProcessingError] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.failures and not self.cancelled and self.completed == self.tiles


def neighbour_search_radius(
    plan: ExecutionPlan,
    distance: DistanceControl,
) -> Optional[float]:
    """
    Nearest-neighbour search radius (metres) a tile must cover, if any.

    None when no distance metric is requested, or when the search is
    unbounded; an unbounded search only sees neighbours inside the tile's
    buffered extent.
    """
    if any(m.uses_distance for m in plan.metrics):
        return distance.max_search_radius
    return None


def _tasks(
    tiles: List[Tile],
    source: VectorSource,
    template: TemplateGrid,
    plan: ExecutionPlan,
    units: UnitControl,
    distance: DistanceControl,
    area_filter: AreaFilter,
    focal_radius: Optional[float],
    search_radius: Optional[float],
    lenient: bool,
    layer: Optional[str],
) -> Iterator[TileTask]:
    in_memory = None if is_path(source) else read_vector(source)
    for tile in tiles:
        if in_memory is not None:
            # Ship only the footprints near this tile to the worker; the
            # exact test runs inside the tile so its errors stay with the tile
            extent = tile.buffered_bounds
            if search_radius is not None:
                near = read_vector(in_memory, bbox=extent)
                extent = context_bounds(near, extent, search_radius)
            tile_source = read_vector(in_memory, bbox=extent)
        else:
            tile_source = source
        yield TileTask(tile, tile_source, template, plan, units, distance,
                       area_filter, focal_radius, search_radius, lenient, layer)


def run_tiled(
    footprints: VectorSource,
    template,
    plan: ExecutionPlan,
    output_path,
    tile_size: Tuple[int, int] = (1000, 1000),
    focal_radius: Optional[float] = None,
    parallel: bool = False,
    max_workers: Optional[int] = None,
    units: Optional[UnitControl] = None,
    distance: Optional[DistanceControl] = None,
    area_filter: Optional[AreaFilter] = None,
    output_tag: Optional[str] = None,
    lenient: bool = False,
    fail_fast: bool = False,
    overwrite: bool = False,
    cancel_event=None,
    layer: Optional[str] = None,
    verbose: bool = False,
) -> TiledResult:
    """
    Summarise footprints into one raster per metric/summary-function pair.

    Args:
        footprints: Path to a vector file or an in-memory footprint collection.
        template: Template raster path, open dataset, or TemplateGrid; defines
                  output extent, resolution and CRS.
        plan: Metric × summary-function pairs (see ``build_plan``).
        output_path: Directory for the output rasters (created if missing).
        tile_size: (rows, cols) per tile in pixels.
        focal_radius: Moving-window radius in metres. Switches from zonal
                      (cell intersection) to focal (cell-centre distance) mode.
        parallel: Process tiles in a pool of worker processes.
        max_workers: Pool size (default: the executor's choice).
        units: Output units.
        distance: Nearest-neighbour settings.
        area_filter: Inclusive area bounds.
        output_tag: Label appended to output file names.
        lenient: Skip invalid footprints instead of failing their tile.
        fail_fast: Raise at the first failing tile.
        overwrite: Replace existing output rasters.
        cancel_event: Object with ``is_set()`` (e.g. ``threading.Event``);
                      once set, no further tiles are scheduled.
        layer: Layer name for multi-layer vector files.
        verbose: Print progress.

    Returns:
        TiledResult: Output paths, failures and completion counts.

    Raises:
        ConfigurationError: Missing output path, or a focal radius on a
            template without a projected CRS.
        CRSMismatchError: If footprints and template CRSs differ.
        FileExistsError: If an output exists and ``overwrite`` is False.
        TileProcessingError: First tile failure when ``fail_fast`` is set.

    Example:
        >>> plan = build_plan(['area', 'settled'], ['mean', 'count'])
        >>> result = run_tiled('buildings.gpkg', 'grid.tif', plan, 'out/',
        ...                    tile_size=(500, 500), focal_radius=100,
        ...                    parallel=True)
        >>> result.outputs['area_mean']
        PosixPath('out/area_mean_100.tif')
    """
    units = units or UnitControl()
    distance = distance or DistanceControl()
    area_filter = area_filter or AreaFilter()

    # -------------------------------------------------------------------------
    # CONFIGURATION CHECKS (before any geometry is read)
    # -------------------------------------------------------------------------
    if output_path is None:
        raise ConfigurationError("Tiled runs need an output_path")
    template = TemplateGrid.from_raster(template)
    check_crs(read_vector_crs(footprints, layer), template.crs)
    if focal_radius is not None:
        if focal_radius <= 0:
            raise ConfigurationError("focal_radius must be positive")
        if template.crs is None or not CRS.from_user_input(template.crs).is_projected:
            raise ConfigurationError("focal_radius requires a template with a projected CRS")

    scale = metres_per_unit(template.crs)
    tiles = make_tiles(template, tile_size, (focal_radius or 0.0) / scale)
    search_radius = neighbour_search_radius(plan, distance)
    if search_radius is not None:
        search_radius /= scale

    destinations = output_paths(plan, Path(output_path), focal_radius, output_tag)
    outputs = {
        column_name(metric, reducer): path
        for (metric, reducer), path in destinations.items()
    }
    for path in outputs.values():
        create_output_raster(path, template, overwrite=overwrite)

    banner("Tiled footprint summary", verbose)
    report(f"  Grid:    {template.height} x {template.width} cells", verbose)
    report(f"  Tiles:   {len(tiles)} of up to {tile_size[0]} x {tile_size[1]}", verbose)
    report(f"  Mode:    {'focal r=' + str(focal_radius) if focal_radius else 'zonal'}",
           verbose)
    report(f"  Outputs: {', '.join(outputs)}", verbose)

    result = TiledResult(outputs=outputs, tiles=len(tiles))

    def handle(tile_result: TileResult) -> None:
        if tile_result.error is not None:
            result.failures.append(tile_result.error)
            report(f"[ERROR] {tile_result.error}", True)
            if fail_fast:
                raise tile_result.error
            return
        for name, array in tile_result.arrays.items():
            write_window(outputs[name], array, tile_result.tile.window)
        result.completed += 1

    def cancelled() -> bool:
        return cancel_event is not None and cancel_event.is_set()

    tasks = _tasks(tiles, footprints, template, plan, units, distance,
                   area_filter, focal_radius, search_radius, lenient, layer)
    progress = tqdm(total=len(tiles), desc="Processing tiles", unit="tile",
                    disable=not verbose)

    with Timer("Tiled run", verbose):
        try:
            if not parallel:
                for task in tasks:
                    if cancelled():
                        result.cancelled = True
                        break
                    handle(process_tile(task))
                    progress.update(1)
            else:
                _run_parallel(tasks, max_workers, handle, cancelled, progress, result)
        finally:
            progress.close()

    if result.cancelled:
        report(f"[WARNING] Run cancelled after {result.completed}/{len(tiles)} tiles", True)
    report(f"[INFO] {result.completed}/{len(tiles)} tiles written, "
           f"{len(result.failures)} failed", verbose)
    return result


def _run_parallel(tasks, max_workers, handle, cancelled, progress, result) -> None:
    """
    Feed tiles to a process pool, keeping a bounded number in flight.

    Results are handled in the parent as they complete. New tiles stop being
    submitted as soon as the run is cancelled or a fail-fast error is raised.
    """
    with ProcessPoolExecutor(max_workers=max_workers) as executor:
        limit = 2 * (max_workers or os.cpu_count() or 1)
        pending = set()
        tasks = iter(tasks)
        exhausted = False
        try:
            while True:
                while not exhausted and len(pending) < limit:
                    if cancelled():
                        result.cancelled = True
                        exhausted = True
                        break
                    task = next(tasks, None)
                    if task is None:
                        exhausted = True
                        break
                    pending.add(executor.submit(process_tile, task))
                if not pending:
                    break
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    if future.cancelled():
                        continue
                    handle(future.result())
                    progress.update(1)
                if cancelled():
                    result.cancelled = True
                    exhausted = True
                    # Tiles already running cannot be stopped; they are
                    # still written when they finish
                    for future in pending:
                        future.cancel()
        except BaseException:
            for future in pending:
                future.cancel()
            raise
