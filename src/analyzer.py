"""
FootprintAnalyzer: footprint morphology summaries by zone or raster cell.

This module provides the FootprintAnalyzer class, which ties the package
together: it loads footprints and zones, validates the configuration before
touching any geometry, calculates per-footprint metrics, joins footprints to
zones, and summarises the metrics per zone. For areas too large to hold in
memory, the same summaries are written to rasters tile by tile.

The metrics are organised into three groups:
    - Size:        area, perimeter
    - Shape:       shape, compact, solidity, elongation, angle
    - Proximity:   nndist (nearest-neighbour distance)
plus ``settled``, a presence marker whose count or sum gives building counts.

Example:
    >>> analyzer = FootprintAnalyzer(
    ...     "buildings.gpkg",
    ...     zones="districts.gpkg",
    ...     what=["area", "angle"],
    ...     how=[["mean", "sd"], ["entropy"]],
    ... )
"""

from pathlib import Path
from typing import Any, List, Optional, Union

import pandas as pd
import geopandas as gpd

from .config import FootstatsConfig, required_metrics
from .errors import ConfigurationError
from .geometry import MetricTable, check_crs, compute_metrics
from .io import VectorSource, is_path, read_vector, read_vector_crs
from .summary import aggregate, summary_to_long
from .tiling import TiledResult, run_tiled
from .utils import Timer, banner, report
from .zonal import DEFAULT_ZONE_FIELD, index_zones, prepare_zones, zone_id_column


# =============================================================================
# CLASS DEFINITION
# =============================================================================


class FootprintAnalyzer:
    """
    Calculates footprint summary statistics for zones or raster grids.

    Zones may be polygons (a path or an in-memory collection) or the name of a
    column in the footprint table, whose values then act as zone ids. Without
    zones, all footprints fall in a single zone with id 0.

    Attributes:
        footprints (gpd.GeoDataFrame): Footprint polygons, index 0..n-1.
        zones (gpd.GeoDataFrame): Prepared zone polygons, or None.
        zone_column (str): Footprint column used as zone id, or None.
        config (FootstatsConfig): Validated options.

    Example:
        >>> analyzer = FootprintAnalyzer(buildings, zones=districts,
        ...                              what="nodist", how=["mean", "cv"],
        ...                              controlZone={"method": "intersect"})
        >>> table = analyzer.calculate()
    """

    def __init__(
        self,
        footprints: VectorSource,
        zones: Optional[Union[VectorSource, str]] = None,
        config: Optional[FootstatsConfig] = None,
        **options: Any,
    ):
        """
        Load inputs and validate the configuration.

        Args:
            footprints: Path to a vector file or an in-memory collection.
            zones: Zone polygons, a path, or a footprint column name.
            config: Complete configuration; ``options`` override its fields.
            **options: Any option accepted by ``FootstatsConfig.from_options``.

        Raises:
            FileNotFoundError: If a path does not exist.
            ValueError: If there are no footprints.
            ConfigurationError: For unknown options or invalid values
                (including unknown metrics and summary functions).
            EmptyZoneSetError: If the zone source has no zones.
            CRSMismatchError: If footprints and zones use different CRSs.
        """
        if config is None:
            config = FootstatsConfig.from_options(**options)
        elif options:
            config = config.with_options(**options)
        self.config = config
        self.plan = config.plan

        self.source = footprints
        self.zones: Optional[gpd.GeoDataFrame] = None
        self.zone_column: Optional[str] = None
        self._footprints: Optional[gpd.GeoDataFrame] = None
        if not is_path(footprints):
            self._load_footprints()

        if isinstance(zones, str) and not Path(zones).exists():
            # Not a file: the name of a footprint column holding zone ids
            self.zone_column = zones
            if self._footprints is not None:
                self._check_zone_column(self._footprints)
        elif zones is not None:
            self.zones = prepare_zones(zones, config.control_zone.zone_field)
            check_crs(read_vector_crs(footprints), self.zones.crs)

        # Cache for calculated data
        self._metric_table: Optional[MetricTable] = None
        self._associations: Optional[gpd.GeoDataFrame] = None

        if config.verbose:
            banner("FootprintAnalyzer Initialized")
            print(f"  Footprints: {self.source if is_path(self.source) else len(self.footprints)}")
            print(f"  CRS:        {read_vector_crs(self.source) or 'Not provided'}")
            if self.zones is not None:
                print(f"  Zones:      {len(self.zones)} "
                      f"(join: {config.control_zone.method})")
            elif self.zone_column is not None:
                print(f"  Zones:      column '{self.zone_column}'")
            else:
                print("  Zones:      single default zone")
            print(f"  Summaries:  {', '.join(self.plan.columns)}")
            print("=" * 60)

    def _load_footprints(self) -> gpd.GeoDataFrame:
        """
        Load and cache the footprint polygons.

        Raises:
            ValueError: If there are no footprints.
            ConfigurationError: If the zone column is missing.
        """
        if self._footprints is not None:
            return self._footprints

        report("[INFO] Loading footprints...", self.config.verbose)
        gdf = read_vector(self.source)
        if len(gdf) == 0:
            raise ValueError("Footprint collection is empty")
        if self.zone_column is not None:
            self._check_zone_column(gdf)
        self._footprints = gdf
        report(f"[INFO] Loaded {len(gdf)} footprints", self.config.verbose)
        return gdf

    def _check_zone_column(self, gdf: gpd.GeoDataFrame) -> None:
        if self.zone_column not in gdf.columns:
            raise ConfigurationError(
                f"Zones '{self.zone_column}' is neither a file nor a footprint column"
            )

    @property
    def footprints(self) -> gpd.GeoDataFrame:
        return self._load_footprints()

    # =========================================================================
    # PER-FOOTPRINT METRICS
    # =========================================================================

    def compute_metrics(self) -> MetricTable:
        """
        Calculate (and cache) every metric the plan needs, per footprint.

        Area is included whenever an area filter is active.
        """
        if self._metric_table is not None:
            return self._metric_table

        cfg = self.config
        self._metric_table = compute_metrics(
            self.footprints,
            required_metrics(self.plan, cfg.filter),
            units=cfg.control_units,
            distance=cfg.control_distance,
            area_filter=cfg.filter,
            lenient=cfg.lenient,
            verbose=cfg.verbose,
        )
        return self._metric_table

    # =========================================================================
    # ZONE ASSOCIATION
    # =========================================================================

    @property
    def zone_field(self) -> str:
        if self.zone_column is not None:
            return self.zone_column
        if self.zones is not None:
            return zone_id_column(self.zones)
        return DEFAULT_ZONE_FIELD

    def zone_ids(self) -> List[Any]:
        """Every zone id that should appear in the summary, in output order."""
        if self.zones is not None:
            return self.zones[self.zone_field].tolist()
        if self.zone_column is not None:
            values = self.footprints[self.zone_column].dropna()
            return sorted(pd.unique(values).tolist())
        return [0]

    def index_zones(self) -> gpd.GeoDataFrame:
        """
        Join the measured footprints to zones (and cache the result).

        Footprints excluded by the area filter, or skipped as invalid, take
        no part in the join.
        """
        if self._associations is not None:
            return self._associations

        table = self.compute_metrics()
        kept = self.footprints.loc[table.fids]
        report(f"\n[INFO] Joining {len(kept)} footprints to zones...", self.config.verbose)

        if self.zones is not None:
            assoc = index_zones(
                kept,
                self.zones,
                zone_field=self.config.control_zone.zone_field,
                method=self.config.control_zone.method,
            )
        else:
            if self.zone_column is not None:
                ids = kept[self.zone_column]
            else:
                ids = pd.Series(0, index=kept.index)
            present = ids.notna().to_numpy()
            assoc = gpd.GeoDataFrame(
                {'fid': kept.index.to_numpy()[present],
                 self.zone_field: ids.to_numpy()[present]},
                geometry=kept.geometry.to_numpy()[present],
                crs=kept.crs,
            )

        report(f"  → {len(assoc)} footprint-zone associations", self.config.verbose)
        self._associations = assoc
        return assoc

    # =========================================================================
    # SUMMARIES
    # =========================================================================

    def calculate(self, output_path: Optional[str] = None) -> pd.DataFrame:
        """
        Summarise footprint metrics per zone.

        Args:
            output_path: Optional CSV path to save the table to.

        Returns:
            pd.DataFrame: One row per zone: the zone id column, then one
            ``<metric>_<function>`` column per requested pair. Zones with no
            footprints have count 0 and NaN elsewhere.

        Example:
            >>> analyzer = FootprintAnalyzer(buildings, what="area", how="mean")
            >>> analyzer.calculate()
               zoneID  area_mean
            0       0    142.625
        """
        cfg = self.config
        with Timer("Zonal summary", cfg.verbose):
            table = self.compute_metrics()
            assoc = self.index_zones()
            summary = aggregate(
                table,
                assoc,
                self.plan,
                zone_ids=self.zone_ids(),
                zone_col=self.zone_field,
                clipped=(self.zones is not None and cfg.control_zone.method == 'clip'),
                units=cfg.control_units,
            )

        report(f"  → {len(summary)} zones summarised", cfg.verbose)

        if output_path is not None:
            output_path = Path(output_path)
            output_path.parent.mkdir(parents=True, exist_ok=True)
            summary.to_csv(output_path, index=False)
            report(f"[INFO] Summary saved to: {output_path}", cfg.verbose)
        return summary

    def calculate_long(self) -> pd.DataFrame:
        """Summaries as ``(zone, metric, reducer, value)`` rows."""
        return summary_to_long(self.calculate(), self.plan, self.zone_field)

    def calculate_tiled(self, template, cancel_event=None) -> TiledResult:
        """
        Write the summaries to rasters matching ``template``, tile by tile.

        Uses ``tile_size``, ``focal_radius``, ``output_path``, ``output_tag``,
        ``parallel`` and ``fail_fast`` from the configuration. Zones are not
        used: template cells (or focal windows around them) are the zones.
        """
        cfg = self.config
        return run_tiled(
            self.source if is_path(self.source) else self.footprints,
            template,
            self.plan,
            cfg.output_path,
            tile_size=cfg.tile_size,
            focal_radius=cfg.focal_radius,
            parallel=cfg.parallel,
            max_workers=cfg.max_workers,
            units=cfg.control_units,
            distance=cfg.control_distance,
            area_filter=cfg.filter,
            output_tag=cfg.output_tag,
            lenient=cfg.lenient,
            fail_fast=cfg.fail_fast,
            overwrite=cfg.overwrite,
            cancel_event=cancel_event,
            verbose=cfg.verbose,
        )


# =============================================================================
# MODULE-LEVEL CONVENIENCE FUNCTIONS
# =============================================================================

def calculate_footstats(
    footprints: VectorSource,
    zones: Optional[Union[VectorSource, str]] = None,
    what: Any = 'all',
    how: Any = 'mean',
    output_path: Optional[str] = None,
    **options: Any,
) -> pd.DataFrame:
    """
    Convenience function: summarise footprint metrics per zone in one call.

    Args:
        footprints: Path to a vector file or an in-memory collection.
        zones: Zone polygons, a path, or a footprint column name.
        what: Metric name(s), nested groups, ``"all"`` or ``"nodist"``.
        how: Summary function name(s) or nested groups.
        output_path: Optional CSV path for the table.
        **options: Other ``FootstatsConfig`` options (``controlZone``,
                   ``controlUnits``, ``filter``, ...).

    Returns:
        pd.DataFrame: Zone summary table.

    Example:
        >>> from footprint_metrics import calculate_footstats
        >>> calculate_footstats("buildings.gpkg", "districts.gpkg",
        ...                     what="area", how=["mean", "count"],
        ...                     controlUnits={"area": "ha"})
    """
    analyzer = FootprintAnalyzer(footprints, zones, what=what, how=how, **options)
    return analyzer.calculate(output_path=output_path)


def calculate_bigfoot(
    footprints: VectorSource,
    template,
    what: Any = 'all',
    how: Any = 'mean',
    output_path: Optional[str] = None,
    cancel_event=None,
    **options: Any,
) -> TiledResult:
    """
    Convenience function: write footprint summaries to rasters, tile by tile.

    Args:
        footprints: Path to a vector file or an in-memory collection.
        template: Raster path, open dataset, or TemplateGrid.
        what: Metric name(s) or groups.
        how: Summary function name(s) or groups.
        output_path: Directory for the rasters (required).
        cancel_event: Optional object with ``is_set()`` to stop the run.
        **options: Other options (``tileSize``, ``focalRadius``, ``parallel``,
                   ``outputTag``, ...).

    Returns:
        TiledResult: Output paths and per-tile failures.

    Example:
        >>> result = calculate_bigfoot("buildings.gpkg", "grid.tif",
        ...                            what="settled", how="count",
        ...                            output_path="out", focalRadius=200)
    """
    analyzer = FootprintAnalyzer(footprints, what=what, how=how,
                                 outputPath=output_path, **options)
    return analyzer.calculate_tiled(template, cancel_event=cancel_event)
