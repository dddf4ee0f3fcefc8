"""
Summary Aggregator: reduce footprint metric values per zone.

Takes the metric table from the Geometry Metric Engine and the associations
from the Zonal Indexer and applies each (metric, summary function) pair of an
execution plan per zone. Zones without footprints report a count of 0 and
NaN for every other summary, so "no data" never reads as zero.
"""

from typing import Dict, Iterable, List, Optional

import numpy as np
import pandas as pd
import geopandas as gpd

from .config import ExecutionPlan, UnitControl, column_name
from .geometry import MetricTable, measure
from .registry import MetricKind, ReducerKind


# Vectorised pandas equivalents of the registry functions
_GROUPBY_REDUCERS = {
    ReducerKind.SUM: lambda g: g.sum(min_count=1),
    ReducerKind.MEAN: lambda g: g.mean(),
    ReducerKind.MEDIAN: lambda g: g.median(),
    ReducerKind.MIN: lambda g: g.min(),
    ReducerKind.MAX: lambda g: g.max(),
    ReducerKind.SD: lambda g: g.std(ddof=1),
}


def association_values(
    metric_table: MetricTable,
    associations: gpd.GeoDataFrame,
    metrics: Iterable[MetricKind],
    zone_col: str,
    clipped: bool = False,
    units: Optional[UnitControl] = None,
) -> pd.DataFrame:
    """
    Metric values for each footprint-zone association.

    Associations whose footprint is not in the metric table (filtered or
    invalid footprints) are dropped. With ``clipped=True`` the metrics that
    depend on footprint shape are recalculated on the clipped geometry;
    nearest-neighbour distance keeps the whole-footprint value.

    Returns:
        pd.DataFrame: Columns ``fid``, ``zone_col`` and one per metric.
    """
    metrics = list(metrics)
    known = associations['fid'].isin(metric_table.values.index).to_numpy()
    assoc = associations[known]

    frame = pd.DataFrame({
        'fid': assoc['fid'].to_numpy(),
        zone_col: assoc[zone_col].to_numpy(),
    })
    stored = [m for m in metrics if m.label in metric_table.values.columns]
    if stored:
        looked_up = metric_table.values.loc[assoc['fid'].to_numpy(),
                                            [m.label for m in stored]]
        for metric in stored:
            frame[metric.label] = looked_up[metric.label].to_numpy()

    if clipped and len(assoc) > 0:
        recompute = [m for m in metrics if m.geometry_derived]
        fresh = measure(
            gpd.GeoSeries(assoc.geometry.to_numpy(), crs=associations.crs),
            recompute,
            units or UnitControl(),
            crs=metric_table.crs,
        )
        for metric, values in fresh.items():
            frame[metric.label] = values
    return frame


def _reduce_groups(grouped, metric: MetricKind, reducer: ReducerKind) -> pd.Series:
    column = grouped[metric.label]
    if reducer is ReducerKind.COUNT:
        return column.size()
    if reducer in _GROUPBY_REDUCERS:
        return _GROUPBY_REDUCERS[reducer](column)
    if reducer is ReducerKind.CV:
        cv = column.std(ddof=1) / column.mean()
        return cv.replace([np.inf, -np.inf], np.nan)
    return column.agg(lambda s: reducer.reduce(s.to_numpy(dtype=float)))


def aggregate(
    metric_table: MetricTable,
    associations: gpd.GeoDataFrame,
    plan: ExecutionPlan,
    zone_ids: Optional[Iterable] = None,
    zone_col: Optional[str] = None,
    clipped: bool = False,
    units: Optional[UnitControl] = None,
) -> pd.DataFrame:
    """
    Summarise metric values per zone.

    Args:
        metric_table: Per-footprint values from ``compute_metrics``.
        associations: Footprint-zone associations from ``index_zones``.
        plan: Metric × summary-function pairs to produce.
        zone_ids: Every zone that must appear in the output, in output
                  order. Zones without associations get ``count = 0`` and NaN
                  elsewhere. Defaults to the zones present in
                  ``associations``, sorted.
        zone_col: Zone id column of ``associations`` (detected if omitted).
        clipped: Recalculate shape metrics on the associated geometry
                 (use for ``clip`` associations).
        units: Output units, needed when ``clipped`` is set.

    Returns:
        pd.DataFrame: Column ``zone_col`` then one ``<metric>_<function>``
        column per plan pair, one row per zone.

    Example:
        >>> plan = build_plan(['area', 'perimeter'], ['mean', 'sd'])
        >>> aggregate(table, assoc, plan).columns.tolist()
        ['zoneID', 'area_mean', 'area_sd', 'perimeter_mean', 'perimeter_sd']
    """
    if zone_col is None:
        zone_col = [c for c in associations.columns
                    if c not in ('fid', associations.geometry.name)][0]

    values = association_values(metric_table, associations, plan.metrics,
                                zone_col, clipped=clipped, units=units)

    if zone_ids is None:
        index = pd.Index(pd.unique(values[zone_col]), name=zone_col).sort_values()
    else:
        index = pd.Index(list(zone_ids), name=zone_col)

    grouped = values.groupby(zone_col, sort=False)
    columns: Dict[str, pd.Series] = {}
    for metric, reducer in plan.pairs:
        name = column_name(metric, reducer)
        reduced = _reduce_groups(grouped, metric, reducer).reindex(index)
        if reducer is ReducerKind.COUNT:
            reduced = reduced.fillna(0).astype(np.int64)
        else:
            reduced = reduced.astype(float)
        columns[name] = reduced

    result = pd.DataFrame(columns, index=index)
    result = result.reset_index()
    return result[[zone_col] + plan.columns]


def summary_to_long(
    summary: pd.DataFrame,
    plan: ExecutionPlan,
    zone_col: Optional[str] = None,
) -> pd.DataFrame:
    """
    Reshape an aggregate table into ``(zone, metric, reducer, value)`` rows.

    Returns:
        pd.DataFrame: One row per zone × metric × summary function.
    """
    if zone_col is None:
        zone_col = summary.columns[0]
    rows: List[Dict] = []
    for metric, reducer in plan.pairs:
        name = column_name(metric, reducer)
        for zone, value in zip(summary[zone_col], summary[name]):
            rows.append({
                zone_col: zone,
                'metric': metric.label,
                'reducer': reducer.label,
                'value': value,
            })
    return pd.DataFrame(rows, columns=[zone_col, 'metric', 'reducer', 'value'])
