"""Tests for per-zone aggregation."""

from __future__ import annotations

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
from shapely.geometry import box

from footprint_metrics import (
    AreaFilter,
    aggregate,
    build_plan,
    compute_metrics,
    index_zones,
    summary_to_long,
)
from footprint_metrics.zonal import DEFAULT_ZONE_FIELD

CRS = "EPSG:32633"


@pytest.fixture
def three_zones() -> gpd.GeoDataFrame:
    """West and east share an edge; north has no footprints."""
    return gpd.GeoDataFrame(
        {"district": ["west", "east", "north"]},
        geometry=[box(0, 0, 10, 10), box(10, 0, 20, 10), box(100, 100, 110, 110)],
        crs=CRS,
    )


@pytest.fixture
def footprints() -> gpd.GeoDataFrame:
    """Areas 4 and 16 in the west zone, 6 in the east zone, 1 outside."""
    return gpd.GeoDataFrame(
        geometry=[
            box(1, 1, 3, 3),
            box(4, 4, 8, 8),
            box(12, 2, 14, 5),
            box(50, 50, 51, 51),
        ],
        crs=CRS,
    )


def summarise(footprints, zones, what, how, method="centroid", zone_ids=None, **kwargs):
    plan = build_plan(what, how)
    table = compute_metrics(footprints, plan.metrics, **kwargs)
    assoc = index_zones(footprints, zones, zone_field="district", method=method)
    return aggregate(
        table,
        assoc,
        plan,
        zone_ids=zone_ids,
        zone_col="district",
        clipped=(method == "clip"),
    )


class TestAggregate:
    def test_columns_and_order(self, footprints, three_zones) -> None:
        summary = summarise(
            footprints, three_zones, ["area", "perimeter"], ["mean", "sd"],
            zone_ids=["west", "east", "north"],
        )
        assert list(summary.columns) == [
            "district", "area_mean", "area_sd", "perimeter_mean", "perimeter_sd",
        ]
        assert summary["district"].tolist() == ["west", "east", "north"]

    def test_statistics(self, footprints, three_zones) -> None:
        summary = summarise(
            footprints, three_zones, "area",
            ["count", "sum", "mean", "median", "min", "max", "sd", "cv"],
            zone_ids=["west", "east", "north"],
        ).set_index("district")
        west = summary.loc["west"]
        assert west["area_count"] == 2
        assert west["area_sum"] == pytest.approx(20.0)
        assert west["area_mean"] == pytest.approx(10.0)
        assert west["area_median"] == pytest.approx(10.0)
        assert west["area_min"] == pytest.approx(4.0)
        assert west["area_max"] == pytest.approx(16.0)
        assert west["area_sd"] == pytest.approx(np.sqrt(72.0))
        assert west["area_cv"] == pytest.approx(np.sqrt(72.0) / 10.0)

        east = summary.loc["east"]
        assert east["area_count"] == 1
        assert east["area_mean"] == pytest.approx(6.0)
        assert np.isnan(east["area_sd"])
        assert np.isnan(east["area_cv"])

    def test_empty_zone(self, footprints, three_zones) -> None:
        summary = summarise(
            footprints, three_zones, "area", ["count", "sum", "mean"],
            zone_ids=["west", "east", "north"],
        ).set_index("district")
        north = summary.loc["north"]
        assert north["area_count"] == 0
        assert np.isnan(north["area_sum"])
        assert np.isnan(north["area_mean"])
        assert summary["area_count"].dtype == np.int64

    def test_default_zone_ids_are_present_zones(self, footprints, three_zones) -> None:
        summary = summarise(footprints, three_zones, "area", "count")
        assert sorted(summary["district"]) == ["east", "west"]

    def test_count_matches_associations(self, ten_footprints, covering_zone) -> None:
        plan = build_plan(["area", "angle", "settled"], "count")
        table = compute_metrics(ten_footprints, plan.metrics)
        assoc = index_zones(ten_footprints, covering_zone)
        summary = aggregate(table, assoc, plan)
        # every metric counts the same footprints
        assert summary[["area_count", "angle_count", "settled_count"]].iloc[0].tolist() == [
            10, 10, 10,
        ]

    def test_filtered_footprints_not_counted(self, sized_footprints) -> None:
        zone = gpd.GeoDataFrame(geometry=[box(-10, -10, 400, 100)], crs=CRS)
        plan = build_plan("area", ["count", "mean"])
        table = compute_metrics(sized_footprints, plan.metrics,
                                area_filter=AreaFilter(50, 1000))
        assoc = index_zones(sized_footprints, zone)
        summary = aggregate(table, assoc, plan)
        assert summary.loc[0, "area_count"] == 2
        assert summary.loc[0, "area_mean"] == pytest.approx(500.0)

    def test_entropy(self, rotated_footprints) -> None:
        zone = gpd.GeoDataFrame(geometry=[box(-50, -50, 500, 50)], crs=CRS)
        plan = build_plan("angle", ["entropy"])
        table = compute_metrics(rotated_footprints, plan.metrics)
        summary = aggregate(table, index_zones(rotated_footprints, zone), plan)
        # four distinct orientation classes out of eighteen
        assert summary.loc[0, "angle_entropy"] == pytest.approx(np.log(4) / np.log(18))

    def test_clip_recalculates_shape_metrics(self, two_zones) -> None:
        straddler = gpd.GeoDataFrame(geometry=[box(5, 0, 15, 10)], crs=CRS)
        summary = summarise(straddler, two_zones, ["area", "perimeter", "settled"],
                            ["sum"], method="clip").set_index("district")
        assert summary.loc["west", "area_sum"] == pytest.approx(50.0)
        assert summary.loc["east", "area_sum"] == pytest.approx(50.0)
        assert summary.loc["west", "perimeter_sum"] == pytest.approx(30.0)
        assert summary.loc["east", "settled_sum"] == 1.0

    def test_intersect_keeps_whole_footprint(self, two_zones) -> None:
        straddler = gpd.GeoDataFrame(geometry=[box(5, 0, 15, 10)], crs=CRS)
        summary = summarise(straddler, two_zones, "area", "sum",
                            method="intersect").set_index("district")
        assert summary["area_sum"].tolist() == pytest.approx([100.0, 100.0])


class TestLongForm:
    def test_rows_per_zone_and_pair(self, footprints, three_zones) -> None:
        plan = build_plan(["area", "perimeter"], ["mean", "count"])
        summary = summarise(
            footprints, three_zones, ["area", "perimeter"], ["mean", "count"],
            zone_ids=["west", "east", "north"],
        )
        long_df = summary_to_long(summary, plan)
        assert list(long_df.columns) == ["district", "metric", "reducer", "value"]
        assert len(long_df) == 3 * 4
        row = long_df[(long_df["district"] == "west")
                      & (long_df["metric"] == "area")
                      & (long_df["reducer"] == "mean")]
        assert row["value"].iloc[0] == pytest.approx(10.0)

    def test_default_zone_column(self) -> None:
        plan = build_plan("area", "mean")
        summary = pd.DataFrame({DEFAULT_ZONE_FIELD: [0, 1], "area_mean": [1.0, 2.0]})
        long_df = summary_to_long(summary, plan)
        assert long_df[DEFAULT_ZONE_FIELD].tolist() == [0, 1]
