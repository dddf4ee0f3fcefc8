"""Tests for tiled zonal and focal raster summaries."""

from __future__ import annotations

from pathlib import Path

import geopandas as gpd
import numpy as np
import pytest
from numpy.testing import assert_array_equal
from shapely.geometry import Polygon, box

from footprint_metrics import (
    AreaFilter,
    ConfigurationError,
    CRSMismatchError,
    MetricKind,
    ReducerKind,
    TemplateGrid,
    TileProcessingError,
    build_plan,
    calculate_bigfoot,
    make_tiles,
    run_tiled,
)
from footprint_metrics.io import create_output_raster, output_name, read_raster

CRS = "EPSG:32633"


class AlwaysSet:
    def is_set(self) -> bool:
        return True


class SetAfter:
    """Reports unset for the first ``calls`` checks, set afterwards."""

    def __init__(self, calls: int) -> None:
        self.remaining = calls

    def is_set(self) -> bool:
        self.remaining -= 1
        return self.remaining < 0


def with_bowtie(footprints: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    """Add a self-intersecting polygon inside the top-left cell."""
    bowtie = Polygon([(1, 51), (3, 53), (3, 51), (1, 53)])
    geoms = list(footprints.geometry) + [bowtie]
    return gpd.GeoDataFrame(geometry=geoms, crs=CRS)


class TestMakeTiles:
    def test_tiles_cover_every_cell_once(self, grid_template) -> None:
        tiles = make_tiles(grid_template, (4, 4))
        assert len(tiles) == 4
        assert sum(t.n_cells for t in tiles) == 36
        covered = np.zeros(grid_template.shape, dtype=int)
        for tile in tiles:
            covered[tile.row_off:tile.row_off + tile.height,
                    tile.col_off:tile.col_off + tile.width] += 1
        assert (covered == 1).all()

    def test_row_major_order_and_bounds(self, grid_template) -> None:
        tiles = make_tiles(grid_template, (4, 4), buffer=5.0)
        assert [(t.row, t.col) for t in tiles] == [(0, 0), (0, 1), (1, 0), (1, 1)]
        first = tiles[0]
        assert first.bounds == pytest.approx((0.0, 20.0, 40.0, 60.0))
        assert first.buffered_bounds == pytest.approx((-5.0, 15.0, 45.0, 65.0))
        assert (tiles[-1].height, tiles[-1].width) == (2, 2)

    def test_invalid_tile_size(self, grid_template) -> None:
        with pytest.raises(ConfigurationError):
            make_tiles(grid_template, (0, 4))


class TestZonalMode:
    def test_one_footprint_per_cell(self, grid_footprints, grid_template, tmp_path: Path) -> None:
        plan = build_plan(["settled", "area"], ["count", "mean"])
        result = run_tiled(grid_footprints, grid_template, plan, tmp_path, tile_size=(4, 4))
        assert result.ok
        assert result.completed == 4
        assert_array_equal(read_raster(result.outputs["settled_count"]), np.ones((6, 6)))
        assert np.allclose(read_raster(result.outputs["area_mean"]), 16.0)

    def test_cell_orientation(self, grid_footprints, grid_template, tmp_path: Path) -> None:
        # footprint of grid row 0 (lowest y), column 1
        single = grid_footprints.iloc[[1]]
        plan = build_plan("area", ["count", "mean"])
        result = run_tiled(single, grid_template, plan, tmp_path, tile_size=(4, 4))
        counts = read_raster(result.outputs["area_count"])
        expected = np.zeros((6, 6))
        expected[5, 1] = 1
        assert_array_equal(counts, expected)
        means = read_raster(result.outputs["area_mean"])
        assert means[5, 1] == pytest.approx(16.0)
        assert np.isnan(means[0, 0])

    def test_serial_and_parallel_identical(
        self, grid_footprints, grid_template, tmp_path: Path
    ) -> None:
        plan = build_plan(["area", "angle", "nndist"], ["mean", "count"])
        serial = run_tiled(grid_footprints, grid_template, plan, tmp_path / "serial",
                           tile_size=(3, 3))
        parallel = run_tiled(grid_footprints, grid_template, plan, tmp_path / "parallel",
                             tile_size=(3, 3), parallel=True, max_workers=2)
        assert serial.ok and parallel.ok
        for name in plan.columns:
            assert_array_equal(read_raster(serial.outputs[name]),
                               read_raster(parallel.outputs[name]))

    def test_neighbours_found_across_tile_edges(self, tmp_path: Path) -> None:
        template = TemplateGrid.from_bounds((0, 0, 20, 10), 10, crs=CRS)
        pair = gpd.GeoDataFrame(geometry=[box(6, 4, 8, 6), box(12, 4, 14, 6)], crs=CRS)
        plan = build_plan("nndist", "mean")
        result = run_tiled(pair, template, plan, tmp_path, tile_size=(1, 1))
        assert np.allclose(read_raster(result.outputs["nndist_mean"]), [[4.0, 4.0]])

    def test_search_measured_from_footprint_not_tile(self, tmp_path: Path) -> None:
        template = TemplateGrid.from_bounds((0, 0, 20, 10), 10, crs=CRS)
        # the long footprint spans both cells; its neighbour is 97 m from its
        # east end but more than 100 m from the west tile
        footprints = gpd.GeoDataFrame(
            geometry=[box(2, 4, 18, 6), box(115, 4, 117, 6)], crs=CRS
        )
        plan = build_plan("nndist", "mean")
        whole = run_tiled(footprints, template, plan, tmp_path / "whole", tile_size=(1, 2))
        tiled = run_tiled(footprints, template, plan, tmp_path / "tiled", tile_size=(1, 1))
        assert np.allclose(read_raster(whole.outputs["nndist_mean"]), [[97.0, 97.0]])
        assert_array_equal(read_raster(whole.outputs["nndist_mean"]),
                           read_raster(tiled.outputs["nndist_mean"]))

    def test_area_filter(self, sized_footprints, tmp_path: Path) -> None:
        template = TemplateGrid.from_bounds((-25, -25, 475, 175), 100, crs=CRS)
        plan = build_plan("settled", "count")
        everything = run_tiled(sized_footprints, template, plan, tmp_path / "all",
                               tile_size=(1, 2))
        filtered = run_tiled(sized_footprints, template, plan, tmp_path / "filtered",
                             tile_size=(1, 2), area_filter=AreaFilter(50, 1000))
        assert read_raster(everything.outputs["settled_count"]).sum() == 4
        counts = read_raster(filtered.outputs["settled_count"])
        assert counts.sum() == 2
        assert counts[1].tolist() == [0.0, 1.0, 1.0, 0.0, 0.0]


class TestFocalMode:
    def test_radius_reaches_into_neighbouring_tile(self, tmp_path: Path) -> None:
        template = TemplateGrid.from_bounds((0, 0, 40, 10), 10, crs=CRS)
        footprint = gpd.GeoDataFrame(geometry=[box(21, 4, 23, 6)], crs=CRS)
        plan = build_plan("settled", "count")
        result = run_tiled(footprint, template, plan, tmp_path,
                           tile_size=(1, 2), focal_radius=8)
        assert result.outputs["settled_count"].name == "settled_count_8.tif"
        assert_array_equal(read_raster(result.outputs["settled_count"]),
                           [[0.0, 1.0, 1.0, 0.0]])

    def test_tiling_does_not_change_focal_values(
        self, grid_footprints, grid_template, tmp_path: Path
    ) -> None:
        plan = build_plan(["settled", "area"], ["count", "sum"])
        whole = run_tiled(grid_footprints, grid_template, plan, tmp_path / "whole",
                          tile_size=(6, 6), focal_radius=12)
        tiled = run_tiled(grid_footprints, grid_template, plan, tmp_path / "tiled",
                          tile_size=(2, 3), focal_radius=12)
        for name in plan.columns:
            assert_array_equal(read_raster(whole.outputs[name]),
                               read_raster(tiled.outputs[name]))
        # an interior cell reaches its eight neighbours and itself
        counts = read_raster(whole.outputs["settled_count"])
        assert counts[2, 2] == 9

    @pytest.mark.parametrize("source", ["memory", "file"])
    def test_tiling_does_not_change_focal_distances(self, source: str, tmp_path: Path) -> None:
        template = TemplateGrid.from_bounds((0, 0, 40, 10), 10, crs=CRS)
        footprints = gpd.GeoDataFrame(
            geometry=[box(25, 4, 27, 6), box(125, 4, 127, 6)], crs=CRS
        )
        if source == "file":
            path = tmp_path / "buildings.gpkg"
            footprints.to_file(path, driver="GPKG")
            footprints = str(path)
        plan = build_plan("nndist", "mean")
        whole = run_tiled(footprints, template, plan, tmp_path / "whole",
                          tile_size=(1, 4), focal_radius=10)
        tiled = run_tiled(footprints, template, plan, tmp_path / "tiled",
                          tile_size=(1, 2), focal_radius=10)
        expected = [[np.nan, 98.0, 98.0, 98.0]]
        assert_array_equal(read_raster(whole.outputs["nndist_mean"]), expected)
        assert_array_equal(read_raster(tiled.outputs["nndist_mean"]), expected)

    def test_geographic_template_rejected(self, tmp_path: Path) -> None:
        template = TemplateGrid.from_bounds((0, 0, 1, 1), 0.1, crs="EPSG:4326")
        footprint = gpd.GeoDataFrame(geometry=[box(0.1, 0.1, 0.2, 0.2)], crs="EPSG:4326")
        with pytest.raises(ConfigurationError):
            run_tiled(footprint, template, build_plan("settled", "count"), tmp_path,
                      focal_radius=100)


class TestFailures:
    def test_failed_tile_isolated(self, grid_footprints, grid_template, tmp_path: Path) -> None:
        plan = build_plan("settled", "count")
        result = run_tiled(with_bowtie(grid_footprints), grid_template, plan, tmp_path,
                           tile_size=(3, 3))
        assert not result.ok
        assert result.completed == 3
        assert [(f.row, f.col) for f in result.failures] == [(0, 0)]
        counts = read_raster(result.outputs["settled_count"])
        assert np.isnan(counts[:3, :3]).all()
        assert_array_equal(counts[3:, :], np.ones((3, 6)))

    def test_lenient_skips_invalid_footprint(
        self, grid_footprints, grid_template, tmp_path: Path
    ) -> None:
        plan = build_plan("settled", "count")
        result = run_tiled(with_bowtie(grid_footprints), grid_template, plan, tmp_path,
                           tile_size=(3, 3), lenient=True)
        assert result.ok
        assert_array_equal(read_raster(result.outputs["settled_count"]), np.ones((6, 6)))

    def test_fail_fast(self, grid_footprints, grid_template, tmp_path: Path) -> None:
        plan = build_plan("settled", "count")
        with pytest.raises(TileProcessingError) as exc:
            run_tiled(with_bowtie(grid_footprints), grid_template, plan, tmp_path,
                      tile_size=(3, 3), fail_fast=True)
        assert (exc.value.row, exc.value.col) == (0, 0)

    def test_cancel_before_start(self, grid_footprints, grid_template, tmp_path: Path) -> None:
        plan = build_plan("settled", "count")
        result = run_tiled(grid_footprints, grid_template, plan, tmp_path,
                           tile_size=(3, 3), cancel_event=AlwaysSet())
        assert result.cancelled
        assert result.completed == 0
        assert np.isnan(read_raster(result.outputs["settled_count"])).all()

    def test_cancel_during_parallel_run(
        self, grid_footprints, grid_template, tmp_path: Path
    ) -> None:
        plan = build_plan("settled", "count")
        # two workers keep four tiles in flight; the check after the first
        # completion sees the event set
        result = run_tiled(grid_footprints, grid_template, plan, tmp_path,
                           tile_size=(1, 1), parallel=True, max_workers=2,
                           cancel_event=SetAfter(4))
        assert result.cancelled
        assert not result.ok
        assert 0 < result.completed <= 4 < result.tiles
        counts = read_raster(result.outputs["settled_count"])
        assert np.count_nonzero(~np.isnan(counts)) == result.completed
        # only the first row's tiles were ever submitted
        assert np.isnan(counts[1:, :]).all()
        assert_array_equal(counts[~np.isnan(counts)], np.ones(result.completed))

    def test_fail_fast_in_parallel(self, grid_footprints, grid_template, tmp_path: Path) -> None:
        plan = build_plan("settled", "count")
        with pytest.raises(TileProcessingError) as exc:
            run_tiled(with_bowtie(grid_footprints), grid_template, plan, tmp_path,
                      tile_size=(3, 3), parallel=True, max_workers=2, fail_fast=True)
        assert (exc.value.row, exc.value.col) == (0, 0)

    def test_crs_mismatch(self, grid_footprints, grid_template, tmp_path: Path) -> None:
        with pytest.raises(CRSMismatchError):
            run_tiled(grid_footprints.to_crs("EPSG:3857"), grid_template,
                      build_plan("settled", "count"), tmp_path)

    def test_output_path_required(self, grid_footprints, grid_template) -> None:
        with pytest.raises(ConfigurationError):
            run_tiled(grid_footprints, grid_template, build_plan("settled", "count"), None)


class TestOutputs:
    def test_output_names(self) -> None:
        assert output_name(MetricKind.AREA, ReducerKind.MEAN) == "area_mean.tif"
        assert output_name(MetricKind.AREA, ReducerKind.MEAN, 100.0) == "area_mean_100.tif"
        assert (output_name(MetricKind.ANGLE, ReducerKind.ENTROPY, 12.5, "v2")
                == "angle_entropy_12p5_v2.tif")

    def test_existing_outputs_protected(
        self, grid_footprints, grid_template, tmp_path: Path
    ) -> None:
        plan = build_plan("settled", "count")
        run_tiled(grid_footprints, grid_template, plan, tmp_path, output_tag="run")
        with pytest.raises(FileExistsError):
            run_tiled(grid_footprints, grid_template, plan, tmp_path, output_tag="run")
        again = run_tiled(grid_footprints, grid_template, plan, tmp_path,
                          output_tag="run", overwrite=True)
        assert again.outputs["settled_count"].name == "settled_count_run.tif"

    def test_calculate_bigfoot_with_template_file(
        self, grid_footprints, grid_template, tmp_path: Path
    ) -> None:
        template_path = create_output_raster(tmp_path / "template.tif", grid_template)
        fp_path = tmp_path / "buildings.gpkg"
        grid_footprints.to_file(fp_path, driver="GPKG")
        result = calculate_bigfoot(
            str(fp_path), str(template_path), what="settled", how="count",
            output_path=str(tmp_path / "out"), tileSize=4,
        )
        assert result.ok
        counts = read_raster(result.outputs["settled_count"])
        assert_array_equal(counts, np.ones((6, 6)))
