"""
Aggregation Tests
=================

Point-in-polygon counts on the 2x2 hexagon grid.
"""

import numpy as np
import geopandas as gpd
import pytest
from shapely.geometry import Point

from aggregation import aggregate, count_points


class TestCountPoints:
    """Counting one point layer into the cells."""

    def test_scenario_counts(self, hex_grid, scenario_points):
        """Five incidents and two stops land in the expected cells."""
        incidents, stops = scenario_points
        out = aggregate(hex_grid, incidents, stops)

        assert out["total"].tolist() == [2, 1, 0, 2]
        assert out["bus_stops"].tolist() == [1, 0, 1, 0]

    def test_input_not_modified(self, hex_grid, scenario_points):
        incidents, stops = scenario_points
        columns = list(hex_grid.columns)
        aggregate(hex_grid, incidents, stops)
        assert list(hex_grid.columns) == columns

    def test_empty_points_give_zeros(self, hex_grid):
        empty = gpd.GeoDataFrame(geometry=[], crs=hex_grid.crs)
        out = count_points(hex_grid, empty, "total")
        assert out["total"].tolist() == [0, 0, 0, 0]

    def test_outside_points_not_counted(self, hex_grid):
        pts = gpd.GeoDataFrame(geometry=[Point(100.0, 100.0), Point(0.0, 0.0)], crs=hex_grid.crs)
        out = count_points(hex_grid, pts, "total")
        assert out["total"].tolist() == [1, 0, 0, 0]
        assert out["total"].sum() <= len(pts)

    def test_boundary_point_first_cell(self, hex_grid):
        """A point on the edge shared by cells 0 and 1 is counted once, in 0."""
        edge = Point(np.sqrt(3.0) / 2.0, 0.0)
        pts = gpd.GeoDataFrame(geometry=[edge], crs=hex_grid.crs)

        out = count_points(hex_grid, pts, "total", boundary="first")
        assert out["total"].tolist() == [1, 0, 0, 0]

    def test_boundary_point_excluded(self, hex_grid):
        edge = Point(np.sqrt(3.0) / 2.0, 0.0)
        pts = gpd.GeoDataFrame(geometry=[edge], crs=hex_grid.crs)

        out = count_points(hex_grid, pts, "total", boundary="exclude")
        assert out["total"].sum() == 0

    def test_unknown_boundary_policy(self, hex_grid):
        pts = gpd.GeoDataFrame(geometry=[Point(0.0, 0.0)], crs=hex_grid.crs)
        with pytest.raises(ValueError):
            count_points(hex_grid, pts, "total", boundary="nearest")

    def test_sum_bounded_by_point_count(self, hex_grid):
        rng = np.random.default_rng(3)
        xy = rng.uniform(-1.0, 4.0, size=(200, 2))
        pts = gpd.GeoDataFrame(geometry=gpd.points_from_xy(xy[:, 0], xy[:, 1]), crs=hex_grid.crs)

        out = count_points(hex_grid, pts, "total")
        assert 0 < out["total"].sum() <= len(pts)

    def test_tiling_counts_every_point_once(self, square_grid):
        """On a tiling every point, boundary points included, lands in one cell."""
        rng = np.random.default_rng(8)
        xy = rng.uniform(0.0, 3.0, size=(300, 2))
        on_lines = [(1.0, 0.5), (2.0, 2.5), (0.5, 1.0),      # shared edges
                    (1.0, 1.0), (2.0, 2.0), (1.0, 2.0),      # shared vertices
                    (0.0, 0.0), (3.0, 3.0), (3.0, 1.5)]      # outer boundary
        xy = np.vstack([xy, on_lines])
        pts = gpd.GeoDataFrame(geometry=gpd.points_from_xy(xy[:, 0], xy[:, 1]))

        first = count_points(square_grid, pts, "total", boundary="first")
        excluded = count_points(square_grid, pts, "total", boundary="exclude")

        assert first["total"].sum() == len(pts)
        assert excluded["total"].sum() == len(pts) - len(on_lines)

    def test_points_reprojected_to_cells_crs(self):
        """Points given in web mercator are matched against WGS84 cells."""
        from data_generating_process import build_hex_grid

        cells = build_hex_grid(2, 2, size=0.01, origin=(-2.6, 51.45), crs="EPSG:4326")
        pts = gpd.GeoDataFrame(geometry=[Point(-2.6, 51.45)], crs="EPSG:4326").to_crs("EPSG:3857")

        out = count_points(cells, pts, "total")
        assert out["total"].tolist() == [1, 0, 0, 0]

    def test_index_of_cells_is_irrelevant(self, hex_grid, scenario_points):
        incidents, _ = scenario_points
        shuffled_index = hex_grid.set_index(np.array([40, 30, 20, 10]))
        out = count_points(shuffled_index, incidents, "total")
        assert out["total"].tolist() == [2, 1, 0, 2]
