"""
Test Configuration
==================

Shared fixtures: a 2x2 hexagon grid with known counts, a 3x3 square grid and
a synthetic lag data set.
"""

import numpy as np
import geopandas as gpd
import pytest
from shapely.geometry import Point

from data_generating_process import build_hex_grid, build_square_grid, dgp_lag
from utilities import build_contiguity_weights


@pytest.fixture
def hex_grid():
    """Four pointy-top hexagons in WGS84, cell ids 0..3, trips 10..40."""
    cells = build_hex_grid(2, 2, size=1.0, crs="EPSG:4326")
    cells["trips"] = [10.0, 20.0, 30.0, 40.0]
    return cells


@pytest.fixture
def scenario_points(hex_grid):
    """Incidents [2, 1, 0, 2] and bus stops [1, 0, 1, 0] per cell, placed
    near the cell centres."""
    def near_centre(cell_ids, offset=0.1):
        pts = []
        for i, cid in enumerate(cell_ids):
            cell = hex_grid.iloc[cid]
            pts.append(Point(cell["cx"] + offset * (i % 2), cell["cy"] - offset * (i % 3 == 0)))
        return gpd.GeoDataFrame(geometry=pts, crs=hex_grid.crs)

    incidents = near_centre([0, 0, 1, 3, 3])
    stops = near_centre([0, 2])
    return incidents, stops


@pytest.fixture
def square_grid():
    return build_square_grid(3)


@pytest.fixture
def lag_data():
    """An 8x8 hexagon lattice with a lag response (rho = 0.5)."""
    cells = build_hex_grid(8, 8)
    w = build_contiguity_weights(cells)
    data = dgp_lag(cells, w, rho=0.5, beta=np.array([2.0, 1.0, 0.05]), sigma=1.0,
                   rng=np.random.default_rng(42))
    return data, w
