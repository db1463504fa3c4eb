"""data_generating_process.py
================================
Synthetic study areas for demos and tests.

Every generator starts from a lattice of hexagon (or square) cells. Vertices
are placed on an integer lattice and scaled once, so neighbouring cells share
*bit-identical* vertex coordinates and contiguity weights see them as
touching.

Hexagons are pointy-topped, in row-major order, odd rows shifted half a cell
to the right:

    row 1:    (2) (3)
    row 0:  (0) (1)
"""

from __future__ import annotations

import numpy as np
import pandas as pd
import geopandas as gpd
from shapely.geometry import Point, Polygon, box

from ingestion import StudyInputs
from utilities import build_contiguity_weights

# vertex offsets of a pointy-top hexagon, in (half-width, half-size) units
_HEX_OFFSETS = ((0, 2), (-1, 1), (-1, -1), (0, -2), (1, -1), (1, 1))


# ------------------------------------------------------------------------------
#  Lattices
# ------------------------------------------------------------------------------

def build_hex_grid(n_rows: int = 2, n_cols: int = 2, *, size: float = 1.0,
                   origin: tuple[float, float] = (0.0, 0.0), crs=None) -> gpd.GeoDataFrame:
    """Create an ``n_rows x n_cols`` pointy-top hexagon lattice.

    Parameters
    ----------
    n_rows, n_cols : int
        Lattice shape. Cells are numbered ``id = row * n_cols + col``.
    size : float
        Centre-to-vertex distance.
    origin : (x, y)
        Centre of cell 0.
    crs : CRS-like, optional

    Returns
    -------
    GeoDataFrame
        Columns ``cell_id``, ``row``, ``col``, ``cx``, ``cy`` (cell centre)
        and geometry.
    """
    half_w = np.sqrt(3.0) / 2.0 * size        # half the flat-to-flat width
    half_s = size / 2.0
    x0, y0 = origin

    records = []
    for row in range(n_rows):
        for col in range(n_cols):
            ix, iy = 2 * col + (row % 2), 3 * row
            ring = [(x0 + (ix + dx) * half_w, y0 + (iy + dy) * half_s) for dx, dy in _HEX_OFFSETS]
            records.append({
                "cell_id": row * n_cols + col,
                "row": row,
                "col": col,
                "cx": x0 + ix * half_w,
                "cy": y0 + iy * half_s,
                "geometry": Polygon(ring),
            })
    return gpd.GeoDataFrame(records, geometry="geometry", crs=crs)


def build_square_grid(n: int = 3, *, size: float = 1.0, crs=None) -> gpd.GeoDataFrame:
    """An ``n x n`` lattice of unit squares, row-major, with the same columns
    as :func:`build_hex_grid`."""
    records = []
    for row in range(n):
        for col in range(n):
            records.append({
                "cell_id": row * n + col,
                "row": row,
                "col": col,
                "cx": (col + 0.5) * size,
                "cy": (row + 0.5) * size,
                "geometry": box(col * size, row * size, (col + 1) * size, (row + 1) * size),
            })
    return gpd.GeoDataFrame(records, geometry="geometry", crs=crs)


def scatter_points(cells: gpd.GeoDataFrame, counts, *, spread: float = 0.3,
                   rng: np.random.Generator | None = None, **attrs) -> gpd.GeoDataFrame:
    """
    Place ``counts[i]`` points strictly inside cell ``i``.

    Points are jittered around the cell centre by at most `spread` times the
    distance from the centre to the nearest edge, so they never land on a
    boundary. Extra keyword arguments become constant attribute columns.
    """
    rng = rng or np.random.default_rng()
    counts = np.asarray(counts, dtype=int)

    points = []
    for (_, cell), k in zip(cells.iterrows(), counts):
        centre = Point(cell["cx"], cell["cy"])
        reach = spread * cell.geometry.exterior.distance(centre)
        offsets = rng.uniform(-reach, reach, size=(k, 2)) / np.sqrt(2.0)
        points.extend(Point(cell["cx"] + dx, cell["cy"] + dy) for dx, dy in offsets)

    out = gpd.GeoDataFrame({name: [value] * len(points) for name, value in attrs.items()},
                           geometry=points, crs=cells.crs)
    out["longitude"] = out.geometry.x
    out["latitude"] = out.geometry.y
    return out


# ------------------------------------------------------------------------------
#  Data‑generating processes
# ------------------------------------------------------------------------------

def gen_X(num_obs: int, *, rng: np.random.Generator | None = None) -> pd.DataFrame:
    """
    Generate predictors: Poisson bus-stop counts and uniform trip estimates.
    """
    rng = rng or np.random.default_rng()
    return pd.DataFrame({
        "bus_stops": rng.poisson(2.0, size=num_obs).astype(float),
        "trips": rng.uniform(10.0, 100.0, size=num_obs),
    })


def dgp_ols(cells: gpd.GeoDataFrame, beta: np.ndarray | None = None, sigma: float = 1.0,
            *, rng: np.random.Generator | None = None) -> gpd.GeoDataFrame:
    """
    Normal linear model ``total = β₀ + β₁·bus_stops + β₂·trips + ε``.

    Returns a copy of `cells` with ``bus_stops``, ``trips`` and ``total``.
    """
    rng = rng or np.random.default_rng()
    beta = np.asarray(beta) if beta is not None else np.array([1.0, 0.8, 0.05])

    X = gen_X(len(cells), rng=rng)
    data = cells.assign(**{name: X[name].to_numpy() for name in X.columns})
    data["total"] = beta[0] + X.to_numpy() @ beta[1:] + rng.normal(0, sigma, len(cells))
    return data


def dgp_lag(cells: gpd.GeoDataFrame, w, rho: float = 0.5, beta: np.ndarray | None = None,
            sigma: float = 1.0, *, rng: np.random.Generator | None = None) -> gpd.GeoDataFrame:
    """
    Spatial lag data: crime spills over into neighbouring cells.

    Generates according to:

    ``(I – ρ W) y = β₀ + X β + ε``, ε ∼ 𝒩(0, σ² I)

    `w` must be the weights of `cells` (same row order).
    """
    rng = rng or np.random.default_rng()
    beta = np.asarray(beta) if beta is not None else np.array([1.0, 0.8, 0.05])
    N = len(cells)

    X = gen_X(N, rng=rng)
    eps = rng.normal(0, sigma, N)

    # solving the system of equations for y: y = (I - ρW)⁻¹ (β₀ + Xβ + ε)
    Wd = w.sparse.toarray()
    y = np.linalg.solve(np.eye(N) - rho * Wd, beta[0] + X.to_numpy() @ beta[1:] + eps)

    data = cells.assign(**{name: X[name].to_numpy() for name in X.columns})
    data["total"] = y
    return data


def synthetic_study_area(n_rows: int = 10, n_cols: int = 10, *, rho: float = 0.5,
                         origin: tuple[float, float] = (-2.60, 51.45), size: float = 0.004,
                         rng: np.random.Generator | None = None):
    """
    A made-up city in WGS84 shaped like the real inputs.

    Crime counts per cell follow a lag process (rounded, floored at zero),
    bus stops are Poisson, and both are materialised as points so that the
    whole pipeline, aggregation included, can run on them.

    Returns
    -------
    ingestion.StudyInputs
    """
    rng = rng or np.random.default_rng()
    hexes = build_hex_grid(n_rows, n_cols, size=size, origin=origin, crs="EPSG:4326")
    w = build_contiguity_weights(hexes)

    data = dgp_lag(hexes, w, rho=rho, beta=np.array([1.0, 0.9, 0.06]), sigma=1.0, rng=rng)
    crimes = np.clip(np.rint(data["total"].to_numpy()), 0, None).astype(int)
    stops = data["bus_stops"].to_numpy().astype(int)

    cells = hexes[["cell_id", "geometry"]].copy()
    cells["trips"] = data["trips"].to_numpy()

    incidents = scatter_points(hexes, crimes, rng=rng, category="Burglary")
    incidents["source_file"] = "synthetic-street.csv"
    bus_stops = scatter_points(hexes, stops, rng=rng, WITHDRAWN_="N")
    return StudyInputs(incidents=incidents, cells=cells, stops=bus_stops)
