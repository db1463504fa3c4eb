"""ingestion.py
================

Load the three inputs of a run and put them on one coordinate reference
system:

* crime incidents: every ``*-street.csv`` style file in a folder, stacked
  into one point layer;
* the hexagon grid with its pedestrian ``trips`` estimate;
* bus stops, minus the withdrawn ones.

Incident coordinates arrive as longitude / latitude, so the incident layer is
built in WGS84 and only reprojected when another target CRS is configured.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import NamedTuple, Sequence

import geopandas as gpd
import numpy as np
import pandas as pd

from errors import MalformedRecordError, MissingFileError

logger = logging.getLogger(__name__)

WGS84 = "EPSG:4326"


class StudyInputs(NamedTuple):
    """The three layers handed to the aggregator."""

    incidents: gpd.GeoDataFrame
    cells: gpd.GeoDataFrame
    stops: gpd.GeoDataFrame


# ------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------
def _resolve_column(frame: pd.DataFrame, name: str, source) -> str:
    """Find `name` in `frame`, also accepting the dotted spelling R gives it
    (``Crime type`` <-> ``Crime.type``)."""
    for candidate in (name, name.replace(" ", "."), name.replace(".", " ")):
        if candidate in frame.columns:
            return candidate
    raise MalformedRecordError(
        f"{source}: required column '{name}' not found (columns: {list(frame.columns)})",
        source=source,
        column=name,
    )


def _coerce_numeric(raw: pd.Series, column: str, source) -> pd.Series:
    """
    Turn a text column (coordinates, trip estimates) into floats.

    Blank cells become NaN; anything else that does not parse is an error.
    """
    text = raw.where(raw.notna(), "").astype(str).str.strip()
    values = pd.to_numeric(text.mask(text == ""), errors="coerce").astype(float)
    bad = values.isna() & (text != "")
    if bad.any():
        row = bad.index[bad.to_numpy()][0]
        raise MalformedRecordError(
            f"{source}: row {row} has non-numeric {column} {raw.loc[row]!r}",
            source=source,
            row=row,
            column=column,
        )
    return values


def reproject(gdf: gpd.GeoDataFrame, crs=WGS84) -> gpd.GeoDataFrame:
    """
    Return `gdf` in `crs`, reprojecting when the layer uses another one.

    A layer without any CRS cannot be reconciled and is rejected.
    """
    if gdf.crs is None:
        raise MalformedRecordError("layer has no coordinate reference system", column="geometry")
    if gdf.crs == crs:
        return gdf
    logger.debug(f"Reprojecting layer from {gdf.crs.to_string()} to {crs}")
    return gdf.to_crs(crs)


def _read_layer(path) -> gpd.GeoDataFrame:
    path = Path(path)
    if not path.exists():
        raise MissingFileError(f"geometry layer {path} does not exist", path=path)
    layer = gpd.read_file(path)
    logger.info(f"Read {len(layer)} features from {path}")
    return layer


# ------------------------------------------------------------------------
# Crime incidents
# ------------------------------------------------------------------------
def discover_incident_files(directory, suffix: str = "-street.csv") -> list[Path]:
    """
    List incident files in `directory` whose name ends with `suffix`.

    Returns
    -------
    list of Path, sorted by name so that the stacked table is reproducible.
    """
    folder = Path(directory)
    if not folder.is_dir():
        raise MissingFileError(f"incident folder {folder} does not exist", path=folder, pattern=suffix)

    paths = sorted(p for p in folder.iterdir() if p.is_file() and p.name.endswith(suffix))
    if not paths:
        raise MissingFileError(
            f"no files ending in '{suffix}' found in {folder}", path=folder, pattern=suffix
        )
    logger.info(f"Found {len(paths)} incident files in {folder}")
    return paths


def load_incidents(paths: Sequence,
                   *,
                   category_column: str = "Crime type",
                   longitude_column: str = "Longitude",
                   latitude_column: str = "Latitude",
                   categories: Sequence[str] | None = None,
                   crs=WGS84) -> gpd.GeoDataFrame:
    """
    Stack incident CSV files into a single point layer.

    Parameters
    ----------
    paths : sequence of path-like
        Consistently structured incident files.
    category_column, longitude_column, latitude_column : str
        Required columns in every file.
    categories : sequence of str, optional
        Keep only incidents of these categories.
    crs : CRS-like
        Target CRS of the returned layer.

    Returns
    -------
    GeoDataFrame
        Columns ``category``, ``longitude``, ``latitude``, ``source_file``
        and point geometry. Records without both coordinates are dropped.
    """
    if len(paths) == 0:
        raise MissingFileError("no incident files given")

    frames = []
    for path in paths:
        path = Path(path)
        if not path.exists():
            raise MissingFileError(f"incident file {path} does not exist", path=path)

        raw = pd.read_csv(path, dtype=str)
        cat_col = _resolve_column(raw, category_column, path.name)
        lon_col = _resolve_column(raw, longitude_column, path.name)
        lat_col = _resolve_column(raw, latitude_column, path.name)

        frames.append(pd.DataFrame({
            "category": raw[cat_col],
            "longitude": _coerce_numeric(raw[lon_col], lon_col, path.name),
            "latitude": _coerce_numeric(raw[lat_col], lat_col, path.name),
            "source_file": path.name,
        }))

    records = pd.concat(frames, ignore_index=True)

    complete = records[["longitude", "latitude"]].notna().all(axis=1)
    n_dropped = int((~complete).sum())
    if n_dropped:
        logger.info(f"Dropped {n_dropped} incidents without coordinates")
    records = records[complete]

    if categories is not None:
        records = records[records["category"].isin(list(categories))]
        logger.info(f"Kept {len(records)} incidents in categories {list(categories)}")

    records = records.reset_index(drop=True)
    incidents = gpd.GeoDataFrame(
        records,
        geometry=gpd.points_from_xy(records["longitude"], records["latitude"]),
        crs=WGS84,
    )
    logger.info(f"Loaded {len(incidents)} incidents from {len(frames)} files")
    return reproject(incidents, crs)


# ------------------------------------------------------------------------
# Geometry layers
# ------------------------------------------------------------------------
def load_hexagons(path,
                  *,
                  trips_column: str = "trips",
                  id_column: str | None = None,
                  crs=WGS84) -> gpd.GeoDataFrame:
    """
    Read the hexagon grid.

    Returns a GeoDataFrame with a fresh 0..n-1 index, a ``cell_id`` column
    (taken from `id_column` or the row number) and a float ``trips``
    column, in `crs`.
    """
    layer = reproject(_read_layer(path), crs).reset_index(drop=True)
    source = Path(path).name

    if trips_column not in layer.columns:
        raise MalformedRecordError(
            f"{source}: hexagon layer has no '{trips_column}' column",
            source=source,
            column=trips_column,
        )

    empty = layer.geometry.isna() | layer.geometry.is_empty
    if empty.any():
        row = int(np.flatnonzero(empty.to_numpy())[0])
        raise MalformedRecordError(
            f"{source}: hexagon {row} has no geometry", source=source, row=row, column="geometry"
        )

    cells = layer.copy()
    cells["trips"] = _coerce_numeric(cells[trips_column], trips_column, source)
    if cells["trips"].isna().any():
        row = int(cells.index[cells["trips"].isna()][0])
        raise MalformedRecordError(
            f"{source}: hexagon {row} has no {trips_column} value",
            source=source,
            row=row,
            column=trips_column,
        )

    if id_column is None:
        cells["cell_id"] = np.arange(len(cells))
    else:
        if id_column not in cells.columns:
            raise MalformedRecordError(
                f"{source}: id column '{id_column}' not found", source=source, column=id_column
            )
        if cells[id_column].duplicated().any():
            raise MalformedRecordError(
                f"{source}: id column '{id_column}' is not unique", source=source, column=id_column
            )
        cells["cell_id"] = cells[id_column]

    return cells


def load_bus_stops(path,
                   *,
                   withdrawn_column: str = "WITHDRAWN_",
                   withdrawn_values: Sequence[str] = ("Y", "YES", "TRUE", "1"),
                   crs=WGS84) -> gpd.GeoDataFrame:
    """
    Read bus stops and drop withdrawn stops and stops without a location.
    """
    layer = reproject(_read_layer(path), crs)
    source = Path(path).name

    if withdrawn_column not in layer.columns:
        raise MalformedRecordError(
            f"{source}: bus stop layer has no '{withdrawn_column}' column",
            source=source,
            column=withdrawn_column,
        )

    raw = layer[withdrawn_column]
    flags = raw.where(raw.notna(), "").astype(str).str.strip().str.upper()
    withdrawn = flags.isin([str(v).upper() for v in withdrawn_values])
    # numeric flag fields read back as floats (1.0) once any value is null
    numeric_values = pd.to_numeric(pd.Series(list(withdrawn_values), dtype=object), errors="coerce")
    withdrawn |= pd.to_numeric(raw, errors="coerce").isin(numeric_values.dropna())
    located = ~(layer.geometry.isna() | layer.geometry.is_empty)

    stops = layer[~withdrawn & located].reset_index(drop=True)
    logger.info(
        f"Kept {len(stops)} of {len(layer)} bus stops "
        f"({int(withdrawn.sum())} withdrawn, {int((~located).sum())} without location)"
    )
    return stops


def load_inputs(settings) -> StudyInputs:
    """Discover and load every input named in `settings` (a config.Settings)."""
    inc = settings.incidents
    paths = discover_incident_files(inc.directory, inc.suffix)
    incidents = load_incidents(
        paths,
        category_column=inc.category_column,
        longitude_column=inc.longitude_column,
        latitude_column=inc.latitude_column,
        categories=inc.categories,
        crs=settings.crs,
    )
    cells = load_hexagons(
        settings.hexagons.path,
        trips_column=settings.hexagons.trips_column,
        id_column=settings.hexagons.id_column,
        crs=settings.crs,
    )
    stops = load_bus_stops(
        settings.bus_stops.path,
        withdrawn_column=settings.bus_stops.withdrawn_column,
        withdrawn_values=settings.bus_stops.withdrawn_values,
        crs=settings.crs,
    )
    return StudyInputs(incidents=incidents, cells=cells, stops=stops)
