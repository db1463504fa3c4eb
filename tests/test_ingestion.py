"""
Ingestion Tests
===============

Incident CSV discovery and loading, hexagon and bus-stop layers, CRS
handling.
"""

import numpy as np
import pandas as pd
import geopandas as gpd
import pytest
from shapely.geometry import Point

from config import Settings
from data_generating_process import build_hex_grid
from errors import MalformedRecordError, MissingFileError
from ingestion import (
    WGS84,
    discover_incident_files,
    load_bus_stops,
    load_hexagons,
    load_incidents,
    load_inputs,
    reproject,
)


def write_incidents(path, rows, category_column="Crime type"):
    frame = pd.DataFrame(rows, columns=[category_column, "Longitude", "Latitude", "Month"])
    frame.to_csv(path, index=False)
    return path


@pytest.fixture
def crime_dir(tmp_path):
    folder = tmp_path / "crime"
    folder.mkdir()
    write_incidents(folder / "2023-01-street.csv", [
        ["Burglary", -2.60, 51.45, "2023-01"],
        ["Robbery", -2.59, 51.46, "2023-01"],
        ["Burglary", None, None, "2023-01"],
    ])
    write_incidents(folder / "2023-02-street.csv", [
        ["Burglary", -2.58, 51.44, "2023-02"],
    ])
    (folder / "2023-02-outcomes.csv").write_text("Crime ID,Outcome\n1,none\n")
    return folder


class TestIncidents:
    """Crime incident files."""

    def test_discover_by_suffix(self, crime_dir):
        paths = discover_incident_files(crime_dir)
        assert [p.name for p in paths] == ["2023-01-street.csv", "2023-02-street.csv"]

    def test_discover_missing_folder(self, tmp_path):
        with pytest.raises(MissingFileError):
            discover_incident_files(tmp_path / "nowhere")

    def test_discover_no_match(self, crime_dir):
        with pytest.raises(MissingFileError) as exc:
            discover_incident_files(crime_dir, suffix="-stop-and-search.csv")
        assert exc.value.pattern == "-stop-and-search.csv"

    def test_load_stacks_files_and_drops_missing_coordinates(self, crime_dir):
        incidents = load_incidents(discover_incident_files(crime_dir))

        assert len(incidents) == 3
        assert incidents.crs == WGS84
        assert set(incidents["source_file"]) == {"2023-01-street.csv", "2023-02-street.csv"}
        assert incidents.geometry.iloc[0].equals(Point(-2.60, 51.45))

    def test_category_filter(self, crime_dir):
        incidents = load_incidents(discover_incident_files(crime_dir), categories=["Burglary"])
        assert incidents["category"].tolist() == ["Burglary", "Burglary"]

    def test_dotted_category_column(self, tmp_path):
        path = write_incidents(tmp_path / "a-street.csv", [["Arson", -2.6, 51.4, "x"]],
                               category_column="Crime.type")
        incidents = load_incidents([path])
        assert incidents["category"].tolist() == ["Arson"]

    def test_missing_column(self, tmp_path):
        path = tmp_path / "a-street.csv"
        pd.DataFrame({"Crime type": ["Arson"], "Longitude": [-2.6]}).to_csv(path, index=False)
        with pytest.raises(MalformedRecordError) as exc:
            load_incidents([path])
        assert exc.value.column == "Latitude"
        assert exc.value.source == "a-street.csv"

    def test_non_numeric_coordinate(self, tmp_path):
        path = write_incidents(tmp_path / "a-street.csv", [
            ["Arson", -2.6, 51.4, "x"],
            ["Arson", "west", 51.4, "x"],
        ])
        with pytest.raises(MalformedRecordError) as exc:
            load_incidents([path])
        assert exc.value.row == 1
        assert exc.value.column == "Longitude"

    def test_missing_file(self, tmp_path):
        with pytest.raises(MissingFileError):
            load_incidents([tmp_path / "gone-street.csv"])

    def test_no_files(self):
        with pytest.raises(MissingFileError):
            load_incidents([])


class TestLayers:
    """Hexagon and bus-stop shapefiles."""

    def test_hexagons_reprojected(self, tmp_path):
        cells = build_hex_grid(2, 2, size=200.0, origin=(358000.0, 173000.0), crs="EPSG:27700")
        cells["trips"] = [10.0, 20.0, 30.0, 40.0]
        path = tmp_path / "hexagons.shp"
        cells[["trips", "geometry"]].to_file(path)

        loaded = load_hexagons(path)

        assert loaded.crs == WGS84
        assert loaded["trips"].tolist() == [10.0, 20.0, 30.0, 40.0]
        assert loaded["cell_id"].tolist() == [0, 1, 2, 3]
        assert loaded.geometry.iloc[0].centroid.x == pytest.approx(-2.6, abs=0.1)

    def test_hexagons_without_trips(self, tmp_path):
        cells = build_hex_grid(1, 2, crs=WGS84)
        path = tmp_path / "hexagons.shp"
        cells[["row", "geometry"]].to_file(path)

        with pytest.raises(MalformedRecordError) as exc:
            load_hexagons(path)
        assert exc.value.column == "trips"

    def test_hexagon_id_column(self, tmp_path):
        cells = build_hex_grid(1, 2, crs=WGS84)
        cells["trips"] = [1.0, 2.0]
        cells["hex_id"] = ["a", "b"]
        path = tmp_path / "hexagons.shp"
        cells[["trips", "hex_id", "geometry"]].to_file(path)

        assert load_hexagons(path, id_column="hex_id")["cell_id"].tolist() == ["a", "b"]

    def test_missing_layer(self, tmp_path):
        with pytest.raises(MissingFileError):
            load_hexagons(tmp_path / "hexagons.shp")

    def test_withdrawn_stops_dropped(self, tmp_path):
        stops = gpd.GeoDataFrame(
            {"WITHDRAWN_": ["N", "Y", "yes", None]},
            geometry=[Point(0, 0), Point(1, 1), Point(2, 2), Point(3, 3)],
            crs=WGS84,
        )
        path = tmp_path / "bus_stops.shp"
        stops.to_file(path)

        kept = load_bus_stops(path)
        assert len(kept) == 2
        assert kept.geometry.x.tolist() == [0.0, 3.0]

    def test_numeric_withdrawn_flags(self, tmp_path):
        """A float flag column (nulls present) still drops stops flagged 1."""
        stops = gpd.GeoDataFrame(
            {"WITHDRAWN_": [0.0, 1.0, None]},
            geometry=[Point(0, 0), Point(1, 1), Point(2, 2)],
            crs=WGS84,
        )
        path = tmp_path / "bus_stops.shp"
        stops.to_file(path)

        kept = load_bus_stops(path)
        assert kept.geometry.x.tolist() == [0.0, 2.0]

    def test_numeric_flags_follow_configured_values(self, tmp_path):
        stops = gpd.GeoDataFrame({"WITHDRAWN_": [1.0, 2.0]},
                                 geometry=[Point(0, 0), Point(1, 1)], crs=WGS84)
        path = tmp_path / "bus_stops.shp"
        stops.to_file(path)

        kept = load_bus_stops(path, withdrawn_values=["Y", "2"])
        assert kept.geometry.x.tolist() == [0.0]

    def test_stops_without_flag_column(self, tmp_path):
        stops = gpd.GeoDataFrame({"name": ["a"]}, geometry=[Point(0, 0)], crs=WGS84)
        path = tmp_path / "bus_stops.shp"
        stops.to_file(path)

        with pytest.raises(MalformedRecordError):
            load_bus_stops(path)

    def test_load_inputs(self, tmp_path, crime_dir):
        cells = build_hex_grid(2, 2, size=0.01, origin=(-2.60, 51.45), crs=WGS84)
        cells["trips"] = [10.0, 20.0, 30.0, 40.0]
        cells[["trips", "geometry"]].to_file(tmp_path / "hexagons.shp")
        gpd.GeoDataFrame({"WITHDRAWN_": ["N"]}, geometry=[Point(-2.60, 51.45)],
                         crs=WGS84).to_file(tmp_path / "bus_stops.shp")

        settings = Settings.model_validate({
            "incidents": {"directory": str(crime_dir)},
            "hexagons": {"path": str(tmp_path / "hexagons.shp")},
            "bus_stops": {"path": str(tmp_path / "bus_stops.shp")},
        })
        inputs = load_inputs(settings)

        assert len(inputs.incidents) == 3
        assert len(inputs.cells) == 4
        assert len(inputs.stops) == 1


class TestReproject:

    def test_round_trip(self):
        gdf = gpd.GeoDataFrame(geometry=[Point(-2.60, 51.45), Point(-2.55, 51.47)], crs=WGS84)
        back = reproject(reproject(gdf, "EPSG:27700"), WGS84)

        np.testing.assert_allclose(back.geometry.x, gdf.geometry.x, atol=1e-8)
        np.testing.assert_allclose(back.geometry.y, gdf.geometry.y, atol=1e-8)

    def test_same_crs_is_untouched(self):
        gdf = gpd.GeoDataFrame(geometry=[Point(0, 0)], crs=WGS84)
        assert reproject(gdf, WGS84) is gdf

    def test_layer_without_crs(self):
        gdf = gpd.GeoDataFrame(geometry=[Point(0, 0)])
        with pytest.raises(MalformedRecordError):
            reproject(gdf, WGS84)
