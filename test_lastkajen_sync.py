import asyncio
import io
import json
import zipfile

import geopandas as gpd
import pytest
from shapely.geometry import LineString, Point, Polygon

import lastkajen_sync
from data_loader import JsonDatasetProvider
from infrastructure_query import InfrastructureQueryEngine
from lastkajen_client import LastkajenClient
from lastkajen_sync import (
    build_metadata,
    convert_access_restrictions,
    convert_network,
    convert_switches,
    convert_yards,
    extract_geopackages,
    write_dataset,
)


# Environs de Stockholm en SWEREF99 TM
X0, Y0 = 674000.0, 6580000.0


def _in_sweden(coords):
    lon, lat = coords[0], coords[1]
    return 17.0 < lon < 19.5 and 58.5 < lat < 60.5


@pytest.fixture(scope="module")
def network_gdf():
    rows = [
        {
            "ELEMENT_ID": "E1", "Bandel": "182", "Bandelnamn": "Västra Stambanan", "SEGMENT_LENGTH": 1000.0,
            "Elektrifi": "15 kV 16,7 Hz", "Infrafnam": "Trafikverket", "InfrafKod": "TRV",
            "STH_A_med": 160.0, "STH_A_mot": 140.0, "Linjekat": "null", "Region": "Öst",
            "Tunnel": 0, "Tunnelnam": None, "Bro": 0, "Bronamn": None, "Brofunk": None,
            "PlNamn": "Stockholm Central", "Pl_Forb": "Cst",
        },
        {
            "ELEMENT_ID": "E2", "Bandel": "182", "Bandelnamn": "Västra Stambanan", "SEGMENT_LENGTH": 500.0,
            "Elektrifi": "15 kV 16,7 Hz", "Infrafnam": "Trafikverket", "InfrafKod": "TRV",
            "STH_A_med": 160.0, "STH_A_mot": 140.0, "Linjekat": "null", "Region": "Öst",
            "Tunnel": -1, "Tunnelnam": "Söderledstunneln", "Bro": -1, "Bronamn": None, "Brofunk": None,
            "PlNamn": None, "Pl_Forb": None,
        },
        {
            "ELEMENT_ID": "E3", "Bandel": "421", "Bandelnamn": "Dalabanan", "SEGMENT_LENGTH": 2000.0,
            "Elektrifi": "ej el", "Infrafnam": None, "InfrafKod": "IVN",
            "STH_A_med": 100.0, "STH_A_mot": 0.0, "Linjekat": "B", "Region": None,
            "Tunnel": 0, "Tunnelnam": None, "Bro": -1, "Bronamn": "Dalälvsbron", "Brofunk": "Järnvägsbro",
            "PlNamn": None, "Pl_Forb": None,
        },
    ]
    geometries = [
        LineString([(X0, Y0), (X0 + 1000, Y0)]),
        LineString([(X0 + 1000, Y0), (X0 + 1500, Y0)]),
        LineString([(X0, Y0 + 10000), (X0, Y0 + 12000)]),
    ]
    return gpd.GeoDataFrame(rows, geometry=geometries, crs="EPSG:3006")


@pytest.fixture(scope="module")
def network(network_gdf):
    return convert_network(network_gdf)


def test_tracks_aggregated_by_bandel(network):
    tracks = {t["designation"]: t for t in network["tracks"]}
    assert set(tracks) == {"182", "421"}

    track = tracks["182"]
    assert track["id"] == "TRK-182"
    assert track["name"] == "Västra Stambanan"
    assert track["length"] == 1500
    assert track["speedLimit"] == 160
    assert track["electrified"] is True
    assert track["gauge"] == 1435
    assert track["infrastructureManager"] == "Trafikverket"
    assert len(track["geometry"]["coordinates"]) == 4
    assert all(_in_sweden(c) for c in track["geometry"]["coordinates"])
    assert track["speedLimits"] == {"classA": {"with": 160, "against": 140}}
    assert track["region"] == "Öst"
    assert "lineCategory" not in track


def test_track_fallbacks(network):
    track = next(t for t in network["tracks"] if t["designation"] == "421")
    assert track["electrified"] is False
    assert track["infrastructureManager"] == "IVN"
    assert track["lineCategory"] == "B"
    assert "region" not in track


def test_tunnels_and_bridges(network):
    assert [(t["id"], t["name"], t["trackId"]) for t in network["tunnels"]] == [
        ("TUN-1", "Söderledstunneln", "182"),
    ]
    bridges = network["bridges"]
    assert [b["id"] for b in bridges] == ["BRG-1", "BRG-2"]
    assert bridges[0]["name"] == "Unnamed Bridge"
    assert bridges[0]["type"] == "railway"
    assert bridges[1]["name"] == "Dalälvsbron"
    assert bridges[1]["type"] == "Järnvägsbro"


def test_stations(network):
    assert len(network["stations"]) == 1
    station = network["stations"][0]
    assert station["name"] == "Stockholm Central"
    assert station["signature"] == "Cst"
    assert station["geometry"]["type"] == "Point"
    assert _in_sweden(station["geometry"]["coordinates"])


def test_convert_switches():
    gdf = gpd.GeoDataFrame(
        {"formOfNode": ["junction", "railwayStop", "junction"], "inspireId": ["n1", "n2", "n3"]},
        geometry=[Point(X0, Y0), Point(X0 + 10, Y0), Point(X0 + 20, Y0)],
        crs="EPSG:3006",
    )
    switches = convert_switches(gdf)
    assert [s["id"] for s in switches] == ["SWT-1", "SWT-2"]
    assert [s["inspireId"] for s in switches] == ["n1", "n3"]
    assert all(s["type"] == "junction" for s in switches)
    assert _in_sweden(switches[0]["geometry"]["coordinates"])


def test_convert_yards_uses_centroid():
    square = Polygon([(X0, Y0), (X0 + 200, Y0), (X0 + 200, Y0 + 200), (X0, Y0 + 200)])
    gdf = gpd.GeoDataFrame({"geographicalName": [None]}, geometry=[square], crs="EPSG:3006")
    yards = convert_yards(gdf)

    expected = gpd.GeoSeries([Point(X0 + 100, Y0 + 100)], crs="EPSG:3006").to_crs("EPSG:4326")[0]
    assert yards[0]["id"] == "YRD-1"
    assert yards[0]["name"] == "Unnamed Yard"
    assert yards[0]["geometry"]["coordinates"] == pytest.approx([expected.x, expected.y])


def test_convert_access_restrictions_midpoint():
    gdf = gpd.GeoDataFrame(
        {
            "restriction": ["public access", "private", "physically impossible"],
            "applicableDirection": ["both", "inDirection", "both"],
        },
        geometry=[
            LineString([(X0, Y0), (X0 + 100, Y0)]),
            LineString([(X0, Y0), (X0 + 100, Y0)]),
            LineString([(X0, Y0), (X0, Y0 + 400)]),
        ],
        crs="EPSG:3006",
    )
    restrictions = convert_access_restrictions(gdf)
    assert [r["restriction"] for r in restrictions] == ["private", "physically_impossible"]
    assert [r["id"] for r in restrictions] == ["RST-1", "RST-2"]
    assert restrictions[0]["direction"] == "inDirection"

    expected = gpd.GeoSeries([Point(X0 + 50, Y0)], crs="EPSG:3006").to_crs("EPSG:4326")[0]
    assert restrictions[0]["geometry"]["coordinates"] == pytest.approx([expected.x, expected.y])


def test_build_metadata(network):
    metadata = build_metadata(network["tracks"], network["stations"])
    assert [m["name"] for m in metadata["managers"]] == ["Trafikverket", "IVN"]
    assert metadata["trackDesignations"] == ["182", "421"]
    assert metadata["stationCodes"] == [{"code": "Cst", "name": "Stockholm Central"}]


def test_write_dataset(tmp_path, network):
    counts = write_dataset(tmp_path, network)
    assert counts == {"tracks": 2, "tunnels": 1, "bridges": 2, "stations": 1}

    tracks = json.loads((tmp_path / "tracks.json").read_text(encoding="utf-8"))
    assert tracks[0]["name"] == "Västra Stambanan"

    status = json.loads((tmp_path / "sync-status.json").read_text(encoding="utf-8"))
    assert status["success"] is True
    assert status["counts"]["tracks"] == 2
    assert (tmp_path / "metadata.json").exists()


def test_extract_geopackages(tmp_path):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        zf.writestr("nested/railway.gpkg", b"fake")
        zf.writestr("README.txt", b"readme")

    gpkgs = extract_geopackages(buffer.getvalue(), tmp_path / "out")
    assert [p.name for p in gpkgs] == ["railway.gpkg"]


def test_sync_failure_keeps_existing_data(tmp_path, monkeypatch):
    for var in ("LASTKAJEN_API_TOKEN", "LASTKAJEN_USERNAME", "LASTKAJEN_PASSWORD"):
        monkeypatch.delenv(var, raising=False)
    (tmp_path / "tracks.json").write_text("[]", encoding="utf-8")

    status = asyncio.run(lastkajen_sync.sync_from_lastkajen(tmp_path, LastkajenClient()))

    assert status["success"] is False
    assert "LASTKAJEN_USERNAME" in status["error"]
    assert (tmp_path / "tracks.json").read_text(encoding="utf-8") == "[]"
    written = json.loads((tmp_path / "sync-status.json").read_text(encoding="utf-8"))
    assert written["success"] is False


def test_sync_failure_keeps_last_successful_sync(tmp_path, monkeypatch):
    for var in ("LASTKAJEN_API_TOKEN", "LASTKAJEN_USERNAME", "LASTKAJEN_PASSWORD"):
        monkeypatch.delenv(var, raising=False)
    previous = {
        "lastSync": "2026-10-01T02:00:00+00:00",
        "source": "lastkajen",
        "success": True,
        "counts": {"tracks": 2},
    }
    (tmp_path / "sync-status.json").write_text(json.dumps(previous), encoding="utf-8")

    status = asyncio.run(lastkajen_sync.sync_from_lastkajen(tmp_path, LastkajenClient()))

    assert status["success"] is False
    assert status["lastSync"] == "2026-10-01T02:00:00+00:00"
    assert status["counts"] == {"tracks": 2}
    assert status["lastAttempt"] != status["lastSync"]
    assert "LASTKAJEN_USERNAME" in status["error"]

    engine = InfrastructureQueryEngine(JsonDatasetProvider(tmp_path))
    assert engine.last_sync() == "2026-10-01T02:00:00+00:00"


def test_sync_failure_without_previous_sync(tmp_path, monkeypatch):
    for var in ("LASTKAJEN_API_TOKEN", "LASTKAJEN_USERNAME", "LASTKAJEN_PASSWORD"):
        monkeypatch.delenv(var, raising=False)

    asyncio.run(lastkajen_sync.sync_from_lastkajen(tmp_path, LastkajenClient()))

    engine = InfrastructureQueryEngine(JsonDatasetProvider(tmp_path))
    assert engine.last_sync() is None
