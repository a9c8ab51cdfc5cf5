import asyncio
import json
from pathlib import Path

import httpx
import pytest

import trafikverket_mcp
from data_loader import JsonDatasetProvider
from infrastructure_query import InfrastructureQueryEngine
from trafikinfo_client import TrafikinfoClient


DATA_DIR = Path(__file__).parent / "data"


@pytest.fixture(autouse=True)
def bundled_engine(monkeypatch):
    engine = InfrastructureQueryEngine(JsonDatasetProvider(DATA_DIR))
    monkeypatch.setattr(trafikverket_mcp, "engine", engine)
    monkeypatch.setattr(trafikverket_mcp, "trafikinfo", TrafikinfoClient("test-key"))
    return engine


def _trafikinfo_handler(object_type, results):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"RESPONSE": {"RESULT": [{object_type: results}]}})
    return handler


def _execute(name, arguments, handler=None):
    handler = handler or (lambda request: httpx.Response(500))

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            contents = await trafikverket_mcp._execute_tool_logic(name, arguments, client)
        return json.loads(contents[0].text)

    return asyncio.run(run())


def _call(name, arguments):
    contents = asyncio.run(trafikverket_mcp.call_tool(name, arguments))
    return json.loads(contents[0].text)


def test_list_tools():
    tools = asyncio.run(trafikverket_mcp.list_tools())
    assert [t.name for t in tools] == [
        "trafikverket_get_infrastructure",
        "trafikverket_get_crossings",
        "trafikverket_get_operations",
        "trafikverket_describe_data",
    ]


def test_infrastructure_by_track_all():
    result = _execute("trafikverket_get_infrastructure", {"trackId": "182", "geometryDetail": "metadata"})
    assert result["queryType"] == "all"
    assert result["track"]["name"] == "Västra Stambanan"
    assert "geometry" not in result["track"]
    assert result["lastSync"] == "2026-10-01T02:00:00+00:00"
    assert [t["id"] for t in result["tunnels"]] == ["TUN-001"]
    assert [s["id"] for s in result["switches"]] == ["SW-001"]
    assert result["count"] == 1 + sum(
        len(result[key]) for key in
        ("tunnels", "bridges", "switches", "electrification", "stations", "yards", "accessRestrictions")
    )


def test_infrastructure_by_track_single_category():
    result = _execute("trafikverket_get_infrastructure", {"trackId": "182", "queryType": "tracks",
                                                         "geometryDetail": "precise"})
    assert result["count"] == 1
    assert result["tracks"][0]["geometry"]["coordinates"] == [[18.07, 59.33], [17.95, 59.40], [17.85, 59.50]]
    assert "track" not in result


def test_infrastructure_by_bbox():
    result = _execute("trafikverket_get_infrastructure", {"queryType": "stations", "bbox": "17.5,59.0,18.5,59.5"})
    assert result["count"] == 1
    assert result["stations"][0]["name"] == "Stockholm Central"


def test_infrastructure_by_location():
    result = _execute("trafikverket_get_infrastructure", {"queryType": "stations", "latitude": 59.33,
                                                         "longitude": 18.06})
    assert [s["id"] for s in result["stations"]] == ["STA-001"]
    assert len(result["bbox"]) == 4


def test_infrastructure_track_filters():
    args = {"queryType": "tracks", "bbox": "16.0,59.0,19.0,61.0"}
    assert _execute("trafikverket_get_infrastructure", args)["count"] == 2
    assert _execute("trafikverket_get_infrastructure", {**args, "electrified": False})["count"] == 0
    assert _execute("trafikverket_get_infrastructure", {**args, "infrastructureManager": "TRAFIK"})["count"] == 2


def test_infrastructure_requires_one_mode():
    error = _call("trafikverket_get_infrastructure", {"trackId": "182", "bbox": "17.5,59.0,18.5,59.5"})
    assert error["code"] == "VALIDATION_ERROR"
    error = _call("trafikverket_get_infrastructure", {})
    assert error["code"] == "VALIDATION_ERROR"


def test_infrastructure_invalid_region():
    assert _call("trafikverket_get_infrastructure", {"bbox": "18.5,59.0,17.5,59.5"})["code"] == "INVALID_REGION"
    error = _call("trafikverket_get_infrastructure", {"latitude": 48.85, "longitude": 2.35})
    assert error["code"] == "INVALID_REGION"


def test_infrastructure_invalid_detail():
    error = _call("trafikverket_get_infrastructure", {"trackId": "182", "geometryDetail": "full"})
    assert error["code"] == "VALIDATION_ERROR"


def test_describe_track_designations():
    result = _execute("trafikverket_describe_data", {"dataType": "track_designations", "nameFilter": "18"})
    assert result["items"] == ["182"]


def test_describe_station_codes_case_insensitive():
    result = _execute("trafikverket_describe_data", {"dataType": "station_codes", "nameFilter": "STOCK"})
    assert result["items"] == [{"code": "Cst", "name": "Stockholm Central"}]


def test_describe_data_freshness(bundled_engine):
    bundled_engine.get_segment_infrastructure("182")
    result = _execute("trafikverket_describe_data", {"dataType": "data_freshness"})
    assert result["lastSync"] == "2026-10-01T02:00:00+00:00"
    assert result["counts"]["tracks"] == 2
    assert result["cache"]["entries"] == 1
    assert result["cache"]["oldest_entry"] == "segment:182"


def test_describe_road_numbers():
    handler = _trafikinfo_handler("RoadCondition", [{"RoadNumber": "E4"}, {"RoadNumber": "E18"}])
    result = _execute("trafikverket_describe_data", {"dataType": "road_numbers", "nameFilter": "e1"}, handler)
    assert result["items"] == ["E18"]


def test_crossings_by_protection():
    crossings = [
        {"LevelCrossingId": 1, "RoadProtectionBase": [{"Description": "Helbom"}]},
        {"LevelCrossingId": 2, "RoadProtectionBase": [{"Description": "Oskyddad"}]},
    ]
    handler = _trafikinfo_handler("RailCrossing", crossings)
    result = _execute("trafikverket_get_crossings", {"trackId": "182", "protectionType": "barriers"}, handler)
    assert result["count"] == 1
    assert result["crossings"][0]["id"] == 1


def test_crossings_require_a_filter():
    assert _call("trafikverket_get_crossings", {})["code"] == "VALIDATION_ERROR"


def test_operations_incidents_by_severity():
    situations = [{"Deviation": [
        {"Id": "A", "MessageType": "Olycka"},
        {"Id": "B", "MessageType": "Information"},
    ]}]
    handler = _trafikinfo_handler("Situation", situations)
    result = _execute("trafikverket_get_operations", {"queryType": "incidents", "severity": "high"}, handler)
    assert [i["id"] for i in result["incidents"]] == ["A"]


def test_operations_parking_near_station():
    requests = []

    def handler(request):
        requests.append(request.content.decode("utf-8"))
        return httpx.Response(200, json={"RESPONSE": {"RESULT": [{"Parking": [{"Id": "P1", "Name": "Centralen"}]}]}})

    result = _execute("trafikverket_get_operations", {"queryType": "parking", "nearStation": "Stockholm"}, handler)
    assert result["station"] == "Stockholm Central"
    assert result["parking"][0]["id"] == "P1"
    assert "WITHIN" in requests[0]


def test_operations_road_conditions_large_radius():
    handler = _trafikinfo_handler("RoadCondition", [{"Id": "R1", "RoadNumber": "E4"}])
    args = {"queryType": "road_conditions", "latitude": 59.33, "longitude": 18.06, "radiusKm": 80}
    assert _execute("trafikverket_get_operations", args, handler)["count"] == 1


def test_upstream_status_error_payload(monkeypatch):
    class FailingClient:
        async def get_train_messages(self, client, limit=None):
            request = httpx.Request("POST", TrafikinfoClient.API_URL)
            raise httpx.HTTPStatusError("boom", request=request, response=httpx.Response(503, request=request))

    monkeypatch.setattr(trafikverket_mcp, "trafikinfo", FailingClient())
    error = _call("trafikverket_get_operations", {"queryType": "incidents"})
    assert error["code"] == "UPSTREAM_API_ERROR"
    assert error["status_code"] == 503


def test_missing_api_key(monkeypatch):
    monkeypatch.delenv("TRAFIKVERKET_API_KEY", raising=False)
    monkeypatch.setattr(trafikverket_mcp, "trafikinfo", TrafikinfoClient())
    assert _call("trafikverket_get_crossings", {"trackId": "182"})["code"] == "VALIDATION_ERROR"


def test_unknown_tool():
    assert _call("trafikverket_unknown", {})["code"] == "VALIDATION_ERROR"


def test_infrastructure_by_track_limit_before_reduction(monkeypatch, bundled_engine):
    tunnels = [
        {"id": f"TUN-{i}", "trackId": "182",
         "geometry": {"type": "LineString", "coordinates": [[18.06, 59.32], [18.065, 59.325], [18.07, 59.33]]}}
        for i in range(50)
    ]
    original_load = bundled_engine.provider.load_records

    def load_records(category):
        return tunnels if category == "tunnels" else original_load(category)

    monkeypatch.setattr(bundled_engine.provider, "load_records", load_records)

    reduced = []
    original_reduce = InfrastructureQueryEngine._reduce

    def counting_reduce(record, descriptor, detail):
        if descriptor.name == "tunnels":
            reduced.append(record["id"])
        return original_reduce(record, descriptor, detail)

    monkeypatch.setattr(InfrastructureQueryEngine, "_reduce", staticmethod(counting_reduce))

    result = _execute("trafikverket_get_infrastructure", {"queryType": "tunnels", "trackId": "182", "limit": 2})
    assert result["count"] == 2
    assert reduced == ["TUN-0", "TUN-1"]
