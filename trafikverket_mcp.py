#!/usr/bin/env python3
"""
Serveur MCP pour les données ferroviaires et routières de Trafikverket
- NJDB (Lastkajen) : voies, tunnels, ponts, aiguillages, électrification,
  gares, triages, restrictions d'accès (jeu local synchronisé)
- Trafikinfo : passages à niveau, incidents, état des routes, parkings (temps réel)
"""

import asyncio
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

import httpx
from mcp.server import Server
from mcp.types import Tool, TextContent
import mcp.server.stdio

from data_loader import JsonDatasetProvider
from geometry_utils import DEFAULT_GEOMETRY_DETAIL, GEOMETRY_DETAILS
from infrastructure_query import (
    CATEGORY_BY_NAME,
    CATEGORY_NAMES,
    DEFAULT_REGION_LIMIT,
    InfrastructureQueryEngine,
)
from spatial_filter import bbox_from_center
from trafikinfo_client import (
    PROTECTION_KEYWORDS,
    TrafikinfoClient,
    TrafikinfoError,
    filter_crossings_by_protection,
    filter_incidents_by_severity,
)
from validation import (
    LARGE_RADIUS_KM_RANGE,
    ValidationError,
    parse_bbox,
    validate_center,
    validate_choice,
    validate_limit,
    validate_optional_bool,
)

# Configuration
LOG_LEVEL = os.getenv("TRAFIKVERKET_LOG_LEVEL", "INFO")
HTTP_TIMEOUT = 30.0

INFRASTRUCTURE_QUERY_TYPES = CATEGORY_NAMES + ("all",)
INFRASTRUCTURE_MAX_LIMIT = 500
INFRASTRUCTURE_DEFAULT_RADIUS_KM = 10

CROSSINGS_DEFAULT_LIMIT = 50
CROSSINGS_MAX_LIMIT = 200
CROSSINGS_DEFAULT_RADIUS_KM = 10

OPERATIONS_QUERY_TYPES = ("incidents", "road_conditions", "parking")
OPERATIONS_DEFAULT_LIMIT = 20
OPERATIONS_MAX_LIMIT = 100
ROAD_CONDITIONS_DEFAULT_RADIUS_KM = 25
PARKING_DEFAULT_RADIUS_KM = 10
SEVERITIES = ("high", "medium", "low")

DESCRIBE_DATA_TYPES = (
    "infrastructure_managers",
    "track_designations",
    "station_codes",
    "road_numbers",
    "data_freshness",
)
DESCRIBE_DEFAULT_LIMIT = 100
DESCRIBE_MAX_LIMIT = 1000

logger = logging.getLogger("trafikverket_mcp")

# Initialisation
app = Server("trafikverket-mcp")
engine = InfrastructureQueryEngine(JsonDatasetProvider())
trafikinfo = TrafikinfoClient()


def _json_response(data: Any) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(data, ensure_ascii=False, indent=2))]


def _error_response(message: str, code: str, **extra: Any) -> list[TextContent]:
    return _json_response({"error": message, "code": code, **extra})


def _location_argument(arguments: Dict[str, Any]) -> bool:
    return arguments.get("latitude") is not None or arguments.get("longitude") is not None


# ============================================================================
# INFRASTRUCTURE (NJDB)
# ============================================================================

def _filter_tracks(tracks: List[Dict[str, Any]], electrified: Optional[bool], manager: Optional[str]):
    if electrified is not None:
        tracks = [t for t in tracks if t.get("electrified") == electrified]
    if manager:
        manager = manager.lower()
        tracks = [t for t in tracks if manager in (t.get("infrastructureManager") or "").lower()]
    return tracks


def get_infrastructure(arguments: Dict[str, Any]) -> Dict[str, Any]:
    """
    Infrastructure par segment de voie (trackId), par cercle (latitude,
    longitude, radiusKm) ou par emprise (bbox). Un seul mode à la fois.
    """
    query_type = validate_choice(arguments.get("queryType", "all"), INFRASTRUCTURE_QUERY_TYPES, "queryType")
    detail = validate_choice(
        arguments.get("geometryDetail", DEFAULT_GEOMETRY_DETAIL), GEOMETRY_DETAILS, "geometryDetail"
    )
    limit = validate_limit(arguments.get("limit"), INFRASTRUCTURE_MAX_LIMIT, DEFAULT_REGION_LIMIT)
    electrified = validate_optional_bool(arguments.get("electrified"), "electrified")
    manager = arguments.get("infrastructureManager")

    track_id = arguments.get("trackId")
    modes = [track_id is not None, _location_argument(arguments), arguments.get("bbox") is not None]
    if sum(modes) != 1:
        raise ValidationError("Indiquez exactement un de : trackId, latitude/longitude, bbox.")

    categories = CATEGORY_NAMES if query_type == "all" else (query_type,)
    result: Dict[str, Any] = {"queryType": query_type}

    if track_id is not None:
        track_id = str(track_id)
        result["trackId"] = track_id
        segment = engine.get_segment_infrastructure(track_id, detail, limit, categories)
        lists: Dict[str, List[Dict[str, Any]]] = {}
        for name in categories:
            if name == "tracks":
                # Voie propriétaire renvoyée sous "track" en mode all
                if query_type == "tracks":
                    lists["tracks"] = [segment["track"]] if segment["track"] is not None else []
                continue
            key = CATEGORY_BY_NAME[name].result_key
            lists[key] = segment[key]
        if query_type == "all":
            result["track"] = segment["track"]
    else:
        if arguments.get("bbox") is not None:
            bbox = parse_bbox(arguments["bbox"])
        else:
            lat, lon, radius = validate_center(
                arguments.get("latitude"),
                arguments.get("longitude"),
                arguments.get("radiusKm", INFRASTRUCTURE_DEFAULT_RADIUS_KM),
            )
            bbox = bbox_from_center((lon, lat), radius)
        result["bbox"] = bbox.to_list()
        lists = engine.get_region_infrastructure(bbox, limit, detail, categories)

    if "tracks" in lists:
        lists["tracks"] = _filter_tracks(lists["tracks"], electrified, manager)

    count = sum(len(items) for items in lists.values())
    if result.get("track") is not None:
        count += 1

    result["lastSync"] = engine.last_sync()
    result["count"] = count
    result.update(lists)
    return result


# ============================================================================
# DESCRIPTION DES DONNÉES
# ============================================================================

def _matches_name(item: Any, name_filter: str) -> bool:
    needle = name_filter.lower()
    if isinstance(item, dict):
        return any(needle in str(item.get(field) or "").lower() for field in ("name", "code"))
    return needle in str(item).lower()


async def describe_data(arguments: Dict[str, Any], client: httpx.AsyncClient) -> Dict[str, Any]:
    data_type = validate_choice(arguments.get("dataType"), DESCRIBE_DATA_TYPES, "dataType")
    name_filter = arguments.get("nameFilter")
    limit = validate_limit(arguments.get("limit"), DESCRIBE_MAX_LIMIT, DESCRIBE_DEFAULT_LIMIT)

    if data_type == "data_freshness":
        status = engine.provider.load_sync_metadata() or {}
        return {
            "dataType": data_type,
            "lastSync": status.get("lastSync"),
            "source": status.get("source"),
            "success": status.get("success"),
            "counts": status.get("counts", {}),
            "cache": engine.cache_status(),
        }

    if data_type == "road_numbers":
        items: List[Any] = await trafikinfo.get_road_numbers(client)
    else:
        metadata = engine.get_metadata()
        items = {
            "infrastructure_managers": metadata["managers"],
            "track_designations": metadata["trackDesignations"],
            "station_codes": metadata["stationCodes"],
        }[data_type]

    if name_filter:
        if data_type == "track_designations":
            # Désignations : sous-chaîne exacte (codes numériques)
            items = [d for d in items if name_filter in str(d)]
        else:
            items = [item for item in items if _matches_name(item, name_filter)]

    total = len(items)
    items = items[:limit]
    return {"dataType": data_type, "total": total, "count": len(items), "items": items}


# ============================================================================
# TEMPS RÉEL (TRAFIKINFO)
# ============================================================================

async def get_crossings(arguments: Dict[str, Any], client: httpx.AsyncClient) -> Dict[str, Any]:
    protection = validate_choice(
        arguments.get("protectionType", "all"), tuple(PROTECTION_KEYWORDS) + ("all",), "protectionType"
    )
    limit = validate_limit(arguments.get("limit"), CROSSINGS_MAX_LIMIT, CROSSINGS_DEFAULT_LIMIT)

    if arguments.get("trackId") is not None:
        crossings = await trafikinfo.get_level_crossings_by_track(client, str(arguments["trackId"]), limit)
    elif arguments.get("roadNumber") is not None:
        crossings = await trafikinfo.get_level_crossings_by_road(client, str(arguments["roadNumber"]), limit)
    elif _location_argument(arguments):
        lat, lon, radius = validate_center(
            arguments.get("latitude"),
            arguments.get("longitude"),
            arguments.get("radiusKm", CROSSINGS_DEFAULT_RADIUS_KM),
        )
        crossings = await trafikinfo.get_level_crossings_by_location(client, lat, lon, radius, limit)
    else:
        raise ValidationError("Indiquez trackId, roadNumber ou latitude/longitude.")

    crossings = filter_crossings_by_protection(crossings, protection)
    return {"protectionType": protection, "count": len(crossings), "crossings": crossings}


def _find_station(name: str) -> Optional[Dict[str, Any]]:
    needle = name.lower()
    for station in engine.provider.load_records("stations"):
        if (station.get("geometry") or {}).get("type") != "Point":
            continue
        if needle in (station.get("name") or "").lower() or needle == (station.get("signature") or "").lower():
            return station
    return None


async def get_operations(arguments: Dict[str, Any], client: httpx.AsyncClient) -> Dict[str, Any]:
    query_type = validate_choice(arguments.get("queryType"), OPERATIONS_QUERY_TYPES, "queryType")
    limit = validate_limit(arguments.get("limit"), OPERATIONS_MAX_LIMIT, OPERATIONS_DEFAULT_LIMIT)
    result: Dict[str, Any] = {"queryType": query_type}

    if query_type == "incidents":
        severity = arguments.get("severity")
        incidents = await trafikinfo.get_train_messages(client, limit)
        if severity is not None:
            incidents = filter_incidents_by_severity(incidents, validate_choice(severity, SEVERITIES, "severity"))
        result["incidents"] = incidents[:limit]
        result["count"] = len(result["incidents"])
        return result

    if query_type == "road_conditions":
        if arguments.get("roadNumber") is not None:
            conditions = await trafikinfo.get_road_conditions_by_road(client, str(arguments["roadNumber"]), limit)
        elif _location_argument(arguments):
            lat, lon, radius = validate_center(
                arguments.get("latitude"),
                arguments.get("longitude"),
                arguments.get("radiusKm", ROAD_CONDITIONS_DEFAULT_RADIUS_KM),
                LARGE_RADIUS_KM_RANGE,
            )
            conditions = await trafikinfo.get_road_conditions_by_location(client, lat, lon, radius, limit)
        else:
            raise ValidationError("road_conditions : indiquez roadNumber ou latitude/longitude.")
        result["roadConditions"] = conditions
        result["count"] = len(conditions)
        return result

    # parking
    if arguments.get("nearStation") is not None:
        station_name = str(arguments["nearStation"])
        station = _find_station(station_name)
        if station is not None:
            lon, lat = station["geometry"]["coordinates"][:2]
            radius = arguments.get("radiusKm", PARKING_DEFAULT_RADIUS_KM)
            lat, lon, radius = validate_center(lat, lon, radius)
            result["station"] = station.get("name")
            parking = await trafikinfo.get_parking_by_location(client, lat, lon, radius, limit)
        else:
            parking = await trafikinfo.get_parking_by_name(client, station_name, limit)
    elif _location_argument(arguments):
        lat, lon, radius = validate_center(
            arguments.get("latitude"),
            arguments.get("longitude"),
            arguments.get("radiusKm", PARKING_DEFAULT_RADIUS_KM),
        )
        parking = await trafikinfo.get_parking_by_location(client, lat, lon, radius, limit)
    else:
        raise ValidationError("parking : indiquez nearStation ou latitude/longitude.")
    result["parking"] = parking
    result["count"] = len(parking)
    return result


# ============================================================================
# DISPATCH
# ============================================================================

async def _execute_tool_logic(name: str, arguments: Any, client: httpx.AsyncClient) -> list[TextContent]:
    arguments = arguments or {}
    logger.info("Outil %s appelé", name)

    if name == "trafikverket_get_infrastructure":
        # Lecture disque + géométrie : hors de la boucle d'événements
        result = await asyncio.to_thread(get_infrastructure, arguments)
        return _json_response(result)

    elif name == "trafikverket_get_crossings":
        return _json_response(await get_crossings(arguments, client))

    elif name == "trafikverket_get_operations":
        return _json_response(await get_operations(arguments, client))

    elif name == "trafikverket_describe_data":
        return _json_response(await describe_data(arguments, client))

    raise ValidationError(f"Outil inconnu : {name}")


_RADIUS_SCHEMA = {"type": "number", "minimum": 1, "maximum": 50}
_LAT_SCHEMA = {"type": "number", "minimum": 55, "maximum": 69, "description": "Latitude WGS84 (Suède)"}
_LON_SCHEMA = {"type": "number", "minimum": 11, "maximum": 24, "description": "Longitude WGS84 (Suède)"}


@app.list_tools()
async def list_tools() -> list[Tool]:
    """Liste tous les outils disponibles"""
    return [
        Tool(
            name="trafikverket_get_infrastructure",
            description=(
                "Infrastructure ferroviaire suédoise (NJDB) : voies, tunnels, ponts, aiguillages, "
                "électrification, gares, triages, restrictions d'accès. Recherche par segment de voie "
                "(trackId), par cercle (latitude/longitude/radiusKm) ou par emprise (bbox)."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "queryType": {
                        "type": "string",
                        "enum": list(INFRASTRUCTURE_QUERY_TYPES),
                        "default": "all",
                    },
                    "trackId": {"type": "string", "description": "Id ou désignation de la voie (ex. 182)"},
                    "latitude": _LAT_SCHEMA,
                    "longitude": _LON_SCHEMA,
                    "radiusKm": {**_RADIUS_SCHEMA, "default": INFRASTRUCTURE_DEFAULT_RADIUS_KM},
                    "bbox": {"type": "string", "description": "minLon,minLat,maxLon,maxLat"},
                    "electrified": {"type": "boolean", "description": "Voies : filtre électrifiée ou non"},
                    "infrastructureManager": {"type": "string", "description": "Voies : gestionnaire (sous-chaîne)"},
                    "geometryDetail": {
                        "type": "string",
                        "enum": list(GEOMETRY_DETAILS),
                        "default": DEFAULT_GEOMETRY_DETAIL,
                        "description": "metadata (sans géométrie), corridor (simplifiée), precise (complète)",
                    },
                    "limit": {
                        "type": "integer",
                        "minimum": 1,
                        "maximum": INFRASTRUCTURE_MAX_LIMIT,
                        "default": DEFAULT_REGION_LIMIT,
                    },
                },
            },
        ),
        Tool(
            name="trafikverket_get_crossings",
            description="Passages à niveau (Trafikinfo) par voie, route ou position, filtrables par protection",
            inputSchema={
                "type": "object",
                "properties": {
                    "trackId": {"type": "string"},
                    "roadNumber": {"type": "string"},
                    "latitude": _LAT_SCHEMA,
                    "longitude": _LON_SCHEMA,
                    "radiusKm": {**_RADIUS_SCHEMA, "default": CROSSINGS_DEFAULT_RADIUS_KM},
                    "protectionType": {
                        "type": "string",
                        "enum": list(PROTECTION_KEYWORDS) + ["all"],
                        "default": "all",
                    },
                    "limit": {
                        "type": "integer",
                        "minimum": 1,
                        "maximum": CROSSINGS_MAX_LIMIT,
                        "default": CROSSINGS_DEFAULT_LIMIT,
                    },
                },
            },
        ),
        Tool(
            name="trafikverket_get_operations",
            description="Données d'exploitation temps réel : incidents, état des routes, parkings",
            inputSchema={
                "type": "object",
                "properties": {
                    "queryType": {"type": "string", "enum": list(OPERATIONS_QUERY_TYPES)},
                    "severity": {"type": "string", "enum": list(SEVERITIES), "description": "incidents"},
                    "roadNumber": {"type": "string", "description": "road_conditions"},
                    "nearStation": {"type": "string", "description": "parking : nom ou signature de gare"},
                    "latitude": _LAT_SCHEMA,
                    "longitude": _LON_SCHEMA,
                    "radiusKm": {
                        "type": "number",
                        "minimum": 1,
                        "maximum": 100,
                        "description": "défaut 25 (road_conditions, max 100) ou 10 (parking, max 50)",
                    },
                    "limit": {
                        "type": "integer",
                        "minimum": 1,
                        "maximum": OPERATIONS_MAX_LIMIT,
                        "default": OPERATIONS_DEFAULT_LIMIT,
                    },
                },
                "required": ["queryType"],
            },
        ),
        Tool(
            name="trafikverket_describe_data",
            description=(
                "Découverte des données : gestionnaires d'infrastructure, désignations de voies, "
                "codes de gares, numéros de routes, fraîcheur du jeu et du cache"
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "dataType": {"type": "string", "enum": list(DESCRIBE_DATA_TYPES)},
                    "nameFilter": {"type": "string"},
                    "limit": {
                        "type": "integer",
                        "minimum": 1,
                        "maximum": DESCRIBE_MAX_LIMIT,
                        "default": DESCRIBE_DEFAULT_LIMIT,
                    },
                },
                "required": ["dataType"],
            },
        ),
    ]


@app.call_tool()
async def call_tool(name: str, arguments: Any) -> list[TextContent]:
    """Exécute un outil"""
    try:
        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT) as client:
            return await _execute_tool_logic(name, arguments, client)
    except ValidationError as exc:
        return _error_response(str(exc), exc.code)
    except httpx.HTTPStatusError as exc:
        logger.warning("Erreur HTTP %s : %s", exc.response.status_code, exc.request.url)
        return _error_response(
            "HTTP error while calling external API",
            "UPSTREAM_API_ERROR",
            status_code=exc.response.status_code,
            detail=exc.response.text,
        )
    except httpx.HTTPError as exc:
        logger.warning("Erreur de communication : %s", exc)
        return _error_response(f"HTTP communication error: {exc}", "UPSTREAM_API_ERROR")
    except TrafikinfoError as exc:
        return _error_response(str(exc), "UPSTREAM_API_ERROR")
    except ValueError as exc:
        return _error_response(str(exc), "VALIDATION_ERROR")


def configure_logging(level: str = LOG_LEVEL) -> None:
    # stdout porte le transport MCP : journaux sur stderr
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        stream=sys.stderr,
    )


async def main():
    """Point d'entrée principal"""
    configure_logging()
    async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
        await app.run(
            read_stream,
            write_stream,
            app.create_initialization_options()
        )


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
