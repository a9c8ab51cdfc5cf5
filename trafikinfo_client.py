"""
Module pour accéder à l'API temps réel Trafikinfo (Trafikverket)
Supporte passages à niveau, situations (incidents), état des routes, parkings

Les requêtes sont des documents XML envoyés en POST :
<REQUEST>
  <LOGIN authenticationkey="..." />
  <QUERY objecttype="..." schemaversion="..." limit="...">
    <FILTER>
      <WITHIN name="Geometry.WGS84" shape="center" value="lon lat" radius="10000m" />
    </FILTER>
  </QUERY>
</REQUEST>
"""

import json
import os
import re
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional

import httpx
from shapely import wkt
from shapely.errors import ShapelyError
from shapely.geometry import mapping

from validation import ValidationError


class TrafikinfoError(RuntimeError):
    """Réponse Trafikinfo inexploitable (erreur renvoyée dans le corps)."""


# ----------------------------------------------------------------------------
# Filtres XML
# ----------------------------------------------------------------------------

def within_filter(longitude: float, latitude: float, radius_km: float) -> Dict[str, Any]:
    """Filtre géographique : cercle centré sur (lon, lat)"""
    return {
        "type": "WITHIN",
        "name": "Geometry.WGS84",
        "shape": "center",
        "value": f"{longitude} {latitude}",
        "radius": f"{radius_km * 1000:g}m",
    }


def eq_filter(name: str, value: Any) -> Dict[str, Any]:
    return {"type": "EQ", "name": name, "value": value}


def like_filter(name: str, pattern: str) -> Dict[str, Any]:
    """
    Filtre LIKE : l'API attend une expression régulière.
    Les jokers de style glob (*) sont convertis : *182* -> .*182.*
    Le reste du motif est échappé (noms contenant « ( » ou « + »).
    """
    value = ".*".join(re.escape(part) for part in pattern.split("*"))
    return {"type": "LIKE", "name": name, "value": value}


def or_filter(*children: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "OR", "children": list(children)}


def and_filter(*children: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "AND", "children": list(children)}


def _xml_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _append_filter(parent: ET.Element, flt: Dict[str, Any]) -> None:
    ftype = flt["type"]
    if ftype in ("OR", "AND"):
        children = flt.get("children") or []
        if not children:
            return
        node = ET.SubElement(parent, ftype)
        for child in children:
            _append_filter(node, child)
        return

    node = ET.SubElement(parent, ftype, name=flt.get("name", ""))
    if ftype == "WITHIN":
        node.set("shape", flt.get("shape", "center"))
        node.set("value", _xml_value(flt.get("value")))
        node.set("radius", flt.get("radius", "10000m"))
    else:
        node.set("value", _xml_value(flt.get("value")))


def build_request(api_key: str, queries: List[Dict[str, Any]]) -> str:
    """Construit le document XML d'une requête Trafikinfo (échappement géré par ElementTree)"""
    root = ET.Element("REQUEST")
    ET.SubElement(root, "LOGIN", authenticationkey=api_key)

    for q in queries:
        query = ET.SubElement(root, "QUERY", objecttype=q["objecttype"], schemaversion=q["schemaversion"])
        if q.get("limit"):
            query.set("limit", str(q["limit"]))
        if q.get("orderby"):
            query.set("orderby", q["orderby"])
        if q.get("lastmodified"):
            query.set("lastmodified", "true")

        filters = q.get("filters") or []
        if filters:
            filter_node = ET.SubElement(query, "FILTER")
            for flt in filters:
                _append_filter(filter_node, flt)

        for field in q.get("includes") or []:
            include = ET.SubElement(query, "INCLUDE")
            include.text = field

    return ET.tostring(root, encoding="unicode")


# ----------------------------------------------------------------------------
# Transformations (réponse brute -> format propre)
# ----------------------------------------------------------------------------

def parse_geometry(geo: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Géométrie WGS84 Trafikinfo -> GeoJSON.
    L'API renvoie du WKT ("POINT (18.05 59.33)") ; du GeoJSON texte est aussi accepté.
    """
    if not geo or not geo.get("WGS84"):
        return None

    text = geo["WGS84"].strip()
    try:
        if text.startswith("{"):
            return json.loads(text)
        geometry = mapping(wkt.loads(text))
    except (ValueError, ShapelyError):
        return None

    # mapping() renvoie des tuples : listes pour rester homogène avec le JSON
    return json.loads(json.dumps(geometry))


def _first_description(items: Optional[List[Dict[str, Any]]]) -> Optional[str]:
    if not items:
        return None
    return items[0].get("Description")


def transform_rail_crossing(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": raw.get("LevelCrossingId"),
        "geometry": parse_geometry(raw.get("Geometry")),
        "roadName": raw.get("RoadName"),
        "roadNameOfficial": raw.get("RoadNameOfficial"),
        "numberOfTracks": raw.get("NumberOfTracks"),
        "operatingMode": raw.get("OperatingMode"),
        "trackPortion": raw.get("TrackPortion"),
        "kilometer": raw.get("Kilometer"),
        "meter": raw.get("Meter"),
        "protectionBase": _first_description(raw.get("RoadProtectionBase")),
        "protectionAddition": _first_description(raw.get("RoadProtectionAddition")),
        "portalHeightLeft": raw.get("PortalHeightLeft"),
        "portalHeightRight": raw.get("PortalHeightRight"),
        "modifiedTime": raw.get("ModifiedTime"),
    }


def transform_situation(raw: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Une situation contient plusieurs déviations : une entrée par déviation"""
    incidents = []
    for dev in raw.get("Deviation") or []:
        geometry = dev.get("Geometry") or {}
        incidents.append({
            "id": dev.get("Id"),
            "header": dev.get("Header"),
            "description": dev.get("LocationDescriptor"),
            "messageType": dev.get("MessageType"),
            "messageCode": dev.get("MessageCode"),
            "roadNumber": dev.get("RoadNumber"),
            "affectedDirection": dev.get("AffectedDirection"),
            "startTime": dev.get("StartTime"),
            "endTime": dev.get("EndTime"),
            "validUntilFurtherNotice": dev.get("ValidUntilFurtherNotice"),
            "counties": dev.get("CountyNo"),
            "geometry": parse_geometry(geometry.get("Point")) or parse_geometry(geometry.get("Line")),
            "webLink": dev.get("WebLink"),
            "trafficRestrictionType": dev.get("TrafficRestrictionType"),
        })
    return incidents


def transform_road_condition(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": raw.get("Id"),
        "roadNumber": raw.get("RoadNumber"),
        "county": raw.get("County"),
        "countyNumber": raw.get("CountyNo"),
        "geometry": parse_geometry(raw.get("Geometry")),
        "condition": raw.get("Condition"),
        "conditionText": raw.get("ConditionText"),
        "roadTemperature": raw.get("RoadTemperature"),
        "airTemperature": raw.get("AirTemperature"),
        "humidity": raw.get("Humidity"),
        "windSpeed": raw.get("WindSpeed"),
        "measureTime": raw.get("MeasureTime"),
    }


def transform_parking(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": raw.get("Id"),
        "name": raw.get("Name"),
        "geometry": parse_geometry(raw.get("Geometry")),
        "operator": raw.get("OperatorName"),
        "usage": raw.get("Usage"),
        "numberOfSpaces": raw.get("NumberOfSpaces"),
        "photoUrl": raw.get("PhotoUrl"),
    }


def extract_results(response: Dict[str, Any], object_type: str) -> List[Dict[str, Any]]:
    """Résultats d'un objecttype dans RESPONSE.RESULT[0]"""
    results = (response.get("RESPONSE") or {}).get("RESULT") or []
    if not results:
        return []
    first = results[0]
    if "ERROR" in first:
        error = first["ERROR"]
        raise TrafikinfoError(f"Erreur Trafikinfo : {error.get('MESSAGE', error)}")
    return first.get(object_type) or []


# ----------------------------------------------------------------------------
# Filtres métier
# ----------------------------------------------------------------------------

PROTECTION_KEYWORDS = {
    "barriers": ("bom", "helbom", "halvbom"),
    "lights": ("ljus", "signal"),
    "signs": ("skylt", "märk", "oskyddad"),
}

HIGH_SEVERITY_TYPES = ("olycka", "vägarbete", "hinder", "avstängd")
MEDIUM_SEVERITY_TYPES = ("begränsad", "körfält", "varning")


def filter_crossings_by_protection(crossings: List[Dict[str, Any]], protection_type: str) -> List[Dict[str, Any]]:
    """Filtre par type de protection (mots-clés suédois dans la description)"""
    if protection_type == "all":
        return crossings
    keywords = PROTECTION_KEYWORDS[protection_type]

    filtered = []
    for crossing in crossings:
        protection = f"{crossing.get('protectionBase') or ''} {crossing.get('protectionAddition') or ''}".lower()
        if any(kw in protection for kw in keywords):
            filtered.append(crossing)
    return filtered


def filter_incidents_by_severity(incidents: List[Dict[str, Any]], severity: str) -> List[Dict[str, Any]]:
    """
    Classification par type de message :
    - high : accidents, travaux, obstacles, fermetures
    - medium : restrictions, voies réduites, avertissements (hors high)
    - low : tous les messages
    """
    def matches(incident: Dict[str, Any], types) -> bool:
        msg_type = (incident.get("messageType") or "").lower()
        restriction = (incident.get("trafficRestrictionType") or "").lower()
        return any(t in msg_type or t in restriction for t in types)

    if severity == "high":
        return [i for i in incidents if matches(i, HIGH_SEVERITY_TYPES)]
    if severity == "medium":
        return [
            i for i in incidents
            if matches(i, MEDIUM_SEVERITY_TYPES) and not matches(i, HIGH_SEVERITY_TYPES)
        ]
    return incidents


# ----------------------------------------------------------------------------
# Client
# ----------------------------------------------------------------------------

class TrafikinfoClient:
    """Client pour l'API Trafikinfo"""

    API_URL = "https://api.trafikinfo.trafikverket.se/v2/data.json"

    SCHEMA_VERSIONS = {
        "RailCrossing": "1.5",
        "Situation": "1.5",
        "RoadCondition": "1.2",
        "Parking": "1.0",
    }

    def __init__(self, api_key: Optional[str] = None):
        self._api_key = api_key

    @property
    def api_key(self) -> str:
        key = self._api_key or os.getenv("TRAFIKVERKET_API_KEY", "")
        if not key:
            raise ValidationError("La variable d'environnement TRAFIKVERKET_API_KEY n'est pas définie.")
        return key

    async def query(
        self,
        client: httpx.AsyncClient,
        object_type: str,
        limit: Optional[int] = None,
        filters: Optional[List[Dict[str, Any]]] = None,
    ) -> List[Dict[str, Any]]:
        """Exécute une requête et retourne les résultats bruts de l'objecttype"""
        body = build_request(self.api_key, [{
            "objecttype": object_type,
            "schemaversion": self.SCHEMA_VERSIONS[object_type],
            "limit": limit,
            "filters": filters or [],
        }])

        response = await client.post(
            self.API_URL,
            content=body.encode("utf-8"),
            headers={"Content-Type": "text/xml; charset=utf-8", "Accept": "application/json"},
        )
        response.raise_for_status()
        return extract_results(response.json(), object_type)

    # Passages à niveau

    async def _rail_crossings(self, client, filters, limit):
        results = await self.query(client, "RailCrossing", limit or 50, filters)
        return [transform_rail_crossing(r) for r in results if not r.get("Deleted")]

    async def get_level_crossings_by_track(self, client: httpx.AsyncClient, track_id: str, limit: Optional[int] = None):
        return await self._rail_crossings(client, [like_filter("TrackPortion", f"*{track_id}*")], limit)

    async def get_level_crossings_by_location(
        self,
        client: httpx.AsyncClient,
        latitude: float,
        longitude: float,
        radius_km: float,
        limit: Optional[int] = None,
    ):
        return await self._rail_crossings(client, [within_filter(longitude, latitude, radius_km)], limit)

    async def get_level_crossings_by_road(self, client: httpx.AsyncClient, road_number: str, limit: Optional[int] = None):
        return await self._rail_crossings(client, [like_filter("RoadName", f"*{road_number}*")], limit)

    # Situations

    async def get_train_messages(self, client: httpx.AsyncClient, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        situations = await self.query(client, "Situation", limit or 50)
        incidents = []
        for situation in situations:
            if situation.get("Deleted"):
                continue
            incidents.extend(transform_situation(situation))
        return incidents

    # État des routes

    async def get_road_conditions_by_location(
        self,
        client: httpx.AsyncClient,
        latitude: float,
        longitude: float,
        radius_km: float,
        limit: Optional[int] = None,
    ):
        results = await self.query(client, "RoadCondition", limit or 20, [within_filter(longitude, latitude, radius_km)])
        return [transform_road_condition(r) for r in results]

    async def get_road_conditions_by_road(self, client: httpx.AsyncClient, road_number: str, limit: Optional[int] = None):
        results = await self.query(client, "RoadCondition", limit or 20, [like_filter("RoadNumber", f"*{road_number}*")])
        return [transform_road_condition(r) for r in results]

    # Parkings

    async def get_parking_by_location(
        self,
        client: httpx.AsyncClient,
        latitude: float,
        longitude: float,
        radius_km: float,
        limit: Optional[int] = None,
    ):
        results = await self.query(client, "Parking", limit or 20, [within_filter(longitude, latitude, radius_km)])
        return [transform_parking(r) for r in results]

    async def get_parking_by_name(self, client: httpx.AsyncClient, name: str, limit: Optional[int] = None):
        results = await self.query(client, "Parking", limit or 20, [like_filter("Name", f"*{name}*")])
        return [transform_parking(r) for r in results]

    # Métadonnées

    async def get_road_numbers(self, client: httpx.AsyncClient) -> List[str]:
        """Numéros de routes distincts, triés"""
        results = await self.query(client, "RoadCondition", 1000)
        return sorted({r["RoadNumber"] for r in results if r.get("RoadNumber")})
