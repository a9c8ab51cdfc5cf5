#!/usr/bin/env python3
"""
Synchronisation du jeu de données NJDB depuis Lastkajen.

Télécharge les GeoPackages (zippés), les lit avec GeoPandas, reprojette de
SWEREF99 TM (EPSG:3006) vers WGS84 et écrit les fichiers JSON lus par
data_loader.py :
- tracks.json, tunnels.json, bridges.json, stations.json (réseau ferré)
- switches.json (nœuds « junction »), yards.json, access-restrictions.json
- metadata.json, sync-status.json

En cas d'échec, les fichiers existants sont conservés et seul
sync-status.json signale l'erreur.

Usage :
    python lastkajen_sync.py
"""

from __future__ import annotations

import asyncio
import io
import json
import logging
import math
import os
import sys
import tempfile
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import geopandas as gpd
import httpx
from shapely.geometry import LineString, MultiLineString, Point
from shapely.geometry.base import BaseGeometry

from data_loader import CATEGORY_FILES, DATA_DIR, METADATA_FILE, SYNC_STATUS_FILE
from lastkajen_client import RAILWAY_PACKAGE_IDS, LastkajenClient, LastkajenError


logger = logging.getLogger(__name__)

SOURCE_CRS = "EPSG:3006"  # SWEREF99 TM
TARGET_CRS = "EPSG:4326"

NETWORK_FILE_PREFIX = "Järnvägsnät"
NODE_FILE = "TN_RAILWAY_NODE_gpkg.zip"
YARD_FILE = "TN_RAILWAY_YARDAREA_gpkg.zip"
RESTRICTION_FILE = "TN_RAILWAY_ACCESSRESTRICTION_gpkg.zip"

STANDARD_GAUGE_MM = 1435


# ----------------------------------------------------------------------------
# Lecture
# ----------------------------------------------------------------------------

def extract_geopackages(zip_bytes: bytes, target_dir: Path) -> List[Path]:
    """Décompresse une archive et retourne les fichiers .gpkg qu'elle contient"""
    target_dir.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(io.BytesIO(zip_bytes)) as zf:
        zf.extractall(target_dir)
    return sorted(target_dir.rglob("*.gpkg"))


def read_geopackage(path: Path, layer: Optional[str] = None) -> gpd.GeoDataFrame:
    gdf = gpd.read_file(path, layer=layer)
    gdf = gdf.dropna(subset=["geometry"])
    if gdf.crs is None:
        gdf = gdf.set_crs(SOURCE_CRS)
    return gdf


def to_wgs84(gdf: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    if gdf.crs is None:
        gdf = gdf.set_crs(SOURCE_CRS)
    return gdf.to_crs(TARGET_CRS)


# ----------------------------------------------------------------------------
# Conversion
# ----------------------------------------------------------------------------

def _text(row: Any, column: str) -> str:
    value = row.get(column)
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return ""
    text = str(value)
    return "" if text == "null" else text


def _number(row: Any, column: str) -> float:
    value = row.get(column)
    if value is None or isinstance(value, str):
        return 0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(number):
        return 0
    return int(number) if number.is_integer() else number


def _line_coords(geom: BaseGeometry) -> List[List[float]]:
    if isinstance(geom, LineString):
        parts = [geom]
    elif isinstance(geom, MultiLineString):
        parts = list(geom.geoms)
    else:
        return []
    return [[float(x), float(y)] for part in parts for x, y, *_ in part.coords]


def _point(geom: Point) -> Dict[str, Any]:
    return {"type": "Point", "coordinates": [float(geom.x), float(geom.y)]}


def _speed_limits(row: Any) -> Dict[str, Dict[str, float]]:
    """Vitesses par classe de véhicule (sens de circulation / contre-sens), non nulles seulement"""
    limits = {}
    for vehicle_class in ("A", "B", "C", "S"):
        with_traffic = _number(row, f"STH_{vehicle_class}_med")
        against = _number(row, f"STH_{vehicle_class}_mot")
        if with_traffic or against:
            limits[f"class{vehicle_class}"] = {"with": with_traffic, "against": against}
    return limits


OPTIONAL_TRACK_COLUMNS = {
    "lineCategory": "Linjekat",
    "maintenanceContact": "UHkontNam",
    "status": "Status",
    "kmFrom": "KmFr",
    "kmTo": "KmTi",
    "region": "Region",
    "municipality": "Kommun",
    "county": "Lan",
    "trackType": "SpTyp",
}


def convert_network(gdf: gpd.GeoDataFrame) -> Dict[str, List[Dict[str, Any]]]:
    """
    Réseau ferré (un enregistrement par élément) -> voies, tunnels, ponts, gares.

    Les voies sont agrégées par bandel (segment) : longueurs additionnées,
    coordonnées concaténées dans l'ordre de lecture.
    """
    gdf = to_wgs84(gdf)

    tracks: Dict[str, Dict[str, Any]] = {}
    tunnels: Dict[str, Dict[str, Any]] = {}
    bridges: Dict[str, Dict[str, Any]] = {}
    stations: Dict[str, Dict[str, Any]] = {}
    geometry_errors = 0

    for _, row in gdf.iterrows():
        coords = _line_coords(row.geometry)
        if not coords:
            geometry_errors += 1
            continue

        bandel = _text(row, "Bandel")
        element_id = _text(row, "ELEMENT_ID")
        segment_length = _number(row, "SEGMENT_LENGTH")

        if bandel:
            existing = tracks.get(bandel)
            if existing is not None:
                existing["length"] += segment_length
                existing["geometry"]["coordinates"].extend(coords)
            else:
                electrification = _text(row, "Elektrifi")
                track = {
                    "id": f"TRK-{bandel}",
                    "designation": bandel,
                    "name": _text(row, "Bandelnamn"),
                    "gauge": STANDARD_GAUGE_MM,
                    "speedLimit": _number(row, "STH_A_med"),
                    "electrified": electrification != "ej el",
                    "electrificationType": electrification,
                    "infrastructureManager": _text(row, "Infrafnam") or _text(row, "InfrafKod") or "Unknown",
                    "trackClass": "standard",
                    "numberOfTracks": 1,
                    "length": segment_length,
                    "geometry": {"type": "LineString", "coordinates": coords},
                }
                for key, column in OPTIONAL_TRACK_COLUMNS.items():
                    value = _text(row, column)
                    if value:
                        track[key] = value
                limits = _speed_limits(row)
                if limits:
                    track["speedLimits"] = limits
                tracks[bandel] = track

        # Tunnel / Bro : -1 signifie vrai dans le GeoPackage
        if _number(row, "Tunnel") == -1:
            name = _text(row, "Tunnelnam")
            key = name or element_id
            if key not in tunnels:
                tunnels[key] = {
                    "id": f"TUN-{len(tunnels) + 1}",
                    "name": name or "Unnamed Tunnel",
                    "trackId": bandel,
                    "length": segment_length,
                    "geometry": {"type": "LineString", "coordinates": coords},
                }

        if _number(row, "Bro") == -1:
            name = _text(row, "Bronamn")
            key = name or element_id
            if key not in bridges:
                bridges[key] = {
                    "id": f"BRG-{len(bridges) + 1}",
                    "name": name or "Unnamed Bridge",
                    "trackId": bandel,
                    "type": _text(row, "Brofunk") or "railway",
                    "length": segment_length,
                    "geometry": {"type": "LineString", "coordinates": coords},
                }

        station_name = _text(row, "PlNamn")
        if station_name and station_name not in stations:
            stations[station_name] = {
                "id": f"STA-{len(stations) + 1}",
                "name": station_name,
                "signature": _text(row, "Pl_Forb"),
                "type": "station",
                "geometry": {"type": "Point", "coordinates": coords[0]},
            }

    if geometry_errors:
        logger.warning("%d élément(s) sans géométrie linéaire ignoré(s)", geometry_errors)

    return {
        "tracks": list(tracks.values()),
        "tunnels": list(tunnels.values()),
        "bridges": list(bridges.values()),
        "stations": list(stations.values()),
    }


def convert_switches(gdf: gpd.GeoDataFrame) -> List[Dict[str, Any]]:
    """Nœuds INSPIRE « junction » = emplacements d'aiguillages"""
    if "formOfNode" in gdf.columns:
        gdf = gdf[gdf["formOfNode"] == "junction"]
    gdf = to_wgs84(gdf)

    switches = []
    for _, row in gdf.iterrows():
        if not isinstance(row.geometry, Point):
            continue
        switches.append({
            "id": f"SWT-{len(switches) + 1}",
            "type": "junction",
            "inspireId": _text(row, "inspireId"),
            "validFrom": _text(row, "validFrom"),
            "geometry": _point(row.geometry),
        })
    return switches


def convert_yards(gdf: gpd.GeoDataFrame) -> List[Dict[str, Any]]:
    """Zones de triage -> centroïde (calculé en projection métrique)"""
    if gdf.crs is None:
        gdf = gdf.set_crs(SOURCE_CRS)
    centroids = gdf.geometry.centroid.to_crs(TARGET_CRS)

    yards = []
    for (_, row), centroid in zip(gdf.iterrows(), centroids):
        if centroid is None or centroid.is_empty:
            continue
        yards.append({
            "id": f"YRD-{len(yards) + 1}",
            "name": _text(row, "geographicalName") or "Unnamed Yard",
            "inspireId": _text(row, "inspireId"),
            "validFrom": _text(row, "validFrom"),
            "geometry": _point(centroid),
        })
    return yards


RESTRICTION_TYPES = {
    "private": "private",
    "physically impossible": "physically_impossible",
}


def convert_access_restrictions(gdf: gpd.GeoDataFrame) -> List[Dict[str, Any]]:
    """Restrictions d'accès non publiques -> milieu de la ligne concernée"""
    if "restriction" in gdf.columns:
        gdf = gdf[gdf["restriction"] != "public access"]
    if gdf.crs is None:
        gdf = gdf.set_crs(SOURCE_CRS)
    midpoints = gdf.geometry.interpolate(0.5, normalized=True).to_crs(TARGET_CRS)

    restrictions = []
    for (_, row), midpoint in zip(gdf.iterrows(), midpoints):
        if midpoint is None or midpoint.is_empty:
            continue
        restrictions.append({
            "id": f"RST-{len(restrictions) + 1}",
            "restriction": RESTRICTION_TYPES.get(_text(row, "restriction"), "private"),
            "direction": _text(row, "applicableDirection"),
            "inspireId": _text(row, "inspireId"),
            "validFrom": _text(row, "validFrom"),
            "geometry": _point(midpoint),
        })
    return restrictions


def build_metadata(tracks: List[Dict[str, Any]], stations: List[Dict[str, Any]]) -> Dict[str, Any]:
    manager_names = list(dict.fromkeys(t["infrastructureManager"] for t in tracks if t.get("infrastructureManager")))
    return {
        "managers": [{"code": name[:3].upper(), "name": name} for name in manager_names],
        "trackDesignations": [t["designation"] for t in tracks],
        "stationCodes": [{"code": s.get("signature", ""), "name": s["name"]} for s in stations],
    }


def build_sync_status(
    counts: Dict[str, int],
    success: bool = True,
    source: str = "lastkajen",
    error: Optional[str] = None,
) -> Dict[str, Any]:
    status = {
        "lastSync": datetime.now(timezone.utc).isoformat(),
        "source": source,
        "success": success,
        "counts": counts,
    }
    if error:
        status["error"] = error
    return status


def build_failure_status(previous: Optional[Dict[str, Any]], error: str) -> Dict[str, Any]:
    """
    Statut après un échec : lastSync et counts restent ceux de la dernière
    synchronisation réussie (les fichiers de données n'ont pas changé).
    """
    previous = previous if isinstance(previous, dict) else {}
    status = {
        "source": previous.get("source", "lastkajen"),
        "success": False,
        "counts": previous.get("counts", {}),
        "lastAttempt": datetime.now(timezone.utc).isoformat(),
        "error": error,
    }
    if previous.get("lastSync"):
        status["lastSync"] = previous["lastSync"]
    return status


def _read_status(data_dir: Path) -> Optional[Dict[str, Any]]:
    path = data_dir / SYNC_STATUS_FILE
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError):
        return None


# ----------------------------------------------------------------------------
# Écriture
# ----------------------------------------------------------------------------

def write_json(data_dir: Path, filename: str, data: Any) -> None:
    path = data_dir / filename
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False, indent=2)
    logger.info("Écrit %s", path)


def write_dataset(data_dir: Path, datasets: Dict[str, List[Dict[str, Any]]]) -> Dict[str, int]:
    """Écrit les catégories présentes, puis metadata.json et sync-status.json"""
    data_dir.mkdir(parents=True, exist_ok=True)
    for category, records in datasets.items():
        write_json(data_dir, CATEGORY_FILES[category], records)

    counts = {category: len(records) for category, records in datasets.items()}
    if "tracks" in datasets:
        write_json(data_dir, METADATA_FILE, build_metadata(datasets["tracks"], datasets.get("stations", [])))
    write_json(data_dir, SYNC_STATUS_FILE, build_sync_status(counts))
    return counts


# ----------------------------------------------------------------------------
# Synchronisation complète
# ----------------------------------------------------------------------------

async def _download_gpkg(
    client: httpx.AsyncClient,
    lastkajen: LastkajenClient,
    package_id: int,
    file_name: str,
    work_dir: Path,
) -> Path:
    logger.info("Téléchargement %s (paquet %s)...", file_name, package_id)
    content = await lastkajen.download_package_file(client, package_id, file_name)
    logger.info("%.2f Mo téléchargés", len(content) / 1024 / 1024)
    gpkgs = extract_geopackages(content, work_dir / Path(file_name).stem)
    if not gpkgs:
        raise LastkajenError(f"Aucun fichier .gpkg dans {file_name}.")
    return gpkgs[0]


async def sync_from_lastkajen(data_dir: Path = DATA_DIR, lastkajen: Optional[LastkajenClient] = None) -> Dict[str, Any]:
    """Télécharge, convertit et écrit le jeu complet. Retourne le statut de synchronisation."""
    lastkajen = lastkajen or LastkajenClient()

    try:
        async with httpx.AsyncClient(timeout=300.0, follow_redirects=True) as client:
            if not os.getenv("LASTKAJEN_API_TOKEN"):
                await lastkajen.login(client)

            network_id = RAILWAY_PACKAGE_IDS["railway_network"]
            nodes_id = RAILWAY_PACKAGE_IDS["railway_nodes"]

            files = await lastkajen.get_data_package_files(client, network_id)
            network_file = next(
                (f["name"] for f in files if f.get("name", "").startswith(NETWORK_FILE_PREFIX)),
                None,
            )
            if network_file is None:
                raise LastkajenError(f"Fichier réseau introuvable dans le paquet {network_id}.")

            with tempfile.TemporaryDirectory() as tmpdir:
                work_dir = Path(tmpdir)
                network_path = await _download_gpkg(client, lastkajen, network_id, network_file, work_dir)
                nodes_path = await _download_gpkg(client, lastkajen, nodes_id, NODE_FILE, work_dir)
                yards_path = await _download_gpkg(client, lastkajen, nodes_id, YARD_FILE, work_dir)
                restrictions_path = await _download_gpkg(client, lastkajen, nodes_id, RESTRICTION_FILE, work_dir)

                datasets = convert_network(read_geopackage(network_path))
                datasets["switches"] = convert_switches(read_geopackage(nodes_path))
                datasets["yards"] = convert_yards(read_geopackage(yards_path))
                datasets["access_restrictions"] = convert_access_restrictions(read_geopackage(restrictions_path))

    except (httpx.HTTPError, LastkajenError, OSError, ValueError) as exc:
        logger.error("Synchronisation Lastkajen échouée : %s", exc)
        status = build_failure_status(_read_status(data_dir), str(exc))
        data_dir.mkdir(parents=True, exist_ok=True)
        write_json(data_dir, SYNC_STATUS_FILE, status)
        return status

    counts = write_dataset(data_dir, datasets)
    logger.info("Synchronisation terminée : %s", counts)
    return build_sync_status(counts)


def main() -> int:
    logging.basicConfig(
        level=os.getenv("TRAFIKVERKET_LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s [sync] %(message)s",
        stream=sys.stderr,
    )
    status = asyncio.run(sync_from_lastkajen())
    return 0 if status["success"] else 1


if __name__ == "__main__":
    sys.exit(main())
