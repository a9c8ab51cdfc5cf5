"""
Filtrage spatial des enregistrements d'infrastructure (sans index persistant).

Le jeu de données tient en mémoire (quelques milliers d'enregistrements) :
un parcours linéaire avec des tests peu coûteux suffit.

Limites connues :
- Pas de gestion de l'antiméridien ni des pôles (zone d'usage : 55-69°N, 11-24°E).
- L'intersection polyligne/bbox teste uniquement les sommets.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Sequence

from geometry_utils import simplify_path


# ~111 km par degré de latitude
KM_PER_DEGREE = 111

# ~0.005° = ~500m aux latitudes suédoises
DEFAULT_PROXIMITY_THRESHOLD = 0.005

# 0.01° = ~1km : réduit une voie de ~10^4 à ~10^2 segments
PROXIMITY_SIMPLIFICATION_TOLERANCE = 0.01


@dataclass(frozen=True)
class BBox:
    """Emprise WGS84 en degrés : min_lon, min_lat, max_lon, max_lat."""

    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float

    def cache_key(self) -> str:
        return f"{self.min_lon},{self.min_lat},{self.max_lon},{self.max_lat}"

    def to_list(self) -> List[float]:
        return [self.min_lon, self.min_lat, self.max_lon, self.max_lat]


def point_in_bbox(point: Sequence[float], bbox: BBox) -> bool:
    """Test d'inclusion (bornes comprises) sur chaque axe indépendamment."""
    lon, lat = point[0], point[1]
    return bbox.min_lon <= lon <= bbox.max_lon and bbox.min_lat <= lat <= bbox.max_lat


def bbox_from_center(center: Sequence[float], radius_km: float) -> BBox:
    """
    Emprise carrée approchée autour de center = (lon, lat).

    Latitude : 1/111 degré par km.
    Longitude : corrigée par cos(latitude) (convergence des méridiens).
    """
    lon, lat = center[0], center[1]
    lat_deg_per_km = 1 / KM_PER_DEGREE
    lon_deg_per_km = 1 / (KM_PER_DEGREE * math.cos(lat * math.pi / 180))

    lat_delta = radius_km * lat_deg_per_km
    lon_delta = radius_km * lon_deg_per_km

    return BBox(
        min_lon=lon - lon_delta,
        min_lat=lat - lat_delta,
        max_lon=lon + lon_delta,
        max_lat=lat + lat_delta,
    )


def geometry_intersects_bbox(geometry: Dict[str, Any], bbox: BBox) -> bool:
    """
    Point : inclusion simple. LineString : vrai si AU MOINS UN sommet est dans l'emprise.

    Une ligne qui traverse l'emprise sans y poser de sommet n'est pas retenue.
    """
    if geometry.get("type") == "Point":
        return point_in_bbox(geometry["coordinates"], bbox)
    return any(point_in_bbox(p, bbox) for p in geometry.get("coordinates", []))


def point_to_segment_distance(
    point: Sequence[float],
    seg_start: Sequence[float],
    seg_end: Sequence[float],
) -> float:
    """Distance (degrés) au point le plus proche du segment, projection bornée à [0, 1]."""
    px, py = point[0], point[1]
    x1, y1 = seg_start[0], seg_start[1]
    x2, y2 = seg_end[0], seg_end[1]

    dx = x2 - x1
    dy = y2 - y1
    len_sq = dx * dx + dy * dy

    if len_sq == 0:
        return math.sqrt((px - x1) ** 2 + (py - y1) ** 2)

    t = max(0.0, min(1.0, ((px - x1) * dx + (py - y1) * dy) / len_sq))
    closest_x = x1 + t * dx
    closest_y = y1 + t * dy

    return math.sqrt((px - closest_x) ** 2 + (py - closest_y) ** 2)


def point_to_line_distance(point: Sequence[float], line_coords: Sequence[Sequence[float]]) -> float:
    """Distance minimale d'un point aux segments consécutifs d'une polyligne."""
    if not line_coords:
        return math.inf
    if len(line_coords) == 1:
        only = line_coords[0]
        return math.sqrt((point[0] - only[0]) ** 2 + (point[1] - only[1]) ** 2)

    min_dist = math.inf
    for i in range(len(line_coords) - 1):
        dist = point_to_segment_distance(point, line_coords[i], line_coords[i + 1])
        if dist < min_dist:
            min_dist = dist
    return min_dist


def is_near_polyline(
    point: Sequence[float],
    line_coords: Sequence[Sequence[float]],
    threshold: float = DEFAULT_PROXIMITY_THRESHOLD,
) -> bool:
    return point_to_line_distance(point, line_coords) <= threshold


def simplify_for_proximity(line_coords: Sequence[Sequence[float]]) -> List[Sequence[float]]:
    """À appeler UNE fois par voie avant de tester de nombreux points contre elle."""
    return simplify_path(line_coords, PROXIMITY_SIMPLIFICATION_TOLERANCE)


def associate_by_proximity(
    candidates: Iterable[Dict[str, Any]],
    parent_coords: Sequence[Sequence[float]],
    threshold: float = DEFAULT_PROXIMITY_THRESHOLD,
    presimplified: bool = False,
) -> List[Dict[str, Any]]:
    """
    Rattache des enregistrements ponctuels à une voie par proximité.

    Utilisé quand les données source n'ont pas de référence fiable à la voie
    (gares, aiguillages, triages, restrictions d'accès).

    Args:
        candidates: Enregistrements à géométrie Point
        parent_coords: Coordonnées de la voie
        threshold: Distance max en degrés
        presimplified: True si parent_coords sort déjà de simplify_for_proximity()

    Returns:
        Candidats à moins de `threshold` de la voie, dans l'ordre d'origine
    """
    corridor = parent_coords if presimplified else simplify_for_proximity(parent_coords)
    return [
        record for record in candidates
        if is_near_polyline(record["geometry"]["coordinates"], corridor, threshold)
    ]
