"""
Réduction de géométrie pour les réponses MCP (voies, tunnels, ponts, etc.)
Évite de saturer le contexte de l'agent avec des dizaines de milliers de coordonnées.

Trois niveaux de détail :
- metadata : aucune géométrie, seulement les attributs
- corridor : tracé simplifié (Douglas-Peucker, ~500m) et précision tronquée
- precise  : géométrie d'origine, coordonnées intactes

Notes :
- Les distances sont calculées dans le plan (lon, lat) considéré euclidien.
  Approximation acceptable aux tolérances utilisées (0.005°-0.01°) en Suède.
"""

from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List, Optional, Sequence


GEOMETRY_DETAILS = ("metadata", "corridor", "precise")
DEFAULT_GEOMETRY_DETAIL = "corridor"

# ~0.005° = ~500m aux latitudes suédoises (50-100 points pour une voie typique)
DEFAULT_TOLERANCE = 0.005

# 6 décimales = ~0.1m
DEFAULT_PRECISION = 6

# Rôle géométrique d'une catégorie d'entités
SHAPE_PATH = "path"            # voies, sections électrifiées
SHAPE_STRUCTURE = "structure"  # tunnels, ponts (courts)
SHAPE_POINT = "point"          # aiguillages, gares, triages, restrictions
SHAPE_KINDS = {SHAPE_PATH, SHAPE_STRUCTURE, SHAPE_POINT}


class MalformedGeometryError(ValueError):
    """Géométrie absente, vide ou d'un type inattendu."""


def perpendicular_distance(point: Sequence[float], line_start: Sequence[float], line_end: Sequence[float]) -> float:
    """Distance perpendiculaire d'un point à la droite (line_start, line_end)."""
    x, y = point[0], point[1]
    x1, y1 = line_start[0], line_start[1]
    x2, y2 = line_end[0], line_end[1]

    line_length_sq = (x2 - x1) ** 2 + (y2 - y1) ** 2

    # Droite dégénérée en un point
    if line_length_sq == 0:
        return math.sqrt((x - x1) ** 2 + (y - y1) ** 2)

    numerator = abs((y2 - y1) * x - (x2 - x1) * y + x2 * y1 - y2 * x1)
    return numerator / math.sqrt(line_length_sq)


def simplify_path(coords: Sequence[Sequence[float]], tolerance: float) -> List[Sequence[float]]:
    """
    Simplification Douglas-Peucker d'une polyligne.

    Garde le point le plus éloigné de la corde (premier, dernier) s'il dépasse
    la tolérance, puis recommence sur les deux moitiés. Sinon, la sous-séquence
    est réduite à ses deux extrémités.

    Args:
        coords: Liste ordonnée de [lon, lat]
        tolerance: Tolérance en degrés (>= 0)

    Returns:
        Sous-séquence de coords (mêmes objets points), extrémités toujours incluses
    """
    if tolerance < 0:
        raise ValueError(f"La tolérance doit être positive (reçu : {tolerance}).")

    if len(coords) <= 2:
        return list(coords)

    keep = [False] * len(coords)
    keep[0] = keep[-1] = True

    # Pile explicite plutôt que récursion : les voies dépassent 10^4 points
    stack = [(0, len(coords) - 1)]
    while stack:
        start, end = stack.pop()
        if end - start < 2:
            continue

        max_dist = 0.0
        max_index = start
        for i in range(start + 1, end):
            dist = perpendicular_distance(coords[i], coords[start], coords[end])
            if dist > max_dist:
                max_dist = dist
                max_index = i

        if max_dist > tolerance:
            keep[max_index] = True
            stack.append((start, max_index))
            stack.append((max_index, end))

    return [point for point, kept in zip(coords, keep) if kept]


def truncate_precision(coords: Iterable[Sequence[float]], decimals: int = DEFAULT_PRECISION) -> List[List[float]]:
    """Arrondit chaque coordonnée à `decimals` décimales (réduit la taille JSON)."""
    return [[round(point[0], decimals), round(point[1], decimals)] for point in coords]


def check_geometry(geometry: Any, allowed_types: Iterable[str]) -> Dict[str, Any]:
    """
    Vérifie qu'une géométrie GeoJSON est exploitable.

    Raises:
        MalformedGeometryError: géométrie nulle, vide, ou de type non attendu
    """
    if not isinstance(geometry, dict):
        raise MalformedGeometryError("Géométrie absente.")

    geom_type = geometry.get("type")
    allowed = set(allowed_types)
    if geom_type not in allowed:
        raise MalformedGeometryError(
            f"Type de géométrie « {geom_type} » inattendu (attendu : {', '.join(sorted(allowed))})."
        )

    coords = geometry.get("coordinates")
    if geom_type == "Point":
        if not _is_position(coords):
            raise MalformedGeometryError("Point sans coordonnées valides.")
    elif geom_type == "LineString":
        if not isinstance(coords, list) or not coords:
            raise MalformedGeometryError("LineString vide.")
        if not all(_is_position(p) for p in coords):
            raise MalformedGeometryError("LineString contenant des positions invalides.")
    else:
        raise MalformedGeometryError(f"Type de géométrie non géré : {geom_type}")

    return geometry


def _is_position(value: Any) -> bool:
    if not isinstance(value, (list, tuple)) or len(value) < 2:
        return False
    return all(
        isinstance(c, (int, float)) and not isinstance(c, bool) and math.isfinite(c)
        for c in value[:2]
    )


def reduce_to_detail(
    geometry: Dict[str, Any],
    detail: str,
    shape_kind: str,
    tolerance: float = DEFAULT_TOLERANCE,
) -> Optional[Dict[str, Any]]:
    """
    Transforme une géométrie selon le niveau de détail demandé.

    - metadata : None (pas de champ geometry)
    - precise : géométrie d'origine, sans troncature
    - corridor :
        * path : Douglas-Peucker puis troncature de précision
        * structure : premier et dernier point (tunnels, ponts courts)
        * point : inchangé
    """
    if detail not in GEOMETRY_DETAILS:
        raise ValueError(f"Niveau de détail « {detail} » inconnu. Valeurs : {', '.join(GEOMETRY_DETAILS)}.")
    if shape_kind not in SHAPE_KINDS:
        raise ValueError(f"Type de forme « {shape_kind} » inconnu.")

    if detail == "metadata":
        return None
    if detail == "precise":
        return geometry

    # Un pont peut être un Point : jamais modifié
    if geometry.get("type") == "Point" or shape_kind == SHAPE_POINT:
        return geometry

    coords = geometry.get("coordinates", [])

    if shape_kind == SHAPE_PATH:
        return {
            "type": "LineString",
            "coordinates": truncate_precision(simplify_path(coords, tolerance)),
        }

    # Structure courte : la forme intérieure n'apporte rien
    if len(coords) <= 2:
        return geometry
    return {
        "type": "LineString",
        "coordinates": [coords[0], coords[-1]],
    }


def apply_geometry_detail(record: Dict[str, Any], detail: str, shape_kind: str) -> Dict[str, Any]:
    """Copie d'un enregistrement avec la géométrie réduite (ou retirée en metadata)."""
    result = {key: value for key, value in record.items() if key != "geometry"}
    geometry = reduce_to_detail(record["geometry"], detail, shape_kind)
    if geometry is not None:
        result["geometry"] = geometry
    return result
