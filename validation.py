"""
Validation des arguments d'outils (bbox, coordonnées, rayons, limites).

Toutes les erreurs sont levées AVANT tout accès aux données : une emprise
invalide est rejetée, jamais corrigée silencieusement.
"""

from __future__ import annotations

import math
import re
from typing import Any, Iterable, Optional, Tuple

from spatial_filter import BBox


# Emprise de la Suède (WGS84)
LATITUDE_RANGE = (55.0, 69.0)
LONGITUDE_RANGE = (11.0, 24.0)

RADIUS_KM_RANGE = (1.0, 50.0)
LARGE_RADIUS_KM_RANGE = (1.0, 100.0)

BBOX_PATTERN = re.compile(r"^[\d.-]+,[\d.-]+,[\d.-]+,[\d.-]+$")


class ValidationError(ValueError):
    """Arguments d'outil invalides."""

    code = "VALIDATION_ERROR"


class InvalidRegionError(ValidationError):
    """Emprise ou couple centre/rayon hors des bornes autorisées."""

    code = "INVALID_REGION"


def parse_bbox(bbox: str) -> BBox:
    """
    Parse "minLon,minLat,maxLon,maxLat" en BBox.

    Raises:
        InvalidRegionError: format incorrect ou min > max sur un axe
    """
    if not isinstance(bbox, str) or not BBOX_PATTERN.match(bbox.strip()):
        raise InvalidRegionError('Format de bbox invalide. Utilisez "minLon,minLat,maxLon,maxLat".')

    try:
        min_lon, min_lat, max_lon, max_lat = (float(part) for part in bbox.strip().split(","))
    except ValueError:
        raise InvalidRegionError('Format de bbox invalide. Utilisez "minLon,minLat,maxLon,maxLat".') from None

    if min_lon > max_lon or min_lat > max_lat:
        raise InvalidRegionError(
            f"Bbox incohérente : min doit être <= max sur chaque axe (reçu : {bbox})."
        )

    return BBox(min_lon=min_lon, min_lat=min_lat, max_lon=max_lon, max_lat=max_lat)


def validate_center(
    latitude: Any,
    longitude: Any,
    radius_km: Any,
    radius_range: Tuple[float, float] = RADIUS_KM_RANGE,
) -> Tuple[float, float, float]:
    """Vérifie un couple centre/rayon et retourne (lat, lon, rayon) en float."""
    lat = _require_number(latitude, "latitude", InvalidRegionError)
    lon = _require_number(longitude, "longitude", InvalidRegionError)
    radius = _require_number(radius_km, "radiusKm", InvalidRegionError)

    _check_range(lat, LATITUDE_RANGE, "latitude", InvalidRegionError)
    _check_range(lon, LONGITUDE_RANGE, "longitude", InvalidRegionError)
    _check_range(radius, radius_range, "radiusKm", InvalidRegionError)

    return lat, lon, radius


def validate_choice(value: Any, allowed: Iterable[str], name: str) -> str:
    allowed = tuple(allowed)
    if value not in allowed:
        raise ValidationError(f"{name} doit être parmi {list(allowed)} (reçu : {value!r}).")
    return value


def validate_limit(limit: Any, maximum: int, default: int) -> int:
    if limit is None:
        return default
    if isinstance(limit, bool) or not isinstance(limit, (int, float)) or int(limit) != limit:
        raise ValidationError(f"limit doit être un entier (reçu : {limit!r}).")
    limit = int(limit)
    if not 1 <= limit <= maximum:
        raise ValidationError(f"limit doit être compris entre 1 et {maximum} (reçu : {limit}).")
    return limit


def validate_optional_bool(value: Any, name: str) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    raise ValidationError(f"{name} doit être un booléen (reçu : {value!r}).")


def _require_number(value: Any, name: str, error_cls=ValidationError) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise error_cls(f"{name} doit être un nombre (reçu : {value!r}).")
    return float(value)


def _check_range(value: float, bounds: Tuple[float, float], name: str, error_cls=ValidationError) -> None:
    low, high = bounds
    if not low <= value <= high:
        raise error_cls(f"{name} doit être compris entre {low:g} et {high:g} (reçu : {value:g}).")
