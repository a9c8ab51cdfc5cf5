"""
Moteur de requêtes d'infrastructure ferroviaire (par segment de voie ou par emprise).

Flux :
1. Résultat brut (pleine précision) lu depuis le cache, ou calculé
   (filtre spatial / rattachement) puis mis en cache
2. Limite appliquée AVANT la réduction de géométrie (étape la plus coûteuse)
3. Réduction au niveau de détail demandé, à chaque appel

Une seule implémentation générique, paramétrée par un descripteur par catégorie.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional, Protocol, Sequence

from geometry_utils import (
    DEFAULT_GEOMETRY_DETAIL,
    SHAPE_PATH,
    SHAPE_POINT,
    SHAPE_STRUCTURE,
    MalformedGeometryError,
    apply_geometry_detail,
    check_geometry,
)
from response_cache import ResultCache
from spatial_filter import (
    DEFAULT_PROXIMITY_THRESHOLD,
    BBox,
    associate_by_proximity,
    geometry_intersects_bbox,
    simplify_for_proximity,
)


logger = logging.getLogger(__name__)

ASSOCIATION_OWNER = "owner"
ASSOCIATION_FOREIGN_KEY = "foreign_key"
ASSOCIATION_PROXIMITY = "proximity"

DEFAULT_REGION_LIMIT = 100

LINE = frozenset({"LineString"})
POINT = frozenset({"Point"})


class DatasetProvider(Protocol):
    def load_records(self, category: str) -> List[Dict[str, Any]]: ...

    def load_sync_metadata(self) -> Optional[Dict[str, Any]]: ...


@dataclass(frozen=True)
class CategoryDescriptor:
    """Comment charger, rattacher et réduire une catégorie d'entités."""

    name: str
    result_key: str
    shape_kind: str
    geometry_types: FrozenSet[str]
    association: str
    foreign_key: Optional[str] = None


CATEGORIES = (
    CategoryDescriptor("tracks", "tracks", SHAPE_PATH, LINE, ASSOCIATION_OWNER),
    CategoryDescriptor("tunnels", "tunnels", SHAPE_STRUCTURE, LINE, ASSOCIATION_FOREIGN_KEY, "trackId"),
    CategoryDescriptor(
        "bridges", "bridges", SHAPE_STRUCTURE, frozenset({"LineString", "Point"}), ASSOCIATION_FOREIGN_KEY, "trackId"
    ),
    CategoryDescriptor("switches", "switches", SHAPE_POINT, POINT, ASSOCIATION_PROXIMITY),
    CategoryDescriptor(
        "electrification", "electrification", SHAPE_PATH, LINE, ASSOCIATION_FOREIGN_KEY, "trackId"
    ),
    CategoryDescriptor("stations", "stations", SHAPE_POINT, POINT, ASSOCIATION_PROXIMITY),
    CategoryDescriptor("yards", "yards", SHAPE_POINT, POINT, ASSOCIATION_PROXIMITY),
    CategoryDescriptor("access_restrictions", "accessRestrictions", SHAPE_POINT, POINT, ASSOCIATION_PROXIMITY),
)
CATEGORY_BY_NAME = {descriptor.name: descriptor for descriptor in CATEGORIES}
CATEGORY_NAMES = tuple(CATEGORY_BY_NAME)


class InfrastructureQueryEngine:
    def __init__(
        self,
        provider: DatasetProvider,
        cache: Optional[ResultCache] = None,
        proximity_threshold: float = DEFAULT_PROXIMITY_THRESHOLD,
    ):
        self.provider = provider
        self.cache = cache if cache is not None else ResultCache()
        self.proximity_threshold = proximity_threshold
        self.skipped_records: Counter = Counter()

    # ------------------------------------------------------------------
    # Requêtes
    # ------------------------------------------------------------------

    def get_segment_infrastructure(
        self,
        track_id: str,
        detail: str = DEFAULT_GEOMETRY_DETAIL,
        limit: Optional[int] = None,
        categories: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        """
        Toute l'infrastructure d'un segment de voie.

        La voie est trouvée par id ou désignation. Tunnels, ponts et sections
        électrifiées sont rattachés par leur trackId ; aiguillages, gares,
        triages et restrictions par proximité géométrique avec la voie.

        `limit` s'applique à chaque liste avant la réduction ; `categories`
        restreint les listes retournées (toutes par défaut).

        Aucun résultat n'est pas une erreur : track=None et listes vides.
        """
        key = f"segment:{track_id}"
        raw = self.cache.get(key)
        if raw is None:
            logger.debug("Cache manquant : %s", key)
            raw = self._compute_segment(track_id)
            self.cache.set(key, raw)

        owner = raw["track"]
        result: Dict[str, Any] = {
            "trackId": track_id,
            "track": self._reduce(owner, CATEGORY_BY_NAME["tracks"], detail) if owner is not None else None,
        }
        wanted = {self._descriptor(name).name for name in categories} if categories is not None else None
        for descriptor in CATEGORIES[1:]:
            if wanted is not None and descriptor.name not in wanted:
                continue
            records = raw[descriptor.result_key]
            selected = records if limit is None else records[:limit]
            result[descriptor.result_key] = [self._reduce(record, descriptor, detail) for record in selected]
        return result

    def get_by_region(
        self,
        category: str,
        bbox: BBox,
        limit: Optional[int] = DEFAULT_REGION_LIMIT,
        detail: str = DEFAULT_GEOMETRY_DETAIL,
    ) -> List[Dict[str, Any]]:
        """Enregistrements d'une catégorie dont la géométrie touche l'emprise."""
        descriptor = self._descriptor(category)
        key = f"{descriptor.name}:bbox:{bbox.cache_key()}"
        matches = self.cache.get(key)
        if matches is None:
            logger.debug("Cache manquant : %s", key)
            matches = [
                record for record in self._valid_records(descriptor)
                if geometry_intersects_bbox(record["geometry"], bbox)
            ]
            self.cache.set(key, matches)

        selected = matches if limit is None else matches[:limit]
        return [self._reduce(record, descriptor, detail) for record in selected]

    def get_region_infrastructure(
        self,
        bbox: BBox,
        limit: Optional[int] = DEFAULT_REGION_LIMIT,
        detail: str = DEFAULT_GEOMETRY_DETAIL,
        categories: Optional[Sequence[str]] = None,
    ) -> Dict[str, List[Dict[str, Any]]]:
        """get_by_region() pour plusieurs catégories, limite appliquée par catégorie."""
        names = categories if categories is not None else CATEGORY_NAMES
        return {
            self._descriptor(name).result_key: self.get_by_region(name, bbox, limit, detail)
            for name in names
        }

    # ------------------------------------------------------------------
    # Fraîcheur, métadonnées, administration
    # ------------------------------------------------------------------

    def last_sync(self) -> Optional[str]:
        status = self.provider.load_sync_metadata()
        return status.get("lastSync") if status else None

    def get_metadata(self) -> Dict[str, Any]:
        """Métadonnées de découverte, déduites des enregistrements si metadata.json manque"""
        load_metadata = getattr(self.provider, "load_metadata", None)
        metadata = load_metadata() if load_metadata is not None else {}

        tracks = self.provider.load_records("tracks")
        stations = self.provider.load_records("stations")

        managers = metadata.get("managers") or [
            {"name": name} for name in dict.fromkeys(
                t["infrastructureManager"] for t in tracks if t.get("infrastructureManager")
            )
        ]
        designations = metadata.get("trackDesignations") or list(dict.fromkeys(
            str(t.get("designation") or t.get("id")) for t in tracks
        ))
        station_codes = metadata.get("stationCodes") or [
            {"code": s.get("signature", ""), "name": s.get("name", "")} for s in stations if s.get("name")
        ]
        return {"managers": managers, "trackDesignations": designations, "stationCodes": station_codes}

    def cache_status(self) -> Dict[str, Any]:
        status = self.cache.status()
        status["skipped_records"] = dict(self.skipped_records)
        return status

    def clear_cache(self) -> None:
        self.cache.clear()

    # ------------------------------------------------------------------
    # Interne
    # ------------------------------------------------------------------

    def _compute_segment(self, track_id: str) -> Dict[str, Any]:
        tracks = self._valid_records(CATEGORY_BY_NAME["tracks"])
        owner = next(
            (t for t in tracks if _as_key(t.get("id")) == track_id or _as_key(t.get("designation")) == track_id),
            None,
        )

        # La clé étrangère peut viser l'id ou la désignation de la voie
        keys = {track_id}
        corridor = None
        if owner is not None:
            keys.update(k for k in (_as_key(owner.get("id")), _as_key(owner.get("designation"))) if k)
            corridor = simplify_for_proximity(owner["geometry"]["coordinates"])

        raw: Dict[str, Any] = {"track": owner}
        for descriptor in CATEGORIES[1:]:
            records = self._valid_records(descriptor)
            if descriptor.association == ASSOCIATION_FOREIGN_KEY:
                matched = [r for r in records if _as_key(r.get(descriptor.foreign_key)) in keys]
            elif corridor is not None:
                matched = associate_by_proximity(records, corridor, self.proximity_threshold, presimplified=True)
            else:
                matched = []
            raw[descriptor.result_key] = matched
        return raw

    def _valid_records(self, descriptor: CategoryDescriptor) -> List[Dict[str, Any]]:
        """Enregistrements à géométrie exploitable ; les autres sont journalisés et ignorés."""
        valid = []
        skipped = 0
        for record in self.provider.load_records(descriptor.name):
            try:
                check_geometry(record.get("geometry") if isinstance(record, dict) else None,
                               descriptor.geometry_types)
            except MalformedGeometryError as exc:
                skipped += 1
                record_id = record.get("id") if isinstance(record, dict) else None
                logger.warning("%s %s ignoré : %s", descriptor.name, record_id, exc)
                continue
            valid.append(record)

        if skipped:
            self.skipped_records[descriptor.name] += skipped
            logger.warning("%d enregistrement(s) %s ignoré(s) (géométrie invalide)", skipped, descriptor.name)
        return valid

    @staticmethod
    def _reduce(record: Dict[str, Any], descriptor: CategoryDescriptor, detail: str) -> Dict[str, Any]:
        return apply_geometry_detail(record, detail, descriptor.shape_kind)

    @staticmethod
    def _descriptor(category: str) -> CategoryDescriptor:
        try:
            return CATEGORY_BY_NAME[category]
        except KeyError:
            raise ValueError(f"Catégorie « {category} » inconnue. Valeurs : {', '.join(CATEGORY_NAMES)}.") from None


def _as_key(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)
