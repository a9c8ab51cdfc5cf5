"""
Chargement du jeu de données NJDB (Nationella Järnvägsdatabasen) depuis des fichiers JSON.

Les fichiers sont produits par lastkajen_sync.py. Si une synchronisation
échoue, le serveur continue avec la dernière version valide des fichiers.

Le jeu complet est rechargé d'un bloc toutes les 5 minutes (jamais de mise
à jour partielle).
"""

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional


logger = logging.getLogger(__name__)

DATA_DIR = Path(os.getenv("TRAFIKVERKET_DATA_DIR", Path.cwd() / "data"))

# Relecture périodique des fichiers (5 minutes)
RELOAD_SECONDS = 5 * 60

CATEGORY_FILES = {
    "tracks": "tracks.json",
    "tunnels": "tunnels.json",
    "bridges": "bridges.json",
    "switches": "switches.json",
    "electrification": "electrification.json",
    "stations": "stations.json",
    "yards": "yards.json",
    "access_restrictions": "access-restrictions.json",
}
METADATA_FILE = "metadata.json"
SYNC_STATUS_FILE = "sync-status.json"


class JsonDatasetProvider:
    """Fournisseur de données : un instantané complet par catégorie."""

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        reload_seconds: float = RELOAD_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.data_dir = Path(data_dir) if data_dir is not None else DATA_DIR
        self.reload_seconds = reload_seconds
        self._clock = clock
        self._snapshot: Optional[Dict[str, Any]] = None
        self._loaded_at: Optional[float] = None

    def _load_json_file(self, filename: str) -> Optional[Any]:
        path = self.data_dir / filename
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Impossible de charger %s : %s", path, exc)
            return None

    def _ensure_loaded(self) -> Dict[str, Any]:
        now = self._clock()
        if self._snapshot is not None and now - self._loaded_at < self.reload_seconds:
            return self._snapshot

        snapshot: Dict[str, Any] = {}
        for category, filename in CATEGORY_FILES.items():
            records = self._load_json_file(filename)
            if records is not None and not isinstance(records, list):
                logger.warning("%s ne contient pas une liste, ignoré", filename)
                records = None
            snapshot[category] = records or []

        snapshot["metadata"] = self._load_json_file(METADATA_FILE) or {}
        snapshot["sync_status"] = self._load_json_file(SYNC_STATUS_FILE)

        self._snapshot = snapshot
        self._loaded_at = now
        logger.info(
            "Jeu de données chargé depuis %s (%s)",
            self.data_dir,
            ", ".join(f"{c}={len(snapshot[c])}" for c in CATEGORY_FILES),
        )
        return snapshot

    def load_records(self, category: str) -> List[Dict[str, Any]]:
        if category not in CATEGORY_FILES:
            raise ValueError(f"Catégorie « {category} » inconnue.")
        return self._ensure_loaded()[category]

    def load_sync_metadata(self) -> Optional[Dict[str, Any]]:
        """Contenu de sync-status.json (lastSync, source, success, counts), ou None"""
        status = self._ensure_loaded()["sync_status"]
        return status if isinstance(status, dict) else None

    def load_metadata(self) -> Dict[str, Any]:
        """Gestionnaires d'infrastructure, désignations de voies, codes de gares"""
        metadata = self._ensure_loaded()["metadata"]
        if not isinstance(metadata, dict):
            metadata = {}
        return {
            "managers": metadata.get("managers", []),
            "trackDesignations": metadata.get("trackDesignations", []),
            "stationCodes": metadata.get("stationCodes", []),
        }

    def clear(self) -> None:
        """Force une relecture au prochain accès."""
        self._snapshot = None
        self._loaded_at = None
