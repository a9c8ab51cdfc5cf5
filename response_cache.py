#!/usr/bin/env python3
"""
Cache mémoire des résultats bruts de requêtes d'infrastructure.

Architecture :
- Clé = type de requête + paramètres (ex: "segment:182", "tracks:bbox:...")
- Valeur = résultat BRUT (pleine précision, avant réduction de géométrie)
- Durée de vie 24h par entrée, pas d'éviction par capacité
- La réduction de géométrie est appliquée à chaque appel, jamais cachée :
  une seule entrée sert les trois niveaux de détail

Concurrence : deux requêtes identiques simultanées peuvent calculer et écrire
la même clé ; la dernière écriture gagne (valeurs déterministes).
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple


logger = logging.getLogger(__name__)

# Durée de vie des entrées (24 heures) : les données d'infrastructure changent rarement
CACHE_TTL_SECONDS = 24 * 3600


class ResultCache:
    """Cache clé/valeur avec TTL et horloge injectable (tests déterministes)."""

    def __init__(self, ttl_seconds: float = CACHE_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}

    def get(self, key: str) -> Optional[Any]:
        """Valeur fraîche, ou None si absente ou expirée (l'entrée expirée n'est pas supprimée)."""
        entry = self._entries.get(key)
        if entry is None:
            return None

        value, inserted_at = entry
        if self._clock() > inserted_at + self.ttl_seconds:
            logger.debug("Entrée expirée : %s", key)
            return None
        return value

    def set(self, key: str, value: Any) -> None:
        self._entries[key] = (value, self._clock())

    def clear(self) -> None:
        """Vide le cache (action administrative)."""
        self._entries.clear()

    def status(self) -> Dict[str, Any]:
        """Nombre d'entrées et horodatage de la plus ancienne"""
        now = self._clock()
        oldest_key = None
        oldest_at = None
        fresh = 0
        for key, (_, inserted_at) in self._entries.items():
            if now <= inserted_at + self.ttl_seconds:
                fresh += 1
            if oldest_at is None or inserted_at < oldest_at:
                oldest_at = inserted_at
                oldest_key = key

        return {
            "entries": len(self._entries),
            "fresh_entries": fresh,
            "oldest_entry": oldest_key,
            "oldest_entry_at": (
                datetime.fromtimestamp(oldest_at, tz=timezone.utc).isoformat() if oldest_at is not None else None
            ),
            "ttl_hours": self.ttl_seconds / 3600,
        }

    def __len__(self) -> int:
        return len(self._entries)
