"""
Module pour accéder au portail de téléchargement Lastkajen (Trafikverket)
Données NJDB en paquets (GeoPackage zippés)

Authentification :
- Jeton Bearer (LASTKAJEN_API_TOKEN) ou échange identifiant/mot de passe
- Chaque fichier se télécharge via un jeton de téléchargement à usage court
"""

import os
from typing import Any, Dict, List, Optional

import httpx


class LastkajenError(RuntimeError):
    """Réponse Lastkajen inexploitable ou authentification impossible."""


# Paquets NJDB utilisés par la synchronisation
RAILWAY_PACKAGE_IDS = {
    "railway_network": 10090,
    "railway_nodes": 10095,
}


class LastkajenClient:
    """Client pour l'API Lastkajen"""

    BASE_URL = "https://lastkajen.trafikverket.se/api"

    def __init__(self, token: Optional[str] = None):
        self._token = token or os.getenv("LASTKAJEN_API_TOKEN", "")

    @property
    def token(self) -> str:
        if not self._token:
            raise LastkajenError(
                "Aucun jeton Lastkajen : définissez LASTKAJEN_API_TOKEN ou appelez login()."
            )
        return self._token

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}", "Accept": "application/json"}

    async def login(
        self,
        client: httpx.AsyncClient,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> str:
        """Échange identifiant/mot de passe contre un jeton (valable ~24h)"""
        username = username or os.getenv("LASTKAJEN_USERNAME", "")
        password = password or os.getenv("LASTKAJEN_PASSWORD", "")
        if not username or not password:
            raise LastkajenError("LASTKAJEN_USERNAME et LASTKAJEN_PASSWORD sont requis pour se connecter.")

        response = await client.post(
            f"{self.BASE_URL}/Identity/Login",
            json={"UserName": username, "Password": password},
        )
        response.raise_for_status()
        data = response.json()

        token = data.get("access_token") or data.get("token")
        if not token:
            raise LastkajenError("Réponse de connexion Lastkajen sans jeton.")
        self._token = token
        return token

    async def get_published_data_packages(self, client: httpx.AsyncClient) -> List[Dict[str, Any]]:
        """Liste des paquets publiés (id, name, description, targetFolder)"""
        response = await client.get(
            f"{self.BASE_URL}/DataPackage/GetPublishedDataPackages",
            headers=self._headers(),
        )
        response.raise_for_status()
        return response.json()

    async def get_data_package_files(self, client: httpx.AsyncClient, package_id: int) -> List[Dict[str, Any]]:
        """Fichiers d'un paquet (name, size, dateTime)"""
        response = await client.get(
            f"{self.BASE_URL}/DataPackage/GetDataPackageFiles/{package_id}",
            headers=self._headers(),
        )
        response.raise_for_status()
        return response.json()

    async def get_download_token(self, client: httpx.AsyncClient, package_id: int, file_name: str) -> str:
        """Jeton de téléchargement d'un fichier (durée de vie ~60s)"""
        response = await client.get(
            f"{self.BASE_URL}/File/GetDataPackageDownloadToken",
            params={"id": package_id, "fileName": file_name},
            headers=self._headers(),
        )
        response.raise_for_status()
        data = response.json()
        token = data if isinstance(data, str) else data.get("token") or data.get("downloadToken")
        if not token:
            raise LastkajenError(f"Pas de jeton de téléchargement pour {file_name}.")
        return token

    async def download_package_file(self, client: httpx.AsyncClient, package_id: int, file_name: str) -> bytes:
        """Télécharge un fichier de paquet (zip) en deux temps : jeton puis contenu"""
        download_token = await self.get_download_token(client, package_id, file_name)
        response = await client.get(
            f"{self.BASE_URL}/File/GetDataPackageFile",
            params={"token": download_token},
        )
        response.raise_for_status()
        return response.content

    async def search_packages(self, client: httpx.AsyncClient, keywords: List[str]) -> List[Dict[str, Any]]:
        """Paquets dont le nom, la description ou le dossier contient un des mots-clés"""
        keywords_lower = [kw.lower() for kw in keywords]
        results = []
        for pkg in await self.get_published_data_packages(client):
            folder = (pkg.get("targetFolder") or {}).get("path", "")
            text = f"{pkg.get('name', '')} {pkg.get('description') or ''} {folder}".lower()
            if any(kw in text for kw in keywords_lower):
                results.append(pkg)
        return results
