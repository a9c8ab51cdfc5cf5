import asyncio

import httpx
import pytest

from lastkajen_client import LastkajenClient, LastkajenError


PACKAGES = [
    {"id": 10090, "name": "Järnvägsnät", "description": "NJDB grundegenskaper", "targetFolder": {"path": "/NJDB"}},
    {"id": 20001, "name": "Vägnät", "description": None, "targetFolder": {"path": "/NVDB"}},
]


def _run(handler, coro_factory):
    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await coro_factory(client)

    return asyncio.run(run())


def test_token_required(monkeypatch):
    monkeypatch.delenv("LASTKAJEN_API_TOKEN", raising=False)
    with pytest.raises(LastkajenError):
        LastkajenClient().token


def test_login_stores_token():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/Identity/Login"
        return httpx.Response(200, json={"access_token": "abc"})

    lastkajen = LastkajenClient()
    token = _run(handler, lambda client: lastkajen.login(client, "user", "secret"))
    assert token == "abc"
    assert lastkajen.token == "abc"


def test_login_without_token_in_response():
    def handler(request):
        return httpx.Response(200, json={})

    with pytest.raises(LastkajenError):
        _run(handler, lambda client: LastkajenClient().login(client, "user", "secret"))


def test_download_uses_short_lived_token():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        if request.url.path.endswith("GetDataPackageDownloadToken"):
            assert request.headers["Authorization"] == "Bearer tok"
            assert request.url.params["fileName"] == "nodes.zip"
            return httpx.Response(200, json={"token": "dl-1"})
        assert request.url.params["token"] == "dl-1"
        return httpx.Response(200, content=b"PK\x03\x04")

    content = _run(handler, lambda client: LastkajenClient("tok").download_package_file(client, 10095, "nodes.zip"))
    assert content == b"PK\x03\x04"
    assert seen == ["/api/File/GetDataPackageDownloadToken", "/api/File/GetDataPackageFile"]


def test_search_packages():
    def handler(request):
        return httpx.Response(200, json=PACKAGES)

    results = _run(handler, lambda client: LastkajenClient("tok").search_packages(client, ["njdb"]))
    assert [p["id"] for p in results] == [10090]


def test_package_files_http_error():
    def handler(request):
        return httpx.Response(403)

    with pytest.raises(httpx.HTTPStatusError):
        _run(handler, lambda client: LastkajenClient("tok").get_data_package_files(client, 10090))
