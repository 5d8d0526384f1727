import asyncio

import httpx
import pytest

from hytale_panel.services.modtale_service import ModtaleError, ModtaleService

PROJECT = {
    "id": "p-1",
    "slug": "better-chat",
    "title": "Better Chat",
    "description": "Chat formatting for Hytale servers",
    "classification": "PLUGIN",
    "author": {"username": "builder"},
    "downloadCount": 1200,
    "imageUrl": "https://cdn.modtale.net/p-1.png",
    "versions": [
        {"id": "v-2", "versionNumber": "2.0.0", "fileName": "better-chat-2.0.0.jar", "gameVersions": ["1.0"]},
        {"id": "v-1", "versionNumber": "1.0.0", "fileName": "better-chat-1.0.0.jar"},
    ],
}


def service_with(handler, api_key="secret-key"):
    return ModtaleService(
        api_key=api_key,
        base_url="https://api.modtale.test/api/v1",
        transport=httpx.MockTransport(handler),
    )


def test_search_translates_paging():
    seen = {}

    def handler(request):
        seen["params"] = dict(request.url.params)
        seen["key"] = request.headers.get("X-MODTALE-KEY")
        seen["path"] = request.url.path
        return httpx.Response(
            200,
            json={"content": [PROJECT], "totalElements": 41, "number": 1, "size": 20, "last": False},
        )

    result = asyncio.run(service_with(handler).search(query="chat", page=2, sort="updated"))

    assert seen["path"] == "/api/v1/projects"
    assert seen["key"] == "secret-key"
    assert seen["params"] == {"page": "1", "size": "20", "search": "chat", "sort": "updated"}
    assert result.page == 2
    assert result.total == 41
    assert result.has_more is True
    [project] = result.projects
    assert project.author == "builder"
    assert project.latest_version.id == "v-2"
    assert project.latest_version.version == "2.0.0"
    assert project.latest_version.game_version == "1.0"


def test_search_accepts_plain_list():
    def handler(request):
        return httpx.Response(200, json=[PROJECT])

    result = asyncio.run(service_with(handler).search(page_size=1))

    assert result.total == 1
    assert result.has_more is True


def test_missing_key_fails_without_request():
    def handler(request):
        raise AssertionError("no request expected")

    service = service_with(handler, api_key=None)

    assert service.is_configured() is False
    with pytest.raises(ModtaleError) as excinfo:
        asyncio.run(service.get_project("p-1"))
    assert excinfo.value.status_code == 503


def test_error_body_message_is_surfaced():
    def handler(request):
        return httpx.Response(404, json={"message": "Project not found"})

    with pytest.raises(ModtaleError) as excinfo:
        asyncio.run(service_with(handler).get_project("nope"))

    assert excinfo.value.status_code == 404
    assert excinfo.value.message == "Project not found"


def test_transport_failure_is_bad_gateway():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ModtaleError) as excinfo:
        asyncio.run(service_with(handler).get_classifications())

    assert excinfo.value.status_code == 502


def test_download_reads_file_name_from_disposition():
    def handler(request):
        assert request.url.path == "/api/v1/projects/p-1/versions/2.0.0/download"
        return httpx.Response(
            200,
            content=b"PK\x03\x04",
            headers={"Content-Disposition": 'attachment; filename="better-chat-2.0.0.jar"'},
        )

    download = asyncio.run(service_with(handler).download_version("p-1", "2.0.0"))

    assert download.content == b"PK\x03\x04"
    assert download.file_name == "better-chat-2.0.0.jar"


def test_classifications():
    def handler(request):
        return httpx.Response(200, json=["PLUGIN", "MODPACK"])

    result = asyncio.run(service_with(handler).get_classifications())

    assert result == [{"id": "PLUGIN", "name": "Plugin"}, {"id": "MODPACK", "name": "Modpack"}]
