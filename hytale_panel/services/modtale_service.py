import logging
import re
from typing import Any, Optional

import httpx

from ..config import settings
from ..models import CatalogDownload, CatalogProject, CatalogSearchResult, CatalogVersion

SORT_FIELDS = {
    "relevance": "relevance",
    "downloads": "downloads",
    "updated": "updated",
    "newest": "newest",
    "created": "newest",
    "rating": "rating",
    "favorites": "favorites",
}

_DISPOSITION_FILENAME = re.compile(r"filename[^;=\n]*=((['\"]).*?\2|[^;\n]*)")


class ModtaleError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class ModtaleService:
    def __init__(
        self,
        api_key: Optional[str] = settings.modtale_api_key,
        base_url: str = settings.modtale_base_url,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(20.0, read=120.0)
        self._transport = transport
        self.log = logging.getLogger(__name__)

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        query: str = "",
        classification: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
        sort: Optional[str] = None,
    ) -> CatalogSearchResult:
        page = max(page, 1)
        params: dict[str, str] = {"page": str(page - 1), "size": str(page_size)}
        if query:
            params["search"] = query
        if classification:
            params["classification"] = classification
        if sort:
            params["sort"] = SORT_FIELDS.get(sort, "downloads")

        payload = await self._get_json("/projects", params)

        if isinstance(payload, dict) and "content" in payload:
            content = payload.get("content") or []
            return CatalogSearchResult(
                projects=[_project(item) for item in content],
                total=int(payload.get("totalElements") or len(content)),
                page=int(payload.get("number") or 0) + 1,
                page_size=int(payload.get("size") or page_size),
                has_more=not payload.get("last", True),
            )
        if isinstance(payload, list):
            return CatalogSearchResult(
                projects=[_project(item) for item in payload],
                total=len(payload),
                page=page,
                page_size=page_size,
                has_more=len(payload) >= page_size,
            )
        return CatalogSearchResult(projects=[], total=0, page=page, page_size=page_size, has_more=False)

    async def get_project(self, project_id: str) -> CatalogProject:
        payload = await self._get_json(f"/projects/{project_id}", {})
        if not isinstance(payload, dict):
            raise ModtaleError(502, "Modtale returned an unexpected project payload")
        return _project(payload)

    async def get_classifications(self) -> list[dict[str, str]]:
        payload = await self._get_json("/meta/classifications", {})
        return [{"id": str(item), "name": str(item).capitalize()} for item in payload or []]

    async def download_version(self, project_id: str, version: str) -> CatalogDownload:
        response = await self._request(f"/projects/{project_id}/versions/{version}/download", {})
        file_name = None
        disposition = response.headers.get("content-disposition")
        if disposition:
            match = _DISPOSITION_FILENAME.search(disposition)
            if match:
                file_name = match.group(1).replace('"', "").replace("'", "").strip() or None
        self.log.info("Downloaded %s bytes for %s@%s", len(response.content), project_id, version)
        return CatalogDownload(content=response.content, file_name=file_name)

    async def _get_json(self, path: str, params: dict[str, str]) -> Any:
        response = await self._request(path, params)
        try:
            return response.json()
        except ValueError as exc:
            raise ModtaleError(502, f"Modtale returned invalid JSON for {path}") from exc

    async def _request(self, path: str, params: dict[str, str]) -> httpx.Response:
        if not self.api_key:
            raise ModtaleError(503, "Modtale API key not configured")

        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport, follow_redirects=True
            ) as client:
                response = await client.get(
                    url, params=params, headers={"X-MODTALE-KEY": self.api_key}
                )
        except httpx.RequestError as exc:
            raise ModtaleError(502, f"Modtale request failed: {exc}") from exc

        if response.status_code >= 400:
            raise ModtaleError(response.status_code, _error_message(response))
        return response


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    text = response.text[:200]
    return text or f"HTTP {response.status_code}"


def _version(raw: dict[str, Any]) -> CatalogVersion:
    game_versions = raw.get("gameVersions") or []
    return CatalogVersion(
        id=str(raw.get("id") or ""),
        version=str(raw.get("version") or raw.get("versionNumber") or ""),
        downloads=int(raw.get("downloadCount") or raw.get("downloads") or 0),
        game_version=str(raw.get("gameVersion") or (game_versions[0] if game_versions else "")),
        release_date=str(raw.get("createdAt") or raw.get("releaseDate") or ""),
        file_size=int(raw.get("fileSize") or raw.get("size") or 0),
        file_name=str(raw.get("fileName") or raw.get("file") or ""),
    )


def _project(raw: dict[str, Any]) -> CatalogProject:
    versions = [_version(item) for item in raw.get("versions") or [] if isinstance(item, dict)]
    author = raw.get("author")
    if isinstance(author, dict):
        author = author.get("displayName") or author.get("username")
    description = str(raw.get("description") or "")
    return CatalogProject(
        id=str(raw.get("id") or ""),
        slug=str(raw.get("slug") or raw.get("id") or ""),
        title=str(raw.get("title") or raw.get("name") or ""),
        description=description,
        short_description=str(raw.get("shortDescription") or description[:200]),
        classification=raw.get("classification") or "PLUGIN",
        author=author or "Unknown",
        downloads=int(raw.get("downloadCount") or raw.get("downloads") or 0),
        rating=float(raw.get("rating") or raw.get("averageRating") or 0),
        icon_url=raw.get("imageUrl") or raw.get("iconUrl"),
        versions=versions,
        latest_version=versions[0] if versions else None,
        created_at=str(raw.get("createdAt") or ""),
        updated_at=str(raw.get("updatedAt") or ""),
    )
