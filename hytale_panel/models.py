from dataclasses import dataclass
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


@dataclass(frozen=True)
class SessionContext:
    server_id: str
    container_ref: str


class ServerConfig(BaseModel):
    java_xms: str = "4G"
    java_xmx: str = "8G"
    bind_addr: str = "0.0.0.0"
    auto_download: bool = True
    use_g1gc: bool = True
    extra_args: str = ""
    # Linux only; CasaOS and Windows hosts have no machine-id to mount
    use_machine_id: bool = False


class ServerConfigUpdate(BaseModel):
    java_xms: Optional[str] = Field(None, max_length=16)
    java_xmx: Optional[str] = Field(None, max_length=16)
    bind_addr: Optional[str] = Field(None, max_length=64)
    auto_download: Optional[bool] = None
    use_g1gc: Optional[bool] = None
    extra_args: Optional[str] = Field(None, max_length=512)
    use_machine_id: Optional[bool] = None


class ServerDefinition(BaseModel):
    id: str
    name: str
    port: int
    container_name: str
    config: ServerConfig
    created_at: str


class ServerInfo(ServerDefinition):
    status: str


class ServerCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=64)
    port: Optional[int] = Field(None, ge=1, le=65535)
    config: ServerConfigUpdate = Field(default_factory=ServerConfigUpdate)


class ServerUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=64)
    port: Optional[int] = Field(None, ge=1, le=65535)
    config: Optional[ServerConfigUpdate] = None


class ServerResponse(BaseModel):
    success: bool = True
    server: ServerInfo


class ServerListResponse(BaseModel):
    success: bool = True
    servers: list[ServerInfo]


class ComposeRequest(BaseModel):
    content: str = Field(..., min_length=1)


class ComposeResponse(BaseModel):
    success: bool = True
    content: str


class FileUploadResponse(BaseModel):
    success: bool
    file_name: str


class ActionResult(BaseModel):
    success: bool
    error: Optional[str] = None


class ContainerStatus(BaseModel):
    running: bool
    status: str
    started_at: Optional[str] = None
    health: Optional[str] = None
    error: Optional[str] = None


DownloadState = Literal[
    "starting", "auth-required", "output", "extracting", "complete", "done", "error"
]


class DownloadStatus(BaseModel):
    status: DownloadState
    message: str
    server_id: Optional[str] = None


class ServerFilesStatus(BaseModel):
    has_jar: bool = False
    has_assets: bool = False
    ready: bool = False


class FileEntry(BaseModel):
    name: str
    is_directory: bool
    size: Optional[int]
    permissions: str
    icon: str
    editable: bool


class InstalledMod(BaseModel):
    id: str
    provider_id: str = "local"
    project_id: Optional[str] = None
    project_slug: Optional[str] = None
    title: str
    icon_url: Optional[str] = None
    version_id: Optional[str] = None
    version_name: str = "Unknown"
    classification: str = "PLUGIN"
    file_name: str
    file_size: int = 0
    enabled: bool = True
    installed_at: str
    updated_at: str
    is_local: bool = False
    file_exists: bool = True


class ModLedger(BaseModel):
    version: int = 1
    mods: list[InstalledMod] = Field(default_factory=list)


class ModMetadata(BaseModel):
    provider_id: Optional[str] = None
    project_id: Optional[str] = None
    project_slug: Optional[str] = None
    title: str = Field(..., min_length=1)
    icon_url: Optional[str] = None
    version_id: Optional[str] = None
    version_name: str = Field(..., min_length=1)
    classification: Optional[str] = None
    file_name: Optional[str] = None


class ModUpdate(BaseModel):
    mod_id: str
    project_id: str
    title: str
    current_version: str
    latest_version: str
    latest_version_id: str
    latest_file_name: str


class CatalogVersion(BaseModel):
    id: str
    version: str
    downloads: int = 0
    game_version: str = ""
    release_date: str = ""
    file_size: int = 0
    file_name: str = ""


class CatalogProject(BaseModel):
    id: str
    slug: str
    title: str
    description: str = ""
    short_description: str = ""
    classification: str = "PLUGIN"
    author: str = "Unknown"
    downloads: int = 0
    rating: float = 0.0
    icon_url: Optional[str] = None
    versions: list[CatalogVersion] = Field(default_factory=list)
    latest_version: Optional[CatalogVersion] = None
    created_at: str = ""
    updated_at: str = ""


class CatalogSearchResult(BaseModel):
    projects: list[CatalogProject]
    total: int
    page: int
    page_size: int
    has_more: bool


class CatalogDownload(BaseModel):
    content: bytes
    file_name: Optional[str] = None


class UpdateMetadata(BaseModel):
    last_download_at: Optional[str] = None
    jar_size: Optional[int] = None
    jar_hash: Optional[str] = None
    assets_size: Optional[int] = None


class UpdateCheckResult(BaseModel):
    success: bool
    last_update: Optional[str] = None
    days_since_update: Optional[int] = None
    has_files: bool = False
    error: Optional[str] = None


class ClientMessage(BaseModel):
    event: str = Field(..., min_length=1)
    data: Any = None


class LogsMoreRequest(BaseModel):
    current_count: int = Field(0, ge=0)
    batch_size: int = Field(200, ge=1, le=5000)


class FileSaveRequest(BaseModel):
    path: str = Field(..., min_length=1)
    content: str
    create_backup: bool = False


class FileRenameRequest(BaseModel):
    old_path: str = Field(..., min_length=1)
    new_path: str = Field(..., min_length=1)


class ModSearchRequest(BaseModel):
    query: str = ""
    classification: Optional[str] = None
    page: int = Field(1, ge=1)
    page_size: int = Field(20, ge=1, le=100)
    sort: Optional[str] = None


class ModInstallRequest(BaseModel):
    project_id: str = Field(..., min_length=1)
    version_id: Optional[str] = None
    metadata: ModMetadata


class ModUpdateRequest(BaseModel):
    mod_id: str = Field(..., min_length=1)
    version_id: Optional[str] = None
    version_name: str = Field(..., min_length=1)
    file_name: Optional[str] = None


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=128)


class UserInfo(BaseModel):
    id: int
    username: str
    role: str


class AuthResponse(BaseModel):
    user: UserInfo
