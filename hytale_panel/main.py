import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import (
    Depends,
    FastAPI,
    File,
    Form,
    HTTPException,
    Query,
    Request,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from .auth import ANONYMOUS_USER, AuthService
from .config import settings
from .errors import ServiceError
from .models import (
    ActionResult,
    AuthResponse,
    ClientMessage,
    ComposeRequest,
    ComposeResponse,
    FileUploadResponse,
    LoginRequest,
    ServerCreateRequest,
    ServerListResponse,
    ServerResponse,
    ServerUpdateRequest,
    UserInfo,
)
from .services.container_service import ContainerService
from .services.downloader_service import DownloadOrchestrator
from .services.file_service import FileService, iter_archive
from .services.mod_service import ContainerModStorage, LocalModStorage, ModManager, ModStorage
from .services.modtale_service import ModtaleError, ModtaleService
from .services.registry_service import ServerRegistry
from .services.session_service import ServerSession
from .services.updater_service import UpdateOrchestrator

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("hytale-panel")

auth = AuthService()
registry = ServerRegistry()
containers = ContainerService()
files = FileService(registry.server_data_dir)
catalog = ModtaleService()
downloader = DownloadOrchestrator(containers)


async def _check_files(server_id: str):
    return await asyncio.to_thread(files.check_server_files, server_id)


updater = UpdateOrchestrator(containers, downloader, _check_files)


def _mod_storage() -> ModStorage:
    if settings.mods_storage == "local":
        return LocalModStorage(registry.server_data_dir)
    if settings.mods_storage != "container":
        logger.warning("Unknown MODS_STORAGE %r, using container storage", settings.mods_storage)
    return ContainerModStorage(containers)


mods = ModManager(_mod_storage(), catalog)


@asynccontextmanager
async def lifespan(app: FastAPI):
    os.makedirs(settings.data_root, exist_ok=True)
    auth.init_db()
    auth.sync_owner()
    if not catalog.is_configured():
        logger.info("No MODTALE_API_KEY configured; mod catalog features are disabled.")
    yield


app = FastAPI(title="Hytale Server Panel", lifespan=lifespan)


@app.exception_handler(ServiceError)
def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(ModtaleError)
def modtale_error_handler(request: Request, exc: ModtaleError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def require_user(request: Request) -> UserInfo:
    user = auth.get_user_from_request(request)
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


@app.get("/panel-config")
def panel_config() -> dict[str, Any]:
    return {"auth_disabled": auth.disabled, "mods_configured": catalog.is_configured()}


@app.post("/auth/login", response_model=AuthResponse)
def login(request: LoginRequest) -> JSONResponse:
    if auth.disabled:
        return JSONResponse(content=AuthResponse(user=ANONYMOUS_USER).model_dump())
    user = auth.authenticate(request.username, request.password)
    if user is None:
        logger.info("Failed login for %s", request.username)
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token, expires = auth.create_session(user.id)
    response = JSONResponse(content=AuthResponse(user=user).model_dump())
    response.set_cookie(
        auth.cookie_name,
        token,
        httponly=True,
        samesite="lax",
        secure=settings.auth_cookie_secure,
        expires=expires,
    )
    return response


@app.post("/auth/logout")
def logout(request: Request) -> JSONResponse:
    token = request.cookies.get(auth.cookie_name)
    if token:
        auth.delete_session(token)
    response = JSONResponse(content={"success": True})
    response.delete_cookie(auth.cookie_name)
    return response


@app.get("/auth/me", response_model=AuthResponse)
def me(user: UserInfo = Depends(require_user)) -> AuthResponse:
    return AuthResponse(user=user)


@app.get("/api/servers", response_model=ServerListResponse)
def list_servers(user: UserInfo = Depends(require_user)) -> ServerListResponse:
    return ServerListResponse(servers=registry.list_server_info())


@app.post("/api/servers", response_model=ServerResponse)
def create_server(
    request: ServerCreateRequest, user: UserInfo = Depends(require_user)
) -> ServerResponse:
    server = registry.create_server(request)
    return ServerResponse(server=registry.to_info(server))


@app.get("/api/servers/{server_id}", response_model=ServerResponse)
def get_server(server_id: str, user: UserInfo = Depends(require_user)) -> ServerResponse:
    return ServerResponse(server=registry.to_info(registry.get_server(server_id)))


@app.put("/api/servers/{server_id}", response_model=ServerResponse)
def update_server(
    server_id: str, request: ServerUpdateRequest, user: UserInfo = Depends(require_user)
) -> ServerResponse:
    server = registry.update_server(server_id, request)
    return ServerResponse(server=registry.to_info(server))


@app.delete("/api/servers/{server_id}", response_model=ActionResult)
def delete_server(
    server_id: str,
    remove_data: bool = Query(True),
    user: UserInfo = Depends(require_user),
) -> ActionResult:
    registry.delete_server(server_id, remove_data=remove_data)
    return ActionResult(success=True)


@app.post("/api/servers/{server_id}/start", response_model=ActionResult)
def start_server(server_id: str, user: UserInfo = Depends(require_user)) -> ActionResult:
    registry.start_server(server_id)
    return ActionResult(success=True)


@app.post("/api/servers/{server_id}/stop", response_model=ActionResult)
def stop_server(server_id: str, user: UserInfo = Depends(require_user)) -> ActionResult:
    registry.stop_server(server_id)
    return ActionResult(success=True)


@app.post("/api/servers/{server_id}/restart", response_model=ActionResult)
def restart_server(server_id: str, user: UserInfo = Depends(require_user)) -> ActionResult:
    registry.restart_server(server_id)
    return ActionResult(success=True)


@app.get("/api/servers/{server_id}/compose", response_model=ComposeResponse)
def get_compose(server_id: str, user: UserInfo = Depends(require_user)) -> ComposeResponse:
    return ComposeResponse(content=registry.get_compose(server_id))


@app.put("/api/servers/{server_id}/compose", response_model=ComposeResponse)
def save_compose(
    server_id: str, request: ComposeRequest, user: UserInfo = Depends(require_user)
) -> ComposeResponse:
    registry.save_compose(server_id, request.content)
    return ComposeResponse(content=request.content)


@app.post("/api/servers/{server_id}/compose/regenerate", response_model=ComposeResponse)
def regenerate_compose(server_id: str, user: UserInfo = Depends(require_user)) -> ComposeResponse:
    return ComposeResponse(content=registry.regenerate_compose(server_id))


@app.post("/api/servers/{server_id}/files/upload", response_model=FileUploadResponse)
def upload_file(
    server_id: str,
    file: UploadFile = File(...),
    target_dir: str = Form("/"),
    user: UserInfo = Depends(require_user),
) -> FileUploadResponse:
    registry.get_server(server_id)
    try:
        name = files.save_upload(
            server_id, target_dir, file.filename or "", file.file, settings.max_upload_bytes
        )
    finally:
        file.file.close()
    return FileUploadResponse(success=True, file_name=name)


@app.get("/api/servers/{server_id}/files/download")
def download_file(
    server_id: str, path: str = Query(""), user: UserInfo = Depends(require_user)
) -> StreamingResponse:
    registry.get_server(server_id)
    name, archive = files.archive(server_id, path)
    return StreamingResponse(
        iter_archive(archive),
        media_type="application/x-tar",
        headers={"Content-Disposition": f'attachment; filename="{name}.tar"'},
    )


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    user = auth.get_user_from_request(websocket)
    if user is None:
        await websocket.close(code=1008)
        return

    await websocket.accept()

    async def emit(event: str, data: Any) -> None:
        await websocket.send_json({"event": event, "data": jsonable_encoder(data)})

    session = ServerSession(
        emit,
        registry=registry,
        containers=containers,
        files=files,
        mods=mods,
        catalog=catalog,
        downloader=downloader,
        updater=updater,
    )
    session.open()
    logger.info("Client connected: %s", user.username)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = ClientMessage.model_validate_json(raw)
            except ValidationError:
                await emit("error", {"error": "Malformed message"})
                continue
            session.handle(message.event, message.data)
    except WebSocketDisconnect:
        logger.info("Client disconnected: %s", user.username)
    finally:
        await session.close()


def run() -> None:
    uvicorn.run(app, host="0.0.0.0", port=settings.panel_port, log_level=settings.log_level.lower())
