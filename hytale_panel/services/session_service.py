import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from ..config import settings
from ..errors import NotFoundError, ServiceError
from ..models import (
    ActionResult,
    DownloadStatus,
    FileRenameRequest,
    FileSaveRequest,
    LogsMoreRequest,
    ModInstallRequest,
    ModSearchRequest,
    ModUpdateRequest,
    ServerFilesStatus,
    SessionContext,
)
from .container_service import ContainerService, OutputStream, decode_log_chunk
from .downloader_service import DownloadOrchestrator
from .file_service import FileService
from .mod_service import ModManager
from .modtale_service import ModtaleError, ModtaleService
from .registry_service import ServerRegistry
from .updater_service import UpdateOrchestrator

NO_SERVER_SELECTED = "No server selected"
RECONNECT_TAIL = 50

Emit = Callable[[str, Any], Awaitable[None]]


class SessionState(str, enum.Enum):
    UNBOUND = "unbound"
    BINDING = "binding"
    BOUND = "bound"


_TRANSITIONS = {
    SessionState.UNBOUND: {SessionState.BINDING},
    SessionState.BINDING: {SessionState.BOUND, SessionState.UNBOUND},
    SessionState.BOUND: {SessionState.UNBOUND},
}


class InvalidTransition(RuntimeError):
    pass


def _failure(data: Any, message: str) -> dict[str, Any]:
    return {"success": False, "error": message}


def _action_failure(action: str) -> Callable[[Any, str], dict[str, Any]]:
    return lambda data, message: {"action": action, "success": False, "error": message}


def _command_failure(data: Any, message: str) -> dict[str, Any]:
    command = data.get("command") if isinstance(data, dict) else data
    return {"cmd": command, "success": False, "error": message}


def _download_failure(data: Any, message: str) -> dict[str, Any]:
    return DownloadStatus(status="error", message=message).model_dump()


def _history_failure(data: Any, message: str) -> dict[str, Any]:
    return {"logs": [], "initial": False, "error": message}


def _join_failure(data: Any, message: str) -> dict[str, Any]:
    return {"error": message}


@dataclass(frozen=True)
class Route:
    handler: Callable[..., Awaitable[Any]]
    # Event carrying the handler's return value and any failure
    event: str
    failure: Callable[[Any, str], dict[str, Any]] = _failure
    bound: bool = True


class ServerSession:
    """One client connection bound to at most one managed server.

    Requests arrive through :meth:`handle`; everything pushed back to the client goes
    through the ``emit`` callback as ``(event, payload)``. Join and leave are serialized,
    other requests run concurrently.
    """

    def __init__(
        self,
        emit: Emit,
        registry: ServerRegistry,
        containers: ContainerService,
        files: FileService,
        mods: ModManager,
        catalog: ModtaleService,
        downloader: DownloadOrchestrator,
        updater: UpdateOrchestrator,
        status_interval: float = settings.status_interval_seconds,
        reconnect_delay: float = settings.reconnect_delay_seconds,
        history_lines: int = settings.log_history_lines,
    ) -> None:
        self._emit = emit
        self.registry = registry
        self.containers = containers
        self.files = files
        self.mods = mods
        self.catalog = catalog
        self.downloader = downloader
        self.updater = updater
        self.status_interval = status_interval
        self.reconnect_delay = reconnect_delay
        self.history_lines = history_lines

        self.state = SessionState.UNBOUND
        self.context: Optional[SessionContext] = None
        self.closed = False
        self._binding_lock = asyncio.Lock()
        self._log_stream: Optional[OutputStream] = None
        self._log_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._deferred: set[asyncio.Task] = set()
        self._requests: set[asyncio.Task] = set()
        self.log = logging.getLogger(__name__)

        self._routes: dict[str, Route] = {
            "server:join": Route(self._join, "server:join-error", _join_failure, bound=False),
            "server:leave": Route(self._leave, "error", bound=False),
            "command": Route(self._command, "command-result", _command_failure),
            "download": Route(self._download, "download-status", _download_failure),
            "start": Route(self._start, "action-status", _action_failure("start")),
            "stop": Route(self._stop, "action-status", _action_failure("stop")),
            "restart": Route(self._restart, "action-status", _action_failure("restart")),
            "wipe": Route(self._wipe, "action-status", _action_failure("wipe")),
            "check-files": Route(self._check_files, "error"),
            "logs:more": Route(self._logs_more, "logs:history", _history_failure),
            "files:list": Route(self._files_list, "files:list-result"),
            "files:read": Route(self._files_read, "files:read-result"),
            "files:save": Route(self._files_save, "files:save-result"),
            "files:mkdir": Route(self._files_mkdir, "files:mkdir-result"),
            "files:delete": Route(self._files_delete, "files:delete-result"),
            "files:rename": Route(self._files_rename, "files:rename-result"),
            "mods:list": Route(self._mods_list, "mods:list-result"),
            "mods:search": Route(self._mods_search, "mods:search-result", bound=False),
            "mods:get": Route(self._mods_get, "mods:get-result", bound=False),
            "mods:install": Route(self._mods_install, "mods:install-result"),
            "mods:uninstall": Route(self._mods_uninstall, "mods:uninstall-result"),
            "mods:enable": Route(self._mods_enable, "mods:enable-result"),
            "mods:disable": Route(self._mods_disable, "mods:disable-result"),
            "mods:check-config": Route(self._mods_check_config, "mods:config-status", bound=False),
            "mods:classifications": Route(
                self._mods_classifications, "mods:classifications-result", bound=False
            ),
            "mods:check-updates": Route(self._mods_check_updates, "mods:check-updates-result"),
            "mods:update": Route(self._mods_update, "mods:update-result"),
            "update:check": Route(self._update_check, "update:check-result"),
            "update:apply": Route(self._update_apply, "update:apply-result"),
        }

    # Connection lifecycle

    def open(self) -> None:
        if self._poll_task is None:
            self._poll_task = asyncio.create_task(self._poll_status())

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        pending = [task for task in (self._poll_task, *self._deferred, *self._requests) if task]
        for task in pending:
            task.cancel()
        self._poll_task = None
        self._unbind()
        await asyncio.gather(*pending, return_exceptions=True)
        self.log.info("Session closed")

    def handle(self, event: str, data: Any = None) -> Optional[asyncio.Task]:
        """Schedule one client request; returns the task running it."""
        if self.closed:
            return None
        task = asyncio.create_task(self.dispatch(event, data))
        self._requests.add(task)
        task.add_done_callback(self._requests.discard)
        return task

    async def dispatch(self, event: str, data: Any = None) -> None:
        route = self._routes.get(event)
        if route is None:
            await self._send("error", {"error": f"Unknown event: {event}"})
            return

        if event in ("server:join", "server:leave"):
            async with self._binding_lock:
                await self._run(event, route, data, None)
            return

        ctx = self.context
        if route.bound and ctx is None:
            await self._send(route.event, route.failure(data, NO_SERVER_SELECTED))
            return
        await self._run(event, route, data, ctx)

    async def _run(self, event: str, route: Route, data: Any, ctx: Optional[SessionContext]) -> None:
        try:
            result = await route.handler(ctx, data)
        except (ServiceError, ModtaleError) as exc:
            self.log.warning("%s failed: %s", event, exc.message)
            await self._send(route.event, route.failure(data, exc.message))
            return
        except ValidationError as exc:
            message = f"Invalid request: {exc.errors()[0].get('msg', 'bad payload')}"
            await self._send(route.event, route.failure(data, message))
            return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.log.exception("Unexpected error handling %s", event)
            await self._send(route.event, route.failure(data, str(exc) or exc.__class__.__name__))
            return
        if result is not None:
            await self._send(route.event, result)

    # State

    def _transition(self, target: SessionState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransition(f"Cannot move from {self.state.value} to {target.value}")
        self.state = target

    def _unbind(self) -> None:
        previous = self.context
        self.context = None
        try:
            for task in list(self._deferred):
                task.cancel()
            self._close_log_stream()
        finally:
            if self.state is not SessionState.UNBOUND:
                self._transition(SessionState.UNBOUND)
        if previous is not None:
            self.log.info("Left server %s", previous.server_id)

    async def _join(self, ctx: Optional[SessionContext], data: Any) -> None:
        server_id = _text(data, "server_id")
        self._unbind()
        self._transition(SessionState.BINDING)
        try:
            server = await asyncio.to_thread(self.registry.get_server, server_id)
        except NotFoundError:
            self._abort_binding()
            await self._send("server:join-error", {"error": "Server not found"})
            return
        except BaseException:
            self._abort_binding()
            raise

        bound = SessionContext(server_id=server.id, container_ref=server.container_name)
        self.context = bound
        self._transition(SessionState.BOUND)
        self.log.info("Joined server %s (%s)", server.name, server.id)

        status = await self.containers.get_status(bound.container_ref)
        await self._send("status", status.model_dump())
        if status.running:
            await self._push_readiness(bound)
            try:
                history = await self.containers.logs_history(bound.container_ref, self.history_lines)
            except ServiceError as exc:
                self.log.warning("Failed to get log history for %s: %s", server.id, exc.message)
                history = []
            await self._send("logs:history", {"logs": history, "initial": True})
            await self._connect_logs(bound, tail=0)
        else:
            await self._send("files", ServerFilesStatus().model_dump())
            await self._send("downloader-auth", False)
            await self._send("logs:history", {"logs": [], "initial": True})

        await self._send("server:joined", {"server_id": server.id, "server": server.model_dump()})

    def _abort_binding(self) -> None:
        # close() may already have unbound this session
        if self.state is SessionState.BINDING:
            self._transition(SessionState.UNBOUND)

    async def _leave(self, ctx: Optional[SessionContext], data: Any) -> None:
        self._unbind()

    # Log stream

    async def _connect_logs(self, ctx: SessionContext, tail: int) -> None:
        self._close_log_stream()
        if self.context != ctx:
            return
        try:
            stream = await self.containers.stream_logs(ctx.container_ref, tail=tail)
        except ServiceError as exc:
            await self._send("error", {"error": f"Failed to connect to container logs: {exc.message}"})
            return
        if self.context != ctx:
            stream.close()
            return
        # Another connect may have finished while this one was waiting
        self._close_log_stream()
        self._log_stream = stream
        self._log_task = asyncio.create_task(self._pump_logs(stream))

    async def _pump_logs(self, stream: OutputStream) -> None:
        try:
            async for chunk in stream:
                await self._send("log", decode_log_chunk(chunk))
        except Exception as exc:
            self.log.info("Log stream ended: %s", exc)
        finally:
            if self._log_stream is stream:
                self._log_stream = None
                self._log_task = None
            stream.close()

    def _close_log_stream(self) -> None:
        stream, task = self._log_stream, self._log_task
        self._log_stream = None
        self._log_task = None
        try:
            if stream is not None:
                stream.close()
        except Exception as exc:
            self.log.debug("Error closing log stream: %s", exc)
        finally:
            if task is not None:
                task.cancel()

    # Timers

    async def _poll_status(self) -> None:
        while True:
            await asyncio.sleep(self.status_interval)
            ctx = self.context
            if ctx is None:
                continue
            try:
                status = await self.containers.get_status(ctx.container_ref)
            except Exception as exc:
                self.log.warning("Status poll for %s failed: %s", ctx.server_id, exc)
                continue
            if self.context == ctx:
                await self._send("status", status.model_dump())

    def _schedule_reconnect(self, ctx: SessionContext) -> None:
        task = asyncio.create_task(self._deferred_reconnect(ctx))
        self._deferred.add(task)
        task.add_done_callback(self._deferred.discard)

    async def _deferred_reconnect(self, ctx: SessionContext) -> None:
        # A fixed wait for the container to come up, not a readiness check
        await asyncio.sleep(self.reconnect_delay)
        if self.context != ctx:
            return
        try:
            await self._connect_logs(ctx, tail=RECONNECT_TAIL)
            status = await self.containers.get_status(ctx.container_ref)
            if self.context != ctx:
                return
            await self._send("status", status.model_dump())
            if status.running:
                await self._push_readiness(ctx)
        except ServiceError as exc:
            self.log.warning("Reconnect to %s failed: %s", ctx.server_id, exc.message)

    # Server actions

    async def _command(self, ctx: SessionContext, data: Any) -> dict[str, Any]:
        command = _text(data, "command")
        result = await self.containers.send_command(ctx.container_ref, command)
        return {"cmd": command, **result.model_dump()}

    async def _download(self, ctx: SessionContext, data: Any) -> None:
        final = None
        async for status in self.downloader.download_server_files(ctx.container_ref, ctx.server_id):
            final = status.status
            await self._send("download-status", status.model_dump())
            if status.status == "complete":
                await self.updater.record_download(ctx.container_ref)
        if final in ("complete", "done"):
            await self._push_readiness(ctx)

    async def _start(self, ctx: SessionContext, data: Any) -> None:
        await self._lifecycle(ctx, "start")

    async def _stop(self, ctx: SessionContext, data: Any) -> None:
        await self._lifecycle(ctx, "stop")

    async def _restart(self, ctx: SessionContext, data: Any) -> None:
        await self._lifecycle(ctx, "restart")

    async def _lifecycle(self, ctx: SessionContext, action: str) -> None:
        self.log.info("%s requested for %s", action.capitalize(), ctx.server_id)
        await self._send("action-status", {"action": action, "status": "starting"})
        if action == "start":
            # compose up creates the container when it does not exist yet
            try:
                await asyncio.to_thread(self.registry.start_server, ctx.server_id)
                result = ActionResult(success=True)
            except ServiceError as exc:
                result = ActionResult(success=False, error=exc.message)
        elif action == "stop":
            result = await self.containers.stop(ctx.container_ref)
        else:
            result = await self.containers.restart(ctx.container_ref)

        await self._send("action-status", {"action": action, **result.model_dump()})
        if result.success and action in ("start", "restart"):
            self._schedule_reconnect(ctx)

    async def _wipe(self, ctx: SessionContext, data: Any) -> None:
        await self._send("action-status", {"action": "wipe", "status": "starting"})
        status = await self.containers.get_status(ctx.container_ref)
        if status.running:
            result = ActionResult(success=False, error="Stop the server before wiping its data")
        else:
            try:
                await asyncio.to_thread(self.files.wipe_data, ctx.server_id)
                result = ActionResult(success=True)
            except ServiceError as exc:
                result = ActionResult(success=False, error=exc.message)
        await self._send("action-status", {"action": "wipe", **result.model_dump()})
        await self._send("downloader-auth", await asyncio.to_thread(self.files.check_auth, ctx.server_id))

    async def _check_files(self, ctx: SessionContext, data: Any) -> None:
        await self._push_readiness(ctx)

    async def _logs_more(self, ctx: SessionContext, data: Any) -> dict[str, Any]:
        request = LogsMoreRequest.model_validate(data or {})
        total = request.current_count + request.batch_size
        lines = await self.containers.logs_history(ctx.container_ref, total)
        older = lines[: max(0, len(lines) - request.current_count)]
        # Best effort: a full page suggests more history exists
        return {"logs": older, "initial": False, "has_more": len(lines) >= total}

    async def _push_readiness(self, ctx: SessionContext) -> None:
        files = await asyncio.to_thread(self.files.check_server_files, ctx.server_id)
        authenticated = await asyncio.to_thread(self.files.check_auth, ctx.server_id)
        if self.context != ctx:
            return
        await self._send("files", files.model_dump())
        await self._send("downloader-auth", authenticated)

    # Files

    async def _files_list(self, ctx: SessionContext, data: Any) -> dict[str, Any]:
        path = _text(data, "path", default="/")
        entries = await asyncio.to_thread(self.files.list_directory, ctx.server_id, path)
        return {"success": True, "files": [entry.model_dump() for entry in entries], "path": path}

    async def _files_read(self, ctx: SessionContext, data: Any) -> dict[str, Any]:
        path = _text(data, "path")
        content = await asyncio.to_thread(self.files.read_content, ctx.server_id, path)
        return {"success": True, "content": content, "path": path}

    async def _files_save(self, ctx: SessionContext, data: Any) -> dict[str, Any]:
        request = FileSaveRequest.model_validate(data or {})
        backup = None
        if request.create_backup:
            backup = await asyncio.to_thread(self.files.create_backup, ctx.server_id, request.path)
        await asyncio.to_thread(self.files.write_content, ctx.server_id, request.path, request.content)
        return {"success": True, "backup": backup}

    async def _files_mkdir(self, ctx: SessionContext, data: Any) -> dict[str, Any]:
        await asyncio.to_thread(self.files.create_directory, ctx.server_id, _text(data, "path"))
        return {"success": True}

    async def _files_delete(self, ctx: SessionContext, data: Any) -> dict[str, Any]:
        await asyncio.to_thread(self.files.delete_item, ctx.server_id, _text(data, "path"))
        return {"success": True}

    async def _files_rename(self, ctx: SessionContext, data: Any) -> dict[str, Any]:
        request = FileRenameRequest.model_validate(data or {})
        await asyncio.to_thread(
            self.files.rename_item, ctx.server_id, request.old_path, request.new_path
        )
        return {"success": True}

    # Mods

    async def _mods_list(self, ctx: SessionContext, data: Any) -> dict[str, Any]:
        mods = await self.mods.list_mods(ctx)
        mods = await self.mods.enrich(ctx, mods)
        return {"success": True, "mods": [mod.model_dump() for mod in mods]}

    async def _mods_search(self, ctx: Optional[SessionContext], data: Any) -> dict[str, Any]:
        request = ModSearchRequest.model_validate(data or {})
        result = await self.catalog.search(
            query=request.query,
            classification=request.classification,
            page=request.page,
            page_size=request.page_size,
            sort=request.sort,
        )
        return {"success": True, **result.model_dump()}

    async def _mods_get(self, ctx: Optional[SessionContext], data: Any) -> dict[str, Any]:
        project = await self.catalog.get_project(_text(data, "project_id"))
        return {"success": True, "project": project.model_dump()}

    async def _mods_install(self, ctx: SessionContext, data: Any) -> dict[str, Any]:
        request = ModInstallRequest.model_validate(data or {})

        async def progress(state: str) -> None:
            await self._send("mods:install-status", {"status": state, "project_id": request.project_id})

        mod = await self.mods.install_from_catalog(
            ctx, request.project_id, request.version_id, request.metadata, progress=progress
        )
        return {"success": True, "mod": mod.model_dump()}

    async def _mods_uninstall(self, ctx: SessionContext, data: Any) -> dict[str, Any]:
        await self.mods.uninstall(ctx, _text(data, "mod_id"))
        return {"success": True}

    async def _mods_enable(self, ctx: SessionContext, data: Any) -> dict[str, Any]:
        mod = await self.mods.enable(ctx, _text(data, "mod_id"))
        return {"success": True, "mod": mod.model_dump()}

    async def _mods_disable(self, ctx: SessionContext, data: Any) -> dict[str, Any]:
        mod = await self.mods.disable(ctx, _text(data, "mod_id"))
        return {"success": True, "mod": mod.model_dump()}

    async def _mods_check_config(self, ctx: Optional[SessionContext], data: Any) -> dict[str, Any]:
        return {"configured": self.catalog.is_configured()}

    async def _mods_classifications(self, ctx: Optional[SessionContext], data: Any) -> dict[str, Any]:
        return {"success": True, "classifications": await self.catalog.get_classifications()}

    async def _mods_check_updates(self, ctx: SessionContext, data: Any) -> dict[str, Any]:
        updates = await self.mods.check_updates(ctx)
        return {"success": True, "updates": [update.model_dump() for update in updates]}

    async def _mods_update(self, ctx: SessionContext, data: Any) -> dict[str, Any]:
        request = ModUpdateRequest.model_validate(data or {})

        async def progress(state: str) -> None:
            await self._send("mods:update-status", {"status": state, "mod_id": request.mod_id})

        mod = await self.mods.update_from_catalog(
            ctx,
            request.mod_id,
            request.version_id,
            request.version_name,
            file_name=request.file_name,
            progress=progress,
        )
        return {"success": True, "mod": mod.model_dump()}

    # Binary updates

    async def _update_check(self, ctx: SessionContext, data: Any) -> dict[str, Any]:
        result = await self.updater.check_for_update(ctx.container_ref, ctx.server_id)
        return result.model_dump()

    async def _update_apply(self, ctx: SessionContext, data: Any) -> dict[str, Any]:
        result = await self.updater.apply_update(ctx.container_ref, ctx.server_id, self._send)
        await self._push_readiness(ctx)
        return result.model_dump()

    async def _send(self, event: str, data: Any) -> None:
        try:
            await self._emit(event, data)
        except Exception as exc:
            # The client went away; the connection handler will close the session
            self.log.debug("Dropped %s event: %s", event, exc)


def _text(data: Any, field: str, default: Optional[str] = None) -> str:
    value = data.get(field) if isinstance(data, dict) else data
    if value is None or value == "":
        if default is not None:
            return default
        raise ServiceError(400, f"{field} is required")
    return str(value)
