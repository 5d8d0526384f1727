import json
import logging
import os
import shlex
import shutil
import subprocess
import threading
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional

import docker
from docker.errors import DockerException, NotFound

from ..config import settings
from ..docker_client import get_docker_client
from ..errors import NotFoundError, ServiceError
from ..models import (
    ServerConfig,
    ServerConfigUpdate,
    ServerCreateRequest,
    ServerDefinition,
    ServerInfo,
    ServerUpdateRequest,
)

REGISTRY_VERSION = 1
COMPOSE_FILE = "docker-compose.yml"
CONTAINER_MOUNT = "/opt/hytale"


class ComposeRunner:
    """Runs ``docker compose`` inside a server directory."""

    def __init__(self, command: Optional[str] = None, timeout: float = 180.0) -> None:
        self.command = shlex.split(command or settings.compose_command)
        self.timeout = timeout
        self.log = logging.getLogger(__name__)

    def run(self, cwd: str, *args: str) -> str:
        argv = [*self.command, *args]
        self.log.info("Running %s in %s", " ".join(argv), cwd)
        try:
            completed = subprocess.run(
                argv,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise ServiceError(504, f"{' '.join(argv)} timed out") from exc
        except OSError as exc:
            raise ServiceError(500, f"Failed to run {' '.join(argv)}: {exc}") from exc
        if completed.returncode != 0:
            detail = (completed.stderr or completed.stdout or "").strip()
            raise ServiceError(500, detail or f"{' '.join(argv)} exited with {completed.returncode}")
        return completed.stdout


class ServerRegistry:
    def __init__(
        self,
        data_root: Optional[str] = None,
        compose: Optional[ComposeRunner] = None,
        client_factory: Callable[[], docker.DockerClient] = get_docker_client,
        host_data_root: Optional[str] = None,
    ) -> None:
        if data_root is None and host_data_root is None:
            host_data_root = settings.host_data_root
        self.data_root = os.path.abspath(data_root or settings.data_root)
        self.host_data_root = host_data_root
        self.compose = compose or ComposeRunner()
        self._client_factory = client_factory
        self._lock = threading.Lock()
        self.log = logging.getLogger(__name__)

    @property
    def servers_file(self) -> str:
        return os.path.join(self.data_root, "servers.json")

    @property
    def servers_dir(self) -> str:
        return os.path.join(self.data_root, "servers")

    def list_servers(self) -> list[ServerDefinition]:
        return self._load()

    def list_server_info(self) -> list[ServerInfo]:
        return [self.to_info(server) for server in self._load()]

    def get_server(self, server_id: str) -> ServerDefinition:
        for server in self._load():
            if server.id == server_id:
                return server
        raise NotFoundError("Server not found")

    def create_server(self, request: ServerCreateRequest) -> ServerDefinition:
        name = request.name.strip()
        if not name:
            raise ServiceError(400, "name cannot be blank")

        with self._lock:
            servers = self._load()
            port = self._select_port(servers, request.port)
            server_id = str(uuid.uuid4())
            config = _merge_config(ServerConfig(), request.config)
            server = ServerDefinition(
                id=server_id,
                name=name,
                port=port,
                container_name=_container_name(server_id),
                config=config,
                created_at=_now_iso(),
            )

            server_dir = self._server_dir(server_id)
            try:
                os.makedirs(os.path.join(server_dir, "server"), exist_ok=True)
                self._write_compose(server)
            except OSError as exc:
                shutil.rmtree(server_dir, ignore_errors=True)
                raise ServiceError(500, f"Failed to create server directory: {exc}") from exc

            servers.append(server)
            self._save(servers)

        self.log.info("Created server %s (%s) on port %s", server.name, server.id, server.port)
        return server

    def update_server(self, server_id: str, request: ServerUpdateRequest) -> ServerDefinition:
        with self._lock:
            servers = self._load()
            index = _index_of(servers, server_id)
            server = servers[index]

            if request.name is not None:
                name = request.name.strip()
                if not name:
                    raise ServiceError(400, "name cannot be blank")
                server.name = name
            if request.port is not None and request.port != server.port:
                others = [item for item in servers if item.id != server_id]
                server.port = self._select_port(others, request.port)
            if request.config is not None:
                server.config = _merge_config(server.config, request.config)

            try:
                self._write_compose(server)
            except OSError as exc:
                raise ServiceError(500, f"Failed to write compose file: {exc}") from exc
            servers[index] = server
            self._save(servers)
        return server

    def delete_server(self, server_id: str, remove_data: bool = True) -> None:
        with self._lock:
            servers = self._load()
            index = _index_of(servers, server_id)
            server = servers[index]
            server_dir = self._server_dir(server_id)

            if os.path.isfile(os.path.join(server_dir, COMPOSE_FILE)):
                try:
                    self.compose.run(server_dir, "down", "-v", "--remove-orphans")
                except ServiceError as exc:
                    self.log.warning("compose down failed for %s: %s", server_id, exc.message)
            self._remove_container(server.container_name)

            if remove_data:
                self._safe_remove_dir(server_dir)

            del servers[index]
            self._save(servers)
        self.log.info("Deleted server %s (%s)", server.name, server_id)

    def start_server(self, server_id: str) -> None:
        self.get_server(server_id)
        self.compose.run(self._server_dir(server_id), "up", "-d")

    def stop_server(self, server_id: str) -> None:
        self.get_server(server_id)
        self.compose.run(self._server_dir(server_id), "down")

    def restart_server(self, server_id: str) -> None:
        self.get_server(server_id)
        self.compose.run(self._server_dir(server_id), "restart")

    def get_compose(self, server_id: str) -> str:
        self.get_server(server_id)
        path = os.path.join(self._server_dir(server_id), COMPOSE_FILE)
        try:
            with open(path, "r", encoding="utf-8") as handle:
                return handle.read()
        except FileNotFoundError as exc:
            raise NotFoundError("Compose file not found") from exc
        except OSError as exc:
            raise ServiceError(500, f"Failed to read compose file: {exc}") from exc

    def save_compose(self, server_id: str, content: str) -> None:
        self.get_server(server_id)
        path = os.path.join(self._server_dir(server_id), COMPOSE_FILE)
        try:
            with open(path, "w", encoding="utf-8") as handle:
                handle.write(content)
        except OSError as exc:
            raise ServiceError(500, f"Failed to write compose file: {exc}") from exc

    def regenerate_compose(self, server_id: str) -> str:
        server = self.get_server(server_id)
        try:
            return self._write_compose(server)
        except OSError as exc:
            raise ServiceError(500, f"Failed to write compose file: {exc}") from exc

    def server_data_dir(self, server_id: str) -> str:
        return os.path.join(self._server_dir(server_id), "server")

    def to_info(self, server: ServerDefinition) -> ServerInfo:
        return ServerInfo(**server.model_dump(), status=self._container_state(server.container_name))

    def render_compose(self, server: ServerDefinition) -> str:
        if self.host_data_root:
            volume = f"{self.host_data_root}/servers/{server.id}/server:{CONTAINER_MOUNT}"
        else:
            volume = f"./server:{CONTAINER_MOUNT}"
        volumes = [volume]
        if server.config.use_machine_id:
            volumes.append("/etc/machine-id:/etc/machine-id:ro")
            volumes.append("/sys/class/dmi/id:/sys/class/dmi/id:ro")

        cfg = server.config
        lines = [
            "services:",
            f"  {server.container_name}:",
            f"    image: {settings.server_image}",
            f"    container_name: {server.container_name}",
            "    restart: on-failure",
            "    stdin_open: true",
            "    tty: true",
            "    privileged: true",
            "    ports:",
            f'      - "{server.port}:{server.port}/udp"',
            "    environment:",
            f"      TZ: {settings.timezone}",
            f"      JAVA_XMS: {cfg.java_xms}",
            f"      JAVA_XMX: {cfg.java_xmx}",
            f"      BIND_PORT: {server.port}",
            f"      BIND_ADDR: {cfg.bind_addr}",
            f"      AUTO_DOWNLOAD: {_yaml_bool(cfg.auto_download)}",
            f"      USE_G1GC: {_yaml_bool(cfg.use_g1gc)}",
            f"      SERVER_EXTRA_ARGS: {json.dumps(cfg.extra_args)}",
            "    volumes:",
        ]
        lines.extend(f"      - {item}" for item in volumes)
        return "\n".join(lines) + "\n"

    def _write_compose(self, server: ServerDefinition) -> str:
        content = self.render_compose(server)
        server_dir = self._server_dir(server.id)
        os.makedirs(server_dir, exist_ok=True)
        with open(os.path.join(server_dir, COMPOSE_FILE), "w", encoding="utf-8") as handle:
            handle.write(content)
        return content

    def _select_port(self, servers: list[ServerDefinition], requested: Optional[int]) -> int:
        used_ports = {server.port for server in servers}
        if requested is not None:
            if requested in used_ports:
                raise ServiceError(409, f"Port {requested} is already in use")
            return requested

        port = settings.port_range_start
        while port in used_ports:
            port += 1
        if port > 65535:
            raise ServiceError(409, "No available ports")
        return port

    def _container_state(self, container_name: str) -> str:
        try:
            container = self._client_factory().containers.get(container_name)
        except NotFound:
            return "not created"
        except DockerException as exc:
            self.log.warning("Docker unavailable while inspecting %s: %s", container_name, exc)
            return "unknown"
        state = container.attrs.get("State") or {}
        return state.get("Status") or "unknown"

    def _remove_container(self, container_name: str) -> None:
        try:
            self._client_factory().containers.get(container_name).remove(force=True)
        except NotFound:
            return
        except DockerException as exc:
            self.log.warning("Failed to remove container %s: %s", container_name, exc)

    def _server_dir(self, server_id: str) -> str:
        return os.path.join(self.servers_dir, server_id)

    def _safe_remove_dir(self, path: str) -> None:
        root = os.path.realpath(self.servers_dir)
        target = os.path.realpath(path)
        if target == root or not target.startswith(root + os.sep):
            raise ServiceError(400, "Refusing to delete path outside data root")
        if not os.path.exists(target):
            return
        try:
            shutil.rmtree(target)
        except OSError as exc:
            raise ServiceError(500, f"Failed to delete server data: {exc}") from exc

    def _load(self) -> list[ServerDefinition]:
        try:
            with open(self.servers_file, "r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except FileNotFoundError:
            return []
        except (OSError, json.JSONDecodeError) as exc:
            self.log.warning("Server registry unreadable, treating as empty: %s", exc)
            return []
        return [ServerDefinition.model_validate(item) for item in payload.get("servers", [])]

    def _save(self, servers: list[ServerDefinition]) -> None:
        os.makedirs(self.servers_dir, exist_ok=True)
        payload = {
            "version": REGISTRY_VERSION,
            "servers": [server.model_dump() for server in servers],
        }
        tmp_path = f"{self.servers_file}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            os.replace(tmp_path, self.servers_file)
        except OSError as exc:
            raise ServiceError(500, f"Failed to save server registry: {exc}") from exc


def _merge_config(base: ServerConfig, overrides: Optional[ServerConfigUpdate]) -> ServerConfig:
    if overrides is None:
        return base.model_copy()
    return base.model_copy(update=overrides.model_dump(exclude_none=True))


def _index_of(servers: list[ServerDefinition], server_id: str) -> int:
    for index, server in enumerate(servers):
        if server.id == server_id:
            return index
    raise NotFoundError("Server not found")


def _container_name(server_id: str) -> str:
    return f"hytale-{server_id[:8]}"


def _yaml_bool(value: bool) -> str:
    return "true" if value else "false"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
