import threading
from unittest.mock import MagicMock

import pytest
from docker.errors import NotFound

from hytale_panel.errors import NotFoundError
from hytale_panel.models import (
    ActionResult,
    CatalogDownload,
    CatalogSearchResult,
    ContainerStatus,
    SessionContext,
)
from hytale_panel.services.container_service import OutputStream
from hytale_panel.services.modtale_service import ModtaleError
from hytale_panel.services.registry_service import ServerRegistry


def _held_open(chunks, released):
    yield from chunks
    released.wait(5)


class FakeContainers:
    """In-memory stand-in for ContainerService that records every call."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.status = ContainerStatus(running=False, status="exited")
        self.history: list[str] = []
        self.log_chunks: list[bytes] = []
        self.download_output: list[bytes] = [b"Downloading... 100%"]
        self.stream_error: Exception | None = None
        # Keep these streams open after their output until closed, like a follow-mode stream
        self.download_blocks = False
        self.logs_block = False
        self.exec_responses: dict[str, str] = {}
        self.streams: list[OutputStream] = []
        self.archives: dict[str, bytes] = {}

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def commands(self) -> list[str]:
        return [call[1] for call in self.calls if call[0] == "exec"]

    async def get_status(self, ref):
        self.calls.append(("get_status", ref))
        return self.status

    async def exec_command(self, ref, command, timeout=30.0):
        self.calls.append(("exec", command))
        for needle, output in self.exec_responses.items():
            if needle in command:
                return output
        return ""

    async def exec_stream(self, ref, argv, tty=True):
        self.calls.append(("exec_stream", argv))
        if self.stream_error is not None:
            raise self.stream_error
        if self.download_blocks:
            released = threading.Event()
            stream = OutputStream(_held_open(self.download_output, released), closer=released.set)
        else:
            stream = OutputStream(list(self.download_output))
        self.streams.append(stream)
        return stream

    async def send_command(self, ref, command):
        self.calls.append(("send_command", command))
        return ActionResult(success=True)

    async def start(self, ref):
        self.calls.append(("start", ref))
        return ActionResult(success=True)

    async def stop(self, ref):
        self.calls.append(("stop", ref))
        return ActionResult(success=True)

    async def restart(self, ref):
        self.calls.append(("restart", ref))
        return ActionResult(success=True)

    async def stream_logs(self, ref, tail=0):
        self.calls.append(("stream_logs", tail))
        if self.logs_block:
            released = threading.Event()
            stream = OutputStream(_held_open(self.log_chunks, released), closer=released.set)
        else:
            stream = OutputStream(list(self.log_chunks))
        self.streams.append(stream)
        return stream

    async def logs_history(self, ref, tail=500):
        self.calls.append(("logs_history", tail))
        return self.history[-tail:] if tail else []

    async def get_archive(self, ref, path):
        self.calls.append(("get_archive", path))
        if path not in self.archives:
            raise NotFoundError(f"No such path in container: {path}")
        return self.archives[path]

    async def put_archive(self, ref, path, data):
        self.calls.append(("put_archive", path))
        self.archives[path] = data


class FakeCatalog:
    def __init__(self, configured: bool = True) -> None:
        self.configured = configured
        self.projects = {}
        self.search_results = []
        self.downloads = {}
        self.failing: set[str] = set()
        self.searches: list[str] = []

    def is_configured(self):
        return self.configured

    async def search(self, query="", classification=None, page=1, page_size=20, sort=None):
        self.searches.append(query)
        if query in self.failing:
            raise ModtaleError(502, "Modtale request failed")
        hits = [project for project in self.search_results if query.lower() in project.title.lower()]
        return CatalogSearchResult(
            projects=hits, total=len(hits), page=page, page_size=page_size, has_more=False
        )

    async def get_project(self, project_id):
        if project_id in self.failing:
            raise ModtaleError(502, "Modtale request failed")
        if project_id not in self.projects:
            raise ModtaleError(404, "Project not found")
        return self.projects[project_id]

    async def get_classifications(self):
        return [{"id": "PLUGIN", "name": "Plugin"}]

    async def download_version(self, project_id, version):
        return self.downloads.get(
            (project_id, version), CatalogDownload(content=b"jar-bytes", file_name=None)
        )


class FakeCompose:
    def __init__(self) -> None:
        self.calls: list[tuple[str, ...]] = []

    def run(self, cwd, *args):
        self.calls.append(args)
        return ""


def missing_docker_client():
    client = MagicMock()
    client.containers.get.side_effect = NotFound("No such container")
    return client


@pytest.fixture
def containers():
    return FakeContainers()


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def compose():
    return FakeCompose()


@pytest.fixture
def registry(tmp_path, compose):
    return ServerRegistry(
        data_root=str(tmp_path / "data"),
        compose=compose,
        client_factory=missing_docker_client,
    )


@pytest.fixture
def ctx():
    return SessionContext(server_id="srv-1", container_ref="hytale-srv-1")
