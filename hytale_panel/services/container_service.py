import asyncio
import io
import logging
import shlex
import socket
import tarfile
import threading
import time
from typing import Any, AsyncIterator, Callable, Iterable, Iterator, Optional

import docker
from docker.errors import APIError, DockerException, NotFound
from docker.utils.socket import frames_iter

from ..docker_client import get_docker_client
from ..errors import NotFoundError, ServiceError, UpstreamError
from ..models import ActionResult, ContainerStatus

CONSOLE_PIPE = "/tmp/hytale-console"
FRAME_HEADER_SIZE = 8
TIMED_OUT = "Command timed out"

logger = logging.getLogger(__name__)

_END = object()


def _is_frame_header(chunk: bytes, offset: int) -> bool:
    if len(chunk) - offset < FRAME_HEADER_SIZE:
        return False
    return chunk[offset] in (0, 1, 2) and chunk[offset + 1 : offset + 4] == b"\x00\x00\x00"


def decode_log_chunk(chunk: bytes) -> str:
    """Strip the 8-byte stdout/stderr multiplex header from each frame in a chunk.

    Docker prefixes every frame of a non-TTY stream with ``[stream, 0, 0, 0, size(4, big-endian)]``.
    Chunks that do not start with such a header are decoded as-is.
    """
    if not _is_frame_header(chunk, 0):
        return chunk.decode("utf-8", errors="replace")

    parts: list[bytes] = []
    offset = 0
    while _is_frame_header(chunk, offset):
        size = int.from_bytes(chunk[offset + 4 : offset + FRAME_HEADER_SIZE], "big")
        start = offset + FRAME_HEADER_SIZE
        parts.append(chunk[start : start + size])
        offset = start + size
    parts.append(chunk[offset:])
    return b"".join(parts).decode("utf-8", errors="replace")


def pack_file(name: str, data: bytes) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        info = tarfile.TarInfo(name=name)
        info.size = len(data)
        info.mtime = int(time.time())
        info.mode = 0o644
        archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def unpack_file(data: bytes) -> bytes:
    with tarfile.open(fileobj=io.BytesIO(data), mode="r") as archive:
        for member in archive.getmembers():
            if not member.isfile():
                continue
            handle = archive.extractfile(member)
            if handle is not None:
                return handle.read()
    raise NotFoundError("Archive contains no file")


class OutputStream:
    """Async iteration over a blocking docker-py byte stream.

    The source is read on a dedicated daemon thread that hands chunks to the event
    loop, so a follow-mode stream that sits idle for hours does not hold a worker of
    the loop's default executor. ``close()`` calls ``closer`` from the loop thread;
    it must unblock the reader (shutting down the socket) and never touch the
    source iterator itself, which belongs to the reader thread.
    """

    def __init__(self, source: Iterable[bytes], closer: Optional[Callable[[], None]] = None) -> None:
        self._source = source
        self._closer = closer
        self._queue: Optional[asyncio.Queue] = None
        self._reader: Optional[threading.Thread] = None
        self.closed = False

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._chunks()

    async def _chunks(self) -> AsyncIterator[bytes]:
        if self._reader is not None:
            raise RuntimeError("Output stream is already being read")
        loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._reader = threading.Thread(
            target=self._read, args=(loop, self._queue), name="output-stream", daemon=True
        )
        self._reader.start()

        while not self.closed:
            item = await self._queue.get()
            if item is _END:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    def _read(self, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue) -> None:
        def deliver(item: object) -> bool:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, item)
            except RuntimeError:
                # Event loop already closed
                return False
            return True

        iterator = iter(self._source)
        try:
            for chunk in iterator:
                if self.closed or not deliver(chunk):
                    return
        except Exception as exc:
            if self.closed:
                logger.debug("Output stream ended after close: %s", exc)
            else:
                deliver(exc)
            return
        finally:
            close_iterator = getattr(iterator, "close", None)
            if close_iterator is not None:
                try:
                    close_iterator()
                except OSError as exc:
                    logger.debug("Output stream source already closed: %s", exc)
        deliver(_END)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the reader thread; True once it has exited."""
        if self._reader is None:
            return True
        self._reader.join(timeout)
        return not self._reader.is_alive()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            if self._closer is not None:
                self._closer()
        except (OSError, DockerException) as exc:
            logger.warning("Failed to close output stream: %s", exc)
        finally:
            if self._queue is not None:
                self._queue.put_nowait(_END)


def socket_chunks(sock: Any, tty: bool) -> Iterator[bytes]:
    """Yield the payload of each frame read from an attached exec socket."""
    try:
        for _, data in frames_iter(sock, tty):
            yield data
    finally:
        sock.close()


def shutdown_socket(sock: Any) -> None:
    # Wakes a reader blocked in recv; the reader closes the socket itself
    raw = getattr(sock, "_sock", sock)
    try:
        raw.shutdown(socket.SHUT_RDWR)
    except OSError as exc:
        logger.debug("Socket already shut down: %s", exc)


class ContainerService:
    def __init__(
        self, client_factory: Callable[[], docker.DockerClient] = get_docker_client
    ) -> None:
        self._client_factory = client_factory
        self.log = logging.getLogger(__name__)

    async def get_status(self, ref: str) -> ContainerStatus:
        try:
            container = await asyncio.to_thread(self._get_container, ref)
        except ServiceError as exc:
            self.log.debug("Status check failed for %s: %s", ref, exc.message)
            return ContainerStatus(running=False, status="not found", error=exc.message)

        state = container.attrs.get("State") or {}
        health = (state.get("Health") or {}).get("Status") or "unknown"
        return ContainerStatus(
            running=bool(state.get("Running")),
            status=state.get("Status") or "unknown",
            started_at=state.get("StartedAt"),
            health=health,
        )

    async def exec_command(self, ref: str, command: str, timeout: float = 30.0) -> str:
        stream = await self.exec_stream(ref, ["sh", "-c", command], tty=False)
        collected: list[bytes] = []

        async def collect() -> None:
            async for chunk in stream:
                collected.append(chunk)

        try:
            await asyncio.wait_for(collect(), timeout)
        except asyncio.TimeoutError:
            self.log.warning("Exec in %s timed out after %ss: %s", ref, timeout, command)
            partial = b"".join(collected).decode("utf-8", errors="replace")
            return partial or TIMED_OUT
        except (DockerException, OSError) as exc:
            raise UpstreamError(f"Exec failed: {exc}") from exc
        finally:
            stream.close()
        return b"".join(collected).decode("utf-8", errors="replace")

    async def exec_stream(self, ref: str, argv: list[str], tty: bool = True) -> OutputStream:
        container = await asyncio.to_thread(self._get_container, ref)
        try:
            result = await asyncio.to_thread(
                container.exec_run, argv, stdout=True, stderr=True, tty=tty, socket=True
            )
        except DockerException as exc:
            raise UpstreamError(f"Exec failed: {exc}") from exc
        sock = result.output
        return OutputStream(socket_chunks(sock, tty), closer=lambda: shutdown_socket(sock))

    async def send_command(self, ref: str, command: str) -> ActionResult:
        # The image's entrypoint reads console input from a FIFO
        try:
            await self.exec_command(
                ref, f"printf '%s\\n' {shlex.quote(command)} > {CONSOLE_PIPE}", timeout=5.0
            )
        except ServiceError as exc:
            self.log.warning("Command to %s failed: %s", ref, exc.message)
            return ActionResult(success=False, error=exc.message)
        return ActionResult(success=True)

    async def start(self, ref: str) -> ActionResult:
        return await self._lifecycle(ref, "start", ("already started", "already running"))

    async def stop(self, ref: str) -> ActionResult:
        return await self._lifecycle(ref, "stop", ("already stopped", "not running"))

    async def restart(self, ref: str) -> ActionResult:
        return await self._lifecycle(ref, "restart", ())

    async def stream_logs(self, ref: str, tail: int = 0) -> OutputStream:
        container = await asyncio.to_thread(self._get_container, ref)
        try:
            stream = await asyncio.to_thread(
                container.logs,
                stream=True,
                follow=True,
                stdout=True,
                stderr=True,
                tail=tail,
                timestamps=True,
            )
        except DockerException as exc:
            raise UpstreamError(f"Failed to connect to container logs: {exc}") from exc
        return OutputStream(stream, closer=stream.close)

    async def logs_history(self, ref: str, tail: int = 500) -> list[str]:
        container = await asyncio.to_thread(self._get_container, ref)
        try:
            raw = await asyncio.to_thread(
                container.logs, stream=False, stdout=True, stderr=True, tail=tail, timestamps=True
            )
        except DockerException as exc:
            raise UpstreamError(f"Failed to fetch logs: {exc}") from exc
        if not raw:
            return []
        text = raw.decode("utf-8", errors="replace")
        return [line.strip() for line in text.split("\n") if line.strip()]

    async def get_archive(self, ref: str, path: str) -> bytes:
        container = await asyncio.to_thread(self._get_container, ref)

        def fetch() -> bytes:
            bits, _ = container.get_archive(path)
            return b"".join(bits)

        try:
            return await asyncio.to_thread(fetch)
        except NotFound as exc:
            raise NotFoundError(f"No such path in container: {path}") from exc
        except DockerException as exc:
            raise UpstreamError(f"Failed to read archive {path}: {exc}") from exc

    async def put_archive(self, ref: str, path: str, data: bytes) -> None:
        container = await asyncio.to_thread(self._get_container, ref)
        try:
            ok = await asyncio.to_thread(container.put_archive, path, data)
        except DockerException as exc:
            raise UpstreamError(f"Failed to write archive to {path}: {exc}") from exc
        if not ok:
            raise UpstreamError(f"Failed to write archive to {path}")

    async def remove(self, ref: str, remove_volumes: bool = False) -> ActionResult:
        try:
            container = await asyncio.to_thread(self._get_container, ref)
        except NotFoundError:
            return ActionResult(success=True)
        except ServiceError as exc:
            return ActionResult(success=False, error=exc.message)

        try:
            await asyncio.to_thread(container.remove, v=remove_volumes, force=True)
        except NotFound:
            return ActionResult(success=True)
        except DockerException as exc:
            return ActionResult(success=False, error=str(exc))
        return ActionResult(success=True)

    async def _lifecycle(self, ref: str, action: str, settled_phrases: tuple[str, ...]) -> ActionResult:
        try:
            container = await asyncio.to_thread(self._get_container, ref)
            self.log.info("%s container %s", action.capitalize(), ref)
            await asyncio.to_thread(getattr(container, action))
        except APIError as exc:
            message = str(exc)
            lowered = message.lower()
            if exc.status_code == 304 or any(phrase in lowered for phrase in settled_phrases):
                self.log.info("Container %s already in desired state for %s", ref, action)
                return ActionResult(success=True)
            self.log.warning("Container %s %s failed: %s", ref, action, message)
            return ActionResult(success=False, error=message)
        except ServiceError as exc:
            return ActionResult(success=False, error=exc.message)
        except DockerException as exc:
            self.log.warning("Container %s %s failed: %s", ref, action, exc)
            return ActionResult(success=False, error=str(exc))
        return ActionResult(success=True)

    def _get_container(self, ref: str):
        try:
            docker_client = self._client_factory()
            return docker_client.containers.get(ref)
        except NotFound as exc:
            raise NotFoundError("Container not found") from exc
        except DockerException as exc:
            raise ServiceError(503, f"Docker unavailable: {exc}") from exc
