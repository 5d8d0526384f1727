import asyncio
import json
import logging
import posixpath
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from ..config import settings
from ..errors import ServiceError
from ..models import ActionResult, ServerFilesStatus, UpdateCheckResult, UpdateMetadata
from .container_service import ContainerService, pack_file
from .downloader_service import DownloadOrchestrator

Emit = Callable[[str, Any], Awaitable[None]]
FilesCheck = Callable[[str], Awaitable[ServerFilesStatus]]


class UpdateOrchestrator:
    def __init__(
        self,
        containers: ContainerService,
        downloader: DownloadOrchestrator,
        check_files: FilesCheck,
        metadata_path: str = settings.update_metadata_file,
        settle_seconds: float = settings.update_settle_seconds,
    ) -> None:
        self.containers = containers
        self.downloader = downloader
        self.check_files = check_files
        self.metadata_path = metadata_path
        self.settle_seconds = settle_seconds
        self.jar_path = posixpath.join(posixpath.dirname(metadata_path), "HytaleServer.jar")
        self.log = logging.getLogger(__name__)

    async def check_for_update(self, container_ref: str, server_id: str) -> UpdateCheckResult:
        try:
            files = await self.check_files(server_id)
            metadata = await self._get_metadata(container_ref)
        except ServiceError as exc:
            return UpdateCheckResult(success=False, error=exc.message)

        last_update = metadata.last_download_at if metadata else None
        days = None
        if last_update:
            try:
                last = datetime.fromisoformat(last_update.replace("Z", "+00:00"))
            except ValueError:
                self.log.warning("Ignoring malformed update timestamp %r", last_update)
            else:
                if last.tzinfo is None:
                    last = last.replace(tzinfo=timezone.utc)
                days = (datetime.now(timezone.utc) - last).days
        return UpdateCheckResult(
            success=True, last_update=last_update, days_since_update=days, has_files=files.ready
        )

    async def apply_update(self, container_ref: str, server_id: str, emit: Emit) -> ActionResult:
        """Stop, download, record metadata and restart, keeping the prior running state."""

        async def update_status(state: str, message: str) -> None:
            await emit("update:status", {"status": state, "message": message, "server_id": server_id})

        try:
            status = await self.containers.get_status(container_ref)
            was_running = status.running

            if was_running:
                await update_status("stopping", "Stopping server...")
                stopped = await self.containers.stop(container_ref)
                if not stopped.success:
                    raise ServiceError(500, stopped.error or "Failed to stop server")
                await asyncio.sleep(self.settle_seconds)

            await update_status("downloading", "Downloading update...")
            failure = None
            async for download_status in self.downloader.download_server_files(container_ref, server_id):
                await emit("download-status", download_status.model_dump())
                if download_status.status == "error":
                    failure = download_status.message
            if failure is not None:
                raise ServiceError(502, failure)

            await self.record_download(container_ref)

            if was_running:
                await update_status("restarting", "Restarting server...")
                restarted = await self.containers.restart(container_ref)
                if not restarted.success:
                    raise ServiceError(500, restarted.error or "Failed to restart server")

            await update_status("complete", "Update complete!")
            return ActionResult(success=True)
        except ServiceError as exc:
            self.log.warning("Update of %s failed: %s", container_ref, exc.message)
            await update_status("error", exc.message)
            return ActionResult(success=False, error=exc.message)

    async def record_download(self, container_ref: str) -> None:
        """Persist when the binaries were last fetched; failures are only logged."""
        try:
            size, digest = await self._jar_info(container_ref)
            metadata = UpdateMetadata(
                last_download_at=datetime.now(timezone.utc).isoformat(),
                jar_size=size,
                jar_hash=digest,
            )
            await self._save_metadata(container_ref, metadata)
        except ServiceError as exc:
            self.log.warning("Could not record download metadata for %s: %s", container_ref, exc.message)

    async def _get_metadata(self, container_ref: str) -> Optional[UpdateMetadata]:
        output = await self.containers.exec_command(
            container_ref, f"cat {self.metadata_path} 2>/dev/null || echo '{{}}'", timeout=30.0
        )
        text = output.strip()
        if not text or text == "{}":
            return None
        try:
            return UpdateMetadata.model_validate(json.loads(text))
        except ValueError:
            self.log.warning("Update metadata in %s is unreadable", container_ref)
            return None

    async def _save_metadata(self, container_ref: str, metadata: UpdateMetadata) -> None:
        content = json.dumps(metadata.model_dump(), indent=2).encode("utf-8")
        archive = pack_file(posixpath.basename(self.metadata_path), content)
        await self.containers.put_archive(container_ref, posixpath.dirname(self.metadata_path), archive)

    async def _jar_info(self, container_ref: str) -> tuple[Optional[int], Optional[str]]:
        size_output = await self.containers.exec_command(
            container_ref, f"stat -c '%s' {self.jar_path} 2>/dev/null || echo '0'", timeout=30.0
        )
        size_text = size_output.strip()
        size = int(size_text) if size_text.isdigit() else 0
        if size == 0:
            return None, None
        hash_output = await self.containers.exec_command(
            container_ref, f"md5sum {self.jar_path} 2>/dev/null | cut -d' ' -f1", timeout=30.0
        )
        return size, hash_output.strip() or None
