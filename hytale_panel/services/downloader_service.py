import logging
from typing import AsyncIterator, Callable, Optional

from ..config import settings
from ..errors import ServiceError
from ..models import DownloadStatus
from .container_service import ContainerService

AUTH_FAILED_MESSAGE = "Authentication failed or expired. Try again."

AUTH_MARKERS = ("oauth.accounts.", "user_code", "Authorization code")
FORBIDDEN_MARKERS = ("403", "Forbidden")


def _contains_any(markers: tuple[str, ...]) -> Callable[[str], bool]:
    return lambda text: any(marker in text for marker in markers)


# First match wins: the auth prompt must be recognised before the forbidden check
OUTPUT_RULES: list[tuple[Callable[[str], bool], str, Optional[str]]] = [
    (_contains_any(AUTH_MARKERS), "auth-required", None),
    (_contains_any(FORBIDDEN_MARKERS), "error", AUTH_FAILED_MESSAGE),
]


def classify_output(text: str) -> tuple[str, str]:
    """Map one chunk of downloader output to ``(status, message)``."""
    for matches, status, message in OUTPUT_RULES:
        if matches(text):
            return status, message if message is not None else text
    return "output", text


class DownloadOrchestrator:
    def __init__(self, containers: ContainerService, base_path: str = settings.hytale_base_path) -> None:
        self.containers = containers
        self.base_path = base_path.rstrip("/")
        self.log = logging.getLogger(__name__)

    @property
    def download_dir(self) -> str:
        return f"{self.base_path}/.download-temp"

    @property
    def archive_path(self) -> str:
        return f"{self.download_dir}/hytale-game.zip"

    async def download_server_files(
        self, container_ref: str, server_id: Optional[str] = None
    ) -> AsyncIterator[DownloadStatus]:
        """Run the downloader CLI in the container and yield its progress.

        Never raises; every failure ends the sequence with an ``error`` status.
        """

        def status(state: str, message: str) -> DownloadStatus:
            return DownloadStatus(status=state, message=message, server_id=server_id)

        try:
            await self.containers.exec_command(
                container_ref, f"rm -f {self.base_path}/.download_attempted", timeout=30.0
            )
            yield status("starting", "Starting download...")

            await self.containers.exec_command(
                container_ref, f"mkdir -p {self.download_dir}", timeout=30.0
            )
            self.log.info("Starting hytale-downloader in %s", container_ref)
            stream = await self.containers.exec_stream(
                container_ref,
                [
                    "sh",
                    "-c",
                    f"cd {self.base_path} && hytale-downloader -download-path {self.archive_path} 2>&1",
                ],
                tty=True,
            )
        except ServiceError as exc:
            self.log.warning("Download could not start in %s: %s", container_ref, exc.message)
            yield status("error", exc.message)
            return

        try:
            async for chunk in stream:
                text = chunk.decode("utf-8", errors="replace")
                self.log.debug("Download output: %s", text)
                state, message = classify_output(text)
                yield status(state, message)
        except Exception as exc:
            self.log.warning("Download stream failed in %s: %s", container_ref, exc)
            yield status("error", str(exc) or "Download stream failed")
            return
        finally:
            stream.close()

        try:
            await self.containers.exec_command(container_ref, "sync", timeout=30.0)
            listing = await self.containers.exec_command(
                container_ref, f"ls {self.archive_path} 2>/dev/null || echo 'NO_ZIP'", timeout=30.0
            )
            if "NO_ZIP" in listing:
                yield status("done", "Download finished. Check if authentication was completed.")
                return

            yield status("extracting", "Extracting files...")
            await self._extract(container_ref)
        except ServiceError as exc:
            self.log.warning("Download post-processing failed in %s: %s", container_ref, exc.message)
            yield status("error", exc.message)
            return

        self.log.info("Server files downloaded into %s", container_ref)
        yield status("complete", "Download complete!")

    async def _extract(self, container_ref: str) -> None:
        extract_dir = f"{self.download_dir}/extract"
        await self.containers.exec_command(
            container_ref,
            f"unzip -o {self.archive_path} -d {extract_dir} 2>/dev/null || true",
            timeout=60.0,
        )
        # Either binary may be missing from the archive; copy what is there
        for name in ("HytaleServer.jar", "Assets.zip"):
            await self.containers.exec_command(
                container_ref,
                f"find {extract_dir} -name '{name}' -exec cp {{}} {self.base_path}/ \\; 2>/dev/null || true",
                timeout=30.0,
            )
        await self.containers.exec_command(container_ref, f"rm -rf {self.download_dir}", timeout=30.0)
