import logging
import os
import shutil
import stat
import tarfile
import tempfile
import time
from typing import BinaryIO, Callable, Iterator

from ..errors import NotFoundError, PathTraversalError, ServiceError
from ..models import FileEntry, ServerFilesStatus

EDITABLE_EXTENSIONS = {
    ".json",
    ".yaml",
    ".yml",
    ".properties",
    ".txt",
    ".cfg",
    ".conf",
    ".xml",
    ".toml",
    ".ini",
    ".lua",
    ".js",
    ".sh",
    ".bat",
    ".md",
    ".log",
}

FILE_ICONS = {
    ".jar": "java",
    ".zip": "archive",
    ".tar": "archive",
    ".gz": "archive",
    ".7z": "archive",
    ".rar": "archive",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".properties": "config",
    ".cfg": "config",
    ".conf": "config",
    ".xml": "config",
    ".toml": "config",
    ".ini": "config",
    ".txt": "text",
    ".md": "text",
    ".log": "log",
    ".png": "image",
    ".jpg": "image",
    ".jpeg": "image",
    ".gif": "image",
    ".webp": "image",
    ".lua": "script",
    ".js": "script",
    ".sh": "script",
    ".bat": "script",
    ".dat": "data",
    ".db": "data",
    ".ldb": "data",
    ".ogg": "audio",
    ".mp3": "audio",
    ".wav": "audio",
}

UPLOAD_EXTENSIONS = EDITABLE_EXTENSIONS | {
    ".jar",
    ".zip",
    ".tar",
    ".gz",
    ".7z",
    ".rar",
    ".dat",
    ".nbt",
    ".mca",
    ".mcr",
    ".db",
    ".ldb",
    ".png",
    ".jpg",
    ".jpeg",
    ".gif",
    ".webp",
    ".ogg",
    ".mp3",
    ".wav",
    ".csv",
}

UPLOAD_CHUNK_SIZE = 1024 * 1024

SERVER_JAR = "HytaleServer.jar"
ASSETS_ARCHIVE = "Assets.zip"
CREDENTIALS_FILE = ".hytale-downloader-credentials.json"
DOWNLOAD_MARKER = ".download_attempted"
WIPE_DIRECTORIES = ("universe", "logs", "config", ".cache")


def is_editable(name: str) -> bool:
    return os.path.splitext(name)[1].lower() in EDITABLE_EXTENSIONS


def file_icon(name: str, is_directory: bool) -> str:
    if is_directory:
        return "folder"
    return FILE_ICONS.get(os.path.splitext(name)[1].lower(), "file")


class FileService:
    """File operations scoped to one server's data directory (mounted at /opt/hytale)."""

    def __init__(self, root_for: Callable[[str], str]) -> None:
        self._root_for = root_for
        self.log = logging.getLogger(__name__)

    def list_directory(self, server_id: str, path: str = "/") -> list[FileEntry]:
        target = self._resolve(server_id, path)
        if not os.path.isdir(target):
            raise NotFoundError(f"Directory not found: {path}")

        entries: list[FileEntry] = []
        with os.scandir(target) as iterator:
            for entry in iterator:
                is_directory = entry.is_dir()
                try:
                    info = entry.stat()
                    permissions = stat.filemode(info.st_mode)
                    size = None if is_directory else info.st_size
                except OSError:
                    permissions = "drwxr-xr-x" if is_directory else "-rw-r--r--"
                    size = None
                entries.append(
                    FileEntry(
                        name=entry.name,
                        is_directory=is_directory,
                        size=size,
                        permissions=permissions,
                        icon=file_icon(entry.name, is_directory),
                        editable=not is_directory and is_editable(entry.name),
                    )
                )
        entries.sort(key=lambda item: (not item.is_directory, item.name.lower()))
        return entries

    def read_content(self, server_id: str, path: str) -> str:
        target = self._resolve(server_id, path)
        if not is_editable(target):
            raise ServiceError(400, "File type not editable")
        try:
            with open(target, "r", encoding="utf-8", errors="replace") as handle:
                return handle.read()
        except FileNotFoundError as exc:
            raise NotFoundError(f"File not found: {path}") from exc
        except OSError as exc:
            raise ServiceError(500, f"Failed to read file: {exc}") from exc

    def write_content(self, server_id: str, path: str, content: str) -> None:
        target = self._resolve(server_id, path)
        try:
            with open(target, "w", encoding="utf-8") as handle:
                handle.write(content)
        except OSError as exc:
            raise ServiceError(500, f"Failed to write file: {exc}") from exc

    def create_backup(self, server_id: str, path: str) -> str:
        target = self._resolve(server_id, path)
        backup = f"{target}.backup.{int(time.time() * 1000)}"
        try:
            shutil.copyfile(target, backup)
        except FileNotFoundError as exc:
            raise NotFoundError(f"File not found: {path}") from exc
        except OSError as exc:
            raise ServiceError(500, f"Failed to create backup: {exc}") from exc
        root = self._root(server_id)
        return "/" + os.path.relpath(backup, root)

    def create_directory(self, server_id: str, path: str) -> None:
        target = self._resolve(server_id, path)
        try:
            os.makedirs(target, exist_ok=True)
        except OSError as exc:
            raise ServiceError(500, f"Failed to create directory: {exc}") from exc

    def delete_item(self, server_id: str, path: str) -> None:
        target = self._resolve(server_id, path)
        if target == self._root(server_id):
            raise ServiceError(400, "Cannot delete root directory")
        try:
            if os.path.isdir(target) and not os.path.islink(target):
                shutil.rmtree(target)
            elif os.path.lexists(target):
                os.remove(target)
        except OSError as exc:
            raise ServiceError(500, f"Failed to delete {path}: {exc}") from exc

    def rename_item(self, server_id: str, old_path: str, new_path: str) -> None:
        source = self._resolve(server_id, old_path)
        destination = self._resolve(server_id, new_path)
        if source == self._root(server_id):
            raise ServiceError(400, "Cannot rename root directory")
        try:
            os.rename(source, destination)
        except FileNotFoundError as exc:
            raise NotFoundError(f"File not found: {old_path}") from exc
        except OSError as exc:
            raise ServiceError(500, f"Failed to rename {old_path}: {exc}") from exc

    def save_upload(
        self, server_id: str, target_dir: str, file_name: str, source: BinaryIO, max_bytes: int
    ) -> str:
        """Copy an uploaded file into ``target_dir``; returns the stored name.

        A file over ``max_bytes`` is rejected with 413; an existing file of the same
        name is only replaced once the whole upload has been written.
        """
        name = os.path.basename((file_name or "").replace("\\", "/"))
        if not name or name in (".", ".."):
            raise ServiceError(400, "No file provided")
        extension = os.path.splitext(name)[1].lower()
        if extension not in UPLOAD_EXTENSIONS:
            raise ServiceError(400, f"File type not allowed: {extension or name}")

        directory = self._resolve(server_id, target_dir or "/")
        if not os.path.isdir(directory):
            raise NotFoundError(f"Directory not found: {target_dir}")

        target = os.path.join(directory, name)
        partial = f"{target}.part"
        written = 0
        try:
            with open(partial, "wb") as handle:
                while True:
                    chunk = source.read(UPLOAD_CHUNK_SIZE)
                    if not chunk:
                        break
                    written += len(chunk)
                    if written > max_bytes:
                        raise ServiceError(
                            413, f"File too large (max {max_bytes // (1024 * 1024)}MB)"
                        )
                    handle.write(chunk)
            os.replace(partial, target)
        except ServiceError:
            os.remove(partial)
            raise
        except OSError as exc:
            if os.path.exists(partial):
                os.remove(partial)
            raise ServiceError(500, f"Failed to save upload: {exc}") from exc
        self.log.info("Uploaded %s (%s bytes) to server %s", name, written, server_id)
        return name

    def archive(self, server_id: str, path: str) -> tuple[str, BinaryIO]:
        """Pack a file or directory into a tar archive, rewound and ready to stream."""
        if not path:
            raise ServiceError(400, "Path required")
        target = self._resolve(server_id, path)
        if not os.path.lexists(target):
            raise NotFoundError(f"File not found: {path}")

        root = self._root(server_id)
        name = os.path.basename(target) if target != root else "server"
        spool = tempfile.SpooledTemporaryFile(max_size=8 * 1024 * 1024)
        try:
            with tarfile.open(fileobj=spool, mode="w") as archive:
                archive.add(target, arcname=name)
        except OSError as exc:
            spool.close()
            raise ServiceError(500, f"Failed to archive {path}: {exc}") from exc
        spool.seek(0)
        return name, spool

    def check_server_files(self, server_id: str) -> ServerFilesStatus:
        root = self._root(server_id)
        has_jar = os.path.isfile(os.path.join(root, SERVER_JAR))
        has_assets = os.path.isfile(os.path.join(root, ASSETS_ARCHIVE))
        return ServerFilesStatus(has_jar=has_jar, has_assets=has_assets, ready=has_jar and has_assets)

    def check_auth(self, server_id: str) -> bool:
        path = os.path.join(self._root(server_id), CREDENTIALS_FILE)
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as handle:
                return "access_token" in handle.read()
        except OSError:
            return False

    def wipe_data(self, server_id: str) -> None:
        root = self._root(server_id)
        for name in WIPE_DIRECTORIES:
            directory = os.path.join(root, name)
            try:
                shutil.rmtree(directory, ignore_errors=True)
                os.makedirs(directory, exist_ok=True)
            except OSError as exc:
                raise ServiceError(500, f"Failed to reset {name}: {exc}") from exc
        for name in (DOWNLOAD_MARKER, CREDENTIALS_FILE):
            try:
                os.remove(os.path.join(root, name))
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise ServiceError(500, f"Failed to delete {name}: {exc}") from exc
        self.log.info("Wiped runtime data for server %s", server_id)

    def _root(self, server_id: str) -> str:
        return os.path.realpath(self._root_for(server_id))

    def _resolve(self, server_id: str, path: str) -> str:
        if ".." in (path or ""):
            raise PathTraversalError()
        root = self._root(server_id)
        relative = os.path.normpath((path or "").replace("\\", "/").lstrip("/"))
        if relative in ("", "."):
            return root
        target = os.path.realpath(os.path.join(root, relative))
        if target != root and not target.startswith(root + os.sep):
            raise PathTraversalError()
        return target


def iter_archive(handle: BinaryIO, chunk_size: int = UPLOAD_CHUNK_SIZE) -> Iterator[bytes]:
    try:
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                return
            yield chunk
    finally:
        handle.close()
