import asyncio
import json
import logging
import os
import posixpath
import re
import shlex
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from ..config import settings
from ..errors import NotFoundError, ServiceError
from ..models import (
    InstalledMod,
    ModLedger,
    ModMetadata,
    ModUpdate,
    SessionContext,
)
from .container_service import ContainerService, pack_file, unpack_file
from .modtale_service import ModtaleService

DISABLED_SUFFIX = ".disabled"
MOD_EXTENSIONS = (".jar", ".zip")
CATALOG_PROVIDER = "modtale"
LOCAL_PROVIDER = "local"

_VERSION_TAIL = re.compile(r"-[\d.]+.*$")
_FILE_VERSION = re.compile(r"-(\d+\.\d+(?:\.\d+)?)")
_SEARCH_SUFFIX = re.compile(r"\.(jar|zip|disabled)$", re.IGNORECASE)

Progress = Callable[[str], Awaitable[None]]


def derive_title(file_name: str) -> str:
    stem = re.sub(r"\.(jar|zip)$", "", file_name, flags=re.IGNORECASE)
    trimmed = _VERSION_TAIL.sub("", stem) or stem
    return re.sub(r"[-_]+", " ", trimmed).strip() or stem


def derive_search_term(file_name: str) -> str:
    term = file_name
    while True:
        stripped = _SEARCH_SUFFIX.sub("", term)
        if stripped == term:
            break
        term = stripped
    term = _VERSION_TAIL.sub("", term)
    return re.sub(r"[-_]", " ", term).strip()


def default_file_name(title: str, version_name: str, classification: Optional[str]) -> str:
    extension = "zip" if classification == "MODPACK" else "jar"
    return f"{re.sub(r'[^a-zA-Z0-9]', '-', title)}-{version_name}.{extension}"


class ModStorage:
    """Where a server's mod files and ledger live."""

    async def ensure_ready(self, ctx: SessionContext) -> None:
        raise NotImplementedError

    async def read_ledger(self, ctx: SessionContext) -> Optional[str]:
        raise NotImplementedError

    async def write_ledger(self, ctx: SessionContext, content: str) -> None:
        raise NotImplementedError

    async def list_files(self, ctx: SessionContext) -> dict[str, int]:
        raise NotImplementedError

    async def write_file(self, ctx: SessionContext, name: str, content: bytes) -> None:
        raise NotImplementedError

    async def exists(self, ctx: SessionContext, name: str) -> bool:
        raise NotImplementedError

    async def rename(self, ctx: SessionContext, source: str, target: str) -> None:
        raise NotImplementedError

    async def remove(self, ctx: SessionContext, *names: str) -> None:
        raise NotImplementedError


class ContainerModStorage(ModStorage):
    """Mods directory and ledger inside the running container, via exec and tar archives."""

    def __init__(
        self,
        containers: ContainerService,
        mods_dir: str = settings.mods_dir,
        ledger_path: str = settings.mods_metadata_file,
    ) -> None:
        self.containers = containers
        self.mods_dir = mods_dir
        self.ledger_path = ledger_path

    async def ensure_ready(self, ctx: SessionContext) -> None:
        await self.containers.exec_command(
            ctx.container_ref, f"mkdir -p {shlex.quote(self.mods_dir)}", timeout=5.0
        )

    async def read_ledger(self, ctx: SessionContext) -> Optional[str]:
        try:
            archive = await self.containers.get_archive(ctx.container_ref, self.ledger_path)
        except NotFoundError:
            return None
        return unpack_file(archive).decode("utf-8", errors="replace")

    async def write_ledger(self, ctx: SessionContext, content: str) -> None:
        archive = pack_file(posixpath.basename(self.ledger_path), content.encode("utf-8"))
        await self.containers.put_archive(
            ctx.container_ref, posixpath.dirname(self.ledger_path), archive
        )

    async def list_files(self, ctx: SessionContext) -> dict[str, int]:
        command = (
            f"cd {shlex.quote(self.mods_dir)} 2>/dev/null && "
            "for f in *.jar *.zip *.disabled; do "
            "[ -f \"$f\" ] && stat -c '%s|%n' \"$f\"; done; true"
        )
        output = await self.containers.exec_command(ctx.container_ref, command, timeout=30.0)
        files: dict[str, int] = {}
        for line in output.splitlines():
            size, sep, name = line.strip().partition("|")
            if not sep or not size.isdigit() or not _is_mod_file(name):
                continue
            files[name] = int(size)
        return files

    async def write_file(self, ctx: SessionContext, name: str, content: bytes) -> None:
        await self.containers.put_archive(ctx.container_ref, self.mods_dir, pack_file(name, content))

    async def exists(self, ctx: SessionContext, name: str) -> bool:
        path = shlex.quote(posixpath.join(self.mods_dir, name))
        output = await self.containers.exec_command(
            ctx.container_ref, f"test -f {path} && echo EXISTS || echo NOT_FOUND", timeout=30.0
        )
        return "EXISTS" in output

    async def rename(self, ctx: SessionContext, source: str, target: str) -> None:
        src = shlex.quote(posixpath.join(self.mods_dir, source))
        dst = shlex.quote(posixpath.join(self.mods_dir, target))
        await self.containers.exec_command(ctx.container_ref, f"mv {src} {dst}", timeout=5.0)

    async def remove(self, ctx: SessionContext, *names: str) -> None:
        if not names:
            return
        paths = " ".join(shlex.quote(posixpath.join(self.mods_dir, name)) for name in names)
        await self.containers.exec_command(ctx.container_ref, f"rm -f {paths}", timeout=5.0)


class LocalModStorage(ModStorage):
    """Mods directory and ledger in the server's bind-mounted data directory on this host."""

    def __init__(self, root_for: Callable[[str], str]) -> None:
        self._root_for = root_for

    def _mods_dir(self, ctx: SessionContext) -> str:
        return os.path.join(self._root_for(ctx.server_id), "mods")

    def _ledger_path(self, ctx: SessionContext) -> str:
        return os.path.join(self._root_for(ctx.server_id), "mods.json")

    async def ensure_ready(self, ctx: SessionContext) -> None:
        await asyncio.to_thread(os.makedirs, self._mods_dir(ctx), exist_ok=True)

    async def read_ledger(self, ctx: SessionContext) -> Optional[str]:
        def read() -> Optional[str]:
            try:
                with open(self._ledger_path(ctx), "r", encoding="utf-8") as handle:
                    return handle.read()
            except FileNotFoundError:
                return None

        return await asyncio.to_thread(read)

    async def write_ledger(self, ctx: SessionContext, content: str) -> None:
        def write() -> None:
            path = self._ledger_path(ctx)
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "w", encoding="utf-8") as handle:
                handle.write(content)

        await asyncio.to_thread(write)

    async def list_files(self, ctx: SessionContext) -> dict[str, int]:
        def scan() -> dict[str, int]:
            directory = self._mods_dir(ctx)
            if not os.path.isdir(directory):
                return {}
            files: dict[str, int] = {}
            with os.scandir(directory) as iterator:
                for entry in iterator:
                    if entry.is_file() and _is_mod_file(entry.name):
                        files[entry.name] = entry.stat().st_size
            return files

        return await asyncio.to_thread(scan)

    async def write_file(self, ctx: SessionContext, name: str, content: bytes) -> None:
        def write() -> None:
            directory = self._mods_dir(ctx)
            os.makedirs(directory, exist_ok=True)
            with open(os.path.join(directory, name), "wb") as handle:
                handle.write(content)

        await asyncio.to_thread(write)

    async def exists(self, ctx: SessionContext, name: str) -> bool:
        return await asyncio.to_thread(os.path.isfile, os.path.join(self._mods_dir(ctx), name))

    async def rename(self, ctx: SessionContext, source: str, target: str) -> None:
        directory = self._mods_dir(ctx)
        await asyncio.to_thread(
            os.rename, os.path.join(directory, source), os.path.join(directory, target)
        )

    async def remove(self, ctx: SessionContext, *names: str) -> None:
        def unlink() -> None:
            directory = self._mods_dir(ctx)
            for name in names:
                try:
                    os.remove(os.path.join(directory, name))
                except FileNotFoundError:
                    continue

        await asyncio.to_thread(unlink)


class ModManager:
    def __init__(self, storage: ModStorage, catalog: ModtaleService) -> None:
        self.storage = storage
        self.catalog = catalog
        self.log = logging.getLogger(__name__)

    async def list_mods(self, ctx: SessionContext) -> list[InstalledMod]:
        """Return the ledger reconciled against the mods directory.

        Entries whose file is gone are pruned from the ledger. Files with no entry get a
        synthesized local entry. The ledger is written back only when something changed.
        """
        ledger = await self._load(ctx)
        files = await self.storage.list_files(ctx)

        changed = False
        known: set[str] = set()
        kept: list[InstalledMod] = []
        for mod in ledger.mods:
            known.add(mod.file_name)
            enabled_exists = mod.file_name in files
            disabled_exists = f"{mod.file_name}{DISABLED_SUFFIX}" in files
            if not enabled_exists and not disabled_exists:
                self.log.info("Dropping %s from ledger, file is gone", mod.file_name)
                changed = True
                continue
            if enabled_exists and disabled_exists:
                self.log.warning(
                    "Both %s and its disabled copy exist, treating it as disabled", mod.file_name
                )
            enabled = enabled_exists and not disabled_exists
            present_name = mod.file_name if enabled_exists else f"{mod.file_name}{DISABLED_SUFFIX}"
            if mod.enabled != enabled:
                changed = True
            kept.append(
                mod.model_copy(
                    update={
                        "enabled": enabled,
                        "file_exists": True,
                        "file_size": files.get(present_name, mod.file_size),
                    }
                )
            )

        now = _now_iso()
        for name in sorted(files):
            base = name[: -len(DISABLED_SUFFIX)] if name.endswith(DISABLED_SUFFIX) else name
            if base in known:
                continue
            known.add(base)
            kept.append(
                InstalledMod(
                    id=str(uuid.uuid4()),
                    provider_id=LOCAL_PROVIDER,
                    title=derive_title(base),
                    file_name=base,
                    file_size=files[name],
                    enabled=name == base,
                    installed_at=now,
                    updated_at=now,
                    is_local=True,
                    file_exists=True,
                )
            )
            changed = True

        if changed:
            ledger.mods = kept
            await self._save(ctx, ledger)
        return kept

    async def enrich(self, ctx: SessionContext, mods: list[InstalledMod]) -> list[InstalledMod]:
        if not self.catalog.is_configured():
            return mods
        candidates = [mod for mod in mods if mod.is_local and not mod.project_id]
        if not candidates:
            return mods

        results = await asyncio.gather(*(self._lookup(mod) for mod in candidates))
        updates = {mod.id: found for mod, found in zip(candidates, results) if found}
        if not updates:
            return mods

        try:
            ledger = await self._load(ctx)
            now = _now_iso()
            ledger.mods = [
                mod.model_copy(update={**updates[mod.id], "updated_at": now})
                if mod.id in updates
                else mod
                for mod in ledger.mods
            ]
            await self._save(ctx, ledger)
        except ServiceError as exc:
            self.log.warning("Failed to persist catalog matches: %s", exc.message)
        return [mod.model_copy(update=updates[mod.id]) if mod.id in updates else mod for mod in mods]

    async def get_mod(self, ctx: SessionContext, mod_id: str) -> InstalledMod:
        ledger = await self._load(ctx)
        return ledger.mods[_index_of(ledger, mod_id)]

    async def update_entry(self, ctx: SessionContext, mod_id: str, updates: dict[str, Any]) -> InstalledMod:
        ledger = await self._load(ctx)
        index = _index_of(ledger, mod_id)
        updated = ledger.mods[index].model_copy(update={**updates, "updated_at": _now_iso()})
        ledger.mods[index] = updated
        await self._save(ctx, ledger)
        return updated

    async def install(
        self,
        ctx: SessionContext,
        content: bytes,
        metadata: ModMetadata,
        replace_id: Optional[str] = None,
    ) -> InstalledMod:
        file_name = _safe_file_name(
            metadata.file_name
            or default_file_name(metadata.title, metadata.version_name, metadata.classification)
        )
        await self.storage.ensure_ready(ctx)
        await self.storage.write_file(ctx, file_name, content)

        ledger = await self._load(ctx)
        index = None
        if replace_id is not None:
            index = _index_of(ledger, replace_id)
        elif metadata.project_id:
            for position, mod in enumerate(ledger.mods):
                if mod.project_id == metadata.project_id and mod.version_id == metadata.version_id:
                    index = position
                    break

        now = _now_iso()
        previous = ledger.mods[index] if index is not None else None
        entry = InstalledMod(
            id=previous.id if previous else str(uuid.uuid4()),
            provider_id=metadata.provider_id or CATALOG_PROVIDER,
            project_id=metadata.project_id,
            project_slug=metadata.project_slug,
            title=metadata.title,
            icon_url=metadata.icon_url,
            version_id=metadata.version_id,
            version_name=metadata.version_name,
            classification=metadata.classification or "PLUGIN",
            file_name=file_name,
            file_size=len(content),
            enabled=True,
            installed_at=previous.installed_at if previous else now,
            updated_at=now,
            is_local=False,
            file_exists=True,
        )

        if previous is not None:
            stale = [previous.file_name, f"{previous.file_name}{DISABLED_SUFFIX}"]
            await self.storage.remove(ctx, *[name for name in stale if name != file_name])
            ledger.mods[index] = entry
        else:
            ledger.mods.append(entry)
        await self._save(ctx, ledger)
        self.log.info("Installed %s (%s) as %s", entry.title, entry.version_name, file_name)
        return entry

    async def install_from_catalog(
        self,
        ctx: SessionContext,
        project_id: str,
        version_id: Optional[str],
        metadata: ModMetadata,
        progress: Optional[Progress] = None,
    ) -> InstalledMod:
        if progress:
            await progress("downloading")
        download = await self.catalog.download_version(project_id, metadata.version_name)
        if progress:
            await progress("installing")
        file_name = download.file_name or metadata.file_name
        merged = metadata.model_copy(
            update={
                "provider_id": metadata.provider_id or CATALOG_PROVIDER,
                "project_id": project_id,
                "version_id": version_id,
                "file_name": file_name,
            }
        )
        return await self.install(ctx, download.content, merged)

    async def update_from_catalog(
        self,
        ctx: SessionContext,
        mod_id: str,
        version_id: Optional[str],
        version_name: str,
        file_name: Optional[str] = None,
        progress: Optional[Progress] = None,
    ) -> InstalledMod:
        mod = await self.get_mod(ctx, mod_id)
        if not mod.project_id:
            raise ServiceError(400, "Mod is not linked to a catalog project")
        if progress:
            await progress("downloading")
        download = await self.catalog.download_version(mod.project_id, version_name)
        if progress:
            await progress("installing")
        metadata = ModMetadata(
            provider_id=mod.provider_id,
            project_id=mod.project_id,
            project_slug=mod.project_slug,
            title=mod.title,
            icon_url=mod.icon_url,
            version_id=version_id,
            version_name=version_name,
            classification=mod.classification,
            file_name=download.file_name or file_name,
        )
        return await self.install(ctx, download.content, metadata, replace_id=mod_id)

    async def uninstall(self, ctx: SessionContext, mod_id: str) -> None:
        ledger = await self._load(ctx)
        index = _index_of(ledger, mod_id)
        mod = ledger.mods.pop(index)
        await self.storage.remove(ctx, mod.file_name, f"{mod.file_name}{DISABLED_SUFFIX}")
        await self._save(ctx, ledger)
        self.log.info("Uninstalled %s", mod.file_name)

    async def enable(self, ctx: SessionContext, mod_id: str) -> InstalledMod:
        return await self._toggle(ctx, mod_id, enabled=True)

    async def disable(self, ctx: SessionContext, mod_id: str) -> InstalledMod:
        return await self._toggle(ctx, mod_id, enabled=False)

    async def check_updates(self, ctx: SessionContext) -> list[ModUpdate]:
        mods = await self.list_mods(ctx)
        tracked = [mod for mod in mods if mod.provider_id == CATALOG_PROVIDER and mod.project_id]
        results = await asyncio.gather(*(self._latest_for(mod) for mod in tracked))
        return [update for update in results if update is not None]

    async def _toggle(self, ctx: SessionContext, mod_id: str, enabled: bool) -> InstalledMod:
        ledger = await self._load(ctx)
        index = _index_of(ledger, mod_id)
        mod = ledger.mods[index]
        plain = mod.file_name
        disabled = f"{mod.file_name}{DISABLED_SUFFIX}"
        source, target = (disabled, plain) if enabled else (plain, disabled)

        # Only move a file that is actually there so repeated calls are no-ops
        if await self.storage.exists(ctx, source):
            await self.storage.rename(ctx, source, target)
        elif not await self.storage.exists(ctx, target):
            raise NotFoundError(f"Mod file {plain} is missing")

        updated = mod.model_copy(update={"enabled": enabled, "updated_at": _now_iso()})
        ledger.mods[index] = updated
        await self._save(ctx, ledger)
        return updated

    async def _lookup(self, mod: InstalledMod) -> Optional[dict[str, Any]]:
        term = derive_search_term(mod.file_name)
        if len(term) < 2:
            return None
        try:
            result = await self.catalog.search(query=term, page_size=5)
        except Exception as exc:
            self.log.warning("Catalog lookup failed for %s: %s", mod.file_name, exc)
            return None

        needle = term.lower()
        match = next(
            (
                project
                for project in result.projects
                if project.title.lower() == needle or needle in project.title.lower()
            ),
            None,
        )
        if match is None:
            return None

        updates: dict[str, Any] = {
            "provider_id": CATALOG_PROVIDER,
            "project_id": match.id,
            "project_slug": match.slug,
            "title": match.title,
            "icon_url": match.icon_url,
            "classification": match.classification,
            "is_local": False,
        }
        version_match = _FILE_VERSION.search(mod.file_name)
        if version_match:
            file_version = version_match.group(1)
            known = next((item for item in match.versions if item.version == file_version), None)
            if known is not None:
                updates["version_id"] = known.id
                updates["version_name"] = known.version
            else:
                updates["version_name"] = file_version
        return updates

    async def _latest_for(self, mod: InstalledMod) -> Optional[ModUpdate]:
        try:
            project = await self.catalog.get_project(mod.project_id)
        except Exception as exc:
            self.log.warning("Update check failed for %s: %s", mod.title, exc)
            return None
        latest = project.latest_version
        if latest is None or not latest.id or latest.id == mod.version_id:
            return None
        return ModUpdate(
            mod_id=mod.id,
            project_id=mod.project_id,
            title=mod.title,
            current_version=mod.version_name,
            latest_version=latest.version,
            latest_version_id=latest.id,
            latest_file_name=latest.file_name,
        )

    async def _load(self, ctx: SessionContext) -> ModLedger:
        raw = await self.storage.read_ledger(ctx)
        if raw is None:
            await self.storage.ensure_ready(ctx)
            ledger = ModLedger()
            await self._save(ctx, ledger)
            return ledger
        try:
            return ModLedger.model_validate(json.loads(raw))
        except ValueError:
            self.log.warning("Mod ledger for %s is unreadable, starting fresh", ctx.server_id)
            return ModLedger()

    async def _save(self, ctx: SessionContext, ledger: ModLedger) -> None:
        await self.storage.write_ledger(ctx, json.dumps(ledger.model_dump(), indent=2))


def _is_mod_file(name: str) -> bool:
    return name.endswith(MOD_EXTENSIONS) or name.endswith(DISABLED_SUFFIX)


def _safe_file_name(name: str) -> str:
    cleaned = posixpath.basename(name.replace("\\", "/")).strip()
    if not cleaned or cleaned in (".", ".."):
        raise ServiceError(400, "Invalid mod file name")
    return cleaned


def _index_of(ledger: ModLedger, mod_id: str) -> int:
    for index, mod in enumerate(ledger.mods):
        if mod.id == mod_id:
            return index
    raise NotFoundError("Mod not found")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
