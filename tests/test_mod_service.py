import asyncio
import json

import pytest

from hytale_panel.errors import NotFoundError, ServiceError
from hytale_panel.models import CatalogDownload, CatalogProject, CatalogVersion, ModMetadata
from hytale_panel.services.mod_service import (
    LocalModStorage,
    ModManager,
    default_file_name,
    derive_search_term,
    derive_title,
)


@pytest.fixture
def root(tmp_path):
    return tmp_path / "servers"


@pytest.fixture
def mods_dir(root, ctx):
    path = root / ctx.server_id / "mods"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def manager(root, catalog):
    return ModManager(LocalModStorage(lambda server_id: str(root / server_id)), catalog)


def ledger(root, ctx):
    return json.loads((root / ctx.server_id / "mods.json").read_text(encoding="utf-8"))


def catalog_metadata(**overrides):
    values = {
        "project_id": "proj-1",
        "project_slug": "better-chat",
        "title": "Better Chat",
        "version_id": "v1",
        "version_name": "1.0.0",
        "classification": "PLUGIN",
    }
    values.update(overrides)
    return ModMetadata(**values)


def test_derived_names():
    assert derive_title("CoolMod-1.2.0.jar") == "CoolMod"
    assert derive_title("world_edit.jar") == "world edit"
    assert derive_search_term("CoolMod-1.2.0.jar.disabled") == "CoolMod"
    assert default_file_name("My Pack", "2.1", "MODPACK") == "My-Pack-2.1.zip"
    assert default_file_name("Chat", "1.0", None) == "Chat-1.0.jar"


def test_list_creates_missing_ledger(manager, root, ctx):
    assert asyncio.run(manager.list_mods(ctx)) == []
    assert ledger(root, ctx) == {"version": 1, "mods": []}


def test_unknown_files_become_local_entries(manager, mods_dir, ctx):
    (mods_dir / "CoolMod-1.2.0.jar").write_bytes(b"x" * 10)
    (mods_dir / "Other.jar.disabled").write_bytes(b"y")
    (mods_dir / "readme.txt").write_text("ignored")

    mods = {mod.file_name: mod for mod in asyncio.run(manager.list_mods(ctx))}

    assert set(mods) == {"CoolMod-1.2.0.jar", "Other.jar"}
    assert mods["CoolMod-1.2.0.jar"].enabled is True
    assert mods["CoolMod-1.2.0.jar"].is_local is True
    assert mods["CoolMod-1.2.0.jar"].title == "CoolMod"
    assert mods["CoolMod-1.2.0.jar"].file_size == 10
    assert mods["Other.jar"].enabled is False


def test_every_listed_mod_matches_one_file(manager, mods_dir, ctx):
    installed = asyncio.run(manager.install(ctx, b"a", catalog_metadata()))
    asyncio.run(manager.disable(ctx, installed.id))
    (mods_dir / "Loose.zip").write_bytes(b"z")

    for mod in asyncio.run(manager.list_mods(ctx)):
        present = [
            name
            for name in (mod.file_name, f"{mod.file_name}.disabled")
            if (mods_dir / name).is_file()
        ]
        assert len(present) == 1
        assert mod.enabled == (present[0] == mod.file_name)


def test_vanished_files_are_pruned_from_ledger(manager, mods_dir, root, ctx):
    installed = asyncio.run(manager.install(ctx, b"a", catalog_metadata()))
    (mods_dir / installed.file_name).unlink()

    assert asyncio.run(manager.list_mods(ctx)) == []
    assert ledger(root, ctx)["mods"] == []


def test_install_writes_file_and_entry(manager, mods_dir, ctx):
    mod = asyncio.run(manager.install(ctx, b"payload", catalog_metadata()))

    assert mod.file_name == "Better-Chat-1.0.0.jar"
    assert (mods_dir / "Better-Chat-1.0.0.jar").read_bytes() == b"payload"
    assert mod.provider_id == "modtale"
    assert mod.file_size == 7
    listed = asyncio.run(manager.list_mods(ctx))
    assert [item.id for item in listed] == [mod.id]


def test_reinstall_same_version_replaces_entry(manager, ctx):
    first = asyncio.run(manager.install(ctx, b"a", catalog_metadata()))
    second = asyncio.run(manager.install(ctx, b"bb", catalog_metadata()))

    mods = asyncio.run(manager.list_mods(ctx))
    assert len(mods) == 1
    assert second.id == first.id
    assert second.installed_at == first.installed_at
    assert second.file_size == 2


def test_install_strips_directories_from_file_name(manager, mods_dir, ctx):
    mod = asyncio.run(manager.install(ctx, b"a", catalog_metadata(file_name="../../evil.jar")))

    assert mod.file_name == "evil.jar"
    assert (mods_dir / "evil.jar").is_file()


def test_update_replaces_old_file(manager, catalog, mods_dir, ctx):
    original = asyncio.run(
        manager.install(ctx, b"old", catalog_metadata(file_name="better-chat-1.0.0.jar"))
    )
    catalog.downloads[("proj-1", "2.0.0")] = CatalogDownload(
        content=b"new", file_name="better-chat-2.0.0.jar"
    )
    progress = []

    async def track(state):
        progress.append(state)

    updated = asyncio.run(
        manager.update_from_catalog(ctx, original.id, "v2", "2.0.0", progress=track)
    )

    assert progress == ["downloading", "installing"]
    assert updated.id == original.id
    assert updated.installed_at == original.installed_at
    assert updated.version_id == "v2"
    assert not (mods_dir / "better-chat-1.0.0.jar").exists()
    assert (mods_dir / "better-chat-2.0.0.jar").read_bytes() == b"new"
    assert len(asyncio.run(manager.list_mods(ctx))) == 1


def test_update_of_local_mod_is_rejected(manager, mods_dir, ctx):
    (mods_dir / "Loose.jar").write_bytes(b"z")
    [mod] = asyncio.run(manager.list_mods(ctx))

    with pytest.raises(ServiceError) as excinfo:
        asyncio.run(manager.update_from_catalog(ctx, mod.id, "v2", "2.0.0"))
    assert excinfo.value.status_code == 400


def test_disable_and_enable_are_idempotent(manager, mods_dir, ctx):
    mod = asyncio.run(manager.install(ctx, b"a", catalog_metadata()))
    plain = mods_dir / mod.file_name
    disabled = mods_dir / f"{mod.file_name}.disabled"

    for _ in range(2):
        result = asyncio.run(manager.disable(ctx, mod.id))
        assert result.enabled is False
        assert disabled.is_file() and not plain.exists()

    for _ in range(2):
        result = asyncio.run(manager.enable(ctx, mod.id))
        assert result.enabled is True
        assert plain.is_file() and not disabled.exists()


def test_toggle_without_backing_file_leaves_ledger_alone(manager, mods_dir, root, ctx):
    mod = asyncio.run(manager.install(ctx, b"a", catalog_metadata()))
    (mods_dir / mod.file_name).unlink()
    before = ledger(root, ctx)

    with pytest.raises(NotFoundError):
        asyncio.run(manager.disable(ctx, mod.id))

    assert ledger(root, ctx) == before


def test_both_file_variants_are_reported_as_disabled(manager, mods_dir, ctx, caplog):
    mod = asyncio.run(manager.install(ctx, b"a", catalog_metadata()))
    (mods_dir / f"{mod.file_name}.disabled").write_bytes(b"a")

    with caplog.at_level("WARNING", logger="hytale_panel.services.mod_service"):
        [listed] = asyncio.run(manager.list_mods(ctx))

    assert listed.enabled is False
    assert any("disabled copy exist" in record.getMessage() for record in caplog.records)


def test_uninstall_removes_file_and_entry(manager, mods_dir, ctx):
    mod = asyncio.run(manager.install(ctx, b"a", catalog_metadata()))
    asyncio.run(manager.disable(ctx, mod.id))

    asyncio.run(manager.uninstall(ctx, mod.id))

    assert list(mods_dir.iterdir()) == []
    assert asyncio.run(manager.list_mods(ctx)) == []
    with pytest.raises(NotFoundError):
        asyncio.run(manager.uninstall(ctx, mod.id))


def test_enrich_links_local_files_to_catalog(manager, catalog, mods_dir, ctx):
    (mods_dir / "CoolMod-1.2.0.jar").write_bytes(b"x")
    catalog.search_results = [
        CatalogProject(
            id="cool",
            slug="coolmod",
            title="CoolMod",
            classification="PLUGIN",
            versions=[CatalogVersion(id="v120", version="1.2.0")],
        )
    ]
    mods = asyncio.run(manager.list_mods(ctx))

    [enriched] = asyncio.run(manager.enrich(ctx, mods))

    assert enriched.project_id == "cool"
    assert enriched.version_id == "v120"
    assert enriched.is_local is False
    [stored] = asyncio.run(manager.list_mods(ctx))
    assert stored.project_id == "cool"


def test_enrich_survives_catalog_failures(manager, catalog, mods_dir, ctx):
    (mods_dir / "CoolMod-1.2.0.jar").write_bytes(b"x")
    (mods_dir / "Other-2.0.jar").write_bytes(b"y")
    catalog.failing = {"CoolMod"}
    catalog.search_results = [CatalogProject(id="other", slug="other", title="Other")]
    mods = asyncio.run(manager.list_mods(ctx))

    enriched = {mod.file_name: mod for mod in asyncio.run(manager.enrich(ctx, mods))}

    assert enriched["CoolMod-1.2.0.jar"].project_id is None
    assert enriched["Other-2.0.jar"].project_id == "other"
    assert enriched["Other-2.0.jar"].version_name == "2.0"


def test_enrich_is_skipped_without_catalog_key(manager, catalog, mods_dir, ctx):
    (mods_dir / "CoolMod-1.2.0.jar").write_bytes(b"x")
    catalog.configured = False
    mods = asyncio.run(manager.list_mods(ctx))

    assert asyncio.run(manager.enrich(ctx, mods)) == mods
    assert catalog.searches == []


def test_check_updates_reports_newer_versions(manager, catalog, ctx):
    asyncio.run(manager.install(ctx, b"a", catalog_metadata()))
    asyncio.run(
        manager.install(
            ctx, b"b", catalog_metadata(project_id="proj-2", title="Broken", version_id="v9")
        )
    )
    asyncio.run(
        manager.install(
            ctx, b"c", catalog_metadata(project_id="proj-3", title="Current", version_id="v5")
        )
    )
    latest = CatalogVersion(id="v2", version="2.0.0", file_name="better-chat-2.0.0.jar")
    catalog.projects["proj-1"] = CatalogProject(
        id="proj-1", slug="better-chat", title="Better Chat", versions=[latest], latest_version=latest
    )
    current = CatalogVersion(id="v5", version="1.0.0")
    catalog.projects["proj-3"] = CatalogProject(
        id="proj-3", slug="current", title="Current", versions=[current], latest_version=current
    )
    catalog.failing = {"proj-2"}

    [update] = asyncio.run(manager.check_updates(ctx))

    assert update.project_id == "proj-1"
    assert update.current_version == "1.0.0"
    assert update.latest_version == "2.0.0"
    assert update.latest_version_id == "v2"
    assert update.latest_file_name == "better-chat-2.0.0.jar"
