import io
import os
import tarfile

import pytest

from hytale_panel.errors import NotFoundError, PathTraversalError, ServiceError
from hytale_panel.services.file_service import CREDENTIALS_FILE, FileService, iter_archive


@pytest.fixture
def root(tmp_path):
    path = tmp_path / "server"
    path.mkdir()
    return path


@pytest.fixture
def files(root):
    return FileService(lambda server_id: str(root))


def test_listing_puts_directories_first(files, root):
    (root / "universe").mkdir()
    (root / "config.json").write_text("{}")
    (root / "Assets.zip").write_bytes(b"zip")

    entries = files.list_directory("srv", "/")

    assert [entry.name for entry in entries] == ["universe", "Assets.zip", "config.json"]
    assert entries[0].icon == "folder"
    assert entries[0].size is None
    assert entries[1].editable is False
    assert entries[2].editable is True
    assert entries[2].icon == "json"


@pytest.mark.parametrize("path", ["../secret", "/config/../../etc/passwd", "..\\boot.ini"])
def test_parent_references_are_rejected(files, path):
    with pytest.raises(PathTraversalError):
        files.read_content("srv", path)


def test_symlink_escape_is_rejected(files, root, tmp_path):
    outside = tmp_path / "outside.txt"
    outside.write_text("secret")
    os.symlink(outside, root / "link.txt")

    with pytest.raises(PathTraversalError):
        files.read_content("srv", "link.txt")


def test_read_refuses_binary_files(files, root):
    (root / "HytaleServer.jar").write_bytes(b"PK")

    with pytest.raises(ServiceError) as excinfo:
        files.read_content("srv", "/HytaleServer.jar")
    assert excinfo.value.status_code == 400


def test_save_with_backup(files, root):
    (root / "config.json").write_text('{"MaxPlayers": 10}')

    backup = files.create_backup("srv", "/config.json")
    files.write_content("srv", "/config.json", '{"MaxPlayers": 20}')

    assert backup.startswith("/config.json.backup.")
    assert (root / backup.lstrip("/")).read_text() == '{"MaxPlayers": 10}'
    assert files.read_content("srv", "config.json") == '{"MaxPlayers": 20}'


def test_mkdir_rename_delete(files, root):
    files.create_directory("srv", "/backups/daily")
    files.rename_item("srv", "/backups", "/archive")
    assert (root / "archive" / "daily").is_dir()

    files.delete_item("srv", "/archive")
    assert not (root / "archive").exists()


def test_root_cannot_be_deleted(files):
    with pytest.raises(ServiceError) as excinfo:
        files.delete_item("srv", "/")
    assert excinfo.value.message == "Cannot delete root directory"


def test_missing_directory(files):
    with pytest.raises(NotFoundError):
        files.list_directory("srv", "/nope")


def test_readiness_and_auth_checks(files, root):
    assert files.check_server_files("srv").ready is False
    assert files.check_auth("srv") is False

    (root / "HytaleServer.jar").write_bytes(b"PK")
    (root / "Assets.zip").write_bytes(b"PK")
    (root / CREDENTIALS_FILE).write_text('{"access_token": "abc"}')

    status = files.check_server_files("srv")
    assert status.has_jar and status.has_assets and status.ready
    assert files.check_auth("srv") is True


def test_wipe_keeps_binaries(files, root):
    (root / "HytaleServer.jar").write_bytes(b"PK")
    (root / "universe" / "worlds").mkdir(parents=True)
    (root / "logs").mkdir()
    (root / "logs" / "latest.log").write_text("old")
    (root / ".download_attempted").write_text("")
    (root / CREDENTIALS_FILE).write_text('{"access_token": "abc"}')

    files.wipe_data("srv")

    assert (root / "HytaleServer.jar").exists()
    for name in ("universe", "logs", "config", ".cache"):
        assert (root / name).is_dir()
        assert list((root / name).iterdir()) == []
    assert not (root / ".download_attempted").exists()
    assert not (root / CREDENTIALS_FILE).exists()


def test_upload_lands_in_target_directory(files, root):
    (root / "mods").mkdir()

    name = files.save_upload("srv", "/mods", "C:\\Users\\me\\Cool.jar", io.BytesIO(b"PK"), 1024)

    assert name == "Cool.jar"
    assert (root / "mods" / "Cool.jar").read_bytes() == b"PK"
    assert not (root / "mods" / "Cool.jar.part").exists()


def test_upload_rejects_unlisted_extension(files, root):
    with pytest.raises(ServiceError) as excinfo:
        files.save_upload("srv", "/", "payload.exe", io.BytesIO(b"MZ"), 1024)
    assert excinfo.value.status_code == 400
    assert list(root.iterdir()) == []


def test_oversized_upload_keeps_existing_file(files, root):
    (root / "config.json").write_text('{"MaxPlayers": 10}')

    with pytest.raises(ServiceError) as excinfo:
        files.save_upload("srv", "/", "config.json", io.BytesIO(b"x" * 2048), 1024)

    assert excinfo.value.status_code == 413
    assert (root / "config.json").read_text() == '{"MaxPlayers": 10}'
    assert not (root / "config.json.part").exists()


def test_upload_into_missing_or_escaping_directory(files):
    with pytest.raises(NotFoundError):
        files.save_upload("srv", "/nope", "config.json", io.BytesIO(b"{}"), 1024)
    with pytest.raises(PathTraversalError):
        files.save_upload("srv", "../elsewhere", "config.json", io.BytesIO(b"{}"), 1024)


def test_archive_packs_directory(files, root):
    (root / "universe" / "worlds").mkdir(parents=True)
    (root / "universe" / "worlds" / "level.dat").write_bytes(b"level")

    name, handle = files.archive("srv", "/universe")
    data = b"".join(iter_archive(handle, chunk_size=512))

    assert name == "universe"
    assert handle.closed
    with tarfile.open(fileobj=io.BytesIO(data)) as archive:
        assert "universe/worlds/level.dat" in archive.getnames()
        assert archive.extractfile("universe/worlds/level.dat").read() == b"level"


def test_archive_of_root_is_named_server(files, root):
    (root / "config.json").write_text("{}")

    name, handle = files.archive("srv", "/")

    with tarfile.open(fileobj=handle) as archive:
        assert "server/config.json" in archive.getnames()
    assert name == "server"


def test_archive_requires_existing_path(files):
    with pytest.raises(ServiceError) as excinfo:
        files.archive("srv", "")
    assert excinfo.value.status_code == 400
    with pytest.raises(NotFoundError):
        files.archive("srv", "/missing")
