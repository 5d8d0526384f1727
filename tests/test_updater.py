import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from hytale_panel.models import ContainerStatus, ServerFilesStatus
from hytale_panel.services.downloader_service import DownloadOrchestrator
from hytale_panel.services.updater_service import UpdateOrchestrator


async def ready_files(server_id):
    return ServerFilesStatus(has_jar=True, has_assets=True, ready=True)


@pytest.fixture
def updater(containers):
    return UpdateOrchestrator(
        containers,
        DownloadOrchestrator(containers, base_path="/opt/hytale"),
        ready_files,
        metadata_path="/opt/hytale/.update-metadata.json",
        settle_seconds=0,
    )


def apply(updater, events):
    async def emit(event, data):
        events.append((event, data))

    return asyncio.run(updater.apply_update("hytale-1", "srv-1", emit))


def update_states(events):
    return [data["status"] for event, data in events if event == "update:status"]


def test_running_server_is_stopped_and_restarted(containers, updater):
    containers.status = ContainerStatus(running=True, status="running")
    events = []

    result = apply(updater, events)

    assert result.success is True
    names = containers.names()
    assert names.index("stop") < names.index("exec_stream") < names.index("restart")
    assert update_states(events) == ["stopping", "downloading", "restarting", "complete"]
    assert any(event == "download-status" for event, _ in events)


def test_stopped_server_is_only_downloaded(containers, updater):
    events = []

    result = apply(updater, events)

    assert result.success is True
    assert "stop" not in containers.names()
    assert "restart" not in containers.names()
    assert "exec_stream" in containers.names()
    assert update_states(events) == ["downloading", "complete"]


def test_download_error_aborts_without_restart(containers, updater):
    containers.status = ContainerStatus(running=True, status="running")
    containers.download_output = [b"HTTP 403 Forbidden"]
    events = []

    result = apply(updater, events)

    assert result.success is False
    assert "restart" not in containers.names()
    assert update_states(events)[-1] == "error"


def test_successful_update_records_metadata(containers, updater):
    apply(updater, [])

    assert ("put_archive", "/opt/hytale") in containers.calls


def test_check_reports_days_since_last_download(containers, updater):
    last = datetime.now(timezone.utc) - timedelta(days=3, hours=1)
    containers.exec_responses = {"cat ": json.dumps({"last_download_at": last.isoformat()})}

    result = asyncio.run(updater.check_for_update("hytale-1", "srv-1"))

    assert result.success is True
    assert result.days_since_update == 3
    assert result.last_update == last.isoformat()
    assert result.has_files is True


def test_check_without_metadata_means_never_updated(containers, updater):
    containers.exec_responses = {"cat ": "{}"}

    result = asyncio.run(updater.check_for_update("hytale-1", "srv-1"))

    assert result.success is True
    assert result.last_update is None
    assert result.days_since_update is None
