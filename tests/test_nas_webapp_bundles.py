from __future__ import annotations

from nas_webapp.executor import ActionExecutor
from nas_webapp.models import STATUS_FAILED, STATUS_RUNNING, STATUS_SUCCEEDED, bundle_app_id
from nas_webapp.task_store import TaskStore


def _bundle_task(store: TaskStore, members: list[str]):
    task = store.create(bundle_app_id("media-stack"), "bundle_install", member_app_ids=members)
    return store.transition(task.id, STATUS_RUNNING, "running")


def test_bundle_installs_members_in_order(store, executor: ActionExecutor, fake_driver) -> None:
    progress_seen: list[int] = []
    original = store.set_progress

    def _spy(task_id: int, value: int) -> bool:
        progress_seen.append(value)
        return original(task_id, value)

    store.set_progress = _spy

    done = executor.execute(_bundle_task(store, ["jellyfin", "qbittorrent"]))

    assert done.status == STATUS_SUCCEEDED
    assert done.progress == 100
    assert done.message == "bundle Media Stack installed"
    assert progress_seen == [5, 25, 35, 50, 55, 75, 85, 100]
    assert set(fake_driver.containers) == {"nas-jellyfin", "nas-qbittorrent"}
    creates = [target for operation, target in fake_driver.calls if operation == "create"]
    assert creates == ["nas-jellyfin", "nas-qbittorrent"]


def test_bundle_stops_at_first_failing_member(store, executor: ActionExecutor, fake_driver) -> None:
    fake_driver.fail("pull", "jellyfin/jellyfin:latest", "manifest unknown")

    done = executor.execute(_bundle_task(store, ["jellyfin", "qbittorrent"]))

    assert done.status == STATUS_FAILED
    assert done.error_detail == "jellyfin: manifest unknown"
    assert done.message == "bundle install failed at jellyfin"
    assert not any(target == "nas-qbittorrent" for _, target in fake_driver.calls)
    assert "Skipping remaining apps: qbittorrent" in done.log_text


def test_members_installed_before_failure_stay_installed(store, executor: ActionExecutor, fake_driver) -> None:
    fake_driver.fail("start", "nas-qbittorrent", "port is already allocated")

    done = executor.execute(_bundle_task(store, ["jellyfin", "qbittorrent"]))

    assert done.status == STATUS_FAILED
    assert done.error_detail == "qbittorrent: port is already allocated"
    assert fake_driver.containers["nas-jellyfin"]["running"] is True
    assert done.progress >= 50


def test_already_installed_member_is_skipped(store, executor: ActionExecutor, fake_driver) -> None:
    fake_driver.preinstall("nas-jellyfin")

    done = executor.execute(_bundle_task(store, ["jellyfin", "qbittorrent"]))

    assert done.status == STATUS_SUCCEEDED
    assert "Jellyfin already installed, skipping" in done.log_text
    assert fake_driver.pulled == ["lscr.io/linuxserver/qbittorrent:latest"]


def test_bundle_without_members_fails(store, executor: ActionExecutor) -> None:
    done = executor.execute(_bundle_task(store, []))

    assert done.status == STATUS_FAILED
    assert done.error_detail == "bundle has no member apps"
