from __future__ import annotations

import pytest

from nas_webapp.errors import InvalidTransitionError, TaskNotFoundError
from nas_webapp.models import STATUS_FAILED, STATUS_QUEUED, STATUS_RUNNING, STATUS_SUCCEEDED
from nas_webapp.task_store import TaskStore


def test_create_starts_queued_with_zero_progress(store: TaskStore) -> None:
    task = store.create("jellyfin", "install")

    assert task.id > 0
    assert task.status == STATUS_QUEUED
    assert task.progress == 0
    assert task.error_detail is None
    assert task.log_text == ""
    assert task.created_at

    second = store.create("qbittorrent", "install")
    assert second.id > task.id


def test_create_rejects_unknown_action(store: TaskStore) -> None:
    with pytest.raises(ValueError, match="unsupported action"):
        store.create("jellyfin", "explode")


def test_log_is_append_only_with_timestamp_prefix(store: TaskStore) -> None:
    task = store.create("jellyfin", "install")
    store.transition(task.id, STATUS_RUNNING, "running")

    store.append_log(task.id, "Pulling image jellyfin/jellyfin:latest")
    first = store.get(task.id).log_text
    store.append_log(task.id, "Image jellyfin/jellyfin:latest pulled")
    second = store.get(task.id).log_text

    assert second.startswith(first)
    lines = second.splitlines()
    assert len(lines) == 2
    assert lines[0].startswith("[")
    assert lines[0].endswith("] Pulling image jellyfin/jellyfin:latest")


def test_progress_never_decreases_and_is_clamped(store: TaskStore) -> None:
    task = store.create("jellyfin", "install")
    store.transition(task.id, STATUS_RUNNING, "running")

    store.set_progress(task.id, 50)
    store.set_progress(task.id, 10)
    assert store.get(task.id).progress == 50

    store.set_progress(task.id, 250)
    assert store.get(task.id).progress == 100


def test_succeeded_forces_full_progress_and_keeps_log(store: TaskStore) -> None:
    task = store.create("jellyfin", "start")
    store.transition(task.id, STATUS_RUNNING, "running")
    store.append_log(task.id, "Running start on container nas-jellyfin")

    done = store.transition(task.id, STATUS_SUCCEEDED, "Jellyfin started", error_detail="ignored")

    assert done.status == STATUS_SUCCEEDED
    assert done.progress == 100
    assert done.error_detail is None
    assert "Running start on container nas-jellyfin" in done.log_text
    assert done.finished_at is not None


def test_terminal_tasks_reject_mutations(store: TaskStore, caplog) -> None:
    task = store.create("jellyfin", "stop")
    store.transition(task.id, STATUS_RUNNING, "running")
    store.set_progress(task.id, 40)
    store.transition(task.id, STATUS_FAILED, "stop failed", error_detail="container not found")

    assert store.append_log(task.id, "late line") is False
    assert store.set_progress(task.id, 90) is False
    frozen = store.get(task.id)
    assert frozen.progress == 40
    assert "late line" not in frozen.log_text

    with pytest.raises(InvalidTransitionError):
        store.transition(task.id, STATUS_RUNNING, "running again")
    with pytest.raises(InvalidTransitionError):
        store.transition(task.id, STATUS_SUCCEEDED, "done")


def test_queued_task_cannot_skip_to_succeeded(store: TaskStore) -> None:
    task = store.create("jellyfin", "start")

    with pytest.raises(InvalidTransitionError):
        store.transition(task.id, STATUS_SUCCEEDED, "done")
    assert store.get(task.id).status == STATUS_QUEUED


def test_get_unknown_task_raises(store: TaskStore) -> None:
    with pytest.raises(TaskNotFoundError):
        store.get(999)


def test_list_is_newest_first_and_filterable(store: TaskStore) -> None:
    first = store.create("jellyfin", "install")
    second = store.create("qbittorrent", "install")
    third = store.create("jellyfin", "start")
    store.transition(second.id, STATUS_RUNNING, "running")

    assert [task.id for task in store.list(limit=10)] == [third.id, second.id, first.id]
    assert [task.id for task in store.list(limit=2)] == [third.id, second.id]
    assert [task.id for task in store.list(app_id="jellyfin")] == [third.id, first.id]
    assert [task.id for task in store.list(status=STATUS_RUNNING)] == [second.id]
    assert store.list(since="2999-01-01T00:00:00+00:00") == []


def test_recover_abandoned_fails_queued_and_running_tasks(store: TaskStore) -> None:
    queued = store.create("jellyfin", "install")
    running = store.create("qbittorrent", "install")
    store.transition(running.id, STATUS_RUNNING, "running")
    finished = store.create("portainer", "start")
    store.transition(finished.id, STATUS_RUNNING, "running")
    store.transition(finished.id, STATUS_SUCCEEDED, "Portainer started")

    recovered = store.recover_abandoned("abandoned: control panel restarted before the task finished")

    assert recovered == [queued.id, running.id]
    for task_id in recovered:
        task = store.get(task_id)
        assert task.status == STATUS_FAILED
        assert task.error_detail == "abandoned: control panel restarted before the task finished"
        assert "ERROR: abandoned" in task.log_text
    assert store.get(finished.id).status == STATUS_SUCCEEDED
