import json
import threading

import pytest

from git_fleet_sync.auth import AuthConfig
from git_fleet_sync.errors import StateStoreError
from git_fleet_sync.models import RepoSpec, RunState, RunStateItem, RunStatus, Strategy
from git_fleet_sync.state import FileStateStore, InMemoryStateStore


def _state(*statuses):
    return RunState(
        items=[
            RunStateItem(
                repo=RepoSpec(name=f"r{i}", clone_url=f"https://h/r{i}.git", target_path=f"/w/r{i}", strategy=Strategy.PULL),
                status=status,
                message=f"message {i}",
            )
            for i, status in enumerate(statuses)
        ]
    )


def test_file_store_round_trip(tmp_path):
    store = FileStateStore(tmp_path / "state.json")
    state = _state(RunStatus.DONE, RunStatus.FAILED, RunStatus.PENDING)

    store.save(state)

    assert store.load() == state


def test_file_store_missing_file_loads_empty_state(tmp_path):
    assert FileStateStore(tmp_path / "never" / "saved.json").load() == RunState()


def test_file_store_creates_parent_dir_and_leaves_no_temp_files(tmp_path):
    path = tmp_path / "nested" / "dir" / "state.json"
    FileStateStore(path).save(_state(RunStatus.DONE))

    assert path.exists()
    assert [p.name for p in path.parent.iterdir()] == ["state.json"]


def test_file_store_overwrites_whole_document(tmp_path):
    store = FileStateStore(tmp_path / "state.json")
    store.save(_state(RunStatus.DONE, RunStatus.DONE))
    store.save(_state(RunStatus.FAILED))

    loaded = store.load()
    assert len(loaded.items) == 1
    assert loaded.items[0].status == RunStatus.FAILED


def test_file_store_never_persists_secrets(tmp_path):
    path = tmp_path / "state.json"
    state = RunState(
        items=[
            RunStateItem(
                repo=RepoSpec(name="a", auth=AuthConfig(token="s3cret", ssh_key_content="PRIVATE")),
                status=RunStatus.DONE,
            )
        ]
    )
    FileStateStore(path).save(state)

    raw = path.read_text()
    assert "s3cret" not in raw
    assert "PRIVATE" not in raw
    assert json.loads(raw)["items"][0]["status"] == "done"


def test_file_store_corrupt_file_raises(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json")
    with pytest.raises(StateStoreError, match="unmarshal state"):
        FileStateStore(path).load()


def test_file_store_empty_path_raises():
    store = FileStateStore("")
    with pytest.raises(StateStoreError):
        store.save(RunState())
    with pytest.raises(StateStoreError):
        store.load()


def test_file_store_concurrent_saves_leave_valid_document(tmp_path):
    store = FileStateStore(tmp_path / "state.json")
    states = [_state(*([RunStatus.DONE] * n)) for n in range(1, 9)]

    threads = [threading.Thread(target=store.save, args=(s,)) for s in states]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.load() in states


def test_in_memory_store_copies_state():
    store = InMemoryStateStore()
    assert store.load() == RunState()

    state = _state(RunStatus.DONE)
    store.save(state)
    state.items[0].status = RunStatus.FAILED

    loaded = store.load()
    assert loaded.items[0].status == RunStatus.DONE
    loaded.items.clear()
    assert len(store.load().items) == 1
