import os
import time

import yaml

import config
import watcher
from conftest import make_job


def write_jobs(path, *names):
    jobs = [make_job(name=name).model_dump(mode="json") for name in names]
    path.write_text(yaml.safe_dump({"backups": jobs}))


def touch_later(path):
    # make sure the mtime moves even on coarse-grained filesystems
    st = os.stat(path)
    os.utime(path, ns=(st.st_atime_ns, st.st_mtime_ns + 1_000_000_000))


def make_store(path):
    return config.ConfigStore(config.load_config(str(path)), config_path=str(path))


def test_no_change_no_reload(tmp_path):
    path = tmp_path / "config.yaml"
    write_jobs(path, "a")
    w = watcher.ConfigWatcher(make_store(path), str(path))
    assert w.check() is False


def test_modification_reloads(tmp_path):
    path = tmp_path / "config.yaml"
    write_jobs(path, "a")
    store = make_store(path)
    w = watcher.ConfigWatcher(store, str(path))

    write_jobs(path, "b", "c")
    touch_later(path)

    assert w.check() is True
    assert [j.name for j in store.snapshot().backups] == ["b", "c"]
    assert w.check() is False


def test_invalid_modification_keeps_config(tmp_path, caplog):
    path = tmp_path / "config.yaml"
    write_jobs(path, "a")
    store = make_store(path)
    before = store.snapshot()
    w = watcher.ConfigWatcher(store, str(path))

    path.write_text("backups: [unclosed\n")
    touch_later(path)

    assert w.check() is False
    assert store.snapshot() is before
    assert "keeping previous config" in caplog.text


def test_missing_file_is_degraded_mode(tmp_path, caplog):
    path = tmp_path / "config.yaml"
    store = config.ConfigStore(config.Config(backups=[make_job(name="a")]), config_path=str(path))

    w = watcher.ConfigWatcher(store, str(path))
    assert "Cannot watch config file" in caplog.text
    assert w.check() is False
    assert [j.name for j in store.snapshot().backups] == ["a"]

    write_jobs(path, "b")
    assert w.check() is True
    assert [j.name for j in store.snapshot().backups] == ["b"]


def test_thread_reloads_in_background(tmp_path):
    path = tmp_path / "config.yaml"
    write_jobs(path, "a")
    store = make_store(path)
    w = watcher.ConfigWatcher(store, str(path), poll_interval=0.01)
    w.start()
    try:
        write_jobs(path, "z")
        touch_later(path)
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            if [j.name for j in store.snapshot().backups] == ["z"]:
                break
            time.sleep(0.01)
    finally:
        w.stop()
        w.join(timeout=5)

    assert [j.name for j in store.snapshot().backups] == ["z"]
    assert not w.is_alive()


def test_edit_between_load_and_watch_is_reloaded(tmp_path):
    path = tmp_path / "config.yaml"
    write_jobs(path, "a")
    signature = watcher.file_signature(str(path))
    store = make_store(path)

    write_jobs(path, "b")
    touch_later(path)
    w = watcher.ConfigWatcher(store, str(path), signature=signature)

    assert w.check() is True
    assert [j.name for j in store.snapshot().backups] == ["b"]


def test_file_signature_of_missing_file(tmp_path):
    assert watcher.file_signature(str(tmp_path / "nope.yaml")) is None
