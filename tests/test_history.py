import json

from qobuz.history import History


def test_add_and_get(tmp_path):
    history = History(str(tmp_path / "history.json"))
    record = history.add("123", {"filename": "/music/a.flac", "quality": 27})
    assert history.has("123")
    assert history.get("123")["quality"] == 27
    assert "downloaded_at" in record
    assert history.count() == 1


def test_add_replaces_entry(tmp_path):
    history = History(str(tmp_path / "history.json"))
    history.add(1, {"filename": "a.flac", "quality": 27})
    history.add(1, {"filename": "b.flac", "quality": 6})
    assert history.count() == 1
    assert history.get("1")["filename"] == "b.flac"


def test_persists_across_instances(tmp_path):
    path = str(tmp_path / "nested" / "history.json")
    History(path).add("42", {"filename": "x.flac", "quality": 7, "title": "Song"})
    reloaded = History(path)
    assert reloaded.get("42")["title"] == "Song"

    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    assert data["version"] == 1
    assert set(data["entries"]) == {"42"}


def test_remove_and_clear(tmp_path):
    path = str(tmp_path / "history.json")
    history = History(path)
    history.add("1", {"filename": "a"})
    history.add("2", {"filename": "b"})
    assert history.remove("1") is True
    assert history.remove("1") is False
    assert list(History(path).get_all()) == ["2"]
    history.clear_all()
    assert History(path).count() == 0


def test_corrupt_file_loads_empty(tmp_path):
    path = tmp_path / "history.json"
    path.write_text("{not json", encoding="utf-8")
    history = History(str(path))
    assert history.count() == 0
    history.add("1", {"filename": "a"})
    assert History(str(path)).has("1")


def test_missing_file_loads_empty(tmp_path):
    assert History(str(tmp_path / "absent.json")).get_all() == {}
