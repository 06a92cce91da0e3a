import pytest

from matrixci_common import db


def test_invocation_lifecycle(tmp_path):
    path = str(tmp_path / "data" / "history.db")
    db.create_invocation(path, "inv-1", "ngrams", {"channels": ["stable"]})

    db.set_run_state(path, "inv-1", "stable", "pending")
    db.set_run_state(path, "inv-1", "stable", "running")
    db.set_run_state(path, "inv-1", "nightly", "allowed_failure", allow_failure=True)
    db.update_invocation(path, "inv-1", status="running", result={"step": 1})
    db.update_invocation(path, "inv-1", result={"ok": True})

    got = db.get_invocation(path, "inv-1")
    assert got["status"] == "running"
    assert got["request"] == {"channels": ["stable"]}
    assert got["result"] == {"step": 1, "ok": True}
    assert got["runs"] == [
        {"channel": "stable", "allow_failure": False, "state": "running", "updated_at": got["runs"][0]["updated_at"]},
        {"channel": "nightly", "allow_failure": True, "state": "allowed_failure", "updated_at": got["runs"][1]["updated_at"]},
    ]


def test_unknown_invocation_raises_key_error(tmp_path):
    path = str(tmp_path / "history.db")
    with pytest.raises(KeyError):
        db.get_invocation(path, "nope")
    with pytest.raises(KeyError):
        db.update_invocation(path, "nope", status="failed")


def test_last_finished_status_skips_unfinished_and_other_pipelines(tmp_path):
    path = str(tmp_path / "history.db")
    assert db.last_finished_status(path, "ngrams") == ""

    db.create_invocation(path, "a", "ngrams", {}, status="passed")
    db.create_invocation(path, "b", "other", {}, status="failed")
    db.create_invocation(path, "c", "ngrams", {}, status="error")
    db.create_invocation(path, "d", "ngrams", {}, status="running")

    assert db.last_finished_status(path, "ngrams") == "passed"
    assert db.last_finished_status(path, "ngrams", exclude_id="a") == ""
