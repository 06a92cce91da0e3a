import json
import shutil

import pytest

from matrixci_common import coveralls, github
from matrixci_common.errors import PublishError
from matrixci_common.utils import run_cmd

needs_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@needs_git
def test_publish_pages_force_pushes_docs_branch(tmp_path, monkeypatch):
    remote_root = tmp_path / "remote"
    bare = remote_root / "owner" / "ngrams.git"
    run_cmd(["git", "init", "-q", "--bare", str(bare)])
    monkeypatch.setattr(github, "GIT_BASE", f"file://{remote_root}")
    monkeypatch.setattr(github, "get_repo", lambda token, owner, repo: {"permissions": {"push": True}})

    docs = tmp_path / "target" / "doc"
    (docs / "ngrams").mkdir(parents=True)
    (docs / "ngrams" / "index.html").write_text("<h1>ngrams</h1>", encoding="utf-8")

    github.publish_pages("gh-token-value", "owner/ngrams", str(docs), index="ngrams")

    files = run_cmd(["git", f"--git-dir={bare}", "ls-tree", "-r", "--name-only", "gh-pages"]).split()
    assert sorted(files) == [".nojekyll", "index.html", "ngrams/index.html"]
    subject = run_cmd(["git", f"--git-dir={bare}", "log", "-1", "--format=%s", "gh-pages"])
    assert "gh-token-value" not in subject


def test_publish_pages_rejects_bad_input(tmp_path, monkeypatch):
    monkeypatch.setattr(github, "get_repo", lambda *a: pytest.fail("no API call expected"))

    with pytest.raises(PublishError):
        github.publish_pages("t0ken", "owner/ngrams", str(tmp_path / "missing"))
    with pytest.raises(PublishError):
        github.publish_pages("t0ken", "no-slash", str(tmp_path))


def test_publish_pages_refuses_read_only_token(tmp_path, monkeypatch):
    monkeypatch.setattr(github, "get_repo", lambda *a: {"permissions": {"push": False}})

    with pytest.raises(PublishError):
        github.publish_pages("t0ken", "owner/ngrams", str(tmp_path))


def test_coveralls_upload_adds_token(tmp_path, monkeypatch):
    report = tmp_path / "coveralls.json"
    report.write_text(json.dumps({"source_files": []}), encoding="utf-8")
    seen = {}

    class Resp:
        status_code = 200

        def json(self):
            return {"url": "https://coveralls.io/jobs/42"}

    def fake_post(url, files, timeout):
        seen["url"] = url
        seen["payload"] = json.loads(files["json_file"][1])
        return Resp()

    monkeypatch.setattr(coveralls.requests, "post", fake_post)

    resp = coveralls.upload_report("cov-token", str(report), job_id="inv-1")

    assert resp["url"].endswith("/42")
    assert seen["url"].endswith("/api/v1/jobs")
    assert seen["payload"]["repo_token"] == "cov-token"
    assert seen["payload"]["service_job_id"] == "inv-1"
    assert seen["payload"]["service_name"] == "matrixci"


def test_coveralls_errors_are_publish_errors(tmp_path, monkeypatch):
    with pytest.raises(PublishError):
        coveralls.upload_report("cov-token", str(tmp_path / "missing.json"))

    report = tmp_path / "coveralls.json"
    report.write_text("{}", encoding="utf-8")

    class Resp:
        status_code = 422

    monkeypatch.setattr(coveralls.requests, "post", lambda url, files, timeout: Resp())
    with pytest.raises(PublishError):
        coveralls.upload_report("cov-token", str(report))
