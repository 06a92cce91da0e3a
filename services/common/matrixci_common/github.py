import os, shutil, tempfile
from pathlib import Path

import requests

from .errors import PublishError
from .utils import run_cmd

API = os.environ.get("MATRIXCI_GITHUB_API", "https://api.github.com")
GIT_BASE = os.environ.get("MATRIXCI_GITHUB_URL", "https://github.com")

GIT_AUTHOR_NAME = os.environ.get("GIT_AUTHOR_NAME", "matrixci-bot")
GIT_AUTHOR_EMAIL = os.environ.get("GIT_AUTHOR_EMAIL", "bot@localhost")

TOKEN_ENV = "MATRIXCI_GIT_TOKEN"


def gh_headers(token: str) -> dict:
    return {
        "Authorization": f"Bearer {token}",
        "Accept": "application/vnd.github+json",
    }


def gh_get(token: str, url: str):
    r = requests.get(url, headers=gh_headers(token), timeout=30)
    if r.status_code >= 400:
        raise PublishError(f"GitHub GET {url} -> {r.status_code}")
    return r.json()


def get_repo(token: str, owner: str, repo: str) -> dict:
    return gh_get(token, f"{API}/repos/{owner}/{repo}")


def _askpass_script(work_dir: Path) -> str:
    # Git calls askpass with prompt text in $1.
    # The token is read from the git process env, never written to disk.
    path = work_dir / "askpass.sh"
    with open(path, "w", encoding="utf-8") as f:
        f.write("#!/bin/sh\n")
        f.write("case \"$1\" in\n")
        f.write("  *Username*) echo \"x-access-token\" ;;\n")
        f.write(f"  *) printf '%s\\n' \"${TOKEN_ENV}\" ;;\n")
        f.write("esac\n")
    os.chmod(path, 0o700)
    return str(path)


def _copy_tree(src: Path, dst: Path):
    for item in src.rglob("*"):
        rel = item.relative_to(src)
        target = dst / rel
        if item.is_dir():
            target.mkdir(parents=True, exist_ok=True)
        else:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(item, target)


def publish_pages(token: str, repo_slug: str, source_dir: str, branch: str = "gh-pages",
                  message: str = "Update documentation", index: str = "", timeout: int = 900):
    """
    Replace the contents of `branch` on `repo_slug` with `source_dir` and force-push.
    index: optional sub-directory that the site root redirects to.
    """
    src = Path(source_dir)
    if not src.is_dir():
        raise PublishError(f"documentation directory not found: {source_dir}")
    owner, _, repo = repo_slug.partition("/")
    if not owner or not repo:
        raise PublishError(f"repo must be owner/name, got {repo_slug!r}")

    info = get_repo(token, owner, repo)
    if not (info.get("permissions") or {}).get("push", True):
        raise PublishError(f"token cannot push to {repo_slug}")

    work = Path(tempfile.mkdtemp(prefix="matrixci-pages-"))
    try:
        # No token in remote URL, avoids leaking token into git config.
        env = {
            "GIT_ASKPASS": _askpass_script(work),
            TOKEN_ENV: token,
        }
        site = work / "site"
        run_cmd(["git", "init", "-q", str(site)], timeout=60)
        run_cmd(["git", "checkout", "-q", "-b", branch], cwd=str(site), timeout=60)
        _copy_tree(src, site)
        (site / ".nojekyll").write_text("", encoding="utf-8")
        if index:
            (site / "index.html").write_text(
                f'<meta http-equiv="refresh" content="0; url={index}/index.html">\n', encoding="utf-8"
            )
        run_cmd(["git", "config", "user.name", GIT_AUTHOR_NAME], cwd=str(site))
        run_cmd(["git", "config", "user.email", GIT_AUTHOR_EMAIL], cwd=str(site))
        run_cmd(["git", "add", "-A"], cwd=str(site))
        run_cmd(["git", "commit", "-q", "-m", message], cwd=str(site))
        run_cmd(["git", "remote", "add", "origin", f"{GIT_BASE}/{owner}/{repo}.git"], cwd=str(site))
        run_cmd(["git", "push", "-q", "--force", "origin", branch], cwd=str(site), env=env,
                timeout=timeout, redact=[token])
    finally:
        shutil.rmtree(work, ignore_errors=True)
