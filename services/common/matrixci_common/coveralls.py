import json, os
from pathlib import Path

import requests

from .errors import PublishError

ENDPOINT = os.environ.get("COVERALLS_ENDPOINT", "https://coveralls.io")


def upload_report(token: str, report_path: str, service_name: str = "matrixci", job_id: str = "") -> dict:
    """
    POST a coveralls-format JSON report to the jobs API.
    The repo token is filled in here so it never has to live in the report file.
    """
    p = Path(report_path)
    try:
        report = json.loads(p.read_text(encoding="utf-8"))
    except OSError as e:
        raise PublishError(f"coverage report unreadable: {report_path}: {e.strerror}") from e
    except json.JSONDecodeError as e:
        raise PublishError(f"coverage report is not JSON: {report_path}") from e

    report["repo_token"] = token
    report.setdefault("service_name", service_name)
    if job_id:
        report.setdefault("service_job_id", job_id)

    url = f"{ENDPOINT}/api/v1/jobs"
    r = requests.post(url, files={"json_file": ("coverage.json", json.dumps(report), "application/json")}, timeout=60)
    if r.status_code >= 400:
        raise PublishError(f"Coveralls POST {url} -> {r.status_code}")
    try:
        return r.json()
    except ValueError:
        return {}
