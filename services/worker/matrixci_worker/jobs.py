import os

from matrixci_common.config import parse_config
from matrixci_common.db import update_invocation

from .pipeline import ARTIFACT_ROOT, DB_PATH, run_pipeline

WORKSPACES_ROOT = os.environ.get("MATRIXCI_WORKSPACES_ROOT", "")


def run_invocation(invocation_id: str, doc: dict) -> dict:
    """rq entry point: run one queued pipeline document."""
    update_invocation(DB_PATH, invocation_id, status="starting")
    try:
        cfg = parse_config(doc)
        workdir = os.path.join(WORKSPACES_ROOT, invocation_id) if WORKSPACES_ROOT else None
        if workdir:
            os.makedirs(workdir, exist_ok=True)
        report = run_pipeline(
            cfg,
            invocation_id=invocation_id,
            db_path=DB_PATH,
            artifact_root=ARTIFACT_ROOT,
            workdir=workdir,
        )
    except Exception as e:
        update_invocation(DB_PATH, invocation_id, status="error", result={"error": str(e)})
        raise
    return {"id": invocation_id, "ok": report.ok, "exit_status": report.exit_status}
