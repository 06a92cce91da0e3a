"""One pipeline invocation: matrix, stages, publish, notify.

Runs are independent and execute on a thread pool; each run walks its stages
sequentially. Secrets are decrypted once when the invocation starts and wiped
when it ends, whatever the outcome.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Dict, List, Optional

from matrixci_common import db
from matrixci_common.config import PipelineConfig
from matrixci_common.models import PipelineReport, RunReport
from matrixci_common.secrets import SecretProvider
from matrixci_common.utils import run_cmd, sanitize_text, write_artifact

from .executor import StageExecutor
from .matrix import expand_matrix
from .notifier import Notifier, Transport
from .publisher import ConditionalPublisher

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("MATRIXCI_DB_PATH", "/data/matrixci.db")
ARTIFACT_ROOT = os.environ.get("MATRIXCI_ARTIFACT_ROOT", "/data/matrixci/invocations")


def run_pipeline(
    cfg: PipelineConfig,
    invocation_id: Optional[str] = None,
    db_path: Optional[str] = None,
    artifact_root: Optional[str] = None,
    key_file: Optional[str] = None,
    private_key=None,
    workdir: Optional[str] = None,
    transports: Optional[List[Transport]] = None,
    publish_handlers: Optional[Dict[str, Callable]] = None,
    runner: Callable[..., str] = run_cmd,
) -> PipelineReport:
    inv_id = invocation_id or str(uuid.uuid4())
    inv_root = Path(artifact_root) / inv_id if artifact_root else None

    if db_path:
        try:
            db.get_invocation(db_path, inv_id)
        except KeyError:
            db.create_invocation(db_path, inv_id, cfg.name, cfg.model_dump(mode="json", by_alias=True))
        db.update_invocation(db_path, inv_id, status="running")

    def _persist(report: RunReport):
        if db_path:
            db.set_run_state(db_path, inv_id, report.config.channel, report.state.value, report.config.allow_failure)

    try:
        runs = expand_matrix(cfg.channels, cfg.allow_failures)
        logger.info("Invocation %s: %d run(s) over channels %s", inv_id, len(runs), ", ".join(r.channel for r in runs))

        provider = SecretProvider(cfg.env.secure(), key_file=key_file, private_key=private_key)
        with provider.open() as scope:
            executor = StageExecutor(
                cfg.stages,
                env=cfg.env.plain(),
                secrets=scope,
                artifact_root=inv_root,
                timeout=cfg.stage_timeout,
                workdir=workdir,
                runner=runner,
            )
            publisher = ConditionalPublisher(
                cfg.after_success,
                cfg.primary_channel,
                secrets=scope,
                env=cfg.env.plain(),
                artifact_root=inv_root,
                timeout=cfg.stage_timeout,
                workdir=workdir,
                invocation_id=inv_id,
                runner=runner,
                handlers=publish_handlers,
            )

            def _one(run) -> RunReport:
                report = executor.run(run, on_state=_persist)
                publisher.publish(report)
                return report

            with ThreadPoolExecutor(max_workers=cfg.max_parallel or len(runs)) as pool:
                reports = list(pool.map(_one, runs))

            report = PipelineReport(invocation_id=inv_id, runs=reports)

            previous_ok = None
            if db_path:
                last = db.last_finished_status(db_path, cfg.name, exclude_id=inv_id)
                previous_ok = (last == "passed") if last else None
            report.notified = Notifier(cfg.notifications, transports).notify(report, cfg.name, previous_ok)

            if inv_root is not None:
                write_artifact(inv_root, "report.json", json.dumps(report.to_dict(), indent=2, sort_keys=True), scope.redactions())
    except Exception as e:
        if db_path:
            db.update_invocation(db_path, inv_id, status="error", result={"error": sanitize_text(str(e))})
        raise

    if db_path:
        db.update_invocation(db_path, inv_id, status="passed" if report.ok else "failed", result=report.to_dict())
    logger.info("Invocation %s finished: %s", inv_id, "passed" if report.ok else "failed")
    return report
