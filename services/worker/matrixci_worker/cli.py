from __future__ import annotations

import argparse
import logging
import os
import sys
from collections.abc import Sequence

from matrixci_common.config import load_config
from matrixci_common.errors import ConfigError
from matrixci_common.models import PipelineReport

from .matrix import expand_matrix

EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="matrixci", add_help=True)
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run a pipeline document")
    run.add_argument("config", help="Pipeline document (YAML or JSON)")
    run.add_argument("--artifacts", default=os.environ.get("MATRIXCI_ARTIFACT_ROOT", ".matrixci/artifacts"))
    run.add_argument("--db", default=os.environ.get("MATRIXCI_DB_PATH", ".matrixci/history.db"))
    run.add_argument("--key-file", default=None, help="PEM private key for secure env entries")
    run.add_argument("--workdir", default=None, help="Directory stage commands run in")

    matrix = sub.add_parser("matrix", help="Print the expanded run configurations")
    matrix.add_argument("config", help="Pipeline document (YAML or JSON)")

    return parser


def print_report(report: PipelineReport) -> None:
    print(f"invocation {report.invocation_id}")
    for run in report.runs:
        print(f"  {run.config.channel:<12} {run.state.value}")
        for s in run.stages:
            print(f"    {s.stage:<16} {s.outcome.value}")
        for p in run.publish:
            print(f"    publish {p.action:<8} {'ok' if p.ok else 'failed: ' + (p.error or '')}")
    print("passed" if report.ok else "failed")


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if args.command == "matrix":
        for rc in expand_matrix(cfg.channels, cfg.allow_failures):
            print(f"{rc.channel}{' (allow failure)' if rc.allow_failure else ''}")
        return 0

    if args.command == "run":
        from .pipeline import run_pipeline

        report = run_pipeline(
            cfg,
            db_path=args.db,
            artifact_root=args.artifacts,
            key_file=args.key_file,
            workdir=args.workdir,
        )
        print_report(report)
        return report.exit_status

    raise AssertionError(f"Unhandled command: {args.command}")


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main(sys.argv[1:]))
