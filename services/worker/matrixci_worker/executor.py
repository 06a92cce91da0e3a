"""Run the ordered stages of one RunConfiguration.

Stages run strictly one after another. The sequence is a compiled langgraph
``StateGraph``: one node per stage and, after each node, a conditional edge that
either moves on or ends the run. A run that may not fail ends at its first
failing stage; an allow-failure run records the failure and keeps going.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, TypedDict

from langgraph.graph import END, StateGraph

from matrixci_common.config import Stage
from matrixci_common.errors import CommandError, SecretUnavailableError
from matrixci_common.models import RunConfiguration, RunReport, RunState, StageOutcome, StageResult
from matrixci_common.secrets import SecretScope
from matrixci_common.utils import append_log, run_cmd, safe_name, shell_cmd

logger = logging.getLogger(__name__)

CHANNEL_ENV = "MATRIXCI_CHANNEL"


class ExecState(TypedDict, total=False):
    run: RunConfiguration
    results: List[StageResult]
    aborted: bool


class StageExecutor:
    def __init__(
        self,
        stages: Sequence[Stage],
        env: Optional[Dict[str, str]] = None,
        secrets: Optional[SecretScope] = None,
        artifact_root: Optional[Path] = None,
        timeout: int = 900,
        workdir: Optional[str] = None,
        runner: Callable[..., str] = run_cmd,
    ):
        self.stages = tuple(stages)
        self.env = dict(env or {})
        self.secrets = secrets
        self.artifact_root = Path(artifact_root) if artifact_root else None
        self.timeout = timeout
        self.workdir = workdir
        self.runner = runner
        self._graph = self._build_graph()

    def _build_graph(self):
        g = StateGraph(ExecState)
        names = [f"stage_{i}" for i in range(len(self.stages))]
        for i, name in enumerate(names):
            g.add_node(name, self._node(self.stages[i]))
        g.set_entry_point(names[0])
        for i, name in enumerate(names):
            nxt = names[i + 1] if i + 1 < len(names) else END
            if nxt == END:
                g.add_edge(name, END)
            else:
                g.add_conditional_edges(name, _route, {"next": nxt, "stop": END})
        return g.compile()

    def _node(self, stage: Stage):
        def _fn(state: ExecState) -> ExecState:
            cfg = state["run"]
            result = self.run_stage(stage, cfg)
            failed = result.outcome is StageOutcome.FAILURE
            return {
                "results": list(state.get("results", [])) + [result],
                "aborted": failed and not cfg.allow_failure,
            }
        return _fn

    def run(self, config: RunConfiguration, on_state: Optional[Callable[[RunReport], None]] = None) -> RunReport:
        report = RunReport(config=config)
        if on_state:
            on_state(report)
        report.state = RunState.RUNNING
        if on_state:
            on_state(report)

        final = self._graph.invoke(
            {"run": config, "results": [], "aborted": False},
            config={"recursion_limit": len(self.stages) + 10},
        )
        report.stages = list(final.get("results", []))
        for stage in self.stages[len(report.stages):]:
            report.stages.append(StageResult(stage=stage.name, outcome=StageOutcome.SKIPPED, error="aborted"))

        if any(r.outcome is StageOutcome.FAILURE for r in report.stages):
            report.state = RunState.ALLOWED_FAILURE if config.allow_failure else RunState.FAILURE
        else:
            report.state = RunState.SUCCESS
        logger.info("[%s] run finished: %s", config.channel, report.state.value)
        if on_state:
            on_state(report)
        return report

    def run_stage(self, stage: Stage, config: RunConfiguration) -> StageResult:
        channel = config.channel
        if not stage.applies_to(channel):
            logger.info("[%s] stage %s skipped (only: %s)", channel, stage.name, ", ".join(stage.only))
            return StageResult(stage=stage.name, outcome=StageOutcome.SKIPPED, error="channel_filtered")

        env = dict(self.env)
        env[CHANNEL_ENV] = channel
        try:
            env.update(self._secret_env(stage.secrets))
        except SecretUnavailableError as e:
            logger.error("[%s] stage %s cannot start: %s", channel, stage.name, e)
            self._log(channel, stage.name, f"stage aborted before start: {e}")
            return StageResult(stage=stage.name, outcome=StageOutcome.FAILURE, error=str(e))

        redact = self._redactions()
        started = time.monotonic()
        for command in stage.commands:
            try:
                out = self.runner(shell_cmd(command), cwd=self.workdir, env=env, timeout=self.timeout, redact=redact)
            except CommandError as e:
                self._log(channel, stage.name, _transcript(command, e.output, e.returncode), redact)
                if config.allow_failure:
                    logger.warning("[%s] stage %s failed (allowed): rc=%s", channel, stage.name, e.returncode)
                else:
                    logger.error("[%s] stage %s failed: rc=%s", channel, stage.name, e.returncode)
                return StageResult(
                    stage=stage.name,
                    outcome=StageOutcome.FAILURE,
                    returncode=e.returncode,
                    duration_s=time.monotonic() - started,
                    error=str(e).splitlines()[0],
                )
            self._log(channel, stage.name, _transcript(command, out, 0), redact)

        logger.info("[%s] stage %s passed", channel, stage.name)
        return StageResult(
            stage=stage.name, outcome=StageOutcome.SUCCESS, returncode=0, duration_s=time.monotonic() - started
        )

    def _secret_env(self, names: Sequence[str]) -> Dict[str, str]:
        if not names:
            return {}
        if self.secrets is None:
            raise SecretUnavailableError(names[0], "no_secret_scope")
        return self.secrets.env_for(names)

    def _redactions(self) -> List[str]:
        return self.secrets.redactions() if self.secrets is not None else []

    def _log(self, channel: str, stage: str, text: str, redact=None):
        if self.artifact_root is None:
            return
        append_log(self.artifact_root / safe_name(channel), f"logs/{safe_name(stage)}.log", text, redact or self._redactions())


def _route(state: ExecState) -> str:
    return "stop" if state.get("aborted") else "next"


def _transcript(command: str, output: str, rc: int) -> str:
    body = output if not output or output.endswith("\n") else output + "\n"
    return f"$ {command}\n{body}rc={rc}\n"
