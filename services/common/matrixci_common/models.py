from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    ALLOWED_FAILURE = "allowed_failure"

    @property
    def counts_as_green(self) -> bool:
        return self in (RunState.SUCCESS, RunState.ALLOWED_FAILURE)

    @property
    def is_green(self) -> bool:
        return self is RunState.SUCCESS


class StageOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class RunConfiguration:
    channel: str
    allow_failure: bool = False


@dataclass
class StageResult:
    stage: str
    outcome: StageOutcome
    returncode: Optional[int] = None
    duration_s: float = 0.0
    error: Optional[str] = None


@dataclass
class PublishResult:
    action: str
    ok: bool
    error: Optional[str] = None


@dataclass
class RunReport:
    config: RunConfiguration
    state: RunState = RunState.PENDING
    stages: List[StageResult] = field(default_factory=list)
    publish: List[PublishResult] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.state is RunState.FAILURE

    def stage(self, name: str) -> Optional[StageResult]:
        for r in self.stages:
            if r.stage == name:
                return r
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.config.channel,
            "allow_failure": self.config.allow_failure,
            "state": self.state.value,
            "stages": [_plain(asdict(s)) for s in self.stages],
            "publish": [asdict(p) for p in self.publish],
        }


@dataclass
class PipelineReport:
    invocation_id: str
    runs: List[RunReport] = field(default_factory=list)
    notified: bool = False

    @property
    def ok(self) -> bool:
        return all(r.state.counts_as_green for r in self.runs)

    @property
    def exit_status(self) -> int:
        return 0 if self.ok else 1

    def run(self, channel: str) -> Optional[RunReport]:
        for r in self.runs:
            if r.config.channel == channel:
                return r
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.invocation_id,
            "ok": self.ok,
            "exit_status": self.exit_status,
            "notified": self.notified,
            "runs": [r.to_dict() for r in self.runs],
        }


def _plain(d: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in d.items()}
