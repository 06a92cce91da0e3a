import logging
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from matrixci_common import coveralls, github
from matrixci_common.config import PublishAction
from matrixci_common.errors import CommandError, PublishError, SecretUnavailableError
from matrixci_common.models import PublishResult, RunReport
from matrixci_common.secrets import SecretScope
from matrixci_common.utils import append_log, run_cmd, safe_name, sanitize_text, shell_cmd

logger = logging.getLogger(__name__)

PAGES_TOKEN = "GH_TOKEN"
COVERALLS_TOKEN = "COVERALLS_REPO_TOKEN"


class ConditionalPublisher:
    """
    Post-success actions for the primary channel.
    Each action is isolated: a failure is recorded and the next action still runs.
    """

    def __init__(
        self,
        actions: Sequence[PublishAction],
        primary_channel: str,
        secrets: Optional[SecretScope] = None,
        env: Optional[Dict[str, str]] = None,
        artifact_root: Optional[Path] = None,
        timeout: int = 900,
        workdir: Optional[str] = None,
        invocation_id: str = "",
        runner: Callable[..., str] = run_cmd,
        handlers: Optional[Dict[str, Callable]] = None,
    ):
        self.actions = tuple(actions)
        self.primary_channel = primary_channel
        self.secrets = secrets
        self.env = dict(env or {})
        self.artifact_root = Path(artifact_root) if artifact_root else None
        self.timeout = timeout
        self.workdir = workdir
        self.invocation_id = invocation_id
        self.runner = runner
        self.handlers = {
            "github-pages": self._github_pages,
            "coveralls": self._coveralls,
        }
        if handlers:
            self.handlers.update(handlers)
        self._lock = threading.Lock()
        self._done = False

    def should_publish(self, report: RunReport) -> bool:
        return report.config.channel == self.primary_channel and report.state.is_green

    def publish(self, report: RunReport) -> List[PublishResult]:
        if not self.should_publish(report):
            logger.info("[%s] publish skipped (state=%s)", report.config.channel, report.state.value)
            return []
        with self._lock:
            if self._done:
                logger.warning("[%s] publish already ran for this invocation", report.config.channel)
                return []
            self._done = True

        results = []
        for action in self.actions:
            results.append(self._run_action(action))
        report.publish = results
        return results

    def _run_action(self, action: PublishAction) -> PublishResult:
        redact = self.secrets.redactions() if self.secrets is not None else []
        try:
            secrets = self._secret_env(action)
            if action.run:
                self._run_commands(action, secrets, redact)
            else:
                self.handlers[action.uses](action, secrets)
        except (CommandError, PublishError, SecretUnavailableError) as e:
            msg = sanitize_text(str(e), redact).splitlines()[0]
            logger.error("Publish action %s failed: %s", action.name, msg)
            self._log(action.name, f"failed: {sanitize_text(str(e), redact)}", redact)
            return PublishResult(action=action.name, ok=False, error=msg)
        except Exception as e:
            # Isolation boundary: third-party failures (network, git) must not stop later actions.
            msg = sanitize_text(f"{type(e).__name__}: {e}", redact)
            logger.exception("Publish action %s crashed", action.name)
            return PublishResult(action=action.name, ok=False, error=msg)
        logger.info("Publish action %s succeeded", action.name)
        return PublishResult(action=action.name, ok=True)

    def _secret_env(self, action: PublishAction) -> Dict[str, str]:
        names = list(action.secrets)
        if action.uses == "github-pages" and PAGES_TOKEN not in names:
            names.append(PAGES_TOKEN)
        if action.uses == "coveralls" and COVERALLS_TOKEN not in names:
            names.append(COVERALLS_TOKEN)
        if not names:
            return {}
        if self.secrets is None:
            raise SecretUnavailableError(names[0], "no_secret_scope")
        return self.secrets.env_for(names)

    def _run_commands(self, action: PublishAction, secrets: Dict[str, str], redact):
        env = dict(self.env)
        env["MATRIXCI_CHANNEL"] = self.primary_channel
        env.update(secrets)
        for command in action.run:
            out = self.runner(shell_cmd(command), cwd=self.workdir, env=env, timeout=self.timeout, redact=redact)
            self._log(action.name, f"$ {command}\n{out}", redact)

    def _github_pages(self, action: PublishAction, secrets: Dict[str, str]):
        opts = action.with_
        repo = opts.get("repo")
        if not repo:
            raise PublishError(f"{action.name}: with.repo is required")
        github.publish_pages(
            secrets[PAGES_TOKEN],
            repo,
            self._path(opts.get("source", "target/doc")),
            branch=opts.get("branch", "gh-pages"),
            message=opts.get("message", f"Update documentation ({self.invocation_id or 'matrixci'})"),
            index=opts.get("index", ""),
            timeout=self.timeout,
        )

    def _coveralls(self, action: PublishAction, secrets: Dict[str, str]):
        opts = action.with_
        resp = coveralls.upload_report(
            secrets[COVERALLS_TOKEN],
            self._path(opts.get("report", "coveralls.json")),
            service_name=opts.get("service_name", "matrixci"),
            job_id=self.invocation_id,
        )
        if resp.get("url"):
            logger.info("Coverage report: %s", resp["url"])

    def _path(self, p: str) -> str:
        path = Path(p)
        if not path.is_absolute() and self.workdir:
            path = Path(self.workdir) / path
        return str(path)

    def _log(self, action: str, text: str, redact=None):
        if self.artifact_root is None:
            return
        rel = f"logs/publish-{safe_name(action)}.log"
        append_log(self.artifact_root / safe_name(self.primary_channel), rel, text, redact)
