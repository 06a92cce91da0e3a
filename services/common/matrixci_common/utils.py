import os, re, subprocess
from datetime import datetime, timezone
from pathlib import Path

from .errors import CommandError

REDACTED = "***REDACTED***"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def read_secret(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read().strip()


def read_secret_bytes(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def sanitize_text(text: str, redact=None) -> str:
    """
    Strip token-shaped strings and, when given, exact secret values.
    redact: iterable of plaintext values to replace.
    """
    if not text:
        return text
    s = text
    for r in redact or ():
        if r:
            s = s.replace(r, REDACTED)
    s = re.sub(r"gh[pousr]_[A-Za-z0-9_]+", "[REDACTED_GITHUB_TOKEN]", s)
    s = re.sub(r"x-access-token:[^@\s]+@", "x-access-token:[REDACTED]@", s)
    s = re.sub(r"(Authorization:\s*Bearer\s+)([^\s]+)", r"\1[REDACTED]", s, flags=re.I)
    return s


def _text(out) -> str:
    if out is None:
        return ""
    if isinstance(out, bytes):
        return out.decode("utf-8", errors="replace")
    return out


def run_cmd(args, cwd=None, env=None, timeout=900, redact=None) -> str:
    """
    Run command (no shell unless args asks for one), capture output.
    env: extra variables layered over the parent environment.
    redact: list[str] to redact from output and error messages.
    Timeouts and OS errors raise CommandError like a non-zero exit.
    """
    env2 = os.environ.copy()
    if env:
        env2.update(env)
    env2["GIT_TERMINAL_PROMPT"] = "0"
    try:
        p = subprocess.run(
            args,
            cwd=cwd,
            env=env2,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
            text=True,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        out = sanitize_text(_text(e.output), redact)
        raise CommandError(f"Command timed out after {timeout}s: {_shown(args, redact)}\n{out}", -1, out)
    except OSError as e:
        raise CommandError(f"Command could not start: {_shown(args, redact)}: {e}", -1, "")
    out = sanitize_text(p.stdout or "", redact)
    if p.returncode != 0:
        raise CommandError(f"Command failed ({p.returncode}): {_shown(args, redact)}\n{out}", p.returncode, out)
    return out


def _shown(args, redact) -> str:
    return sanitize_text(str(args), redact)


def shell_cmd(command: str) -> list:
    return ["/bin/sh", "-c", command]


def append_log(root: Path, rel: str, text: str, redact=None):
    p = Path(root) / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("a", encoding="utf-8") as f:
        f.write(sanitize_text(text, redact))
        if not text.endswith("\n"):
            f.write("\n")


def write_artifact(root: Path, rel: str, text: str, redact=None):
    p = Path(root) / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(sanitize_text(text, redact), encoding="utf-8")


def safe_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", name).strip("_") or "unnamed"
