import os, sqlite3, json, threading
from .utils import utc_now_iso

_lock = threading.Lock()

SCHEMA = """
CREATE TABLE IF NOT EXISTS invocations (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  status TEXT NOT NULL,
  request_json TEXT NOT NULL,
  result_json TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS runs (
  invocation_id TEXT NOT NULL,
  channel TEXT NOT NULL,
  allow_failure INTEGER NOT NULL,
  state TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  PRIMARY KEY (invocation_id, channel)
);
"""

FINISHED = ("passed", "failed")


def _connect(db_path: str):
    parent = os.path.dirname(db_path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30, isolation_level=None, check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.executescript(SCHEMA)
    return conn


def create_invocation(db_path: str, inv_id: str, name: str, req: dict, status: str = "queued"):
    with _lock:
        conn = _connect(db_path)
        now = utc_now_iso()
        conn.execute(
            "INSERT INTO invocations(id,name,created_at,updated_at,status,request_json,result_json) VALUES(?,?,?,?,?,?,?)",
            (inv_id, name, now, now, status, json.dumps(req), json.dumps({})),
        )
        conn.close()


def update_invocation(db_path: str, inv_id: str, status: str = None, result: dict = None):
    with _lock:
        conn = _connect(db_path)
        now = utc_now_iso()
        row = conn.execute("SELECT result_json,status FROM invocations WHERE id=?", (inv_id,)).fetchone()
        if not row:
            conn.close()
            raise KeyError(inv_id)
        cur_result = json.loads(row[0] or "{}")
        if result:
            cur_result.update(result)
        new_status = status if status is not None else row[1]
        conn.execute(
            "UPDATE invocations SET updated_at=?, status=?, result_json=? WHERE id=?",
            (now, new_status, json.dumps(cur_result), inv_id),
        )
        conn.close()


def set_run_state(db_path: str, inv_id: str, channel: str, state: str, allow_failure: bool = False):
    with _lock:
        conn = _connect(db_path)
        conn.execute(
            "INSERT INTO runs(invocation_id,channel,allow_failure,state,updated_at) VALUES(?,?,?,?,?) "
            "ON CONFLICT(invocation_id,channel) DO UPDATE SET state=excluded.state, updated_at=excluded.updated_at",
            (inv_id, channel, int(bool(allow_failure)), state, utc_now_iso()),
        )
        conn.close()


def get_invocation(db_path: str, inv_id: str) -> dict:
    with _lock:
        conn = _connect(db_path)
        row = conn.execute(
            "SELECT id,name,created_at,updated_at,status,request_json,result_json FROM invocations WHERE id=?",
            (inv_id,)
        ).fetchone()
        runs = conn.execute(
            "SELECT channel,allow_failure,state,updated_at FROM runs WHERE invocation_id=? ORDER BY rowid",
            (inv_id,)
        ).fetchall()
        conn.close()
    if not row:
        raise KeyError(inv_id)
    return {
        "id": row[0],
        "name": row[1],
        "created_at": row[2],
        "updated_at": row[3],
        "status": row[4],
        "request": json.loads(row[5] or "{}"),
        "result": json.loads(row[6] or "{}"),
        "runs": [
            {"channel": r[0], "allow_failure": bool(r[1]), "state": r[2], "updated_at": r[3]}
            for r in runs
        ],
    }


def last_finished_status(db_path: str, name: str, exclude_id: str = "") -> str:
    """Status of the most recent finished invocation of `name`, or "" if none."""
    with _lock:
        conn = _connect(db_path)
        row = conn.execute(
            "SELECT status FROM invocations WHERE name=? AND id<>? AND status IN (?,?) "
            "ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (name, exclude_id, *FINISHED),
        ).fetchone()
        conn.close()
    return row[0] if row else ""
