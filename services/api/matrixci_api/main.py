import os, uuid
from typing import Any, Dict

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from redis import Redis
from rq import Queue

from matrixci_common.auth import load_api_key, api_key_ok
from matrixci_common.config import parse_config
from matrixci_common.db import create_invocation, get_invocation
from matrixci_common.errors import ConfigError

app = FastAPI(title="matrixci", version="0.1.0")

DB_PATH = os.environ.get("MATRIXCI_DB_PATH", "/data/matrixci.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://redis:6379/0")
SECRETS_DIR = os.environ.get("SECRETS_DIR", "/secrets")
API_KEY_FILE = os.environ.get("MATRIXCI_API_KEY_FILE", f"{SECRETS_DIR}/matrixci_api_key.txt")
QUEUE_NAME = os.environ.get("MATRIXCI_QUEUE", "matrixci")

redis = Redis.from_url(REDIS_URL)
q = Queue(QUEUE_NAME, connection=redis, default_timeout=3600)

_expected_key = None


def expected_key() -> str:
    global _expected_key
    if _expected_key is None:
        _expected_key = load_api_key(API_KEY_FILE)
    return _expected_key


class PipelineRequest(BaseModel):
    config: Dict[str, Any] = Field(..., description="Pipeline document: channels, stages, after_success, ...")


@app.middleware("http")
async def auth_middleware(request: Request, call_next):
    if request.url.path in ("/health", "/docs", "/openapi.json", "/redoc"):
        return await call_next(request)
    got = request.headers.get("X-MatrixCI-Key", "")
    try:
        ok = api_key_ok(got, expected_key())
    except ConfigError:
        return JSONResponse(status_code=500, content={"detail": "api key not configured"})
    if not ok:
        return JSONResponse(status_code=401, content={"detail": "Unauthorized"})
    return await call_next(request)


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/v1/pipelines")
def create(req: PipelineRequest):
    try:
        cfg = parse_config(req.config)
    except ConfigError as e:
        raise HTTPException(status_code=422, detail=str(e))
    inv_id = str(uuid.uuid4())
    create_invocation(DB_PATH, inv_id, cfg.name, req.config)
    q.enqueue("matrixci_worker.jobs.run_invocation", inv_id, req.config)
    return {"id": inv_id, "status": "queued"}


@app.get("/v1/pipelines/{inv_id}")
def status(inv_id: str):
    try:
        return get_invocation(DB_PATH, inv_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="not found")
