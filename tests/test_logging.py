import json
import logging
import tempfile
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

import pytest
from fastapi import FastAPI
from starlette.testclient import TestClient

from supportchat.app_logging import ROOT_LOGGER, JsonFormatter, _scrub, init_logging


def _clear_handlers(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.handlers.clear()
    return logger


@pytest.fixture
def log_dir(monkeypatch):
    with tempfile.TemporaryDirectory() as tmpdir:
        monkeypatch.setenv("LOG_DIR", tmpdir)
        yield Path(tmpdir)
    _clear_handlers(ROOT_LOGGER)
    _clear_handlers("uvicorn.access")


def _flush(*names):
    for name in names:
        for handler in logging.getLogger(name).handlers:
            handler.flush()


def test_worker_log_rotation(log_dir, monkeypatch):
    monkeypatch.setenv("LOG_RETENTION_DAYS", "5")
    root = _clear_handlers(ROOT_LOGGER)

    init_logging(component="worker")

    handler = next(h for h in root.handlers if isinstance(h, TimedRotatingFileHandler))
    assert handler.when == "MIDNIGHT"
    assert handler.backupCount == 5
    assert Path(handler.baseFilename) == log_dir / "worker.log"


def test_json_lines(log_dir, monkeypatch):
    monkeypatch.setenv("LOG_JSON", "true")
    _clear_handlers(ROOT_LOGGER)

    init_logging(component="worker")
    logging.getLogger("supportchat.jobs.queue").warning("Job %s failed", "analysis.full")
    _flush(ROOT_LOGGER)

    line = (log_dir / "worker.log").read_text(encoding="utf-8").splitlines()[-1]
    record = json.loads(line)
    assert record["level"] == "WARNING"
    assert record["logger"] == "supportchat.jobs.queue"
    assert record["message"] == "Job analysis.full failed"


def test_json_formatter_keeps_japanese_text():
    record = logging.LogRecord("supportchat", logging.INFO, __file__, 1, "料金 %s", ("確認",), None)
    assert json.loads(JsonFormatter().format(record))["message"] == "料金 確認"


def test_scrub_masks_nested_secrets():
    data = {
        "Authorization": "Bearer abc",
        "metadata": {"email": "a@example.com", "category": "tech"},
        "hooks": [{"webhook_url": "https://hooks.example.com/x"}],
    }

    assert _scrub(data) == {
        "Authorization": "***",
        "metadata": {"email": "***", "category": "tech"},
        "hooks": [{"webhook_url": "***"}],
    }


def test_access_log_is_scrubbed(log_dir, monkeypatch):
    monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
    _clear_handlers(ROOT_LOGGER)
    app = FastAPI()
    init_logging(app)

    @app.post("/api/echo")
    async def echo(payload: dict):
        return payload

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    with TestClient(app) as client:
        resp = client.post(
            "/api/echo",
            json={"password": "hunter2", "content": "hi"},
            headers={"X-Session-Id": "sess-1", "X-User-Email": "a@example.com"},
        )
        client.get("/api/health")

    assert resp.status_code == 200
    assert resp.headers["X-Request-Id"]
    _flush("uvicorn.access")

    lines = (log_dir / "access.log").read_text(encoding="utf-8").splitlines()
    entries = [json.loads(line.split(": ", 1)[1]) for line in lines]
    assert [entry["path"] for entry in entries] == ["/api/echo"]
    entry = entries[0]
    assert entry["session_id"] == "sess-1"
    assert entry["headers"]["x-user-email"] == "***"
    assert entry["body"] == {"password": "***", "content": "hi"}
    assert entry["status"] == 200
