import json
import logging

import pytest

from app.logging_setup import JsonFormatter, configure_logging


def _record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord("runtime", logging.WARNING, __file__, 1, "stuck task reaped", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.mark.unit
def test_formatter_copies_known_context_only() -> None:
    line = JsonFormatter().format(_record(task_id="task-0001", outcome="ok", secret="sk-live", status=None))
    payload = json.loads(line)

    assert payload["message"] == "stuck task reaped"
    assert payload["level"] == "WARNING"
    assert payload["task_id"] == "task-0001"
    assert payload["outcome"] == "ok"
    assert "secret" not in payload
    assert "status" not in payload


@pytest.mark.unit
def test_configure_logging_honours_level_and_quiets_http_clients(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "debug")
    configure_logging()

    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("httpx").level == logging.WARNING

    configure_logging("warning")
    assert logging.getLogger().level == logging.WARNING
    configure_logging("info")
