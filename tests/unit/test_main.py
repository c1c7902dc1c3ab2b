import json

import pytest

from app.main import ROLE_PORTS, _default_port, run


@pytest.mark.unit
def test_cli_returns_non_zero_for_invalid_role(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = run(["--role", "worker-unknown", "--dry-run-startup"])
    captured = capsys.readouterr()

    assert exit_code == 2
    assert "ERROR:" in captured.err
    assert "Supported roles" in captured.err
    assert "Try one of: api, worker-reaper, worker-materializer" in captured.err


@pytest.mark.unit
@pytest.mark.parametrize("role", ["api", "worker-reaper", "worker-materializer"])
def test_cli_dry_run_succeeds_for_valid_role(role: str) -> None:
    exit_code = run(["--role", role, "--dry-run-startup"])
    assert exit_code == 0


@pytest.mark.unit
def test_dry_run_logs_selected_backends(
    capsys: pytest.CaptureFixture[str],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    for name in ("DATABASE_URL", "DATABASE_ADMIN_URL", "PROVIDER_API_KEY", "STORAGE_BUCKET", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)

    assert run(["--role", "api", "--dry-run-startup"]) == 0

    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.startswith("{")]
    initialized = next(line for line in lines if line["message"] == "runtime initialized")
    assert initialized["repository"] == "InMemoryTaskRepository"
    assert initialized["provider"] == "StubGenerationProvider"
    assert initialized["storage"] == "StubStorageClient"
    assert lines[-1]["message"] == "dry-run startup complete"


@pytest.mark.unit
def test_each_role_gets_its_own_default_port() -> None:
    ports = {_default_port(role) for role in ROLE_PORTS}
    assert ports == {8000, 8100, 8200}
