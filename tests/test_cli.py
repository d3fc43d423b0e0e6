import json

import pytest
from typer.testing import CliRunner

from tollgate.cli import app

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    monkeypatch.setenv("TOLLGATE_HOME", str(tmp_path / "home"))
    monkeypatch.setenv("TOLLGATE_CONFIG_DIR", str(tmp_path / "home" / "config"))
    monkeypatch.setenv("TOLLGATE_DB_PATH", str(tmp_path / "home" / "tollgate.db"))
    monkeypatch.delenv("TOLLGATE_PG_DSN", raising=False)
    monkeypatch.delenv("TOLLGATE_LOG_DIR", raising=False)
    return tmp_path / "home"


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert "tollgate" in result.output


def test_init_writes_catalog_and_schema(cli_env):
    result = runner.invoke(app, ["init"])

    assert result.exit_code == 0, result.output
    assert (cli_env / "config" / "operations.yaml").exists()
    assert (cli_env / "tollgate.db").exists()


def test_identity_lifecycle(cli_env):
    assert runner.invoke(app, ["init"]).exit_code == 0

    created = runner.invoke(app, ["identity", "create", "--id", "alice", "--balance", "5"])
    assert created.exit_code == 0, created.output
    assert "API key" in created.output

    topped = runner.invoke(app, ["identity", "topup", "alice", "10", "--reason", "welcome"])
    assert topped.exit_code == 0, topped.output
    assert "Balance: 15" in topped.output

    shown = runner.invoke(app, ["identity", "show", "alice"])
    assert shown.exit_code == 0
    assert "Balance: 15" in shown.output

    deactivated = runner.invoke(app, ["identity", "deactivate", "alice"])
    assert deactivated.exit_code == 0

    refused = runner.invoke(app, ["identity", "topup", "alice", "1"])
    assert refused.exit_code == 1


def test_unknown_identity(cli_env):
    runner.invoke(app, ["init"])
    assert runner.invoke(app, ["identity", "show", "ghost"]).exit_code == 1
    assert runner.invoke(app, ["identity", "deactivate", "ghost"]).exit_code == 1


def test_audit_list_json(cli_env):
    runner.invoke(app, ["init"])
    runner.invoke(app, ["identity", "create", "--id", "bob", "--balance", "1"])
    runner.invoke(app, ["identity", "topup", "bob", "4"])

    result = runner.invoke(app, ["audit", "list", "--identity", "bob", "--json"])

    assert result.exit_code == 0
    lines = [json.loads(line) for line in result.output.splitlines() if line.startswith("{")]
    lines = [line for line in lines if "level" not in line]
    assert len(lines) == 1
    assert lines[0]["operation_name"] == "admin.topup"
    assert lines[0]["success"] is True


def test_daemon_status_when_stopped(cli_env):
    result = runner.invoke(app, ["daemon", "status"])
    assert result.exit_code == 0
    assert "NOT running" in result.output
