"""Tests for the crossvault CLI via Click's test runner.

Every invocation builds a fresh in-memory provider from the config
file, so only the state file and audit log carry over between runs.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from crossvault.audit import read_audit_log
from crossvault.cli import EXIT_CONFIG, EXIT_FAILED, main
from crossvault.models import ReplicationStatus
from crossvault.state_store import ReplicationStateStore


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _config(tmp_path: Path, targets: list | None = None) -> dict:
    return {
        "provider": {
            "type": "memory",
            "options": {
                "trusted": ["source", "dest"],
                "secrets": [{"domain": "source", "path": "/vault/creds", "value": "s3cret", "version": "v1"}],
                "keys": [{"domain": "dest", "key": "alias/replica"}],
            },
        },
        "settings": {
            "state_path": str(tmp_path / "state.json"),
            "audit_path": str(tmp_path / "audit.log"),
        },
        "domains": {
            "source": {"account_id": "111111111111"},
            "dest": {"account_id": "222222222222"},
        },
        "targets": targets if targets is not None else [{
            "source": {"domain": "source", "path": "/vault/creds"},
            "destination": {"domain": "dest", "path": "/replica/creds", "key": "alias/replica"},
            "consumers": ["svc-a"],
        }],
    }


def _write(tmp_path: Path, data: dict) -> str:
    path = tmp_path / "replication.yaml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def config_path(tmp_path: Path) -> str:
    return _write(tmp_path, _config(tmp_path))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class TestValidate:
    def test_valid(self, runner, config_path) -> None:
        result = runner.invoke(main, ["validate", config_path])
        assert result.exit_code == 0
        assert "OK" in result.output

    def test_invalid_exit_code(self, runner, tmp_path) -> None:
        data = _config(tmp_path)
        data["targets"][0]["destination"]["domain"] = "nowhere"
        result = runner.invoke(main, ["validate", _write(tmp_path, data)])
        assert result.exit_code == EXIT_CONFIG
        assert "Invalid configuration" in result.output


class TestPlan:
    def test_prints_policies(self, runner, config_path) -> None:
        result = runner.invoke(main, ["plan", config_path])
        assert result.exit_code == 0
        output = json.loads(result.output)
        entry = output["source:/vault/creds->dest:/replica/creds"]
        assert entry["key_policy"]["Version"] == "2012-10-17"
        assert len(entry["secret_policy"]["Statement"]) == 2

    def test_plan_is_stable(self, runner, config_path) -> None:
        first = runner.invoke(main, ["plan", config_path]).output
        assert runner.invoke(main, ["plan", config_path]).output == first


class TestReconcile:
    def test_sync_then_status(self, runner, config_path, tmp_path) -> None:
        result = runner.invoke(main, ["reconcile", config_path])
        assert result.exit_code == 0, result.output

        store = ReplicationStateStore(tmp_path / "state.json")
        [record] = store.records()
        assert record.status is ReplicationStatus.SYNCED
        assert record.last_source_version == "v1"

        status = runner.invoke(main, ["status", config_path])
        assert status.exit_code == 0

        events = [e.event_type for e in read_audit_log(tmp_path / "audit.log")]
        assert events == ["RECONCILE_SYNCED"]

    def test_dry_run_writes_no_state(self, runner, config_path, tmp_path) -> None:
        result = runner.invoke(main, ["reconcile", "--dry-run", config_path])
        assert result.exit_code == 0, result.output
        assert not (tmp_path / "state.json").exists()

    def test_failed_target_exit_code(self, runner, tmp_path) -> None:
        data = _config(tmp_path)
        data["targets"].append({
            "source": {"domain": "source", "path": "/vault/missing"},
            "destination": {"domain": "dest", "path": "/replica/missing"},
            "consumers": ["svc-b"],
        })
        result = runner.invoke(main, ["reconcile", _write(tmp_path, data)])
        assert result.exit_code == EXIT_FAILED

        records = {str(r.target_key): r for r in ReplicationStateStore(tmp_path / "state.json").records()}
        assert records["source:/vault/creds->dest:/replica/creds"].status is ReplicationStatus.SYNCED
        assert records["source:/vault/missing->dest:/replica/missing"].status is ReplicationStatus.FAILED

    def test_unknown_provider(self, runner, tmp_path) -> None:
        data = _config(tmp_path)
        data["provider"] = {"type": "nonexistent"}
        result = runner.invoke(main, ["reconcile", _write(tmp_path, data)])
        assert result.exit_code == EXIT_CONFIG

    def test_status_before_any_pass(self, runner, config_path) -> None:
        result = runner.invoke(main, ["status", config_path])
        assert result.exit_code == 0


class TestDecommission:
    def test_removes_record(self, runner, config_path, tmp_path) -> None:
        runner.invoke(main, ["reconcile", config_path])
        result = runner.invoke(main, [
            "decommission", config_path, "source", "/vault/creds", "dest", "/replica/creds", "--yes",
        ])
        assert result.exit_code == 0, result.output
        assert ReplicationStateStore(tmp_path / "state.json").records() == []
        events = [e.event_type for e in read_audit_log(tmp_path / "audit.log")]
        assert events[-1] == "RECORD_DECOMMISSIONED"

    def test_unknown_record(self, runner, config_path) -> None:
        result = runner.invoke(main, [
            "decommission", config_path, "source", "/vault/creds", "dest", "/replica/creds", "--yes",
        ])
        assert result.exit_code == EXIT_FAILED

    def test_confirmation_declined(self, runner, config_path, tmp_path) -> None:
        runner.invoke(main, ["reconcile", config_path])
        result = runner.invoke(
            main,
            ["decommission", config_path, "source", "/vault/creds", "dest", "/replica/creds"],
            input="n\n",
        )
        assert result.exit_code != 0
        assert len(ReplicationStateStore(tmp_path / "state.json").records()) == 1
