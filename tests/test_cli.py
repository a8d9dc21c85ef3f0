from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from imagejobs_cli.cli import app
from imagejobs_cli.jobs import JobManager, JobSpec
from imagejobs_cli.provenance import extract_from_file
from imagejobs_cli.store import JobStatus, Store

runner = CliRunner()


@pytest.fixture
def env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    monkeypatch.chdir(tmp_path)
    return {
        "HISTORY_DB_PATH": str(tmp_path / "history.db"),
        "OPENAI_IMAGE_OUTPUT_DIR": str(tmp_path / "out"),
        "DEBUG": "",
    }


class TestGenerate:
    def test_generate_writes_image_and_history(self, tmp_path: Path, env: dict[str, str]) -> None:
        result = runner.invoke(app, ["generate", "a lighthouse", "-o", "light.png", "--quality", "low"], env=env)
        assert result.exit_code == 0, result.output
        assert "History ID" in result.output

        image = tmp_path / "out" / "light.png"
        record = extract_from_file(image)
        assert record is not None

        store = Store(tmp_path / "history.db")
        assert store.get_history(record.id) is not None
        store.close()

    def test_invalid_size_exits_with_error(self, env: dict[str, str]) -> None:
        result = runner.invoke(app, ["generate", "x", "--size", "10x10"], env=env)
        assert result.exit_code == 1
        assert "Error" in result.output


class TestMetadata:
    def test_show_and_verify(self, tmp_path: Path, env: dict[str, str]) -> None:
        runner.invoke(app, ["generate", "a fox", "-o", "fox.png"], env=env)
        image = str(tmp_path / "out" / "fox.png")

        shown = runner.invoke(app, ["metadata", "show", image], env=env)
        assert shown.exit_code == 0, shown.output
        assert "params_hash" in shown.output

        verified = runner.invoke(app, ["metadata", "verify", image], env=env)
        assert verified.exit_code == 0, verified.output
        assert "verified" in verified.output

    def test_verify_against_other_history(self, tmp_path: Path, env: dict[str, str]) -> None:
        runner.invoke(app, ["generate", "a fox", "-o", "fox.png"], env=env)
        image = str(tmp_path / "out" / "fox.png")
        record_id = extract_from_file(image).id

        other = {**env, "HISTORY_DB_PATH": str(tmp_path / "other.db")}
        result = runner.invoke(app, ["metadata", "verify", image], env=other)
        assert result.exit_code == 2
        assert f"History record not found: {record_id}" in result.output

    def test_verify_image_without_metadata(self, tmp_path: Path, env: dict[str, str]) -> None:
        plain = tmp_path / "plain.png"
        plain.write_bytes(b"\x89PNG\r\n\x1a\n")
        result = runner.invoke(app, ["metadata", "verify", str(plain)], env=env)
        assert result.exit_code == 2


class TestJobs:
    def test_start_runs_to_completion(self, env: dict[str, str]) -> None:
        result = runner.invoke(app, ["jobs", "start", "a cat", "--quality", "low"], env=env)
        assert result.exit_code == 0, result.output
        assert "completed" in result.output

        listed = runner.invoke(app, ["jobs", "list", "--status", "completed"], env=env)
        assert listed.exit_code == 0
        assert "1 of 1" in listed.output

    def test_status_of_missing_job(self, env: dict[str, str]) -> None:
        result = runner.invoke(app, ["jobs", "status", "nope"], env=env)
        assert result.exit_code == 2

    def test_cancel_pending_then_again(self, tmp_path: Path, env: dict[str, str]) -> None:
        store = Store(tmp_path / "history.db")
        job_id = JobManager(store, {}).create(JobSpec(tool_name="generate_image", prompt="later"))
        store.close()

        first = runner.invoke(app, ["jobs", "cancel", job_id], env=env)
        assert first.exit_code == 0, first.output
        second = runner.invoke(app, ["jobs", "cancel", job_id], env=env)
        assert second.exit_code == 1
        assert "already cancelled" in second.output

        store = Store(tmp_path / "history.db")
        assert store.get_job(job_id).job_status is JobStatus.CANCELLED
        store.close()

    def test_cleanup(self, env: dict[str, str]) -> None:
        result = runner.invoke(app, ["jobs", "cleanup", "--days", "7"], env=env)
        assert result.exit_code == 0
        assert "Deleted 0 job(s)" in result.output


class TestBatch:
    def test_estimate(self, tmp_path: Path, env: dict[str, str]) -> None:
        config = tmp_path / "batch.json"
        config.write_text(json.dumps({"jobs": [{"prompt": "a", "quality": "low"}, {"prompt": "b", "quality": "high", "sample_count": 2}]}))
        result = runner.invoke(app, ["batch", "estimate", str(config)], env=env)
        assert result.exit_code == 0, result.output
        assert "$0.35 - $0.40" in result.output

    def test_run_json(self, tmp_path: Path, env: dict[str, str]) -> None:
        config = tmp_path / "batch.yaml"
        config.write_text("jobs:\n  - prompt: one\n  - prompt: two\noutput_dir: batch_out\n")
        result = runner.invoke(app, ["batch", "run", str(config), "--json"], env=env)
        assert result.exit_code == 0, result.output
        payload = json.loads(result.output)
        assert payload["succeeded"] == 2
        assert (tmp_path / "batch_out" / "batch_1.png").exists()
        assert (tmp_path / "batch_out" / "batch_2.png").exists()

    def test_invalid_batch_file(self, tmp_path: Path, env: dict[str, str]) -> None:
        config = tmp_path / "batch.json"
        config.write_text(json.dumps({"jobs": []}))
        result = runner.invoke(app, ["batch", "estimate", str(config)], env=env)
        assert result.exit_code == 1


class TestHistory:
    def test_list_and_show(self, env: dict[str, str]) -> None:
        runner.invoke(app, ["generate", "a red barn"], env=env)
        listed = runner.invoke(app, ["history", "list", "--query", "barn"], env=env)
        assert listed.exit_code == 0
        assert "1 of 1" in listed.output

    def test_show_missing(self, env: dict[str, str]) -> None:
        result = runner.invoke(app, ["history", "show", "missing"], env=env)
        assert result.exit_code == 2
        assert "History record not found: missing" in result.output
