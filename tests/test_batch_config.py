from __future__ import annotations

import json
from pathlib import Path

import pytest

from imagejobs_cli.gen.types import ToolName
from imagejobs_cli.jobs import BatchConfigError, RetryPolicy, load_batch_config


def _write(tmp_path: Path, name: str, text: str) -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


class TestLoadBatchConfig:
    def test_json_file(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            "batch.json",
            json.dumps({"jobs": [{"prompt": "a"}, {"prompt": "b", "quality": "high"}], "max_concurrent": 3, "timeout": 5000}),
        )
        config = load_batch_config(path)
        assert len(config.jobs) == 2
        assert config.max_concurrent == 3
        assert config.timeout_ms == 5000
        assert config.jobs[0].tool_name is ToolName.GENERATE

    def test_yaml_file(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            "batch.yaml",
            """
jobs:
  - prompt: a castle
    size: 1536x1024
  - prompt: a moat
    tool_name: transform_image
    reference_image_path: castle.png
retry_policy:
  max_retries: 1
""",
        )
        config = load_batch_config(path)
        assert config.jobs[1].tool_name is ToolName.TRANSFORM
        assert config.retry_policy.max_retries == 1
        assert config.retry_policy.retry_on_errors == ["rate_limit", "timeout"]

    def test_defaults_fill_missing_keys(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "batch.json", json.dumps({"jobs": [{"prompt": "a"}], "timeout": 2000}))
        config = load_batch_config(path, {"max_concurrent": 4, "timeout_ms": 900000})
        assert config.max_concurrent == 4
        assert config.timeout_ms == 2000

    def test_no_retry_policy_from_empty_defaults(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "batch.json", json.dumps({"jobs": [{"prompt": "a"}]}))
        config = load_batch_config(path, {"max_concurrent": 2, "timeout_ms": 600000, "retry_policy": None})
        assert config.retry_policy is None

    @pytest.mark.parametrize(
        "payload",
        [
            {"jobs": []},
            {"jobs": [{"prompt": ""}]},
            {"jobs": [{"prompt": "a"}], "max_concurrent": 11},
            {"jobs": [{"prompt": "a"}], "timeout": 999},
            {"jobs": [{"prompt": "a"}], "retry_policy": {"max_retries": 6}},
            {"jobs": [{"prompt": "a"}], "retry_policy": {"retry_delay_ms": 50}},
            {"jobs": [{"prompt": "a", "size": "512x512"}]},
            {"jobs": [{"prompt": "a", "tool_name": "edit_image"}]},
            {"jobs": [{"prompt": "a"}] * 101},
            {"jobs": [{"prompt": "a"}], "unknown": True},
        ],
    )
    def test_invalid_configs(self, tmp_path: Path, payload: dict) -> None:
        path = _write(tmp_path, "batch.json", json.dumps(payload))
        with pytest.raises(BatchConfigError):
            load_batch_config(path)

    def test_non_mapping_root(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "batch.yaml", "- just\n- a list\n")
        with pytest.raises(BatchConfigError):
            load_batch_config(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(BatchConfigError):
            load_batch_config(tmp_path / "nope.json")


class TestJobParameters:
    def test_default_output_path_under_output_dir(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            "batch.json",
            json.dumps({"jobs": [{"prompt": "a", "output_format": "webp"}], "output_dir": str(tmp_path / "out")}),
        )
        config = load_batch_config(path)
        params = config.jobs[0].to_parameters(0, config.output_dir)
        assert params["output_path"] == str(tmp_path / "out" / "batch_1.webp")
        assert params["prompt"] == "a"
        assert "tool_name" not in params
        assert "quality" not in params


class TestRetryPolicy:
    def test_case_insensitive_substring(self) -> None:
        policy = RetryPolicy()
        assert policy.should_retry("RATE_LIMIT reached")
        assert policy.should_retry("Request timeout: read")
        assert not policy.should_retry("bad request")
