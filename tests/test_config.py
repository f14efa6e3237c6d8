"""Tests for configuration models and the config file loader."""

import json

import pytest
from pydantic import ValidationError as PydanticValidationError

from memrefine.cli_config import build_config, get_default_config, load_config, save_config
from memrefine.configs.base import AgentOverrides, MemRefineConfig, RefinementConfig


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv("MEMREFINE_DB_PATH", raising=False)
    monkeypatch.delenv("MEMREFINE_THRESHOLD", raising=False)


class TestModels:
    def test_defaults(self):
        config = RefinementConfig()
        assert config.default_threshold == 0.75
        assert config.operation_cap == 10
        assert config.min_consolidate_ids == 2
        assert MemRefineConfig().store.max_content_chars == 10_000

    @pytest.mark.parametrize("bad", [0, -0.1, 1.01])
    def test_threshold_bounds(self, bad):
        with pytest.raises(PydanticValidationError):
            RefinementConfig(default_threshold=bad)
        with pytest.raises(PydanticValidationError):
            AgentOverrides(threshold=bad)

    def test_threshold_of_one_allowed(self):
        assert RefinementConfig(default_threshold=1.0).default_threshold == 1.0

    def test_clamped_fields(self):
        config = RefinementConfig(operation_cap=0, token_budget=-5)
        assert config.operation_cap == 1
        assert config.token_budget == 0

    def test_unknown_log_level_falls_back(self):
        assert MemRefineConfig(log_level="chatty").log_level == "INFO"
        assert MemRefineConfig(log_level="debug").log_level == "DEBUG"


class TestLoader:
    def test_missing_file_gives_defaults(self, tmp_path):
        data = load_config(str(tmp_path / "nope.json"))
        assert data == get_default_config()
        assert data["version"] == "1"

    def test_save_then_build(self, tmp_path):
        path = str(tmp_path / "cfg" / "config.json")
        data = get_default_config()
        data["refinement"]["operation_cap"] = 5
        data["store"]["db_path"] = str(tmp_path / "a.db")
        save_config(data, path)

        with open(path) as f:
            assert json.load(f)["refinement"]["operation_cap"] == 5
        config = build_config(path)
        assert config.refinement.operation_cap == 5
        assert config.store.db_path == str(tmp_path / "a.db")

    def test_environment_overrides_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MEMREFINE_DB_PATH", str(tmp_path / "env.db"))
        monkeypatch.setenv("MEMREFINE_THRESHOLD", "0.6")
        config = build_config(str(tmp_path / "missing.json"))
        assert config.store.db_path == str(tmp_path / "env.db")
        assert config.refinement.default_threshold == 0.6

    def test_explicit_db_path_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MEMREFINE_DB_PATH", str(tmp_path / "env.db"))
        config = build_config(str(tmp_path / "missing.json"), db_path=str(tmp_path / "arg.db"))
        assert config.store.db_path == str(tmp_path / "arg.db")

    def test_invalid_env_threshold(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MEMREFINE_THRESHOLD", "3")
        with pytest.raises(PydanticValidationError):
            build_config(str(tmp_path / "missing.json"))
