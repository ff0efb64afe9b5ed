"""Tests for jobpilot.config: file and environment loading."""

import json

from jobpilot.config import JobPilotConfig, ProviderConfig


class TestProviderConfig:
    def test_known_and_unknown_models(self):
        cfg = ProviderConfig()
        assert cfg.context_limit("claude-opus-4-6") == 200_000
        assert cfg.context_limit("some-other-model") == cfg.default_context_limit

    def test_safety_margin(self):
        cfg = ProviderConfig()
        assert cfg.safety_margin() == 25_000
        cfg.safety_margin_tokens = 10_000
        assert cfg.safety_margin() == 10_000


class TestJobPilotConfig:
    """Test load/save round trips and env overrides."""

    def test_defaults_without_file(self, tmp_path, monkeypatch):
        for var in ("ANTHROPIC_API_KEY", "ANTHROPIC_BASE_URL", "JOBPILOT_MODEL", "JOBPILOT_CONTEXT_LIMIT"):
            monkeypatch.delenv(var, raising=False)
        cfg = JobPilotConfig.load(tmp_path / "missing.json")
        assert cfg.loop.stuck_threshold == 3
        assert cfg.loop.max_strikes == 3
        assert cfg.auto_commit is True

    def test_file_values_applied(self, tmp_path, monkeypatch):
        monkeypatch.delenv("JOBPILOT_MODEL", raising=False)
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "loop": {"stuck_threshold": 5},
            "iterations": {"fix": 12},
            "auto_commit": False,
        }))
        cfg = JobPilotConfig.load(path)
        assert cfg.loop.stuck_threshold == 5
        assert cfg.iterations.fix == 12
        assert cfg.auto_commit is False

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"provider": {"model": "from-file"}}))
        monkeypatch.setenv("JOBPILOT_MODEL", "from-env")
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        monkeypatch.setenv("JOBPILOT_CONTEXT_LIMIT", "100000")
        cfg = JobPilotConfig.load(path)
        assert cfg.provider.model == "from-env"
        assert cfg.provider.api_key == "sk-test"
        assert cfg.provider.default_context_limit == 100_000

    def test_save_omits_api_key(self, tmp_path):
        cfg = JobPilotConfig()
        cfg.provider.api_key = "sk-secret"
        path = tmp_path / "config.json"
        cfg.save(path)
        data = json.loads(path.read_text())
        assert "api_key" not in data["provider"]
        assert "sk-secret" not in path.read_text()
