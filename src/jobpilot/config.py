"""JobPilot configuration management."""

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path

JOBPILOT_HOME = Path.home() / ".jobpilot"
JOBPILOT_DB = JOBPILOT_HOME / "jobpilot.db"
JOBPILOT_CONFIG = JOBPILOT_HOME / "config.json"
JOBPILOT_LOGS = JOBPILOT_HOME / "logs"


@dataclass
class ProviderConfig:
    """LM provider settings.

    Context limits are per model; unknown models fall back to
    ``default_context_limit``. The safety margin is a fraction of the
    provider limit unless ``safety_margin_tokens`` is set explicitly.
    """

    model: str = "claude-sonnet-4-5-20250929"
    base_url: str = "https://api.anthropic.com"
    api_key: str = ""
    api_version: str = "2023-06-01"
    context_limits: dict[str, int] = field(default_factory=lambda: {
        "claude-opus-4-6": 200_000,
        "claude-sonnet-4-5-20250929": 200_000,
        "claude-haiku-4-5-20251001": 200_000,
        "claude-sonnet-4-20250514": 200_000,
    })
    default_context_limit: int = 200_000
    default_max_tokens: int = 8192
    safety_margin_ratio: float = 0.125
    safety_margin_tokens: int = 0
    overflow_max_attempts: int = 3
    backoff_seconds: float = 1.0
    transient_max_attempts: int = 3
    request_timeout: float = 300.0

    def context_limit(self, model: str | None = None) -> int:
        return self.context_limits.get(model or self.model, self.default_context_limit)

    def safety_margin(self, model: str | None = None) -> int:
        if self.safety_margin_tokens > 0:
            return self.safety_margin_tokens
        return int(self.context_limit(model) * self.safety_margin_ratio)


@dataclass
class IterationConfig:
    """Maximum loop iterations per intent class."""

    build: int = 40
    fix: int = 30
    diagnostic: int = 25
    casual: int = 5


@dataclass
class LoopConfig:
    """Conversation loop heuristics (tunable, see DESIGN.md)."""

    stuck_threshold: int = 3
    min_recent_messages: int = 6
    max_block_tokens: int = 20_000
    completion_keywords: list[str] = field(default_factory=lambda: [
        "done",
        "finished",
        "complete",
        "all set",
        "that's it",
        "that's all",
        "wrapped up",
        "everything is fixed",
        "no more work",
        "successfully completed",
        "task complete",
    ])
    max_strikes: int = 3
    reject_simple_messages: bool = True
    # Build/fix jobs stop after this many turns of reads only (0 = never).
    max_read_only_iterations: int = 5
    subagent_max_iterations: int = 8
    # A running job whose checkpoint is older than this and that no
    # in-process worker owns is treated as orphaned.
    stale_worker_seconds: int = 900


@dataclass
class AutonomyConfig:
    """Autonomy tier -> visible tool capability classes."""

    default_tier: str = "developer"
    permissions: dict[str, list[str]] = field(default_factory=lambda: {
        "observer": ["read", "track"],
        "assistant": ["read", "track", "mutate", "check", "delegate"],
        "developer": ["read", "track", "mutate", "check", "delegate", "commit"],
        "autonomous": ["read", "track", "mutate", "check", "delegate", "commit"],
    })


@dataclass
class WorkspaceConfig:
    """Commands and guards for the job workspace."""

    test_command: str = "python -m pytest -q"
    verify_command: str = ""
    command_timeout: int = 300
    protected_paths: list[str] = field(default_factory=lambda: [".git", ".env"])
    max_read_bytes: int = 200_000
    commit_author: str = "JobPilot <jobpilot@localhost>"


@dataclass
class JobPilotConfig:
    """Top-level JobPilot configuration."""

    provider: ProviderConfig = field(default_factory=ProviderConfig)
    iterations: IterationConfig = field(default_factory=IterationConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    autonomy: AutonomyConfig = field(default_factory=AutonomyConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    auto_commit: bool = True

    @classmethod
    def load(cls, path: Path | None = None) -> "JobPilotConfig":
        """Load config from disk or return defaults.

        Env vars override file config for credentials and model selection.
        """
        config = cls()
        config_path = path or JOBPILOT_CONFIG
        if config_path.exists():
            data = json.loads(config_path.read_text())
            for section in ("provider", "iterations", "loop", "autonomy", "workspace"):
                if section in data:
                    target = getattr(config, section)
                    for k, v in data[section].items():
                        setattr(target, k, v)
            if "auto_commit" in data:
                config.auto_commit = data["auto_commit"]

        api_key = os.environ.get("ANTHROPIC_API_KEY")
        base_url = os.environ.get("ANTHROPIC_BASE_URL")
        model = os.environ.get("JOBPILOT_MODEL")
        context_limit = os.environ.get("JOBPILOT_CONTEXT_LIMIT")

        if api_key:
            config.provider.api_key = api_key
        if base_url:
            config.provider.base_url = base_url
        if model:
            config.provider.model = model
        if context_limit:
            config.provider.default_context_limit = int(context_limit)

        return config

    def save(self, path: Path | None = None) -> None:
        """Persist config to disk. The API key is never written."""
        config_path = path or JOBPILOT_CONFIG
        config_path.parent.mkdir(parents=True, exist_ok=True)
        data = self.to_dict()
        data["provider"].pop("api_key", None)
        config_path.write_text(json.dumps(data, indent=2))

    def to_dict(self) -> dict:
        return {
            "provider": asdict(self.provider),
            "iterations": asdict(self.iterations),
            "loop": asdict(self.loop),
            "autonomy": asdict(self.autonomy),
            "workspace": asdict(self.workspace),
            "auto_commit": self.auto_commit,
        }


def ensure_jobpilot_home() -> None:
    """Create JobPilot home directory structure."""
    JOBPILOT_HOME.mkdir(parents=True, exist_ok=True)
    JOBPILOT_LOGS.mkdir(parents=True, exist_ok=True)
