"""Shared test fixtures for the JobPilot test suite."""

import itertools
import shlex
import shutil
import subprocess
import sys

import pytest

from jobpilot.config import JobPilotConfig
from jobpilot.events import EventCollector
from jobpilot.provider import LMResponse
from jobpilot.store import JobStore

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")

_ids = itertools.count(1)


def text(value: str) -> dict:
    return {"type": "text", "text": value}


def use(name: str, **tool_input) -> dict:
    """A tool_use block with a fresh id."""
    return {"type": "tool_use", "id": f"toolu_{next(_ids):04d}", "name": name, "input": tool_input}


class ScriptedProvider:
    """Fake LM that replays a script of assistant turns.

    Each step is a list of content blocks, or a callable taking the
    messages it was sent and returning one. Once the script runs out the
    provider keeps answering with an idle text turn.
    """

    def __init__(self, steps=None, input_tokens: int = 400, output_tokens: int = 100):
        self.steps = list(steps or [])
        self.calls: list[dict] = []
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens

    def extend(self, steps) -> None:
        self.steps.extend(steps)

    async def complete(self, *, system, messages, tools, max_tokens):
        self.calls.append({
            "system": system,
            "messages": messages,
            "tools": tools,
            "max_tokens": max_tokens,
        })
        step = self.steps.pop(0) if self.steps else [text("Waiting for instructions.")]
        if callable(step):
            step = step(messages)
        stop = "tool_use" if any(b.get("type") == "tool_use" for b in step) else "end_turn"
        return LMResponse(
            content=step,
            stop_reason=stop,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            model="scripted",
        )


@pytest.fixture
def store(tmp_path):
    """Provide a JobStore backed by a temporary database."""
    return JobStore(db_path=tmp_path / "test_jobpilot.db")


@pytest.fixture
def events(store):
    return EventCollector(store)


@pytest.fixture
def project(tmp_path):
    """A small git repository to run jobs against."""
    root = tmp_path / "project"
    root.mkdir()
    (root / "src").mkdir()
    (root / "src" / "app.py").write_text("def main():\n    return 'hello'\n")
    (root / "README.md").write_text("# demo\n")
    if shutil.which("git"):
        git = ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com"]
        subprocess.run(["git", "init", "-q"], cwd=root, check=True)
        subprocess.run(git + ["add", "-A"], cwd=root, check=True)
        subprocess.run(git + ["commit", "-q", "-m", "initial"], cwd=root, check=True)
    return root


@pytest.fixture
def config():
    """Defaults with fast retries and a test command that always passes."""
    cfg = JobPilotConfig()
    cfg.provider.backoff_seconds = 0
    cfg.workspace.test_command = f"{shlex.quote(sys.executable)} -c pass"
    cfg.workspace.verify_command = ""
    return cfg


@pytest.fixture
def provider():
    return ScriptedProvider()
