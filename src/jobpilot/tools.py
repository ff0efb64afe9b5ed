"""Agent tools: the closed set of tool kinds and their dispatcher.

Capability classes:
- read: looks at the workspace, never changes it
- track: task-list bookkeeping, visible to the user but not to git
- mutate: writes, edits, deletes files (journaled)
- check: runs tests / verification, reports pass or fail
- delegate: hands a sub-task to a bounded child loop with the same tools
- commit: publishes the journaled changes as one git commit

Autonomy tiers decide which classes a job can see at all. A tool the job
cannot see is simply not offered to the model. Every call the model does
make yields exactly one ToolResult; failures become ``is_error`` results.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Protocol

from claude_agent_sdk import SdkMcpTool, tool

from jobpilot.conversation import ToolCall, ToolResult
from jobpilot.errors import ToolProtocolError
from jobpilot.events import EVENT_FILE_CHANGE, EVENT_TASK_LIST_CREATED, EVENT_TASK_UPDATED
from jobpilot.store import TaskStatus

logger = logging.getLogger(__name__)


class Capability(Enum):
    READ = "read"
    TRACK = "track"
    MUTATE = "mutate"
    CHECK = "check"
    DELEGATE = "delegate"
    COMMIT = "commit"


class ToolKind(Enum):
    READ_FILE = "read_file"
    LIST_FILES = "list_files"
    SEARCH_CODE = "search_code"
    WRITE_FILE = "write_file"
    EDIT_FILE = "edit_file"
    DELETE_FILE = "delete_file"
    CREATE_TASK_LIST = "create_task_list"
    UPDATE_TASK = "update_task"
    RUN_TESTS = "run_tests"
    VERIFY_CHANGES = "verify_changes"
    START_SUBAGENT = "start_subagent"
    COMMIT_CHANGES = "commit_changes"

    @property
    def capability(self) -> Capability:
        return CAPABILITIES[self]

    @property
    def signals(self) -> str | None:
        """Workflow phase a check tool moves the job into, if any."""
        return PHASE_SIGNALS.get(self)


CAPABILITIES: dict[ToolKind, Capability] = {
    ToolKind.READ_FILE: Capability.READ,
    ToolKind.LIST_FILES: Capability.READ,
    ToolKind.SEARCH_CODE: Capability.READ,
    ToolKind.WRITE_FILE: Capability.MUTATE,
    ToolKind.EDIT_FILE: Capability.MUTATE,
    ToolKind.DELETE_FILE: Capability.MUTATE,
    ToolKind.CREATE_TASK_LIST: Capability.TRACK,
    ToolKind.UPDATE_TASK: Capability.TRACK,
    ToolKind.RUN_TESTS: Capability.CHECK,
    ToolKind.VERIFY_CHANGES: Capability.CHECK,
    ToolKind.START_SUBAGENT: Capability.DELEGATE,
    ToolKind.COMMIT_CHANGES: Capability.COMMIT,
}

PHASE_SIGNALS: dict[ToolKind, str] = {
    ToolKind.RUN_TESTS: "test",
    ToolKind.VERIFY_CHANGES: "verify",
}

OPTIONAL_FIELDS: dict[str, set[str]] = {
    "list_files": {"pattern"},
    "search_code": {"file_glob"},
    "update_task": {"result"},
    "run_tests": {"target"},
    "verify_changes": set(),
    "start_subagent": {"max_iterations"},
}

_JSON_TYPES = {str: "string", int: "integer", float: "number", bool: "boolean", list: "array", dict: "object"}


class AutonomyTier(IntEnum):
    """Caller permission levels, lowest first."""

    OBSERVER = 0
    ASSISTANT = 1
    DEVELOPER = 2
    AUTONOMOUS = 3

    @classmethod
    def parse(cls, value: str | int) -> AutonomyTier:
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[value.strip().upper()]
        except KeyError:
            raise ValueError(f"Unknown autonomy tier: {value}") from None


def allowed_capabilities(tier: AutonomyTier, permissions: dict[str, list[str]]) -> set[Capability]:
    return {Capability(c) for c in permissions.get(tier.name.lower(), [])}


def kinds_for_tier(tier: AutonomyTier, permissions: dict[str, list[str]]) -> list[ToolKind]:
    """Tool kinds visible to ``tier``, in declaration order."""
    allowed = allowed_capabilities(tier, permissions)
    return [k for k in ToolKind if k.capability in allowed]


class Gate(Protocol):
    """What the dispatcher asks before and tells after running a tool."""

    def authorize(self, kind: ToolKind) -> tuple[bool, str]: ...

    def record_outcome(self, kind: ToolKind, ok: bool) -> None: ...


@dataclass
class ToolContext:
    """Everything a tool handler may touch for one job."""

    job_id: str
    user_id: str
    workspace: Any
    store: Any
    events: Any
    cancel: Any
    test_command: str = ""
    verify_command: str = ""
    command_timeout: int = 300
    commit_author: str | None = None
    commit_hash: str | None = None
    check_log: list[dict] = field(default_factory=list)
    # async (task, max_iterations) -> summary; None when sub-agents are off
    delegate: Any = None


def _text(text: str, is_error: bool = False) -> dict:
    result: dict = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["is_error"] = True
    return result


def _command_report(label: str, result: dict) -> str:
    if result.get("skipped"):
        return f"{label}: no command configured, skipped"
    lines = [f"{label} exit code: {result['exit_code']}"]
    if result["stdout"]:
        lines.append(result["stdout"][-8000:])
    if result["stderr"]:
        lines.append(result["stderr"][-4000:])
    return "\n".join(lines)


def build_tools(ctx: ToolContext) -> dict[ToolKind, SdkMcpTool]:
    """Create the job's tools, bound to its workspace and store."""
    ws = ctx.workspace

    # --- read ---

    @tool("read_file", "Read a file from the workspace. Path is relative to the project root.", {"path": str})
    async def read_file(args: dict) -> dict:
        return _text(ws.read_file(args["path"]))

    @tool(
        "list_files",
        "List workspace files, optionally filtered by a glob pattern such as 'src/**/*.py'.",
        {"pattern": str},
    )
    async def list_files(args: dict) -> dict:
        files = ws.list_files(args.get("pattern") or "*")
        return _text("\n".join(files) if files else "No matching files")

    @tool(
        "search_code",
        "Search workspace files for a regular expression. Returns path:line: text matches.",
        {"pattern": str, "file_glob": str},
    )
    async def search_code(args: dict) -> dict:
        hits = ws.search(args["pattern"], args.get("file_glob") or "*")
        return _text("\n".join(hits) if hits else "No matches")

    # --- mutate ---

    def _announce(change) -> None:
        ctx.events.emit(
            EVENT_FILE_CHANGE,
            f"{change.operation} {change.path}",
            job_id=ctx.job_id,
            user_id=ctx.user_id,
            metadata={"path": change.path, "operation": change.operation},
        )

    @tool("write_file", "Create or overwrite a workspace file with the given content.", {"path": str, "content": str})
    async def write_file(args: dict) -> dict:
        change = ws.write_file(args["path"], args["content"])
        _announce(change)
        return _text(f"{change.operation.capitalize()}d {change.path} ({len(args['content'])} chars)")

    @tool(
        "edit_file",
        "Replace one exact, unique occurrence of old_text with new_text in a workspace file.",
        {"path": str, "old_text": str, "new_text": str},
    )
    async def edit_file(args: dict) -> dict:
        change = ws.edit_file(args["path"], args["old_text"], args["new_text"])
        _announce(change)
        return _text(f"Edited {change.path}")

    @tool("delete_file", "Delete a workspace file.", {"path": str})
    async def delete_file(args: dict) -> dict:
        change = ws.delete_file(args["path"])
        _announce(change)
        return _text(f"Deleted {change.path}")

    # --- track ---

    @tool(
        "create_task_list",
        "Create the job's task list during planning. One list per job.",
        {"title": str, "tasks": list},
    )
    async def create_task_list(args: dict) -> dict:
        existing = ctx.store.get_job(ctx.job_id)
        if existing and existing.task_list_id:
            return _text(f"Task list already exists: {existing.task_list_id}", is_error=True)
        titles = [str(t) for t in args["tasks"] if str(t).strip()]
        if not titles:
            return _text("A task list needs at least one task", is_error=True)
        task_list = ctx.store.create_task_list(ctx.job_id, args["title"], titles)
        ctx.events.emit(
            EVENT_TASK_LIST_CREATED,
            task_list.title,
            job_id=ctx.job_id,
            user_id=ctx.user_id,
            metadata={"task_list_id": task_list.id, "tasks": [t.title for t in task_list.tasks]},
        )
        listing = "\n".join(f"{t.id}: {t.title}" for t in task_list.tasks)
        return _text(f"Created task list {task_list.id}\n{listing}")

    @tool(
        "update_task",
        "Set a task's status (pending, in_progress, completed, cancelled) and optional result note.",
        {"task_id": str, "status": str, "result": str},
    )
    async def update_task(args: dict) -> dict:
        try:
            status = TaskStatus(args["status"])
        except ValueError:
            return _text(f"Invalid task status: {args['status']}", is_error=True)
        task = ctx.store.get_task(args["task_id"])
        if task is None or task.job_id != ctx.job_id:
            return _text(f"Unknown task: {args['task_id']}", is_error=True)
        task = ctx.store.update_task(task.id, status, args.get("result"))
        ctx.events.emit(
            EVENT_TASK_UPDATED,
            f"{task.title}: {task.status}",
            job_id=ctx.job_id,
            user_id=ctx.user_id,
            metadata={"task_id": task.id, "status": task.status, "result": task.result},
        )
        return _text(f"Task {task.id} is now {task.status}")

    # --- check ---

    @tool("run_tests", "Run the project's test suite, optionally narrowed to a target path.", {"target": str})
    async def run_tests(args: dict) -> dict:
        command = ctx.test_command
        if not command.strip():
            return _text("No test command configured", is_error=True)
        target = args.get("target") or ""
        if target:
            ws.resolve(target)
            command = f"{command} {target}"
        result = await ws.run_command(command, timeout=ctx.command_timeout)
        passed = result["exit_code"] == 0
        ctx.check_log.append({"tool": "run_tests", "passed": passed, "exit_code": result["exit_code"]})
        return _text(_command_report("Tests", result), is_error=not passed)

    @tool("verify_changes", "Verify the job's changes: syntax checks on changed files plus the verify command.", {})
    async def verify_changes(args: dict) -> dict:
        problems = verify_syntax(ws)
        report = [f"Checked {len(ws.net_changes())} changed files"]
        report.extend(problems)
        passed = not problems
        if ctx.verify_command.strip():
            result = await ws.run_command(ctx.verify_command, timeout=ctx.command_timeout)
            report.append(_command_report("Verify", result))
            passed = passed and result["exit_code"] == 0
        ctx.check_log.append({"tool": "verify_changes", "passed": passed})
        return _text("\n".join(report), is_error=not passed)

    # --- delegate ---

    @tool(
        "start_subagent",
        "Hand one focused sub-task to a sub-agent. It works with the same tools under the same "
        "workflow rules and returns a summary of what it found or changed.",
        {"task": str, "max_iterations": int},
    )
    async def start_subagent(args: dict) -> dict:
        if ctx.delegate is None:
            return _text("Sub-agents are not available for this job", is_error=True)
        task = args["task"].strip()
        if not task:
            return _text("A sub-agent needs a task", is_error=True)
        summary = await ctx.delegate(task, args.get("max_iterations"))
        return _text(summary)

    # --- commit ---

    @tool("commit_changes", "Commit all file changes made by this job in a single commit.", {"message": str})
    async def commit_changes(args: dict) -> dict:
        commit_hash = await ws.commit(args["message"], author=ctx.commit_author)
        ctx.commit_hash = commit_hash
        return _text(f"Committed {commit_hash}")

    return {
        ToolKind.READ_FILE: read_file,
        ToolKind.LIST_FILES: list_files,
        ToolKind.SEARCH_CODE: search_code,
        ToolKind.WRITE_FILE: write_file,
        ToolKind.EDIT_FILE: edit_file,
        ToolKind.DELETE_FILE: delete_file,
        ToolKind.CREATE_TASK_LIST: create_task_list,
        ToolKind.UPDATE_TASK: update_task,
        ToolKind.RUN_TESTS: run_tests,
        ToolKind.VERIFY_CHANGES: verify_changes,
        ToolKind.START_SUBAGENT: start_subagent,
        ToolKind.COMMIT_CHANGES: commit_changes,
    }


def verify_syntax(ws) -> list[str]:
    """Parse every created/modified .py and .json file; return problems."""
    problems = []
    for rel, operation in ws.net_changes().items():
        if operation == "delete":
            continue
        source = ws.resolve(rel).read_text(errors="replace")
        if rel.endswith(".py"):
            try:
                compile(source, rel, "exec")
            except SyntaxError as e:
                problems.append(f"{rel}:{e.lineno}: syntax error: {e.msg}")
        elif rel.endswith(".json"):
            try:
                json.loads(source)
            except json.JSONDecodeError as e:
                problems.append(f"{rel}:{e.lineno}: invalid JSON: {e.msg}")
    return problems


def json_schema(sdk_tool: SdkMcpTool) -> dict:
    """Convert a ``{"field": type}`` tool schema to JSON Schema."""
    schema = sdk_tool.input_schema
    if isinstance(schema, dict) and schema.get("type") == "object":
        return schema
    optional = OPTIONAL_FIELDS.get(sdk_tool.name, set())
    properties = {}
    for name, py_type in schema.items():
        prop = {"type": _JSON_TYPES.get(py_type, "string")}
        if py_type is list:
            prop["items"] = {"type": "string"}
        properties[name] = prop
    return {
        "type": "object",
        "properties": properties,
        "required": [n for n in schema if n not in optional],
    }


class ToolDispatcher:
    """Validates, gates and executes tool calls for one job."""

    def __init__(self, ctx: ToolContext, tier: AutonomyTier, permissions: dict[str, list[str]]):
        self.ctx = ctx
        self.tier = tier
        self._tools = build_tools(ctx)
        self.visible = kinds_for_tier(tier, permissions)

    def schemas(self) -> list[dict]:
        """Tool declarations for the provider, tier-filtered."""
        return [
            {
                "name": self._tools[k].name,
                "description": self._tools[k].description,
                "input_schema": json_schema(self._tools[k]),
            }
            for k in self.visible
        ]

    def validate_call(self, call: ToolCall) -> ToolKind:
        """Resolve a call to its kind or raise ToolProtocolError."""
        try:
            kind = ToolKind(call.name)
        except ValueError:
            raise ToolProtocolError(f"Unknown tool: {call.name}") from None
        if kind not in self.visible:
            raise ToolProtocolError(f"Tool not available at this autonomy tier: {call.name}")
        if not isinstance(call.input, dict):
            raise ToolProtocolError(f"{call.name}: input must be an object")
        schema = json_schema(self._tools[kind])
        for name in schema["required"]:
            if name not in call.input:
                raise ToolProtocolError(f"{call.name}: missing required field '{name}'")
        for name, value in call.input.items():
            prop = schema["properties"].get(name)
            if prop is None:
                continue
            if not _matches(prop["type"], value):
                raise ToolProtocolError(f"{call.name}: field '{name}' must be {prop['type']}")
        return kind

    async def dispatch(self, call: ToolCall, gate: Gate | None = None) -> ToolResult:
        """Run one call. Never raises for tool failures."""
        kind = self.validate_call(call)
        if gate is not None:
            allowed, reason = gate.authorize(kind)
            if not allowed:
                logger.info("Blocked %s for job %s: %s", kind.value, self.ctx.job_id, reason)
                return ToolResult(call.id, reason, is_error=True)

        try:
            raw = await self._tools[kind].handler(call.input)
        except Exception as e:
            logger.warning("Tool %s failed for job %s: %s", kind.value, self.ctx.job_id, e)
            raw = _text(f"Error: {type(e).__name__}: {e}", is_error=True)

        text = "\n".join(b.get("text", "") for b in raw.get("content", []) if b.get("type") == "text")
        result = ToolResult(call.id, text, is_error=bool(raw.get("is_error")))
        if gate is not None:
            gate.record_outcome(kind, not result.is_error)
        return result


def _matches(json_type: str, value) -> bool:
    if json_type == "string":
        return isinstance(value, str)
    if json_type == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if json_type == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if json_type == "boolean":
        return isinstance(value, bool)
    if json_type == "array":
        return isinstance(value, list)
    if json_type == "object":
        return isinstance(value, dict)
    return True
