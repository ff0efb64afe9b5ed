"""Job workspace: file effects with a mutation journal.

Every write, edit and delete is journaled with the content before and
after, which gives the job three things at the end of its run:

- a unified diff for safety validation,
- a complete rollback when validation fails,
- the batch of changes that goes into the single commit.

Paths coming from the agent are always relative to the workspace root and
may not contain ``..``.
"""

from __future__ import annotations

import asyncio
import codecs
import difflib
import fnmatch
import logging
import re
import shlex
import time
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from jobpilot.errors import PathTraversalError, WorkspaceError

logger = logging.getLogger(__name__)

SECRET_MARKERS = ("DATABASE_URL", "ANTHROPIC_API_KEY", "AWS_SECRET_ACCESS_KEY", "PRIVATE KEY-----")
TRUNCATED_READ = "\n... [truncated: showing the first {shown} of {total} bytes]"
DESTRUCTIVE_SQL = re.compile(r"\b(DROP\s+TABLE|DELETE\s+FROM|TRUNCATE\s+TABLE)\b", re.IGNORECASE)
SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", ".mypy_cache"}


@dataclass
class FileChange:
    """One journaled mutation."""

    path: str
    operation: str  # create, modify, delete
    before: str | None
    after: str | None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "operation": self.operation,
            "before": self.before,
            "after": self.after,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> FileChange:
        return cls(
            path=data["path"],
            operation=data["operation"],
            before=data.get("before"),
            after=data.get("after"),
            timestamp=data.get("timestamp", time.time()),
        )


async def _run(*cmd: str, cwd: str, timeout: int = 30) -> dict:
    """Execute a command and return its output."""
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return {"exit_code": -1, "stdout": "", "stderr": f"Timed out after {timeout}s"}
    return {
        "exit_code": proc.returncode,
        "stdout": stdout.decode(errors="replace").strip(),
        "stderr": stderr.decode(errors="replace").strip(),
    }


class Workspace:
    """A directory the agent may read and mutate, with undo."""

    def __init__(
        self,
        root: str | Path,
        *,
        protected_paths: list[str] | None = None,
        max_read_bytes: int = 200_000,
        journal: list[FileChange] | None = None,
    ):
        self.root = Path(root).resolve()
        if not self.root.is_dir():
            raise WorkspaceError(f"Workspace does not exist: {self.root}")
        self.protected_paths = protected_paths if protected_paths is not None else [".git", ".env"]
        self.max_read_bytes = max_read_bytes
        self.journal: list[FileChange] = list(journal or [])

    # --- Paths ---

    def resolve(self, relative: str) -> Path:
        """Map an agent-supplied path into the workspace.

        Raises PathTraversalError for absolute paths, ``..`` segments, or
        anything that resolves outside the root (symlinks included).
        """
        if not relative or not relative.strip():
            raise PathTraversalError("Empty path")
        candidate = PurePosixPath(relative.replace("\\", "/"))
        if candidate.is_absolute() or re.match(r"^[A-Za-z]:", relative):
            raise PathTraversalError(f"Absolute paths are not allowed: {relative}")
        if ".." in candidate.parts:
            raise PathTraversalError(f"Path traversal is not allowed: {relative}")
        target = (self.root / candidate).resolve()
        if target != self.root and self.root not in target.parents:
            raise PathTraversalError(f"Path escapes the workspace: {relative}")
        return target

    def relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    def _check_writable(self, relative: str) -> None:
        parts = PurePosixPath(relative.replace("\\", "/")).parts
        for protected in self.protected_paths:
            if parts and (parts[0] == protected or relative == protected):
                raise WorkspaceError(f"Path is protected: {relative}")

    # --- Reads ---

    def read_file(self, relative: str) -> str:
        path = self.resolve(relative)
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {relative}")
        size = path.stat().st_size
        with path.open("rb") as f:
            data = f.read(self.max_read_bytes)
        if size <= self.max_read_bytes:
            return data.decode(errors="replace")
        # Hold back a multi-byte character cut in half by the limit.
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        text = decoder.decode(data, final=False)
        return text + TRUNCATED_READ.format(shown=len(data), total=size)

    def list_files(self, pattern: str = "**/*", limit: int = 500) -> list[str]:
        results = []
        for path in sorted(self.root.rglob("*")):
            if not path.is_file():
                continue
            rel = self.relative(path)
            if any(part in SKIP_DIRS for part in PurePosixPath(rel).parts):
                continue
            if fnmatch.fnmatch(rel, pattern) or fnmatch.fnmatch(path.name, pattern):
                results.append(rel)
                if len(results) >= limit:
                    break
        return results

    def search(self, pattern: str, file_glob: str = "*", limit: int = 100) -> list[str]:
        """``path:line: text`` for each line matching ``pattern``."""
        regex = re.compile(pattern)
        hits = []
        for rel in self.list_files(file_glob, limit=5000):
            try:
                text = (self.root / rel).read_text(errors="replace")
            except OSError:
                continue
            for lineno, line in enumerate(text.splitlines(), 1):
                if regex.search(line):
                    hits.append(f"{rel}:{lineno}: {line.strip()}")
                    if len(hits) >= limit:
                        return hits
        return hits

    # --- Mutations ---

    def write_file(self, relative: str, content: str) -> FileChange:
        path = self.resolve(relative)
        rel = self.relative(path)
        self._check_writable(rel)
        before = path.read_text(errors="replace") if path.is_file() else None
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        change = FileChange(rel, "modify" if before is not None else "create", before, content)
        self.journal.append(change)
        logger.debug("Workspace %s %s", change.operation, rel)
        return change

    def edit_file(self, relative: str, old: str, new: str) -> FileChange:
        """Replace exactly one occurrence of ``old`` with ``new``."""
        path = self.resolve(relative)
        rel = self.relative(path)
        self._check_writable(rel)
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {relative}")
        before = path.read_text(errors="replace")
        count = before.count(old) if old else 0
        if count == 0:
            raise WorkspaceError(f"Search text not found in {rel}")
        if count > 1:
            raise WorkspaceError(f"Search text occurs {count} times in {rel}; make it unique")
        after = before.replace(old, new, 1)
        path.write_text(after)
        change = FileChange(rel, "modify", before, after)
        self.journal.append(change)
        return change

    def delete_file(self, relative: str) -> FileChange:
        path = self.resolve(relative)
        rel = self.relative(path)
        self._check_writable(rel)
        if not path.is_file():
            raise FileNotFoundError(f"File not found: {relative}")
        before = path.read_text(errors="replace")
        path.unlink()
        change = FileChange(rel, "delete", before, None)
        self.journal.append(change)
        return change

    def net_changes(self) -> dict[str, str]:
        """Net operation per path over the whole journal (no-ops omitted)."""
        first: dict[str, FileChange] = {}
        last: dict[str, FileChange] = {}
        for change in self.journal:
            first.setdefault(change.path, change)
            last[change.path] = change
        result = {}
        for rel, change in last.items():
            existed = first[rel].before is not None
            exists = change.after is not None
            if existed and exists:
                if first[rel].before != change.after:
                    result[rel] = "modify"
            elif existed:
                result[rel] = "delete"
            elif exists:
                result[rel] = "create"
        return result

    def rollback(self) -> int:
        """Undo every journaled change, newest first. Returns changes undone."""
        undone = 0
        for change in reversed(self.journal):
            path = self.root / change.path
            if change.before is None:
                if path.exists():
                    path.unlink()
            else:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(change.before)
            undone += 1
        logger.warning("Rolled back %d workspace changes in %s", undone, self.root)
        self.journal.clear()
        return undone

    # --- Validation ---

    def diff(self) -> str:
        """Unified diff of the net changes."""
        first: dict[str, str | None] = {}
        for change in self.journal:
            first.setdefault(change.path, change.before)
        chunks = []
        for rel in self.net_changes():
            path = self.root / rel
            before = first[rel] or ""
            after = path.read_text(errors="replace") if path.is_file() else ""
            chunks.extend(difflib.unified_diff(
                before.splitlines(keepends=True),
                after.splitlines(keepends=True),
                fromfile=f"a/{rel}",
                tofile=f"b/{rel}",
            ))
        return "".join(chunks)

    def validate_safety(self) -> tuple[bool, list[str]]:
        """Check added lines for leaked secrets and destructive SQL.

        Returns (safe, issues).
        """
        issues: list[str] = []
        added = "\n".join(
            line[1:] for line in self.diff().splitlines()
            if line.startswith("+") and not line.startswith("+++")
        )
        if any(marker in added for marker in SECRET_MARKERS):
            issues.append("Changes appear to expose secrets")
        if DESTRUCTIVE_SQL.search(added):
            issues.append("Changes contain destructive database operations")
        if any(PurePosixPath(rel).parts[:1] == (".git",) for rel in self.net_changes()):
            issues.append("Changes attempt to modify .git directory")
        return (not issues, issues)

    # --- Commands ---

    async def run_command(self, command: str, timeout: int = 300) -> dict:
        if not command.strip():
            return {"exit_code": 0, "stdout": "", "stderr": "", "skipped": True}
        return await _run(*shlex.split(command), cwd=str(self.root), timeout=timeout)

    async def commit(self, message: str, author: str | None = None) -> str:
        """Commit the net changes in one git commit and return its hash.

        Raises WorkspaceError when there is nothing to commit or git fails.
        """
        changes = self.net_changes()
        if not changes:
            raise WorkspaceError("No changes to commit")
        cwd = str(self.root)
        check = await _run("git", "rev-parse", "--is-inside-work-tree", cwd=cwd)
        if check["exit_code"] != 0:
            raise WorkspaceError(f"Not a git repository: {self.root}")

        removed = [p for p, op in changes.items() if op == "delete"]
        present = [p for p, op in changes.items() if op != "delete"]
        if present:
            result = await _run("git", "add", "--", *present, cwd=cwd)
            if result["exit_code"] != 0:
                raise WorkspaceError(f"git add failed: {result['stderr']}")
        if removed:
            result = await _run("git", "rm", "--cached", "--ignore-unmatch", "-q", "--", *removed, cwd=cwd)
            if result["exit_code"] != 0:
                raise WorkspaceError(f"git rm failed: {result['stderr']}")

        args = ["commit", "-m", message]
        match = re.match(r"^\s*(.+?)\s*<([^>]+)>\s*$", author or "")
        if match:
            name, email = match.groups()
            args = ["-c", f"user.name={name}", "-c", f"user.email={email}", *args]
        result = await _run("git", *args, cwd=cwd)
        if result["exit_code"] != 0:
            raise WorkspaceError(f"git commit failed: {result['stderr'] or result['stdout']}")
        head = await _run("git", "rev-parse", "HEAD", cwd=cwd)
        logger.info("Committed %d files in %s: %s", len(changes), cwd, head["stdout"][:12])
        return head["stdout"]
