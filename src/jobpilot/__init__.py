"""JobPilot: phase-gated, budget-bounded autonomous coding jobs."""

__version__ = "0.1.0"

from jobpilot.config import JobPilotConfig
from jobpilot.conversation import ConversationLog, ToolCall, ToolResult
from jobpilot.enforcement import EnforcementOrchestrator
from jobpilot.events import EventCollector
from jobpilot.intent import Intent, classify
from jobpilot.jobs import JobManager, JobOutcome
from jobpilot.metrics import WorkflowMetricsTracker
from jobpilot.provider import AnthropicProvider, LMProvider, LMResponse, call_with_budget
from jobpilot.registry import CancellationToken, JobRegistry
from jobpilot.store import Job, JobStatus, JobStore
from jobpilot.token_guard import TokenBudgetGuard
from jobpilot.tools import AutonomyTier, ToolDispatcher, ToolKind
from jobpilot.workflow import Phase, WorkflowValidator
from jobpilot.workspace import Workspace

__all__ = [
    "JobPilotConfig",
    "ConversationLog",
    "ToolCall",
    "ToolResult",
    "EnforcementOrchestrator",
    "EventCollector",
    "Intent",
    "classify",
    "JobManager",
    "JobOutcome",
    "WorkflowMetricsTracker",
    "AnthropicProvider",
    "LMProvider",
    "LMResponse",
    "call_with_budget",
    "CancellationToken",
    "JobRegistry",
    "Job",
    "JobStatus",
    "JobStore",
    "TokenBudgetGuard",
    "AutonomyTier",
    "ToolDispatcher",
    "ToolKind",
    "Phase",
    "WorkflowValidator",
    "Workspace",
]
