"""Exception hierarchy for the job orchestrator.

Tool execution failures are not exceptions at this level: the dispatcher
turns them into error tool results. Everything here either fails an
iteration, fails a job, or rejects a request before a job exists.
"""


class JobPilotError(Exception):
    """Base class for all orchestrator errors."""


class JobConflictError(JobPilotError):
    """The user already owns a pending or running job."""

    def __init__(self, user_id: str, active_job_id: str):
        self.user_id = user_id
        self.active_job_id = active_job_id
        super().__init__(f"User {user_id} already has an active job: {active_job_id}")


class JobNotFoundError(JobPilotError):
    """No job with the given id."""


class InvalidJobStateError(JobPilotError):
    """The requested operation is not legal in the job's current status."""


class SimpleMessageError(JobPilotError):
    """Conversational message that should be answered directly, not as a job."""


class ProtocolError(JobPilotError):
    """The LM broke the tool-call protocol."""


class ToolProtocolError(ProtocolError):
    """Unknown tool or input that does not match the tool's schema."""


class PairingError(ProtocolError):
    """Tool calls and tool results do not pair one-to-one."""


class ProviderError(JobPilotError):
    """The LM provider failed in a way that is not a size problem."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class ContextOverflowError(ProviderError):
    """The provider rejected a request for exceeding its context window."""


class ContextBudgetExhaustedError(JobPilotError):
    """Overflow retries ran out."""


class UnreducibleOverflowError(JobPilotError):
    """The system preamble alone does not fit in the context budget."""

    def __init__(self, preamble_tokens: int, budget: int):
        self.preamble_tokens = preamble_tokens
        self.budget = budget
        super().__init__(
            f"Preamble needs ~{preamble_tokens} tokens but the context budget is {budget}; "
            "nothing left to drop"
        )


class WorkspaceError(JobPilotError):
    """A workspace operation could not be performed."""


class PathTraversalError(WorkspaceError):
    """A tool path escapes the workspace."""


class SafetyViolationError(JobPilotError):
    """End-of-job safety validation failed."""

    def __init__(self, issues: list[str]):
        self.issues = issues
        super().__init__("Safety validation failed: " + "; ".join(issues))
