"""Error types raised by the orchestration core.

Only ValidationError, NotFoundError and EntitlementError reach callers of
Orchestrator operations; the pipeline errors are caught inside the
deployment task and turned into an error log entry plus a terminal status.
"""

PANEL_BODY_SNIPPET = 300


class BotforgeError(Exception):
    """Base class for all botforge errors."""


class ValidationError(BotforgeError):
    """Required configuration fields are missing."""

    def __init__(self, missing_keys: list[str]):
        self.missing_keys = list(missing_keys)
        super().__init__(f"Missing required configuration: {', '.join(self.missing_keys)}")


class NotFoundError(BotforgeError):
    """Unknown deployment or catalog entry."""

    def __init__(self, kind: str, ident: str):
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} not found: {ident}")


class EntitlementError(BotforgeError):
    """The user is not allowed to deploy."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User {user_id} is not allowed to deploy")


class PipelineStepError(BotforgeError):
    """A setup command exited non-zero."""

    def __init__(self, step: str, command: str, exit_code: int):
        self.step = step
        self.command = command
        self.exit_code = exit_code
        super().__init__(f"Step '{step}' failed: {command} exited with code {exit_code}")


class SpawnError(BotforgeError):
    """A command could not be started at all."""

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Could not start {command}: {reason}")


class RuntimeCrash(BotforgeError):
    """The long-lived bot process died with a non-zero code or a signal."""

    def __init__(self, exit_code: int | None = None, signal_name: str | None = None):
        self.exit_code = exit_code
        self.signal_name = signal_name
        detail = signal_name if signal_name is not None else exit_code
        super().__init__(f"Process exited with code {detail}. Bot crashed.")


class BackendUnavailableError(BotforgeError):
    """The hosting panel is not configured or cannot be reached."""


class PanelError(BotforgeError):
    """The hosting panel answered with a non-2xx status."""

    def __init__(self, operation: str, status_code: int, body: str = ""):
        self.operation = operation
        self.status_code = status_code
        self.body = (body or "")[:PANEL_BODY_SNIPPET]
        message = f"Panel {operation} failed ({status_code})"
        if self.body:
            message = f"{message}: {self.body}"
        super().__init__(message)
