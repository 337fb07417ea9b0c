"""Exception hierarchy for the browser operator."""

from typing import Optional


class OperatorError(RuntimeError):
    """Base class for every error raised by the operator."""


class ConfigurationError(OperatorError):
    """Missing or invalid credentials/ids. Fatal for the process."""


class BrowserNotInitializedError(OperatorError):
    def __init__(self, operation: str = "operation"):
        super().__init__(f"Remote browser not initialized (call init() before {operation})")
        self.operation = operation


class BrowserSessionTerminatedError(OperatorError):
    def __init__(self, session_id: str):
        super().__init__(f"Browser session {session_id} has terminated (no connect URL)")
        self.session_id = session_id


class ActionExecutionError(OperatorError):
    """A tool call could not be dispatched to the remote browser."""

    def __init__(self, call_id: str, name: str, reason: str):
        super().__init__(f"Failed to execute {name} (call {call_id}): {reason}")
        self.call_id = call_id
        self.name = name


class InvocationTimeoutError(OperatorError):
    def __init__(self, seconds: float, session_id: Optional[str] = None):
        super().__init__(f"Processing timeout after {seconds:.0f}s")
        self.seconds = seconds
        self.session_id = session_id
