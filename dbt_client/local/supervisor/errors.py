from typing import Optional


class SupervisorError(Exception):
    """Base class for lifecycle errors raised by the client supervisor."""


class LaunchFailure(SupervisorError):
    """The analyzer process could not be started or never became ready."""

    def __init__(self, message: str, command: Optional[str] = None):
        super().__init__(message)
        self.command = command


class ShutdownTimeout(SupervisorError):
    """The analyzer did not acknowledge a graceful stop in time."""


class InvalidState(SupervisorError):
    """An operation was requested from a state that does not permit it."""

    def __init__(self, operation: str, state):
        super().__init__(f"Cannot {operation} while the connection is {state.value}.")
        self.operation = operation
        self.state = state
