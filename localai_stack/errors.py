"""Error taxonomy shared by the supervisor and the command layer."""

from __future__ import annotations

from typing import Optional


class StackError(RuntimeError):
    """Base class for failures that end a command with a diagnosis."""

    exit_code = 1


class ExternalToolMissing(StackError):
    """Raised when a required external command is not on PATH."""

    def __init__(self, tool: str, hint: str = "") -> None:
        self.tool = tool
        self.hint = hint
        message = f"{tool} not found."
        if hint:
            message = f"{message} {hint}"
        super().__init__(message)


class PortInspectionFailed(StackError):
    """The OS query for listening sockets failed or did not return in time."""

    def __init__(self, port: int, reason: str) -> None:
        self.port = port
        super().__init__(f"could not inspect port {port}: {reason}")


class PortConflictUnresolved(StackError):
    """Neither termination nor relocation produced a usable port."""

    def __init__(self, port: int, detail: str = "") -> None:
        self.port = port
        message = f"port {port} is still in use"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ProcessNotResponding(StackError):
    """Bounded polling for a spawned process or endpoint ran out of attempts."""

    def __init__(self, name: str, attempts: int, remedy: str = "") -> None:
        self.name = name
        self.attempts = attempts
        self.remedy = remedy
        message = f"{name} did not become ready after {attempts} attempts"
        if remedy:
            message = f"{message}; {remedy}"
        super().__init__(message)


class MarkerBusy(StackError):
    """Another invocation holds the lock for a process marker label."""

    def __init__(self, label: str) -> None:
        self.label = label
        super().__init__(
            f"another stackctl invocation is managing '{label}'; "
            "run one instance at a time per label"
        )


class OperatorAbort(StackError):
    """The operator chose to abort, or answered a prompt with an invalid choice.

    Aborting an optional step is a voluntary cancellation (exit 0); aborting a
    required step leaves the stack incomplete (exit 1).
    """

    def __init__(self, message: str, *, required: bool = True, choice: Optional[str] = None) -> None:
        self.required = required
        self.choice = choice
        super().__init__(message)

    @property
    def exit_code(self) -> int:  # type: ignore[override]
        return 1 if self.required else 0


class ConfigError(StackError):
    """A setting from the environment could not be parsed."""


class SignalDenied(StackError):
    """The tracked process is alive but belongs to another user."""

    def __init__(self, label: str, pid: int) -> None:
        self.label = label
        self.pid = pid
        super().__init__(
            f"{label}: permission denied signalling pid {pid}; stop it with: sudo kill {pid}"
        )
