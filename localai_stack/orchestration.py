"""Per-service launch policy tying port inspection and conflict resolution together.

Each launch walks a small state machine::

    INIT -> PORT_CHECK -> READY_TO_BIND ---------------> BOUND
                      `-> CONFLICT_HANDLING -> READY_TO_BIND -> BOUND
                                           `-> ABORTED

``BOUND`` and ``ABORTED`` are terminal for an invocation; nothing retries.
The supervisor only hands the final port to the launcher callback; starting
the service itself is the launcher's job.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Callable, Dict, List, Optional, Union

from .errors import OperatorAbort, PortConflictUnresolved, StackError
from .ports import (
    ConflictChoice,
    ConflictResolver,
    PortInspection,
    PortInspector,
    PortState,
    Resolution,
    ResolutionMode,
    ResolutionOutcome,
)


class LaunchState(StrEnum):
    INIT = "init"
    PORT_CHECK = "port-check"
    READY_TO_BIND = "ready-to-bind"
    CONFLICT_HANDLING = "conflict-handling"
    BOUND = "bound"
    ABORTED = "aborted"


_ALLOWED = {
    LaunchState.INIT: {LaunchState.PORT_CHECK},
    LaunchState.PORT_CHECK: {LaunchState.READY_TO_BIND, LaunchState.CONFLICT_HANDLING, LaunchState.ABORTED},
    LaunchState.CONFLICT_HANDLING: {LaunchState.READY_TO_BIND, LaunchState.ABORTED},
    LaunchState.READY_TO_BIND: {LaunchState.BOUND, LaunchState.ABORTED},
    LaunchState.BOUND: set(),
    LaunchState.ABORTED: set(),
}


class InvalidTransition(RuntimeError):
    pass


@dataclass
class PortBinding:
    """One service's claim on a TCP port during a single invocation."""

    service_name: str
    requested_port: int
    resolved_port: Optional[int] = None
    state: PortState = PortState.UNCHECKED
    launch_state: LaunchState = LaunchState.INIT
    history: List[LaunchState] = field(default_factory=lambda: [LaunchState.INIT])
    inspection: Optional[PortInspection] = None
    resolution: Optional[Resolution] = None

    def advance(self, target: LaunchState) -> None:
        if target not in _ALLOWED[self.launch_state]:
            raise InvalidTransition(f"{self.service_name}: {self.launch_state} -> {target} is not allowed")
        self.launch_state = target
        self.history.append(target)

    @property
    def relocated(self) -> bool:
        return self.resolved_port is not None and self.resolved_port != self.requested_port

    @property
    def aborted(self) -> bool:
        return self.launch_state is LaunchState.ABORTED

    def raise_if_aborted(self, *, required: bool = True) -> None:
        """Turn an aborted binding into the matching error for the caller."""
        if not self.aborted:
            return
        resolution = self.resolution
        if resolution is not None and resolution.outcome is ResolutionOutcome.ABORTED:
            raise OperatorAbort(
                f"{self.service_name}: aborted; {resolution.detail}",
                required=required,
            )
        detail = resolution.detail if resolution is not None else ""
        raise PortConflictUnresolved(self.requested_port, detail)


ChoiceProvider = Callable[[PortBinding, PortInspection], Union[ConflictChoice, str]]
Launcher = Callable[[int], None]


class PortSupervisor:
    """Drive bindings from INIT to READY_TO_BIND/BOUND or ABORTED.

    ``choose`` is consulted only in interactive mode and only when the port is
    occupied; it returns the operator's answer (a ``ConflictChoice`` or the
    raw string typed at the prompt).
    """

    def __init__(
        self,
        inspector: PortInspector,
        resolver: ConflictResolver,
        *,
        mode: ResolutionMode = ResolutionMode.INTERACTIVE,
        choose: Optional[ChoiceProvider] = None,
    ) -> None:
        if mode is ResolutionMode.INTERACTIVE and choose is None:
            raise ValueError("interactive mode needs a choice provider")
        self.inspector = inspector
        self.resolver = resolver
        self.mode = mode
        self.choose = choose
        self._active: Dict[str, PortBinding] = {}

    @property
    def active(self) -> Dict[str, PortBinding]:
        return dict(self._active)

    def prepare(self, service_name: str, port: int) -> PortBinding:
        if service_name in self._active:
            raise ValueError(f"service {service_name!r} already has a pending port binding")
        binding = PortBinding(service_name=service_name, requested_port=port)
        self._active[service_name] = binding

        binding.advance(LaunchState.PORT_CHECK)
        try:
            inspection = self.inspector.inspect(port)
        except (StackError, ValueError):
            binding.state = PortState.FAILED
            self._finish(binding, LaunchState.ABORTED)
            raise
        binding.inspection = inspection
        binding.state = inspection.state

        if inspection.available:
            binding.resolved_port = port
            binding.advance(LaunchState.READY_TO_BIND)
            return binding

        binding.advance(LaunchState.CONFLICT_HANDLING)
        try:
            choice = self.choose(binding, inspection) if self.mode is ResolutionMode.INTERACTIVE else None
            resolution = self.resolver.resolve(port, self.mode, choice, inspection=inspection)
        except (StackError, ValueError):
            binding.state = PortState.FAILED
            self._finish(binding, LaunchState.ABORTED)
            raise
        binding.resolution = resolution

        if resolution.resolved:
            binding.state = PortState.RESOLVED
            binding.resolved_port = resolution.port
            binding.advance(LaunchState.READY_TO_BIND)
        else:
            binding.state = PortState.FAILED
            self._finish(binding, LaunchState.ABORTED)
        return binding

    def launch(self, service_name: str, port: int, launcher: Launcher) -> PortBinding:
        """Prepare the port, then hand the resolved port to ``launcher``."""
        binding = self.prepare(service_name, port)
        if binding.aborted:
            return binding
        assert binding.resolved_port is not None
        try:
            launcher(binding.resolved_port)
        except BaseException:
            self._finish(binding, LaunchState.ABORTED)
            raise
        self._finish(binding, LaunchState.BOUND)
        return binding

    def release(self, service_name: str) -> None:
        """Drop a binding left at READY_TO_BIND once its service has bound."""
        self._active.pop(service_name, None)

    def _finish(self, binding: PortBinding, terminal: LaunchState) -> None:
        binding.advance(terminal)
        self._active.pop(binding.service_name, None)
