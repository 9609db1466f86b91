"""Port inspection and conflict resolution.

``PortInspector`` asks the OS which processes listen on a TCP port.
``ConflictResolver`` decides what to do about an occupied port given a mode
(and, interactively, an operator choice that has already been made), so the
policy can run without a terminal. Prompting lives in :mod:`localai_stack.prompts`.
"""

from __future__ import annotations

import os
import signal
import subprocess
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import Callable, FrozenSet, Iterable, List, Optional, Union

from .config import StackConfig
from .errors import ExternalToolMissing, OperatorAbort, PortInspectionFailed

MAX_PORT = 65535

Runner = Callable[..., "subprocess.CompletedProcess[str]"]


class PortState(StrEnum):
    UNCHECKED = "unchecked"
    AVAILABLE = "available"
    CONFLICTED = "conflicted"
    RESOLVED = "resolved"
    FAILED = "failed"


class ResolutionMode(StrEnum):
    INTERACTIVE = "interactive"
    FORCE_KILL = "force-kill"


class ConflictChoice(StrEnum):
    KILL = "1"
    RELOCATE = "2"
    ABORT = "3"

    @classmethod
    def parse(cls, raw: str) -> "ConflictChoice":
        """Map a prompt answer to a choice; anything else aborts the operation."""
        value = (raw or "").strip()
        for choice in cls:
            if value == choice.value:
                return choice
        raise OperatorAbort(f"invalid choice {value!r}; exiting", required=True, choice=value)


class ResolutionOutcome(StrEnum):
    SAME_PORT = "same-port"
    ALTERNATE_PORT = "alternate-port"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass(frozen=True)
class PortInspection:
    """Result of one look at the OS socket table for ``port``."""

    port: int
    owning_pids: FrozenSet[int] = frozenset()
    owner_description: str = ""

    @property
    def available(self) -> bool:
        return not self.owning_pids

    @property
    def state(self) -> PortState:
        return PortState.AVAILABLE if self.available else PortState.CONFLICTED


@dataclass(frozen=True)
class Resolution:
    outcome: ResolutionOutcome
    port: Optional[int] = None
    detail: str = ""

    @property
    def resolved(self) -> bool:
        return self.outcome in (ResolutionOutcome.SAME_PORT, ResolutionOutcome.ALTERNATE_PORT)


def parse_lsof_listeners(output: str) -> FrozenSet[int]:
    """Extract PIDs from ``lsof`` table output (header line optional)."""
    pids = set()
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 2 or parts[0] == "COMMAND":
            continue
        if parts[1].isdigit():
            pids.add(int(parts[1]))
    return frozenset(pids)


class PortInspector:
    """Look up listeners on a TCP port with ``lsof``, bounded by a timeout."""

    def __init__(self, *, timeout: float = 5.0, runner: Runner = subprocess.run, lsof: str = "lsof") -> None:
        self.timeout = timeout
        self.runner = runner
        self.lsof = lsof

    def inspect(self, port: int) -> PortInspection:
        if not 0 < port <= MAX_PORT:
            raise ValueError(f"port out of range: {port}")
        command = [self.lsof, "-nP", f"-iTCP:{port}", "-sTCP:LISTEN"]
        try:
            result = self.runner(
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
            )
        except FileNotFoundError as err:
            raise ExternalToolMissing(
                "lsof", "Install it with your package manager (e.g. `apt install lsof`)."
            ) from err
        except subprocess.TimeoutExpired as err:
            raise PortInspectionFailed(port, f"lsof did not answer within {self.timeout}s") from err

        # lsof exits 1 when nothing matches; anything else with no rows is a fault.
        if result.returncode not in (0, 1):
            raise PortInspectionFailed(port, (result.stderr or "").strip() or f"lsof exit code {result.returncode}")
        pids = parse_lsof_listeners(result.stdout or "")
        description = (result.stdout or "").strip() if pids else ""
        return PortInspection(port=port, owning_pids=pids, owner_description=description)


class ConflictResolver:
    """Free an occupied port or pick a nearby free one.

    Killing escalates once: SIGTERM, wait ``grace_interval``, re-inspect,
    then SIGKILL and wait again. Relocation scans the ``relocation_window``
    ports after the requested one and never widens the window.
    """

    def __init__(
        self,
        inspector: PortInspector,
        *,
        grace_interval: float = 2.0,
        relocation_window: int = 10,
        send_signal: Callable[[int, int], None] = os.kill,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.inspector = inspector
        self.grace_interval = grace_interval
        self.relocation_window = relocation_window
        self._send_signal = send_signal
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: StackConfig, inspector: Optional[PortInspector] = None) -> "ConflictResolver":
        return cls(
            inspector or PortInspector(timeout=config.inspect_timeout),
            grace_interval=config.grace_interval,
            relocation_window=config.relocation_window,
        )

    def resolve(
        self,
        port: int,
        mode: ResolutionMode,
        choice: Union[ConflictChoice, str, None] = None,
        *,
        inspection: Optional[PortInspection] = None,
    ) -> Resolution:
        current = inspection if inspection is not None else self.inspector.inspect(port)
        if current.available:
            return Resolution(ResolutionOutcome.SAME_PORT, port, "port already free")

        if mode is ResolutionMode.FORCE_KILL:
            return self.terminate_owners(port, current)

        if choice is None:
            raise ValueError("interactive resolution requires an operator choice")
        if not isinstance(choice, ConflictChoice):
            choice = ConflictChoice.parse(choice)

        if choice is ConflictChoice.KILL:
            return self.terminate_owners(port, current)
        if choice is ConflictChoice.RELOCATE:
            return self.relocate(port)
        return Resolution(ResolutionOutcome.ABORTED, None, f"free port {port} manually and run again")

    def relocate(self, port: int) -> Resolution:
        alternate = self.find_alternate_port(port)
        if alternate is None:
            last = min(port + self.relocation_window, MAX_PORT)
            return Resolution(ResolutionOutcome.FAILED, None, f"no free port in {port + 1}-{last}")
        return Resolution(ResolutionOutcome.ALTERNATE_PORT, alternate, f"relocated from {port}")

    def find_alternate_port(self, port: int) -> Optional[int]:
        """Return the first free port in ``port+1 .. port+window``, else None."""
        for candidate in range(port + 1, port + 1 + self.relocation_window):
            if candidate > MAX_PORT:
                break
            if self.inspector.inspect(candidate).available:
                return candidate
        return None

    def terminate_owners(self, port: int, inspection: PortInspection) -> Resolution:
        denied = self._signal_all(inspection.owning_pids, signal.SIGTERM)
        self._sleep(self.grace_interval)
        after = self.inspector.inspect(port)
        if after.available:
            return Resolution(ResolutionOutcome.SAME_PORT, port, "owners exited after SIGTERM")

        denied += self._signal_all(after.owning_pids, signal.SIGKILL)
        self._sleep(self.grace_interval)
        final = self.inspector.inspect(port)
        if final.available:
            return Resolution(ResolutionOutcome.SAME_PORT, port, "owners killed with SIGKILL")

        remaining = ", ".join(str(pid) for pid in sorted(final.owning_pids))
        detail = f"still held by pid {remaining}"
        if denied:
            detail += f"; permission denied for pid {', '.join(str(pid) for pid in sorted(set(denied)))}"
        return Resolution(ResolutionOutcome.FAILED, None, detail)

    def _signal_all(self, pids: Iterable[int], signum: int) -> List[int]:
        denied: List[int] = []
        for pid in sorted(pids):
            try:
                self._send_signal(pid, signum)
            except ProcessLookupError:
                continue
            except PermissionError:
                denied.append(pid)
        return denied
