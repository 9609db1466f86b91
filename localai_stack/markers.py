"""Persisted markers for background processes spawned by stackctl.

A marker is a small file in the state directory associating a label (such as
``ngrok``) with the PID of the process started for it, so a later invocation
can report on or stop that process. Layout per label::

    .<label>_pid    first line: pid, second line (optional): process start time
    .<label>_url    last known public endpoint
    .<label>.lock   flock target for read-modify-write sequences

Only one stackctl instance should manage a label at a time; ``locked()``
turns a second concurrent invocation into :class:`MarkerBusy`.
"""

from __future__ import annotations

import fcntl
import os
import re
import signal
from contextlib import contextmanager
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Callable, Iterator, List, Optional

import psutil

from .errors import MarkerBusy, SignalDenied

# Start times are floats from the kernel's boot-relative clock; 1s absorbs rounding.
FINGERPRINT_TOLERANCE = 1.0
UNKNOWN_START_TIME = 0.0

_PID_LINE = re.compile(r"(\d+)\s*$")
_LABEL = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def process_start_time(pid: int) -> Optional[float]:
    """Return the start time of a live process, or None if there is none.

    Zombies count as gone. When the process exists but belongs to another
    user, :data:`UNKNOWN_START_TIME` is returned.
    """
    try:
        proc = psutil.Process(pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return None
        return proc.create_time()
    except psutil.NoSuchProcess:
        return None
    except psutil.AccessDenied:
        return UNKNOWN_START_TIME


def signal_process(pid: int, signum: int) -> None:
    """Signal ``pid``; if it leads its own process group, signal the group."""
    try:
        leads_group = os.getpgid(pid) == pid
    except PermissionError:
        leads_group = False
    if leads_group:
        os.killpg(pid, signum)
    else:
        os.kill(pid, signum)


@dataclass(frozen=True)
class ProcessMarker:
    label: str
    pid: int
    persisted_at: float
    started_at: Optional[float] = None


class StopOutcome(StrEnum):
    STOPPED = "stopped"
    ALREADY_STOPPED = "already-stopped"
    NOT_TRACKED = "not-tracked"


@dataclass(frozen=True)
class StopResult:
    label: str
    outcome: StopOutcome
    pid: Optional[int] = None

    def describe(self) -> str:
        if self.outcome is StopOutcome.STOPPED:
            return f"{self.label}: sent SIGTERM to pid {self.pid}"
        if self.outcome is StopOutcome.ALREADY_STOPPED:
            return f"{self.label}: was already stopped (cleared stale pid {self.pid})"
        return f"{self.label}: not active"


class ProcessMarkerStore:
    """Save, load, check and clear process markers under ``state_dir``."""

    def __init__(
        self,
        state_dir: Path,
        *,
        start_time: Callable[[int], Optional[float]] = process_start_time,
        send_signal: Callable[[int, int], None] = signal_process,
    ) -> None:
        self.state_dir = Path(state_dir)
        self._start_time = start_time
        self._send_signal = send_signal

    def marker_path(self, label: str) -> Path:
        return self.state_dir / f".{_check_label(label)}_pid"

    def endpoint_path(self, label: str) -> Path:
        return self.state_dir / f".{_check_label(label)}_url"

    def lock_path(self, label: str) -> Path:
        return self.state_dir / f".{_check_label(label)}.lock"

    def save(self, label: str, pid: int) -> ProcessMarker:
        """Persist ``pid`` for ``label``, replacing any previous marker."""
        if pid <= 0:
            raise ValueError(f"invalid pid: {pid}")
        self.state_dir.mkdir(parents=True, exist_ok=True)
        started = self._start_time(pid)
        lines = [str(pid)]
        if started is not None and started != UNKNOWN_START_TIME:
            lines.append(repr(started))
        path = self.marker_path(label)
        tmp_path = path.with_name(path.name + ".tmp")
        tmp_path.write_text("\n".join(lines) + "\n")
        os.replace(tmp_path, path)
        return ProcessMarker(
            label=label,
            pid=pid,
            persisted_at=path.stat().st_mtime,
            started_at=float(lines[1]) if len(lines) > 1 else None,
        )

    def load(self, label: str) -> Optional[ProcessMarker]:
        path = self.marker_path(label)
        try:
            text = path.read_text()
            persisted_at = path.stat().st_mtime
        except FileNotFoundError:
            return None
        lines = [line.strip() for line in text.splitlines() if line.strip()]
        if not lines:
            return None
        # Older files hold "ngrok PID: 1234"; the trailing integer is the pid.
        match = _PID_LINE.search(lines[0])
        if not match or int(match.group(1)) <= 0:
            return None
        started_at: Optional[float] = None
        if len(lines) > 1:
            try:
                started_at = float(lines[1])
            except ValueError:
                started_at = None
        return ProcessMarker(label=label, pid=int(match.group(1)), persisted_at=persisted_at, started_at=started_at)

    def is_alive(self, marker: ProcessMarker) -> bool:
        """True if the marker's process still exists (and matches its fingerprint)."""
        started = self._start_time(marker.pid)
        if started is None:
            return False
        if marker.started_at is None or started == UNKNOWN_START_TIME:
            return True
        return abs(started - marker.started_at) <= FINGERPRINT_TOLERANCE

    def live_marker(self, label: str) -> Optional[ProcessMarker]:
        """Return the label's marker if its process is alive, dropping a dead one.

        The marker is re-read under the label lock before it is cleared, so a
        marker written meanwhile by a concurrent start survives. If another
        invocation holds the lock the dead marker is left for it to handle.
        """
        marker = self.load(label)
        if marker is None or self.is_alive(marker):
            return marker
        try:
            with self.locked(label):
                current = self.load(label)
                if current is not None and self.is_alive(current):
                    return current
                self.clear(label)
        except MarkerBusy:
            return None
        return None

    def clear(self, label: str) -> None:
        self.marker_path(label).unlink(missing_ok=True)
        self.endpoint_path(label).unlink(missing_ok=True)

    def stop(self, label: str) -> StopResult:
        """Terminate the tracked process if alive, then drop its marker."""
        marker = self.load(label)
        if marker is None:
            # A malformed file still counts as stale state.
            self.clear(label)
            return StopResult(label, StopOutcome.NOT_TRACKED)
        if not self.is_alive(marker):
            self.clear(label)
            return StopResult(label, StopOutcome.ALREADY_STOPPED, marker.pid)
        try:
            self._send_signal(marker.pid, signal.SIGTERM)
        except ProcessLookupError:
            self.clear(label)
            return StopResult(label, StopOutcome.ALREADY_STOPPED, marker.pid)
        except PermissionError as err:
            # Still running under another user; the marker stays so a retry can find it.
            raise SignalDenied(label, marker.pid) from err
        self.clear(label)
        return StopResult(label, StopOutcome.STOPPED, marker.pid)

    def save_endpoint(self, label: str, url: str) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.endpoint_path(label).write_text(url.strip() + "\n")

    def load_endpoint(self, label: str) -> Optional[str]:
        try:
            value = self.endpoint_path(label).read_text().strip()
        except FileNotFoundError:
            return None
        return value or None

    def labels(self) -> List[str]:
        """Labels that currently have a marker file, sorted."""
        if not self.state_dir.is_dir():
            return []
        found = []
        for path in self.state_dir.glob(".*_pid"):
            label = path.name[1:-len("_pid")]
            if label and _LABEL.match(label):
                found.append(label)
        return sorted(found)

    @contextmanager
    def locked(self, label: str) -> Iterator[None]:
        """Hold an exclusive, non-blocking flock on the label's lock file."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        with open(self.lock_path(label), "a+") as handle:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as err:
                raise MarkerBusy(label) from err
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


def _check_label(label: str) -> str:
    if not _LABEL.match(label or ""):
        raise ValueError(f"invalid marker label: {label!r}")
    return label
