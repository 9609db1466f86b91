"""Background process supervision and bounded polling."""

from __future__ import annotations

import os
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, TypeVar

from .markers import ProcessMarkerStore
from .errors import ProcessNotResponding

T = TypeVar("T")


def poll_until(
    check: Callable[[], Optional[T]],
    *,
    attempts: int,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
    keep_going: Callable[[], bool] = lambda: True,
) -> Optional[T]:
    """Call ``check`` up to ``attempts`` times, sleeping ``interval`` between calls.

    Returns the first truthy result, or None once attempts run out or
    ``keep_going`` reports the thing being waited on has gone away.
    """
    for attempt in range(attempts):
        result = check()
        if result:
            return result
        if not keep_going():
            return None
        if attempt < attempts - 1:
            sleep(interval)
    return None


@dataclass
class ManagedProcess:
    """Supervise a detached child process: log file, PID marker, readiness.

    - Runs ``command`` in its own session so SIGTERM reaches the whole tree.
    - Appends stdout/stderr to ``log_file``.
    - Records the PID through the marker store for later stop/status calls.
    """

    label: str
    command: List[str]
    cwd: Path
    log_file: Path
    store: ProcessMarkerStore
    env: Dict[str, str] = field(default_factory=dict)
    popen: Callable[..., "subprocess.Popen[bytes]"] = subprocess.Popen

    def is_running(self) -> bool:
        marker = self.store.load(self.label)
        return bool(marker and self.store.is_alive(marker))

    def start(self) -> int:
        """Launch the process and persist its PID; returns the PID.

        A live process already tracked under the label is left alone and its
        PID returned; a stale marker is cleared first.
        """
        previous = self.store.load(self.label)
        if previous is not None:
            if self.store.is_alive(previous):
                print(f"{self.label}: already running (pid {previous.pid})")
                return previous.pid
            self.store.clear(self.label)

        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        merged_env = os.environ.copy()
        merged_env.update(self.env)

        with open(self.log_file, "ab", buffering=0) as log_handle:
            proc = self.popen(
                self.command,
                cwd=self.cwd,
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                env=merged_env,
                preexec_fn=os.setsid,
            )
        self.store.save(self.label, proc.pid)
        print(f"{self.label}: launched (pid {proc.pid}) -> {self.log_file}")
        return proc.pid

    def wait_for(
        self,
        check: Callable[[], Optional[T]],
        *,
        attempts: int,
        interval: float,
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        """Poll ``check`` while the process stays alive; raise when it never succeeds."""
        result = poll_until(check, attempts=attempts, interval=interval, sleep=sleep, keep_going=self.is_running)
        if result:
            return result
        if not self.is_running():
            remedy = f"process exited early; inspect {self.log_file}"
        else:
            remedy = f"it may still be starting; check {self.log_file}"
        raise ProcessNotResponding(self.label, attempts, remedy)
