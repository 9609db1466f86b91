from typing import Dict, Iterable, List, Optional, Sequence

import pytest

from localai_stack.ports import PortInspection


class StubInspector:
    """Answers ``inspect`` from queued pid snapshots; the last snapshot repeats.

    Ports with no queue are free.
    """

    def __init__(self, busy: Optional[Dict[int, Sequence[Iterable[int]]]] = None):
        self.snapshots: Dict[int, List[frozenset]] = {
            port: [frozenset(pids) for pids in queue] for port, queue in (busy or {}).items()
        }
        self.calls: List[int] = []

    def inspect(self, port: int) -> PortInspection:
        self.calls.append(port)
        queue = self.snapshots.get(port)
        if not queue:
            pids = frozenset()
        elif len(queue) > 1:
            pids = queue.pop(0)
        else:
            pids = queue[0]
        description = f"node {sorted(pids)} listening on {port}" if pids else ""
        return PortInspection(port=port, owning_pids=pids, owner_description=description)


@pytest.fixture
def stub_inspector():
    return StubInspector


@pytest.fixture(autouse=True)
def clean_stack_env(monkeypatch):
    for key in (
        "STACK_WEBUI_PORT",
        "STACK_SEARXNG_PORT",
        "STACK_STATE_DIR",
        "NGROK_API_PORT",
        "OLLAMA_HOST",
        "OLLAMA_PORT",
        "STACK_POLL_INTERVAL",
        "STACK_GRACE_INTERVAL",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("NO_COLOR", "1")
