"""
Port and process supervision for a local Open WebUI / SearXNG / Ollama stack.

This package exposes the port supervisor, the persisted process markers and
the tunnel manager used by the ``stackctl`` command line tool.
"""

from .config import StackConfig
from .errors import (
    ConfigError,
    ExternalToolMissing,
    MarkerBusy,
    OperatorAbort,
    PortConflictUnresolved,
    PortInspectionFailed,
    ProcessNotResponding,
    SignalDenied,
    StackError,
)
from .exposure import ExposureStatus, OllamaExposure
from .markers import ProcessMarker, ProcessMarkerStore, StopOutcome, StopResult
from .orchestration import LaunchState, PortBinding, PortSupervisor
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
from .tunnel import TARGETS, TunnelManager, TunnelStatus, TunnelTarget

__all__ = [
    "StackConfig",
    "StackError",
    "ConfigError",
    "ExternalToolMissing",
    "MarkerBusy",
    "OperatorAbort",
    "PortConflictUnresolved",
    "PortInspectionFailed",
    "ProcessNotResponding",
    "SignalDenied",
    "ProcessMarker",
    "ProcessMarkerStore",
    "StopOutcome",
    "StopResult",
    "LaunchState",
    "PortBinding",
    "PortSupervisor",
    "ConflictChoice",
    "ConflictResolver",
    "PortInspection",
    "PortInspector",
    "PortState",
    "Resolution",
    "ResolutionMode",
    "ResolutionOutcome",
    "TARGETS",
    "TunnelManager",
    "TunnelStatus",
    "TunnelTarget",
    "ExposureStatus",
    "OllamaExposure",
]
