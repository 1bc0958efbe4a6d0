"""
Runtime state of services as seen by the launcher.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from ..errors import StackupError


class ServiceState(str, Enum):
    PENDING = "pending"
    RESOLVING_IMAGE = "resolving-image"
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    STOPPED = "stopped"
    FAILED = "failed"


TERMINAL_STATES = {ServiceState.STOPPED, ServiceState.FAILED}


@dataclass
class StateTransition:
    state: ServiceState
    at: str
    detail: str = ""


@dataclass
class ServiceStatus:
    """Everything the launcher knows about one service during an invocation."""

    name: str
    state: ServiceState = ServiceState.PENDING
    error: Optional[StackupError] = None
    pid: Optional[int] = None
    exit_code: Optional[int] = None
    ready: bool = False
    restart_count: int = 0
    environment: Dict[str, str] = field(default_factory=dict)
    networks: List[str] = field(default_factory=list)
    ports: Dict[int, int] = field(default_factory=dict)  # container -> host
    history: List[StateTransition] = field(default_factory=list)

    def transition(self, state: ServiceState, detail: str = "") -> None:
        self.state = state
        self.history.append(
            StateTransition(
                state=state,
                at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
                detail=detail,
            )
        )

    def reached(self, state: ServiceState) -> bool:
        return any(t.state == state for t in self.history)


@dataclass
class LaunchReport:
    """Outcome of one ``up`` invocation."""

    order: List[str]
    statuses: Dict[str, ServiceStatus]

    @property
    def failed(self) -> Dict[str, StackupError]:
        return {
            name: status.error
            for name, status in self.statuses.items()
            if status.error is not None
        }

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def exit_code(self) -> int:
        errors = list(self.failed.values())
        if not errors:
            return 0
        return max(e.exit_code for e in errors)
