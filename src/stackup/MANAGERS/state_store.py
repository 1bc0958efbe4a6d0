"""
Persistence of a stack's run state between invocations.
"""
import json
import logging
import os
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ..MODELS.service_state import ServiceStatus
from ..RUNNERS.process_runner import pid_alive

logger = logging.getLogger(__name__)


class StateStore:
    """
    Reads and writes ``state.json``: for each service its pid, state,
    published ports and networks, so that ``ps``, ``exec`` and ``down`` work
    on a stack started by an earlier (detached) invocation.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def load(self) -> Dict:
        if not os.path.exists(self.path):
            return {"services": {}}
        with open(self.path) as f:
            data = json.load(f)
        data.setdefault("services", {})
        return data

    def save(self, project: str, statuses: Dict[str, ServiceStatus],
             logs: Optional[Dict[str, str]] = None) -> None:
        with self._lock:
            data = self.load()
            data["project"] = project
            data["updated"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
            for name, status in statuses.items():
                if not status.history:
                    continue
                data["services"][name] = {
                    "state": status.state.value,
                    "pid": status.pid,
                    "exit_code": status.exit_code,
                    "restart_count": status.restart_count,
                    "ports": {str(k): v for k, v in status.ports.items()},
                    "networks": list(status.networks),
                    "error": str(status.error) if status.error else None,
                    "log": (logs or {}).get(name),
                }
            os.makedirs(os.path.dirname(self.path), exist_ok=True)
            tmp = f"{self.path}.tmp"
            with open(tmp, "w") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp, self.path)

    def services(self) -> Dict[str, Dict]:
        return self.load()["services"]

    def running(self) -> Dict[str, Dict]:
        """Recorded services whose process is still alive."""
        return {name: entry for name, entry in self.services().items()
                if entry.get("state") == "running" and pid_alive(entry.get("pid"))}

    def forget(self, names: List[str]) -> None:
        with self._lock:
            data = self.load()
            for name in names:
                data["services"].pop(name, None)
            if data["services"]:
                with open(self.path, "w") as f:
                    json.dump(data, f, indent=2, sort_keys=True)
            elif os.path.exists(self.path):
                os.remove(self.path)
