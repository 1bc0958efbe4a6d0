"""
Tunables for one orchestration run.
"""
import os
from pydantic import BaseModel, Field


class OrchestratorSettings(BaseModel):
    """
    Timeouts and intervals used by the launcher. None of the waits is
    unbounded; every timeout has a finite default.
    """
    state_dir: str = ".stackup"
    pull_timeout: float = Field(default=300.0, gt=0)
    build_timeout: float = Field(default=600.0, gt=0)
    readiness_timeout: float = Field(default=60.0, gt=0)
    dependency_timeout: float = Field(default=120.0, gt=0)
    stop_timeout: float = Field(default=10.0, gt=0)
    monitor_interval: float = Field(default=1.0, gt=0)
    startup_grace: float = Field(default=0.2, ge=0)
    max_workers: int = Field(default=16, gt=0)

    def state_path(self, base_dir: str, *parts: str) -> str:
        root = self.state_dir
        if not os.path.isabs(root):
            root = os.path.join(base_dir, root)
        return os.path.abspath(os.path.join(root, *parts))
