"""
Models representing images in the local image store.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel


class ContainerImage(BaseModel):
    """
    A resolved image: its root filesystem on disk plus the runtime
    configuration baked in by its recipe or registry config.
    """
    reference: str
    image_id: str
    rootfs: str
    source: str = "pull"  # "pull" or "build"

    env: Dict[str, str] = {}
    cmd: List[str] = []
    entrypoint: List[str] = []
    working_dir: Optional[str] = None
    exposed_ports: List[int] = []
    volumes: List[str] = []
    user: Optional[str] = None
    labels: Dict[str, str] = {}
    created: Optional[str] = None
