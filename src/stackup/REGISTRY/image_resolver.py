"""
Resolution of image references to local images, pulling when needed.
"""
import logging
import os
import shutil
import uuid
from typing import Any, Dict, Optional

from ..errors import ImageUnresolvedError
from ..MODELS.container_image import ContainerImage
from .image_reference import ImageReference
from .image_store import ImageStore
from .registry_client import (
    ImageNotFound,
    PullTimeout,
    RegistryClient,
    RegistryError,
    RegistryUnauthorized,
    RegistryUnavailable,
)

logger = logging.getLogger(__name__)


class ImageResolver:
    """
    Looks images up in the local store and pulls the missing ones.

    Not-found and unauthorized answers fail immediately; only transient
    registry errors are retried, by the client, a bounded number of times.
    """

    def __init__(self, store: ImageStore, client: Optional[RegistryClient] = None,
                 timeout: float = 300.0):
        self.store = store
        self.client = client or RegistryClient()
        self.timeout = timeout

    def resolve(self, service: str, reference: str, pull: bool = False) -> ContainerImage:
        """
        Returns the local image for ``reference``.

        :param service: Service name, for error reporting.
        :param reference: Image reference as declared.
        :param pull: Pull even if the image is present locally.
        :raises ImageUnresolvedError: If the image cannot be found or pulled.
        """
        try:
            ref = ImageReference.parse(reference)
        except ValueError as e:
            raise ImageUnresolvedError(service, reference, str(e)) from e

        if not pull:
            local = self.store.get(reference)
            if local is not None:
                logger.debug("[%s] Using local image %s", service, ref.short_name)
                return local

        logger.info("[%s] Pulling %s", service, ref.full_name)
        staging = os.path.join(self.store.root, f"pull-{uuid.uuid4().hex[:12]}")
        try:
            manifest, config = self.client.pull_image(
                ref, os.path.join(staging, "rootfs"), timeout=self.timeout)
        except RegistryError as e:
            shutil.rmtree(staging, ignore_errors=True)
            raise ImageUnresolvedError(service, reference, describe(e)) from e
        except BaseException:
            shutil.rmtree(staging, ignore_errors=True)
            raise

        image_id = manifest.get("config", {}).get("digest") or f"pulled:{uuid.uuid4().hex}"
        final_dir = self.store.image_dir(image_id)
        if os.path.isdir(final_dir):
            shutil.rmtree(staging, ignore_errors=True)
        else:
            os.replace(staging, final_dir)

        image = image_from_config(reference, image_id, os.path.join(final_dir, "rootfs"), config)
        return self.store.add(image)


def describe(error: RegistryError) -> str:
    if isinstance(error, ImageNotFound):
        return f"not found ({error})"
    if isinstance(error, RegistryUnauthorized):
        return f"unauthorized ({error})"
    if isinstance(error, PullTimeout):
        return f"timed out ({error})"
    if isinstance(error, RegistryUnavailable):
        return f"registry unavailable ({error})"
    return str(error)


def image_from_config(reference: str, image_id: str, rootfs: str,
                      config: Dict[str, Any]) -> ContainerImage:
    """Translate an OCI/Docker image config into a ContainerImage."""
    runtime = config.get("config") or {}
    env = {}
    for item in runtime.get("Env") or []:
        key, _, value = item.partition("=")
        env[key] = value
    ports = []
    for spec in (runtime.get("ExposedPorts") or {}):
        port = spec.split("/")[0]
        if port.isdigit():
            ports.append(int(port))
    return ContainerImage(
        reference=reference,
        image_id=image_id,
        rootfs=rootfs,
        source="pull",
        env=env,
        cmd=runtime.get("Cmd") or [],
        entrypoint=runtime.get("Entrypoint") or [],
        working_dir=runtime.get("WorkingDir") or None,
        exposed_ports=ports,
        volumes=list((runtime.get("Volumes") or {}).keys()),
        user=runtime.get("User") or None,
        labels=runtime.get("Labels") or {},
        created=config.get("created"),
    )
