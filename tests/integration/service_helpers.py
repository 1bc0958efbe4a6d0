import os
import sys

from stackup.REGISTRY.registry_client import ImageNotFound

DUMMY_SERVICE = os.path.join(os.path.dirname(os.path.abspath(__file__)), "dummy_service.py")


class OfflineRegistry:
    """Registry client that knows no images."""

    def pull_image(self, ref, rootfs, timeout=None):
        raise ImageNotFound(f"{ref.full_name} not found")


def service_command():
    return [sys.executable, DUMMY_SERVICE]
