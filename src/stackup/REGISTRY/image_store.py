# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Local image store: tagged images with their root filesystems.
"""

import json
import logging
import os
import shutil
import threading
from typing import Dict, List, Optional

from ..MODELS.container_image import ContainerImage
from .image_reference import ImageReference

logger = logging.getLogger(__name__)


class ImageStore:
    """
    Index of locally available images, keyed by normalised reference.

    Images are stored under ``<root>/<image id>/rootfs``; the index maps
    references (tags) to image ids.
    """

    def __init__(self, root: str):
        """
        Initialize the image store.

        Args:
            root: Directory for image storage.
        """
        self.root = root
        self.index_file = os.path.join(root, "index.json")
        os.makedirs(root, exist_ok=True)
        self._lock = threading.RLock()

    @staticmethod
    def key(reference: str) -> str:
        return ImageReference.parse(reference).full_name

    def _load_index(self) -> Dict[str, Dict]:
        if not os.path.exists(self.index_file):
            return {}
        with open(self.index_file, "r") as f:
            return json.load(f)

    def _save_index(self, index: Dict[str, Dict]) -> None:
        tmp = f"{self.index_file}.tmp"
        with open(tmp, "w") as f:
            json.dump(index, f, indent=2)
        os.replace(tmp, self.index_file)

    def image_dir(self, image_id: str) -> str:
        return os.path.join(self.root, image_id.replace(":", "_"))

    def get(self, reference: str) -> Optional[ContainerImage]:
        """Return the image tagged ``reference``, or None if absent locally."""
        with self._lock:
            entry = self._load_index().get(self.key(reference))
        if entry is None:
            return None
        image = ContainerImage(**entry)
        if not os.path.isdir(image.rootfs):
            logger.warning("Image %s is indexed but its rootfs is gone", reference)
            return None
        return image

    def add(self, image: ContainerImage) -> ContainerImage:
        """Tag ``image`` under its reference, replacing a previous tag."""
        with self._lock:
            index = self._load_index()
            index[self.key(image.reference)] = image.model_dump()
            self._save_index(index)
        logger.debug("Stored image %s (%s)", image.reference, image.image_id)
        return image

    def remove(self, reference: str) -> bool:
        with self._lock:
            index = self._load_index()
            entry = index.pop(self.key(reference), None)
            if entry is None:
                return False
            self._save_index(index)
            still_used = any(e["image_id"] == entry["image_id"] for e in index.values())
            if not still_used:
                shutil.rmtree(self.image_dir(entry["image_id"]), ignore_errors=True)
            return True

    def list_images(self) -> List[ContainerImage]:
        with self._lock:
            return [ContainerImage(**e) for e in self._load_index().values()]
