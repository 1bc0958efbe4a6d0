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
Registry client for pulling images.
Implements the pull side of the Docker Registry HTTP API V2.
"""

import base64
import gzip
import hashlib
import io
import json
import logging
import os
import platform
import shutil
import tarfile
import time
import zlib
from dataclasses import dataclass
from typing import Optional, Dict, Any, Tuple
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import urlopen, Request

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .image_reference import ImageReference

logger = logging.getLogger(__name__)

MANIFEST_TYPES = [
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.oci.image.index.v1+json",
]
INDEX_TYPES = {
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.index.v1+json",
}


class RegistryError(Exception):
    """Base class for registry failures."""


class ImageNotFound(RegistryError):
    """The repository or tag does not exist."""


class RegistryUnauthorized(RegistryError):
    """The registry refused access (401/403)."""


class RegistryUnavailable(RegistryError):
    """Transient failure: network error, timeout or 5xx. Worth retrying."""


class PullTimeout(RegistryError):
    pass


@dataclass
class RegistryAuth:
    """Authentication credentials for a registry."""

    username: Optional[str] = None
    password: Optional[str] = None


class RegistryClient:
    """
    Client for interacting with Docker registries.
    Supports Docker Hub and OCI-compatible registries.
    """

    def __init__(self, request_timeout: float = 30.0, attempts: int = 3):
        """
        Initialize the registry client.

        Args:
            request_timeout: Timeout of each HTTP request, in seconds.
            attempts: Attempts per request for transient failures.
        """
        self.request_timeout = request_timeout
        self.attempts = attempts
        self._auth_tokens: Dict[str, str] = {}
        self._credentials: Dict[str, RegistryAuth] = {}

    def set_credentials(self, registry: str, username: str, password: str) -> None:
        """
        Set credentials for a registry.

        Args:
            registry: Registry hostname (e.g., 'docker.io')
            username: Username
            password: Password or access token
        """
        self._credentials[registry] = RegistryAuth(username=username, password=password)

    def _basic_auth(self, registry: str) -> Optional[str]:
        creds = self._credentials.get(registry)
        if creds and creds.username and creds.password:
            auth = base64.b64encode(f"{creds.username}:{creds.password}".encode()).decode()
            return f"Basic {auth}"
        return None

    def _get_auth_token(self, ref: ImageReference) -> Optional[str]:
        """Get authentication token for a registry."""
        cache_key = f"{ref.registry}/{ref.repository}"
        if cache_key in self._auth_tokens:
            return self._auth_tokens[cache_key]

        if ref.registry != ImageReference.DEFAULT_REGISTRY:
            return self._basic_auth(ref.registry)

        # Docker Hub uses bearer token auth
        params = {
            "service": "registry.docker.io",
            "scope": f"repository:{ref.repository}:pull",
        }
        request = Request(f"https://auth.docker.io/token?{urlencode(params)}")
        basic = self._basic_auth(ref.registry)
        if basic:
            request.add_header("Authorization", basic)
        data = load_json(self._open(request, ref), "token response")
        value = data.get("token") or data.get("access_token")
        if not value:
            raise RegistryUnauthorized(f"token response for {ref.full_name} carries no token")
        token = f"Bearer {value}"
        self._auth_tokens[cache_key] = token
        return token

    def _open(self, request: Request, ref: ImageReference) -> bytes:
        return self._open_with_headers(request, ref)[0]

    def _open_with_headers(self, request: Request, ref: ImageReference) -> Tuple[bytes, Dict[str, str]]:
        """Performs one request and classifies failures."""
        try:
            with urlopen(request, timeout=self.request_timeout) as response:
                return response.read(), dict(response.headers)
        except HTTPError as e:
            if e.code == 404:
                raise ImageNotFound(f"{ref.full_name} not found in {ref.registry}") from e
            if e.code in (401, 403):
                raise RegistryUnauthorized(
                    f"access to {ref.full_name} denied by {ref.registry} (HTTP {e.code})") from e
            if e.code == 429 or e.code >= 500:
                raise RegistryUnavailable(f"{ref.registry} answered HTTP {e.code}") from e
            raise RegistryError(f"{ref.registry} answered HTTP {e.code}") from e
        except (URLError, TimeoutError, ConnectionError) as e:
            raise RegistryUnavailable(f"{ref.registry} unreachable: {e}") from e

    def _make_request(self, url: str, ref: ImageReference,
                      accept: Optional[str] = None) -> Tuple[bytes, Dict[str, str]]:
        """Make an authenticated request, retrying transient failures."""
        @retry(
            retry=retry_if_exception_type(RegistryUnavailable),
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=0.5, max=5),
            reraise=True,
        )
        def attempt() -> Tuple[bytes, Dict[str, str]]:
            request = Request(url)
            token = self._get_auth_token(ref)
            if token:
                request.add_header("Authorization", token)
            if accept:
                request.add_header("Accept", accept)
            try:
                return self._open_with_headers(request, ref)
            except RegistryUnauthorized:
                # A cached bearer token may have expired; refresh once.
                cache_key = f"{ref.registry}/{ref.repository}"
                if self._auth_tokens.pop(cache_key, None) is None:
                    raise
                return attempt()

        return attempt()

    def get_manifest(self, ref: ImageReference) -> Dict[str, Any]:
        """
        Get the image manifest for the current platform.

        Args:
            ref: Image reference

        Returns:
            Manifest as a dictionary
        """
        tag_or_digest = ref.digest if ref.digest else ref.tag
        url = f"{ref.registry_url}/v2/{ref.repository}/manifests/{tag_or_digest}"
        content, _ = self._make_request(url, ref, ", ".join(MANIFEST_TYPES))
        manifest = load_json(content, f"manifest of {ref.full_name}")

        if manifest.get("mediaType") in INDEX_TYPES or "manifests" in manifest:
            return self.get_manifest(self._select_platform(ref, manifest))
        return manifest

    @staticmethod
    def _select_platform(ref: ImageReference, index: Dict[str, Any]) -> ImageReference:
        """Select the manifest matching the current platform."""
        arch_map = {
            "x86_64": "amd64",
            "aarch64": "arm64",
            "armv7l": "arm",
            "i386": "386",
            "i686": "386",
        }
        os_name = platform.system().lower()
        arch = arch_map.get(platform.machine().lower(), platform.machine().lower())

        manifests = index.get("manifests", [])
        manifests = [m for m in manifests if isinstance(m, dict) and m.get("digest")]
        for manifest in manifests:
            info = manifest.get("platform") or {}
            if info.get("os") == os_name and info.get("architecture") == arch:
                return ref.with_digest(manifest["digest"])
        if manifests:
            return ref.with_digest(manifests[0]["digest"])
        raise ImageNotFound(f"{ref.full_name} has no manifest for {os_name}/{arch}")

    def get_config(self, ref: ImageReference, manifest: Dict[str, Any]) -> Dict[str, Any]:
        """
        Get the image configuration blob referenced by a manifest.
        """
        config = manifest.get("config")
        digest = config.get("digest", "") if isinstance(config, dict) else ""
        if not digest:
            raise RegistryError(f"manifest of {ref.full_name} has no config digest")
        url = f"{ref.registry_url}/v2/{ref.repository}/blobs/{digest}"
        content, _ = self._make_request(url, ref)
        return load_json(content, f"config of {ref.full_name}")

    def pull_layer(self, ref: ImageReference, layer: Dict[str, Any]) -> bytes:
        """
        Download one layer blob and verify its digest.
        """
        digest = layer.get("digest", "")
        if not digest:
            raise RegistryError("layer descriptor without digest")
        logger.info("Pulling layer %s", digest[:19])
        url = f"{ref.registry_url}/v2/{ref.repository}/blobs/{digest}"
        content, _ = self._make_request(url, ref)
        actual = f"sha256:{hashlib.sha256(content).hexdigest()}"
        if actual != digest:
            raise RegistryError(f"layer digest mismatch: expected {digest}, got {actual}")
        return content

    def pull_image(self, ref: ImageReference, rootfs: str,
                   timeout: Optional[float] = None) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """
        Pull a complete image into ``rootfs``.

        Args:
            ref: Image reference.
            rootfs: Directory the layers are extracted into.
            timeout: Overall deadline in seconds.

        Returns:
            The manifest and the image configuration.
        """
        deadline = time.monotonic() + timeout if timeout else None

        def check_deadline():
            if deadline is not None and time.monotonic() > deadline:
                raise PullTimeout(f"pull of {ref.full_name} exceeded {timeout:.0f}s")

        logger.info("Pulling image %s", ref.full_name)
        manifest = self.get_manifest(ref)
        check_deadline()
        config = self.get_config(ref, manifest)

        os.makedirs(rootfs, exist_ok=True)
        layers = manifest.get("layers", [])
        for i, layer in enumerate(layers):
            check_deadline()
            if not isinstance(layer, dict):
                raise RegistryError(f"manifest of {ref.full_name} lists an invalid layer")
            logger.debug("Processing layer %d/%d", i + 1, len(layers))
            extract_layer(self.pull_layer(ref, layer), rootfs)
        return manifest, config


def load_json(content: bytes, what: str) -> Dict[str, Any]:
    """Decode a JSON object returned by a registry."""
    try:
        data = json.loads(content.decode())
    except ValueError as e:
        raise RegistryError(f"{what} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise RegistryError(f"{what} is not a JSON object")
    return data


def extract_layer(blob: bytes, dest_dir: str) -> None:
    """
    Extract a layer tarball (gzip or plain) into a directory, applying
    whiteouts and skipping members that would escape the destination.

    Raises:
        RegistryError: If the blob is not a readable tarball.
    """
    try:
        _extract(blob, dest_dir)
    except (tarfile.TarError, zlib.error, EOFError, OSError) as e:
        raise RegistryError(f"layer could not be extracted: {e}") from e


def _extract(blob: bytes, dest_dir: str) -> None:
    data = gzip.decompress(blob) if blob[:2] == b"\x1f\x8b" else blob
    extract_options = {"filter": "tar"} if hasattr(tarfile, "tar_filter") else {}
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:") as tar:
        for member in tar.getmembers():
            name = member.name[2:] if member.name.startswith("./") else member.name
            if name.startswith("/") or ".." in name.split("/"):
                continue
            if os.path.basename(name).startswith(".wh."):
                _apply_whiteout(dest_dir, name)
                continue
            if member.islnk() and (member.linkname.startswith("/")
                                   or ".." in member.linkname.split("/")):
                continue
            try:
                tar.extract(member, dest_dir, set_attrs=False, **extract_options)
            except tarfile.FilterError as e:
                logger.debug("Skipping layer member %s: %s", name, e)


def _apply_whiteout(dest_dir: str, whiteout_path: str) -> None:
    """Handle a whiteout entry (marks a path as deleted)."""
    directory, filename = os.path.split(whiteout_path)
    if filename == ".wh..wh..opq":
        target_dir = os.path.join(dest_dir, directory)
        if os.path.isdir(target_dir):
            for item in os.listdir(target_dir):
                path = os.path.join(target_dir, item)
                if os.path.isdir(path) and not os.path.islink(path):
                    shutil.rmtree(path)
                else:
                    os.unlink(path)
        return
    path = os.path.join(dest_dir, directory, filename[len(".wh."):])
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    elif os.path.lexists(path):
        os.unlink(path)
