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
Unit tests for the registry module.
"""
import gzip
import hashlib
import io
import json
import os
import tarfile
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from stackup.REGISTRY.image_reference import ImageReference
from stackup.REGISTRY.registry_client import (
    ImageNotFound,
    RegistryClient,
    RegistryError,
    RegistryUnauthorized,
    RegistryUnavailable,
    extract_layer,
)


def make_layer(files):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for name, content in files.items():
            data = content.encode()
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return gzip.compress(buf.getvalue())


def digest(blob):
    return f"sha256:{hashlib.sha256(blob).hexdigest()}"


class FakeRegistry:
    """A minimal registry v2 API served from memory."""

    def __init__(self):
        self.use(layer=make_layer({"bin/tool": "#!/bin/sh\n", "etc/motd": "hello\n"}),
                 config=json.dumps({"config": {"Cmd": ["tool"]}}).encode())
        self.status = {}
        self.requests = []
        registry = self

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self):
                registry.requests.append((self.path, self.headers.get("Authorization")))
                status = registry.status.get(self.path, 200)
                body = {
                    "/v2/app/manifests/1": registry.manifest,
                    f"/v2/app/blobs/{digest(registry.config)}": registry.config,
                    f"/v2/app/blobs/{digest(registry.layer)}": registry.layer,
                }.get(self.path)
                if body is None:
                    status = 404
                self.send_response(status)
                self.end_headers()
                if status == 200:
                    self.wfile.write(body)

            def log_message(self, *args):
                pass

        self.server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)

    def use(self, layer, config):
        """Serves ``layer`` and ``config`` under a manifest that references them."""
        self.layer = layer
        self.config = config
        self.manifest = json.dumps({
            "schemaVersion": 2,
            "mediaType": "application/vnd.oci.image.manifest.v1+json",
            "config": {"digest": digest(self.config)},
            "layers": [{"digest": digest(self.layer)}],
        }).encode()

    @property
    def host(self):
        return f"127.0.0.1:{self.server.server_address[1]}"


@pytest.fixture
def registry():
    fake = FakeRegistry()
    fake.thread.start()
    yield fake
    fake.server.shutdown()
    fake.server.server_close()


class TestImageReference:
    """Tests for ImageReference parsing."""

    def test_parse_simple_name(self):
        ref = ImageReference.parse("nginx")
        assert ref.registry == "docker.io"
        assert ref.repository == "library/nginx"
        assert ref.tag == "latest"

    def test_parse_user_image(self):
        ref = ImageReference.parse("myuser/myimage:v1")
        assert ref.repository == "myuser/myimage"
        assert ref.tag == "v1"

    def test_parse_localhost_registry(self):
        ref = ImageReference.parse("localhost:5000/myimage:v1")
        assert ref.registry == "localhost:5000"
        assert ref.repository == "myimage"
        assert ref.registry_url == "http://localhost:5000"

    def test_short_name(self):
        assert ImageReference.parse("nginx:1.21").short_name == "nginx:1.21"
        assert ImageReference.parse("docker.io/library/nginx").short_name == "nginx:latest"

    @pytest.mark.parametrize("reference", ["", " nginx", "nginx:bad tag", "Upper/Case"])
    def test_invalid_references(self, reference):
        with pytest.raises(ValueError):
            ImageReference.parse(reference)


class TestRegistryClient:
    """Tests for RegistryClient against an in-process registry."""

    def test_pull_image_extracts_layers(self, registry, tmp_path):
        client = RegistryClient(attempts=1)
        manifest, config = client.pull_image(ImageReference.parse(f"{registry.host}/app:1"),
                                             str(tmp_path / "rootfs"))
        assert config["config"]["Cmd"] == ["tool"]
        assert manifest["layers"][0]["digest"] == digest(registry.layer)
        assert (tmp_path / "rootfs" / "etc" / "motd").read_text() == "hello\n"

    def test_credentials_are_sent(self, registry, tmp_path):
        client = RegistryClient(attempts=1)
        client.set_credentials(registry.host, "ci", "token")
        client.get_manifest(ImageReference.parse(f"{registry.host}/app:1"))
        assert registry.requests[0][1].startswith("Basic ")

    def test_missing_image_is_not_retried(self, registry):
        client = RegistryClient(attempts=3)
        with pytest.raises(ImageNotFound):
            client.get_manifest(ImageReference.parse(f"{registry.host}/ghost:1"))
        assert len(registry.requests) == 1

    def test_unauthorized(self, registry):
        registry.status["/v2/app/manifests/1"] = 401
        with pytest.raises(RegistryUnauthorized):
            RegistryClient(attempts=3).get_manifest(ImageReference.parse(f"{registry.host}/app:1"))
        assert len(registry.requests) == 1

    def test_server_errors_are_retried(self, registry):
        registry.status["/v2/app/manifests/1"] = 503
        with pytest.raises(RegistryUnavailable):
            RegistryClient(attempts=2).get_manifest(ImageReference.parse(f"{registry.host}/app:1"))
        assert len(registry.requests) == 2

    def test_corrupt_layer_is_rejected(self, registry):
        client = RegistryClient(attempts=1)
        ref = ImageReference.parse(f"{registry.host}/app:1")
        with pytest.raises(RegistryError):
            client.pull_layer(ref, {"digest": "sha256:" + "0" * 64})

    def test_layer_that_is_not_a_tarball(self, registry, tmp_path):
        registry.use(layer=b"not a tarball" * 64, config=registry.config)
        with pytest.raises(RegistryError) as exc:
            RegistryClient(attempts=1).pull_image(ImageReference.parse(f"{registry.host}/app:1"),
                                                  str(tmp_path / "rootfs"))
        assert "layer could not be extracted" in str(exc.value)

    def test_undecodable_manifest(self, registry):
        registry.manifest = b"<html>maintenance</html>"
        with pytest.raises(RegistryError) as exc:
            RegistryClient(attempts=1).get_manifest(ImageReference.parse(f"{registry.host}/app:1"))
        assert "not valid JSON" in str(exc.value)

    def test_undecodable_config(self, registry, tmp_path):
        registry.use(layer=registry.layer, config=b"\xff\xfe{")
        with pytest.raises(RegistryError):
            RegistryClient(attempts=1).pull_image(ImageReference.parse(f"{registry.host}/app:1"),
                                                  str(tmp_path / "rootfs"))

    def test_token_response_without_token(self, monkeypatch):
        client = RegistryClient(attempts=1)
        monkeypatch.setattr(client, "_open", lambda request, ref: b'{"expires_in": 300}')
        with pytest.raises(RegistryUnauthorized):
            client._get_auth_token(ImageReference.parse("library/nginx:1"))


@pytest.mark.parametrize("blob", [
    b"not a tarball" * 64,
    gzip.compress(b"x" * 4096)[:24],
    b"\x1f\x8bgarbage",
])
def test_unreadable_layer_is_a_registry_error(tmp_path, blob):
    with pytest.raises(RegistryError):
        extract_layer(blob, str(tmp_path))


def test_extract_layer_applies_whiteouts_and_skips_escapes(tmp_path):
    (tmp_path / "old.txt").write_text("old")
    extract_layer(make_layer({".wh.old.txt": "", "../escape.txt": "x", "new.txt": "n"}),
                  str(tmp_path))
    assert not (tmp_path / "old.txt").exists()
    assert (tmp_path / "new.txt").read_text() == "n"
    assert not os.path.exists(tmp_path.parent / "escape.txt")
