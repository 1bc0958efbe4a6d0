import pytest
import yaml

from stackup.MODELS.container_image import ContainerImage
from stackup.MODELS.settings import OrchestratorSettings
from stackup.PARSERS.compose_parser import ComposeParser
from stackup.REGISTRY.image_store import ImageStore


@pytest.fixture
def settings():
    return OrchestratorSettings(startup_grace=0.1, monitor_interval=0.2, stop_timeout=3,
                                readiness_timeout=10, dependency_timeout=20)


@pytest.fixture
def seed_image(tmp_path):
    """Adds a local image whose rootfs is an empty directory."""
    def seed(reference):
        rootfs = tmp_path / "rootfs" / reference.replace("/", "_").replace(":", "_")
        rootfs.mkdir(parents=True, exist_ok=True)
        store = ImageStore(str(tmp_path / ".stackup" / "images"))
        return store.add(ContainerImage(reference=reference, image_id=f"local:{rootfs.name}",
                                        rootfs=str(rootfs), env={"APP_ENV": "test"}))
    return seed


@pytest.fixture
def make_stack(tmp_path):
    def make(content):
        with open(tmp_path / "stackup.yml", "w") as f:
            yaml.safe_dump(content, f)
        return ComposeParser(base_dir=str(tmp_path)).parse(str(tmp_path / "stackup.yml"))
    return make
