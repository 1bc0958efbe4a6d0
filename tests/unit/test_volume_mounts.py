import os

import pytest

from stackup.errors import HostPathMissingError, MountTypeMismatchError
from stackup.MANAGERS.volume_manager import VolumeManager
from stackup.MODELS.service_definition import MountType, VolumeMount
from stackup.MODELS.stack import VolumeDefinition


@pytest.fixture
def manager(tmp_path):
    return VolumeManager(str(tmp_path / "state"), str(tmp_path))


@pytest.fixture
def root(tmp_path):
    path = tmp_path / "rootfs"
    (path / "etc").mkdir(parents=True)
    (path / "etc" / "config.ini").write_text("image default\n")
    (path / "var" / "lib" / "data").mkdir(parents=True)
    (path / "var" / "lib" / "data" / "seed.txt").write_text("from image\n")
    return str(path)


def test_bind_mount_links_host_directory(manager, root, tmp_path):
    host = tmp_path / "src"
    host.mkdir()
    (host / "app.py").write_text("print('hi')\n")
    mount = VolumeMount(source="./src", target="/app", type=MountType.BIND)
    source = manager.resolve_source(mount, None, "p_app")

    mounted = manager.prepare_mounts("app", root, [(mount, source)])

    assert mounted[0].target == "/app"
    assert os.path.islink(os.path.join(root, "app"))
    assert open(os.path.join(root, "app", "app.py")).read() == "print('hi')\n"


def test_directory_onto_file_is_rejected(manager, root, tmp_path):
    (tmp_path / "conf.d").mkdir()
    mount = VolumeMount(source="./conf.d", target="/etc/config.ini", type=MountType.BIND)
    source = manager.resolve_source(mount, None, "p_app")

    with pytest.raises(MountTypeMismatchError) as exc:
        manager.prepare_mounts("app", root, [(mount, source)])

    assert "mount destination is not a directory" in str(exc.value)
    assert exc.value.service == "app"
    # Nothing was linked; the image file is intact.
    assert open(os.path.join(root, "etc", "config.ini")).read() == "image default\n"


def test_target_below_a_file_is_rejected(manager, root, tmp_path):
    (tmp_path / "data").mkdir()
    mount = VolumeMount(source="./data", target="/etc/config.ini/sub", type=MountType.BIND)
    source = manager.resolve_source(mount, None, "p_app")
    with pytest.raises(MountTypeMismatchError) as exc:
        manager.prepare_mounts("app", root, [(mount, source)])
    assert "mount destination is not a directory" in str(exc.value)


def test_missing_bind_source(manager, root):
    mount = VolumeMount(source="./nowhere", target="/data", type=MountType.BIND)
    source = manager.resolve_source(mount, None, "p_app")
    with pytest.raises(HostPathMissingError):
        manager.prepare_mounts("app", root, [(mount, source)])


def test_empty_named_volume_is_seeded_from_image(manager, root):
    info, _ = manager.ensure_volume(VolumeDefinition(name="data"), "p_data")
    mount = VolumeMount(source="data", target="/var/lib/data")
    source = manager.resolve_source(mount, "p_data", "p_db")
    assert source == info.path

    manager.prepare_mounts("db", root, [(mount, source)])

    assert open(os.path.join(info.path, "seed.txt")).read() == "from image\n"
    assert os.path.realpath(os.path.join(root, "var", "lib", "data")) == os.path.realpath(info.path)


def test_relative_target_uses_working_dir(root):
    target = VolumeManager.resolve_target(root, "cache", "/srv/app")
    assert target == os.path.join(root, "srv", "app", "cache")


def test_anonymous_volume_is_private_to_owner(manager, root):
    mount = VolumeMount(source="", target="/scratch")
    first = manager.resolve_source(mount, None, "p_a")
    second = manager.resolve_source(mount, None, "p_b")
    assert first != second
    manager.prepare_mounts("a", root, [(mount, first)])
    assert os.path.isdir(first)
    manager.remove_anonymous("p_a")
    assert not os.path.exists(first)
