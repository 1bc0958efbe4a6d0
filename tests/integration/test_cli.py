import pytest
import yaml
from click.testing import CliRunner

from stackup.CLI.main import cli


@pytest.fixture
def descriptor(tmp_path):
    path = tmp_path / "stackup.yml"
    path.write_text(yaml.safe_dump({
        "name": "demo",
        "services": {
            "db": {"image": "postgres:16", "environment": {"PASSWORD": "${DB_PASSWORD}"},
                   "volumes": ["data:/var/lib/data"]},
            "web": {"image": "nginx", "depends_on": ["db"], "ports": ["8080:80"]},
        },
        "volumes": {"data": {}},
    }))
    (tmp_path / ".env").write_text("DB_PASSWORD=secret\n")
    return str(path)


def test_cli_help():
    runner = CliRunner()
    result = runner.invoke(cli, ['--help'])
    assert result.exit_code == 0
    assert 'Start services' in result.output


def test_cli_up_no_file():
    runner = CliRunner()
    result = runner.invoke(cli, ['-f', 'non_existent.yml', 'up'])
    assert result.exit_code == 2
    assert 'non_existent.yml not found' in result.output


def test_cli_config_resolves_placeholders(descriptor):
    result = CliRunner().invoke(cli, ['-f', descriptor, 'config'])
    assert result.exit_code == 0
    dumped = yaml.safe_load(result.output)
    assert dumped["services"]["db"]["environment"]["PASSWORD"] == "secret"


def test_cli_config_services(descriptor):
    result = CliRunner().invoke(cli, ['-f', descriptor, 'config', '--services'])
    assert result.exit_code == 0
    assert result.output.split() == ["db", "web"]


def test_cli_missing_env_key(descriptor, tmp_path):
    (tmp_path / ".env").write_text("")
    result = CliRunner().invoke(cli, ['-f', descriptor, 'config'])
    assert result.exit_code == 2
    assert "DB_PASSWORD" in result.output


def test_cli_exec_requires_running_service(descriptor):
    result = CliRunner().invoke(cli, ['-f', descriptor, 'exec', 'db', 'true'])
    assert result.exit_code == 1
    assert "service is not running" in result.output


def test_cli_volume_ls_and_rm(descriptor, tmp_path):
    from stackup.MANAGERS.volume_manager import VolumeManager
    from stackup.MODELS.stack import VolumeDefinition

    VolumeManager(str(tmp_path / ".stackup"), str(tmp_path)).ensure_volume(
        VolumeDefinition(name="data"), "demo_data")
    runner = CliRunner()
    result = runner.invoke(cli, ['-f', descriptor, 'volume', 'ls'])
    assert result.exit_code == 0
    assert "demo_data" in result.output

    result = runner.invoke(cli, ['-f', descriptor, 'volume', 'rm', 'demo_data'])
    assert result.exit_code == 0
    result = runner.invoke(cli, ['-f', descriptor, 'volume', 'rm', 'demo_data'])
    assert result.exit_code == 3


def test_cli_ps_before_up(descriptor):
    result = CliRunner().invoke(cli, ['-f', descriptor, 'ps'])
    assert result.exit_code == 0
    assert "not created" in result.output


def test_cli_image_ls_and_rm(descriptor, tmp_path):
    from stackup.MODELS.container_image import ContainerImage
    from stackup.REGISTRY.image_store import ImageStore

    rootfs = tmp_path / "rootfs"
    rootfs.mkdir()
    ImageStore(str(tmp_path / ".stackup" / "images")).add(
        ContainerImage(reference="local/tool:1", image_id="local:tool1", rootfs=str(rootfs)))
    runner = CliRunner()
    result = runner.invoke(cli, ['-f', descriptor, 'image', 'ls'])
    assert result.exit_code == 0
    assert "local/tool:1" in result.output

    assert runner.invoke(cli, ['-f', descriptor, 'image', 'rm', 'local/tool:1']).exit_code == 0
    result = runner.invoke(cli, ['-f', descriptor, 'image', 'rm', 'local/tool:1'])
    assert result.exit_code == 1
    assert "no such image" in result.output


def test_cli_up_interrupted_tears_down(descriptor, monkeypatch):
    from stackup.MANAGERS.service_orchestrator import ServiceOrchestrator

    calls = []

    def interrupted(self, *args, **kwargs):
        raise KeyboardInterrupt

    def down(self, remove_volumes=False):
        calls.append("down")
        return []

    monkeypatch.setattr(ServiceOrchestrator, "up", interrupted)
    monkeypatch.setattr(ServiceOrchestrator, "down", down)
    result = CliRunner().invoke(cli, ['-f', descriptor, 'up'])
    assert result.exit_code == 1
    assert calls == ["down"]
    assert "Interrupted" in result.output


def test_cli_build_reports_dependents(tmp_path):
    context = tmp_path / "app"
    context.mkdir()
    (context / "Dockerfile").write_text("FROM scratch\nCOPY app.py .\nCMD [\"python3\", \"app.py\"]\n")
    (context / "app.py").write_text("print('hi')\n")
    path = tmp_path / "stackup.yml"
    path.write_text(yaml.safe_dump({
        "name": "demo",
        "services": {
            "app": {"build": "./app"},
            "api": {"image": "local/api:1", "depends_on": ["app"]},
            "web": {"image": "local/web:1", "depends_on": ["api"]},
            "cron": {"image": "local/cron:1"},
        },
    }))

    result = CliRunner().invoke(cli, ['-f', str(path), 'build', 'app'])
    assert result.exit_code == 0, result.output
    assert "Built stackup/app:latest" in result.output
    restart = [line for line in result.output.splitlines() if line.startswith("Restart")]
    assert restart == ["Restart to pick up the new image: app api web"]
