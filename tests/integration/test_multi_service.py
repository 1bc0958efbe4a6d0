import sys
import threading
import time
from pathlib import Path

import pytest

from service_helpers import OfflineRegistry, service_command
from stackup.errors import (
    DependencyFailedError,
    HostnameUnresolvableError,
    ImageUnresolvedError,
    MountTypeMismatchError,
    ReadinessTimeoutError,
)
from stackup.MANAGERS.service_orchestrator import ServiceOrchestrator
from stackup.MODELS.service_state import ServiceState
from stackup.MODELS.settings import OrchestratorSettings
from stackup.RUNNERS.process_runner import pid_alive
from stackup.UTILS.port_finder import get_free_port


def wait_for(predicate, timeout=15.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.1)
    return False


@pytest.fixture
def shop(make_stack, seed_image):
    seed_image("local/db:1")
    seed_image("local/app:1")
    port = get_free_port()
    stack = make_stack({
        "name": "shop",
        "services": {
            "db": {
                "image": "local/db:1",
                "command": service_command(),
                "environment": {"LISTEN_PORT": str(port), "PYTHONUNBUFFERED": "1"},
                "ports": [f"{port}:{port}"],
                "volumes": ["pgdata:/var/lib/data"],
                "networks": ["backend"],
                "healthcheck": {"test": ["TCP", str(port)], "interval": "200ms"},
            },
            "api": {
                "image": "local/app:1",
                "command": service_command(),
                "depends_on": {"db": {"condition": "service_healthy"}},
                "networks": ["backend", "frontend"],
            },
            "web": {
                "image": "local/app:1",
                "command": service_command(),
                "depends_on": ["api"],
                "networks": ["frontend"],
            },
        },
        "networks": {"backend": {}, "frontend": {}},
        "volumes": {"pgdata": {}},
    })
    return stack, port


def test_stack_up_exec_down(shop, settings, tmp_path):
    stack, port = shop
    orchestrator = ServiceOrchestrator(stack, settings, registry_client=OfflineRegistry())
    try:
        report = orchestrator.up()
        assert report.ok, report.failed
        assert report.order == ["db", "api", "web"]
        assert all(s.state == ServiceState.RUNNING for s in report.statuses.values())
        assert report.statuses["db"].ready
        assert report.statuses["db"].ports == {port: port}

        rows = {row["service"]: row for row in orchestrator.ps()}
        assert rows["db"]["state"] == "running"
        assert pid_alive(rows["web"]["pid"])

        # Peers are visible only across shared networks.
        check = "import os, sys; sys.exit(0 if {} else 1)"
        assert orchestrator.exec("api", [sys.executable, "-c",
                                         check.format("os.environ.get('DB_HOST')")]) == 0
        assert orchestrator.exec("web", [sys.executable, "-c",
                                         check.format("'DB_HOST' not in os.environ")]) == 0
        assert orchestrator.exec("web", [sys.executable, "-c",
                                         check.format("os.environ.get('API_HOST')")]) == 0

        orchestrator.connect("db", port, caller="api").close()
        with pytest.raises(HostnameUnresolvableError):
            orchestrator.connect("db", port)
    finally:
        removed = orchestrator.down()

    assert "network:backend" in removed
    assert "volume:pgdata" not in removed
    assert orchestrator.volume_manager.get_volume("shop_pgdata") is not None
    assert orchestrator.state.services() == {}
    assert not pid_alive(report.statuses["db"].pid)
    assert (tmp_path / ".stackup" / "logs" / "db.log").exists()


def test_failed_dependency_stops_dependents_only(make_stack, seed_image, settings):
    seed_image("local/app:1")
    stack = make_stack({
        "services": {
            "db": {"image": "ghost/missing:1"},
            "app": {"image": "local/app:1", "command": service_command(), "depends_on": ["db"]},
            "worker": {"image": "local/app:1", "command": service_command()},
        },
    })
    orchestrator = ServiceOrchestrator(stack, settings, registry_client=OfflineRegistry())
    try:
        report = orchestrator.up()
        db, app, worker = (report.statuses[n] for n in ("db", "app", "worker"))

        assert isinstance(db.error, ImageUnresolvedError)
        assert isinstance(app.error, DependencyFailedError)
        assert app.state == ServiceState.FAILED
        assert not app.reached(ServiceState.STARTING)
        assert not app.reached(ServiceState.RESOLVING_IMAGE)
        assert worker.state == ServiceState.RUNNING
        assert report.exit_code == 4
    finally:
        orchestrator.down()


def test_second_up_reuses_resources_and_processes(shop, settings):
    stack, _ = shop
    first = ServiceOrchestrator(stack, settings, registry_client=OfflineRegistry())
    second = None
    try:
        report = first.up()
        assert report.ok
        # The first invocation detaches; its processes keep running.
        first.launcher.monitor.stop()

        second = ServiceOrchestrator(stack, settings, registry_client=OfflineRegistry())
        again = second.up()
        assert second.last_provisioning.created == []
        assert again.statuses["db"].pid == report.statuses["db"].pid
        assert second.is_running("web")
    finally:
        (second or first).down()
    assert not pid_alive(report.statuses["api"].pid)


def test_on_failure_restarts_are_bounded(make_stack, seed_image, settings):
    seed_image("local/app:1")
    stack = make_stack({
        "services": {
            "flaky": {
                "image": "local/app:1",
                "command": service_command(),
                "environment": {"EXIT_CODE": "3"},
                "restart": "on-failure:2",
                "x-restart": {"delay": "100ms", "backoff": "fixed"},
            },
        },
    })
    orchestrator = ServiceOrchestrator(stack, settings, registry_client=OfflineRegistry())
    try:
        orchestrator.up()
        status = orchestrator.launcher.statuses["flaky"]
        assert wait_for(lambda: status.state == ServiceState.FAILED)
        assert status.restart_count == 2
        assert status.exit_code == 3
        assert status.reached(ServiceState.RESTARTING)
    finally:
        orchestrator.down()


def test_remapped_port_is_ready_on_the_port_the_process_binds(make_stack, seed_image, settings):
    seed_image("local/db:1")
    container, host = get_free_port(), get_free_port()
    stack = make_stack({
        "services": {
            "db": {
                "image": "local/db:1",
                "command": service_command(),
                "environment": {"LISTEN_PORT": str(container)},
                "ports": [f"{host}:{container}"],
                "healthcheck": {"test": ["TCP", str(container)], "interval": "200ms"},
            },
        },
    })
    orchestrator = ServiceOrchestrator(stack, settings, registry_client=OfflineRegistry())
    try:
        report = orchestrator.up()
        assert report.ok, report.failed
        assert report.statuses["db"].ready
        assert report.statuses["db"].ports == {container: host}
        assert orchestrator.launcher.ports.holder(container) == "db"
    finally:
        orchestrator.down()


def test_directory_mounted_onto_a_file_fails_the_service(make_stack, seed_image, settings,
                                                         tmp_path):
    image = seed_image("local/app:1")
    (Path(image.rootfs) / "config").write_text("baked into the image\n")
    (tmp_path / "conf").mkdir()
    stack = make_stack({
        "services": {
            "app": {"image": "local/app:1", "command": service_command(),
                    "volumes": ["./conf:/config"]},
        },
    })
    orchestrator = ServiceOrchestrator(stack, settings, registry_client=OfflineRegistry())
    try:
        report = orchestrator.up()
        app = report.statuses["app"]
        assert app.state == ServiceState.FAILED
        assert isinstance(app.error, MountTypeMismatchError)
        assert "mount destination is not a directory" in str(app.error)
        assert report.exit_code == 4
    finally:
        orchestrator.down()


def completed_stack(make_stack, seed_image, exit_code):
    seed_image("local/app:1")
    return make_stack({
        "services": {
            "migrate": {"image": "local/app:1", "command": service_command(),
                        "environment": {"EXIT_CODE": str(exit_code)}},
            "app": {"image": "local/app:1", "command": service_command(),
                    "depends_on": {"migrate": {"condition": "service_completed_successfully"}}},
        },
    })


def test_completed_dependency_lets_dependent_start(make_stack, seed_image, settings):
    stack = completed_stack(make_stack, seed_image, 0)
    orchestrator = ServiceOrchestrator(stack, settings, registry_client=OfflineRegistry())
    try:
        report = orchestrator.up()
        assert report.ok, report.failed
        assert report.statuses["migrate"].state == ServiceState.STOPPED
        assert report.statuses["migrate"].exit_code == 0
        assert report.statuses["app"].state == ServiceState.RUNNING
    finally:
        orchestrator.down()


def test_unsuccessful_completion_fails_dependent(make_stack, seed_image, settings):
    stack = completed_stack(make_stack, seed_image, 3)
    orchestrator = ServiceOrchestrator(stack, settings, registry_client=OfflineRegistry())
    try:
        report = orchestrator.up()
        app = report.statuses["app"]
        assert report.statuses["migrate"].exit_code == 3
        assert isinstance(app.error, DependencyFailedError)
        assert app.error.dependency == "migrate"
        assert not app.reached(ServiceState.RESOLVING_IMAGE)
        assert report.exit_code == 4
    finally:
        orchestrator.down()


def never_ready_stack(make_stack, seed_image):
    seed_image("local/app:1")
    return make_stack({
        "services": {
            "db": {"image": "local/app:1", "command": service_command(),
                   "healthcheck": {"test": ["CMD-SHELL", "exit 1"], "interval": "200ms"}},
            "api": {"image": "local/app:1", "command": service_command(),
                    "depends_on": {"db": {"condition": "service_healthy"}}},
        },
    })


def test_dependency_that_never_becomes_ready(make_stack, seed_image):
    stack = never_ready_stack(make_stack, seed_image)
    settings = OrchestratorSettings(startup_grace=0.1, monitor_interval=0.2, stop_timeout=3,
                                    readiness_timeout=1, dependency_timeout=20)
    orchestrator = ServiceOrchestrator(stack, settings, registry_client=OfflineRegistry())
    try:
        report = orchestrator.up()
        db, api = report.statuses["db"], report.statuses["api"]
        assert isinstance(db.error, ReadinessTimeoutError)
        assert not db.ready
        assert isinstance(api.error, ReadinessTimeoutError)
        assert "never became ready" in str(api.error)
        assert api.state == ServiceState.FAILED
        assert not api.reached(ServiceState.STARTING)
        assert report.exit_code == 5
    finally:
        orchestrator.down()


def test_stop_releases_services_waiting_on_dependencies(make_stack, seed_image, settings):
    stack = never_ready_stack(make_stack, seed_image)
    orchestrator = ServiceOrchestrator(stack, settings, registry_client=OfflineRegistry())
    launcher = orchestrator.launcher
    reports = []
    worker = threading.Thread(target=lambda: reports.append(orchestrator.up()))
    worker.start()
    try:
        assert wait_for(lambda: launcher.statuses["db"].state == ServiceState.RUNNING
                        and launcher.statuses["api"].state == ServiceState.PENDING)
        started = time.monotonic()
        launcher.stop()
        worker.join(timeout=5)
        assert not worker.is_alive()
        assert time.monotonic() - started < 5

        db, api = reports[0].statuses["db"], reports[0].statuses["api"]
        assert api.state == ServiceState.STOPPED
        assert api.error is None
        assert "cancelled" in api.history[-1].detail
        assert db.state == ServiceState.STOPPED
        assert not isinstance(db.error, ReadinessTimeoutError)
    finally:
        worker.join(timeout=10)
        orchestrator.down()


def test_interrupt_during_launch_cancels_waiting_services(make_stack, seed_image, settings,
                                                           monkeypatch):
    seed_image("local/app:1")
    stack = make_stack({
        "services": {
            "db": {"image": "local/app:1", "command": service_command()},
            "api": {"image": "local/app:1", "command": service_command(), "depends_on": ["db"]},
        },
    })
    orchestrator = ServiceOrchestrator(stack, settings, registry_client=OfflineRegistry())
    launcher = orchestrator.launcher
    resolve_image = launcher.resolve_image

    def interrupted(name, pull=False, build=False):
        if name == "db":
            raise KeyboardInterrupt
        return resolve_image(name, pull=pull, build=build)

    monkeypatch.setattr(launcher, "resolve_image", interrupted)
    started = time.monotonic()
    try:
        with pytest.raises(KeyboardInterrupt):
            orchestrator.up()
        assert time.monotonic() - started < 5
        api = launcher.statuses["api"]
        assert api.state == ServiceState.STOPPED
        assert "waiting for 'db'" in api.history[-1].detail
        assert not api.reached(ServiceState.RESOLVING_IMAGE)
    finally:
        orchestrator.down()


def test_restart_is_dropped_once_the_stack_is_stopping(make_stack, seed_image, settings):
    seed_image("local/app:1")
    stack = make_stack({
        "services": {
            "flaky": {
                "image": "local/app:1",
                "command": service_command(),
                "environment": {"EXIT_CODE": "3"},
                "restart": "always",
                "x-restart": {"delay": "30s", "backoff": "fixed"},
            },
        },
    })
    orchestrator = ServiceOrchestrator(stack, settings, registry_client=OfflineRegistry())
    launcher = orchestrator.launcher
    try:
        orchestrator.up()
        status = launcher.statuses["flaky"]
        assert wait_for(lambda: status.state == ServiceState.RESTARTING)

        launcher.monitor.stop()
        launcher._stop.set()
        launcher.restart("flaky")

        assert status.state == ServiceState.STOPPED
        assert status.restart_count == 0
    finally:
        orchestrator.down()
