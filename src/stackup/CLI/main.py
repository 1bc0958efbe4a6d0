"""
Command Line Interface for stackup.
"""
import logging
import os
import sys
import time
from functools import wraps

import click

from ..errors import ConfigurationError, ProvisioningError, StackupError
from ..MANAGERS.log_aggregator import LogAggregator
from ..MANAGERS.service_orchestrator import ServiceOrchestrator
from ..MANAGERS.volume_manager import VolumeManager
from ..MODELS.settings import OrchestratorSettings
from ..PARSERS.compose_parser import load_stack
from ..PARSERS.compose_writer import ComposeWriter
from ..REGISTRY.image_store import ImageStore

DEFAULT_FILES = ("stackup.yml", "stackup.yaml", "docker-compose.yml", "docker-compose.yaml",
                 "compose.yml", "compose.yaml")


def find_descriptor(explicit=None):
    if explicit:
        return explicit
    for name in DEFAULT_FILES:
        if os.path.exists(name):
            return name
    return DEFAULT_FILES[0]


def handle_errors(func):
    """Turns orchestration errors into a message and the matching exit code."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except StackupError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(e.exit_code)
    return wrapper


def get_stack(ctx):
    obj = ctx.obj
    if 'stack' not in obj:
        path = obj['file']
        if not os.path.exists(path):
            raise ConfigurationError(f"{path} not found")
        obj['stack'] = load_stack(path, env_file=obj['env_file'])
    return obj['stack']


def get_orchestrator(ctx):
    obj = ctx.obj
    if 'orchestrator' not in obj:
        obj['orchestrator'] = ServiceOrchestrator(get_stack(ctx), obj['settings'])
    return obj['orchestrator']


@click.group()
@click.option('--file', '-f', default=None, help='Stack descriptor path')
@click.option('--env-file', default=None, help='Environment file (default: .env next to the descriptor)')
@click.option('--log-level', default='WARNING',
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False))
@click.option('--verbose', '-v', is_flag=True, help='Shortcut for --log-level INFO')
@click.pass_context
def cli(ctx, file, env_file, log_level, verbose):
    """
    stackup - brings up multi-service stacks as native processes.

    Reads a compose-style descriptor and a .env file, provisions networks and
    volumes, and starts services in dependency order.
    """
    logging.basicConfig(
        level=logging.INFO if verbose and log_level.upper() == 'WARNING' else log_level.upper(),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    ctx.ensure_object(dict)
    ctx.obj['file'] = find_descriptor(file)
    ctx.obj['env_file'] = env_file
    ctx.obj['settings'] = OrchestratorSettings()


@cli.command()
@click.option('--detach', '-d', is_flag=True, help='Run in background')
@click.option('--pull', is_flag=True, help='Pull images even if present locally')
@click.option('--build', 'rebuild', is_flag=True, help='Rebuild images before starting')
@click.argument('services', nargs=-1)
@click.pass_context
@handle_errors
def up(ctx, detach, pull, rebuild, services):
    """Start services defined in the descriptor."""
    orchestrator = get_orchestrator(ctx)
    try:
        report = orchestrator.up(services or None, pull=pull, build=rebuild)
    except KeyboardInterrupt:
        click.echo("\nInterrupted, stopping services...", err=True)
        orchestrator.down()
        sys.exit(1)

    for name in report.order:
        status = report.statuses[name]
        line = f"{name:20} {status.state.value}"
        if status.error is not None:
            line += f"  {status.error}"
        click.echo(line)

    if not detach:
        click.echo("Running... Press Ctrl+C to stop.")
        try:
            while orchestrator.is_active():
                time.sleep(1)
                orchestrator.save_state()
        except KeyboardInterrupt:
            click.echo("\nStopping services...")
        orchestrator.down()
    if report.exit_code:
        sys.exit(report.exit_code)


@cli.command()
@click.option('--volumes', '-v', is_flag=True, help='Also remove named volumes')
@click.pass_context
@handle_errors
def down(ctx, volumes):
    """Stop all running services and remove the stack's networks."""
    removed = get_orchestrator(ctx).down(remove_volumes=volumes)
    for key in removed:
        click.echo(f"Removed {key.replace(':', ' ', 1)}")
    click.echo("Services stopped.")


@cli.command()
@click.argument('service')
@click.pass_context
@handle_errors
def build(ctx, service):
    """Build the image of a service."""
    image, dependents = get_orchestrator(ctx).build(service)
    click.echo(f"Built {image.reference} ({image.image_id})")
    if dependents:
        click.echo(f"Restart to pick up the new image: {' '.join([service] + dependents)}")


@cli.command()
@click.argument('service')
@click.pass_context
@handle_errors
def pull(ctx, service):
    """Pull the image of a service."""
    image = get_orchestrator(ctx).pull(service)
    click.echo(f"Pulled {image.reference} ({image.image_id})")


@cli.command('exec', context_settings={'ignore_unknown_options': True})
@click.argument('service')
@click.argument('command', nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_context
@handle_errors
def exec_command(ctx, service, command):
    """Run a command as a member of SERVICE's networks."""
    code = get_orchestrator(ctx).exec(service, list(command))
    sys.exit(code)


@cli.command()
@click.pass_context
@handle_errors
def ps(ctx):
    """List service status"""
    rows = get_orchestrator(ctx).ps()
    click.echo(f"{'SERVICE':20} {'STATE':22} {'PID':>8}  PORTS")
    click.echo("-" * 70)
    for row in rows:
        ports = ", ".join(f"{host}->{container}" for container, host in row['ports'].items())
        pid = str(row['pid']) if row['pid'] else "-"
        state = row['state']
        if row['health'] in ('healthy', 'unhealthy'):
            state = f"{state} ({row['health']})"
        click.echo(f"{row['service']:20} {state:22} {pid:>8}  {ports}")


@cli.command()
@click.option('--services', 'list_services', is_flag=True, help='Print service names only')
@click.pass_context
@handle_errors
def config(ctx, list_services):
    """Validate the descriptor and print it with placeholders resolved."""
    stack = get_stack(ctx)
    if list_services:
        for name in stack.services:
            click.echo(name)
        return
    click.echo(ComposeWriter().dump(stack), nl=False)


@cli.command()
@click.option('--follow', is_flag=True, help='Keep printing new lines')
@click.option('--tail', type=int, default=None, help='Number of lines to show from the end')
@click.argument('services', nargs=-1)
@click.pass_context
@handle_errors
def logs(ctx, follow, tail, services):
    """Show service output"""
    stack = get_stack(ctx)
    services = list(services) or list(stack.services)
    aggregator = LogAggregator(ctx.obj['settings'].state_path(stack.base_dir, "logs"))
    for name, line in aggregator.read(services, tail):
        click.echo(f"{name:15} | {line}")
    if follow:
        try:
            aggregator.follow(services, lambda name, line: click.echo(f"{name:15} | {line}"))
        except KeyboardInterrupt:
            click.echo("\nStopped following logs.")


@cli.group()
def volume():
    """Manage volumes."""


def _volume_manager(ctx) -> VolumeManager:
    path = ctx.obj['file']
    base_dir = os.path.dirname(os.path.abspath(path))
    state_dir = ctx.obj['settings'].state_path(base_dir)
    return VolumeManager(state_dir, base_dir)


@volume.command('ls')
@click.pass_context
@handle_errors
def volume_ls(ctx):
    """List volumes."""
    click.echo(f"{'VOLUME':30} {'DRIVER':8} CREATED")
    for info in _volume_manager(ctx).list_volumes():
        click.echo(f"{info.name:30} {info.driver:8} {info.created}")


@volume.command('rm')
@click.argument('names', nargs=-1, required=True)
@click.pass_context
@handle_errors
def volume_rm(ctx, names):
    """Remove volumes."""
    manager = _volume_manager(ctx)
    for name in names:
        if not manager.remove_volume(name):
            raise ProvisioningError("volume", name, "no such volume")
        click.echo(name)


@cli.group()
def image():
    """Manage local images."""


def _image_store(ctx) -> ImageStore:
    path = ctx.obj['file']
    base_dir = os.path.dirname(os.path.abspath(path))
    return ImageStore(ctx.obj['settings'].state_path(base_dir, "images"))


@image.command('ls')
@click.pass_context
@handle_errors
def image_ls(ctx):
    """List local images."""
    click.echo(f"{'IMAGE':40} {'SOURCE':6} ID")
    for img in _image_store(ctx).list_images():
        click.echo(f"{img.reference:40} {img.source:6} {img.image_id[:19]}")


@image.command('rm')
@click.argument('references', nargs=-1, required=True)
@click.pass_context
@handle_errors
def image_rm(ctx, references):
    """Remove local images."""
    store = _image_store(ctx)
    for reference in references:
        if not store.remove(reference):
            raise StackupError(f"no such image: {reference}")
        click.echo(reference)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
