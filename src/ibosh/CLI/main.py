"""
Command Line Interface for ibosh.
"""
import logging
import os

import click

from ..CPI.base import CPI, ImageManaged
from ..CPI.detect import CPIType, detect_cpi_type
from ..CPI.docker_cpi import DockerCPI
from ..CPI.incus_cpi import IncusCPI
from ..errors import IBoshError, OperationCancelled
from ..LOGS.parser import extract_components
from ..LOGS.writer import LogWriter
from ..MANAGERS.director import BoshCliDirector, load_director_connection
from ..MANAGERS.lifecycle import LifecycleReconciler, StartOptions
from ..MANAGERS.ui import ClickUI
from ..MODELS.container import ContainerState
from ..MODELS.settings import Settings
from ..REGISTRY.image_resolver import ImageResolver
from ..UTILS.cancel import CancelToken
from ..UTILS.logger import setup_logging

logger = logging.getLogger(__name__)


def build_cpi(cpi_type: str, settings: Settings, image: str = None) -> CPI:
    """
    Create the backend named by ``cpi_type`` from settings.
    """
    image = image or settings.image
    if cpi_type == "incus":
        return IncusCPI(
            image=image,
            remote=settings.incus_remote,
            project=settings.incus_project,
            network=settings.incus_network,
            storage_pool=settings.incus_storage_pool,
        )
    return DockerCPI(image=image)


def resolve_cpi_type(cpi_type: str = None) -> str:
    """
    Pick the backend when --cpi is not given.

    A director already targeted through BOSH_ENVIRONMENT is asked which CPI
    it runs; otherwise, or if it cannot answer, docker is used.
    """
    if cpi_type:
        return cpi_type
    if os.environ.get("BOSH_ENVIRONMENT"):
        try:
            return detect_cpi_type(os.environ).value
        except IBoshError as e:
            logger.debug(f"CPI detection failed, using docker: {e}")
    return CPIType.DOCKER.value


def _fail(e: Exception):
    raise click.ClickException(str(e)) from e


@click.group()
@click.option('--log-level', default=None,
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
              help='Log level (overrides IBOSH_LOG_LEVEL)')
@click.option('--env-file', default=None, help='Path to a .env file with IBOSH_* settings')
@click.option('--cpi', 'cpi_type', type=click.Choice(['docker', 'incus']), default=None,
              envvar='IBOSH_CPI',
              help='Container backend (default: detected from the targeted director, else docker)')
@click.pass_context
def cli(ctx, log_level, env_file, cpi_type):
    """
    ibosh - run a BOSH director in a single container.
    """
    ctx.ensure_object(dict)
    try:
        settings = Settings.load(env_file=env_file, log_level=log_level)
    except IBoshError as e:
        _fail(e)
    setup_logging(settings.log_level)
    ctx.obj['settings'] = settings
    ctx.obj['cpi_type'] = resolve_cpi_type(cpi_type)
    ctx.obj.setdefault('cpi_factory', build_cpi)


def _cpi(ctx, image: str = None) -> CPI:
    return ctx.obj['cpi_factory'](ctx.obj['cpi_type'], ctx.obj['settings'], image)


@cli.command()
@click.option('--skip-update', is_flag=True, help='Do not check the registry for a newer image')
@click.option('--skip-stemcell-upload', is_flag=True, help='Do not upload stemcells after start')
@click.option('--image', default=None, help='Use a custom director image')
@click.option('--yes', '-y', is_flag=True, help='Accept upgrades without asking')
@click.pass_context
def start(ctx, skip_update, skip_stemcell_upload, image, yes):
    """Start instant-bosh and wait for the director."""
    settings = ctx.obj['settings']
    options = StartOptions(
        skip_update=skip_update or settings.skip_update,
        skip_stemcell_upload=skip_stemcell_upload or settings.skip_stemcell_upload,
        custom_image=image or "",
    )
    ui = ClickUI(assume_yes=yes)
    token = CancelToken()
    try:
        with _cpi(ctx, image) as cpi:
            reconciler = LifecycleReconciler(
                cpi, ui,
                resolver=ctx.obj.get('resolver') or ImageResolver(),
                director_factory=ctx.obj.get('director_factory', BoshCliDirector),
                settings=settings,
                options=options,
                colorize=ui.colorize,
            )
            reconciler.start(token)
    except KeyboardInterrupt:
        token.cancel()
        click.echo("\nInterrupted.", err=True)
        ctx.exit(130)
    except OperationCancelled:
        ctx.exit(130)
    except IBoshError as e:
        _fail(e)


@cli.command()
@click.pass_context
def stop(ctx):
    """Stop the instant-bosh container."""
    try:
        with _cpi(ctx) as cpi:
            if not cpi.is_running():
                click.echo("instant-bosh is not running")
                return
            click.echo("Stopping instant-bosh...")
            cpi.stop()
            click.echo("instant-bosh stopped")
    except IBoshError as e:
        _fail(e)


@cli.command()
@click.option('--force', '-f', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def destroy(ctx, force):
    """Remove the container, its volumes and its network."""
    if not force:
        click.confirm("This will delete the director and all of its data. Continue?", abort=True)
    try:
        with _cpi(ctx) as cpi:
            if not cpi.resources_exist():
                click.echo("Nothing to destroy")
                return
            click.echo("Destroying instant-bosh...")
            cpi.destroy()
            click.echo("instant-bosh destroyed")
    except IBoshError as e:
        _fail(e)


@cli.command()
@click.pass_context
def status(ctx):
    """Show the container state"""
    try:
        with _cpi(ctx) as cpi:
            state = cpi.observe_state()
            click.echo(f"{'CONTAINER':15} {'STATE':10}")
            click.echo("-" * 26)
            click.echo(f"{cpi.container_name:15} {state.value:10}")
            if state != ContainerState.RUNNING:
                return

            image = cpi.get_current_image_info()
            click.echo(f"\nImage: {image.ref}")
            if image.digest:
                click.echo(f"Digest: {image.digest}")

            others = [c for c in cpi.get_containers_on_network() if c.name != cpi.container_name]
            if others:
                click.echo("\nContainers on network:")
                for info in others:
                    created = info.created.strftime("%Y-%m-%d %H:%M:%S") if info.created else "-"
                    click.echo(f"  {info.name:30} {created}")
    except IBoshError as e:
        _fail(e)


@cli.command()
@click.option('--follow', '-f', is_flag=True, help='Follow log output')
@click.option('--tail', '-n', default='all', help='Number of lines to show from the end')
@click.option('--component', '-c', 'components', multiple=True, help='Only show these components')
@click.option('--list-components', is_flag=True, help='List components found in the logs')
@click.option('--no-color', is_flag=True, help='Disable colored output')
@click.pass_context
def logs(ctx, follow, tail, components, list_components, no_color):
    """Show director container logs"""
    if tail != 'all' and not tail.isdigit():
        raise click.BadParameter("must be 'all' or a number", param_hint='--tail')
    tail = tail if tail == 'all' else int(tail)

    token = CancelToken()
    try:
        with _cpi(ctx) as cpi:
            if list_components:
                for component in extract_components(cpi.get_logs('all', token)):
                    click.echo(component)
                return

            writer = LogWriter(
                click.get_text_stream('stdout'),
                colorize=not no_color,
                components=list(components),
            )
            if follow:
                cpi.follow_logs(writer, writer, token, follow=True, tail=tail)
            else:
                writer.write(cpi.get_logs(tail, token))
            writer.flush()
    except (KeyboardInterrupt, OperationCancelled):
        token.cancel()
    except IBoshError as e:
        _fail(e)


@cli.command('print-env')
@click.pass_context
def print_env(ctx):
    """Print shell exports for the bosh CLI"""
    try:
        with _cpi(ctx) as cpi:
            connection = load_director_connection(cpi, keep_key=True)
            for line in connection.export_lines():
                click.echo(line)
    except IBoshError as e:
        _fail(e)


@cli.command()
@click.option('--image', default=None, help='Image to pull instead of the configured one')
@click.pass_context
def pull(ctx, image):
    """Pull the director image (docker only)."""
    try:
        with _cpi(ctx, image) as cpi:
            if not isinstance(cpi, ImageManaged):
                raise click.UsageError(f"pull is not supported by the {ctx.obj['cpi_type']} backend")
            click.echo(f"Pulling {cpi.target_image_ref}...")
            cpi.pull_image()
            click.echo("Done.")
    except IBoshError as e:
        _fail(e)


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
