"""CLI main entry point."""

import click

from .commands import credentials, deploy, list_phases
from .config import load_config
from .errors import FatalError
from .shared.logging import configure_logging, get_logger
from .shared.paths import DeployPaths

logger = get_logger(__name__)

VERBOSITY_LEVELS = {1: "info", 2: "debug"}


class DeployGroup(click.Group):
    """Command group that turns FatalError and Ctrl-C into exit codes."""

    def invoke(self, ctx: click.Context):
        try:
            return super().invoke(ctx)
        except FatalError as e:
            logger.error("deployment aborted", error=e.message)
            click.echo(f"✗ {e.message}", err=True)
            if e.remediation:
                click.echo(f"  → {e.remediation}", err=True)
            raise click.exceptions.Exit(1) from e
        except KeyboardInterrupt:
            click.echo("\nInterrupted. Resume with: platform-deploy deploy --from <phase>", err=True)
            raise click.exceptions.Exit(130) from None


@click.group(cls=DeployGroup)
@click.option("-c", "--config", type=click.Path(), help="Config file path")
@click.option("-v", "--verbose", count=True, help="Increase verbosity")
@click.option("--log-json", is_flag=True, help="Log as JSON lines")
@click.pass_context
def cli(ctx: click.Context, config: str, verbose: int, log_json: bool) -> None:
    """Phased, resumable platform deployment."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose

    deploy_config = load_config(config)
    paths = DeployPaths.from_root(deploy_config.root)
    paths.ensure_dirs()
    level = VERBOSITY_LEVELS.get(min(verbose, 2), deploy_config.log_level)
    configure_logging(level, log_file=paths.log_file, json_output=log_json)

    ctx.obj["config"] = deploy_config
    ctx.obj["paths"] = paths


cli.add_command(deploy)
cli.add_command(list_phases)
cli.add_command(credentials)


@cli.command()
def version() -> None:
    """Show version information."""
    from . import __version__

    click.echo(f"platform-deploy version {__version__}")


def main() -> None:
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
