"""Deploy, phase listing and credential commands.

    platform-deploy deploy                      # full run, phases 0..9
    platform-deploy deploy --from 3             # resume at phase 3
    platform-deploy deploy --skip-provisioning  # existing cluster, phases 1..9
    platform-deploy deploy --from 2 --to 2      # one phase only
"""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

from ..config import DeployConfig, load_config
from ..credentials import CredentialEngine, CredentialSet
from ..gateway.process import CommandRunner
from ..gateway.terraform import ProvisioningTool
from ..phases import PHASES, PhaseRunner, RunContext
from ..shared.paths import DeployPaths
from ..substitution import find_unreplaced


def _git_remote(paths: DeployPaths):
    def lookup() -> str | None:
        result = CommandRunner(cwd=paths.root).run(["git", "remote", "get-url", "origin"],
                                                    timeout=10)
        if not result.ok:
            return None
        return result.stdout.strip() or None

    return lookup


def resolve_credentials(paths: DeployPaths) -> CredentialSet:
    """Load or generate the credential store for a checkout."""
    terraform = ProvisioningTool(paths.cluster_dir)
    engine = CredentialEngine(paths.env_file, tfvar=terraform.tfvar,
                              git_remote=_git_remote(paths))
    return engine.resolve()


def _config(ctx: click.Context) -> tuple[DeployConfig, DeployPaths]:
    config = ctx.obj.get("config") or load_config(ctx.obj.get("config_path"))
    paths = ctx.obj.get("paths") or DeployPaths.from_root(config.root)
    return config, paths


@click.command()
@click.option("--from", "start_phase", type=int, default=0, show_default=True,
              help="Resume at this phase")
@click.option("--to", "stop_phase", type=int, default=None,
              help="Stop after this phase")
@click.option("--skip-provisioning", is_flag=True,
              help="Use an existing cluster (skips phase 0)")
@click.pass_context
def deploy(ctx: click.Context, start_phase: int, stop_phase: int | None,
           skip_provisioning: bool) -> None:
    """Deploy the platform, phase by phase.

    Every phase can be re-run: steps check the cluster before they change it.
    Resuming (--from N with N > 0, or --skip-provisioning) needs the kubeconfig
    written by phase 0.
    """
    config, paths = _config(ctx)
    paths.ensure_dirs()
    credentials = resolve_credentials(paths)
    context = RunContext.build(config, paths, credentials)

    runner = PhaseRunner(PHASES, context)
    try:
        run = runner.run(start_phase=start_phase, skip_provisioning=skip_provisioning,
                         stop_phase=stop_phase)
    except KeyboardInterrupt:
        resume_at = runner.current_phase if runner.current_phase is not None else start_phase
        click.echo(f"\nInterrupted. Resume with: platform-deploy deploy --from {resume_at}", err=True)
        ctx.exit(130)
    click.echo(f"✓ Deployment complete ({len(run.timings)} phase(s) run)")


@click.command("phases")
def list_phases() -> None:
    """List the deployment phases and their steps."""
    table = Table(title="Deployment phases")
    table.add_column("#", justify="right")
    table.add_column("Name")
    table.add_column("Steps (F = aborts on failure)", overflow="fold")
    for phase in PHASES:
        steps = ", ".join(
            f"{s.name} ({s.policy.value[0].upper()})" for s in phase.steps
        )
        table.add_row(str(phase.ordinal), phase.name, steps)
    Console().print(table)


@click.group()
def credentials() -> None:
    """Inspect the credential store."""
    pass


@credentials.command("check")
@click.pass_context
def credentials_check(ctx: click.Context) -> None:
    """Resolve credentials and report placeholders no value will replace."""
    _, paths = _config(ctx)
    paths.ensure_dirs()
    resolved = resolve_credentials(paths)
    click.echo(f"✓ {len(resolved)} credential(s) resolved ({paths.env_file})")
    click.echo(f"  DOMAIN={resolved.domain}  AIRGAPPED={str(resolved.airgapped).lower()}")

    if not paths.services_dir.exists():
        click.echo(f"⚠ {paths.services_dir} not found; manifest scan skipped")
        return

    unreplaced = find_unreplaced(paths.services_dir)
    if not unreplaced:
        click.echo("✓ Every placeholder in services/ has a value")
        return

    click.echo(f"✗ {len(unreplaced)} placeholder(s) have no value:")
    for path, line, token in unreplaced:
        click.echo(f"  {path.relative_to(paths.root)}:{line}  {token}")
    ctx.exit(1)
