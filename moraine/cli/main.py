"""
Moraine CLI - deploy, destroy and bootstrap a multi-region stack plan.
"""

import json
import logging
import os
import sys
from pathlib import Path

import click
from pydantic import ValidationError

from moraine import __version__
from moraine.config import DeploymentConfig
from moraine.core import DeployLedger, DeploymentPlan, load_plan_file, standard_plan
from moraine.errors import ConfigurationError, MoraineError
from moraine.operations import (
    BuildRunner,
    DeploymentOrchestrator,
    DeploymentReport,
    PlanStatus,
    RegionBootstrapper,
    TeardownCoordinator,
    TeardownReport,
)
from moraine.providers import AWSProvider, Provider


def create_provider(config: DeploymentConfig) -> Provider:
    """Provider used by every command."""
    return AWSProvider(config)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    if not verbose:
        for noisy in ("botocore", "boto3", "urllib3"):
            logging.getLogger(noisy).setLevel(logging.WARNING)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--plan",
    "plan_file",
    type=click.Path(exists=True, dir_okay=False),
    help="YAML plan file (default: the standard certificate/backend/frontend plan)",
)
@click.option("--account", help="Target account ID [env: MORAINE_ACCOUNT, CDK_DEFAULT_ACCOUNT]")
@click.option("--region", help="Default region [env: MORAINE_REGION, CDK_DEFAULT_REGION, AWS_REGION]")
@click.option("--domain", help="Domain root used to derive resource names [env: DOMAIN_NAME]")
@click.option("--service", help="Service naming root [env: MORAINE_SERVICE]")
@click.option("--profile", help="Credential profile [env: AWS_PROFILE]")
@click.option("--state-file", type=click.Path(dir_okay=False), help="Deploy ledger location")
@click.option("--template-dir", type=click.Path(file_okay=False), help="Directory of synthesized templates")
@click.option("--min-bootstrap-version", type=int, help="Re-bootstrap regions older than this version")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug output")
@click.pass_context
def cli(ctx, plan_file, account, region, domain, service, profile, state_file, template_dir,
        min_bootstrap_version, verbose):
    """
    Moraine - deploy a small set of interdependent stacks across regions.

    Stacks are deployed in dependency order, with each stack's outputs fed
    into the stacks that need them, and destroyed in reverse.
    """
    _configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["plan_file"] = plan_file
    ctx.obj["verbose"] = verbose
    ctx.obj["overrides"] = {
        "account_id": account,
        "default_region": region,
        "domain_root": domain,
        "service_name": service,
        "profile": profile,
        "state_file": Path(state_file) if state_file else None,
        "template_dir": Path(template_dir) if template_dir else None,
        "min_bootstrap_version": min_bootstrap_version,
    }


def _load(ctx: click.Context) -> tuple[DeploymentConfig, DeploymentPlan]:
    """Read the plan and the configuration, CLI options over environment."""
    plan_file = ctx.obj["plan_file"]
    descriptors = load_plan_file(plan_file) if plan_file else standard_plan()
    secret_names = sorted({name for d in descriptors for name in d.secrets.values()})

    try:
        config = DeploymentConfig.from_env(os.environ, secret_names=secret_names, **ctx.obj["overrides"])
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}", step="configure") from e

    return config, DeploymentPlan(descriptors, config)


def _fail(ctx: click.Context, message: str, error: Exception) -> None:
    click.echo(f"✗ {message}: {error}", err=True)
    if ctx.obj.get("verbose") and not isinstance(error, MoraineError):
        import traceback

        traceback.print_exc()
    sys.exit(1)


@cli.command()
@click.option(
    "--build-dir",
    type=click.Path(file_okay=False),
    default=".",
    show_default=True,
    help="Directory build steps run relative to",
)
@click.pass_context
def deploy(ctx, build_dir: str):
    """
    Deploy every stack in the plan.

    Regions are bootstrapped first; a stack whose producer failed is
    skipped, other stacks are still attempted.

    Example:
        moraine --domain example.com deploy
        moraine --plan stacks.yaml --region eu-west-1 deploy
    """
    try:
        config, plan = _load(ctx)
        provider = create_provider(config)
        ledger = DeployLedger.load(config.state_file)
        orchestrator = DeploymentOrchestrator.from_provider(
            plan, provider, builder=BuildRunner(build_dir), ledger=ledger
        )
        report = orchestrator.run()
    except MoraineError as e:
        _fail(ctx, "Deployment aborted", e)
    except Exception as e:
        _fail(ctx, "Deployment failed unexpectedly", e)

    _print_deploy_report(report)
    if report.status is not PlanStatus.COMPLETE:
        sys.exit(1)


@cli.command()
@click.option("--force", is_flag=True, help="Recover stacks stuck in DeleteFailed")
@click.pass_context
def destroy(ctx, force: bool):
    """
    Destroy every stack in the plan, consumers first.

    Storage owned by a stack is emptied before the stack is deleted.

    Example:
        moraine destroy
        moraine destroy --force
    """
    try:
        config, plan = _load(ctx)
        config.require()
        provider = create_provider(config)
        provider.verify_credentials()
        ledger = DeployLedger.load(config.state_file)
        coordinator = TeardownCoordinator.from_provider(plan, provider, ledger=ledger, force=force)
        report = coordinator.run()
    except MoraineError as e:
        _fail(ctx, "Teardown aborted", e)
    except Exception as e:
        _fail(ctx, "Teardown failed unexpectedly", e)

    _print_teardown_report(report)
    if not report.complete:
        sys.exit(1)


@cli.command()
@click.pass_context
def bootstrap(ctx):
    """
    Bootstrap every region the plan touches.

    Example:
        moraine --account 123456789012 --region ca-central-1 bootstrap
    """
    try:
        config, plan = _load(ctx)
        config.require()
        provider = create_provider(config)
        provider.verify_credentials()
        bootstrapper = RegionBootstrapper(provider.platform, provider.toolkit, config)
        records = bootstrapper.ensure_all(config.account_id, plan.regions())
    except MoraineError as e:
        _fail(ctx, "Bootstrap failed", e)
    except Exception as e:
        _fail(ctx, "Bootstrap failed unexpectedly", e)

    for record in records:
        action = "bootstrapped" if record.created else "already bootstrapped"
        version = f" (version {record.version})" if record.version is not None else ""
        click.echo(f"✓ aws://{record.account}/{record.region} {action}{version}")


@cli.command(name="plan")
@click.option("--format", type=click.Choice(["text", "json"]), default="text")
@click.pass_context
def plan_command(ctx, format: str):
    """
    Show the plan's stacks, dependencies and deploy order.

    Nothing is deployed and no cloud call is made.

    Example:
        moraine --region ca-central-1 --domain example.com plan
        moraine --plan stacks.yaml plan --format json
    """
    try:
        _, plan = _load(ctx)
    except MoraineError as e:
        _fail(ctx, "Invalid plan", e)

    summary = plan.describe()
    if format == "json":
        click.echo(json.dumps(summary, indent=2))
        return

    click.echo(f"\n Plan: {len(plan)} stack(s) in {', '.join(summary['regions'])}")
    click.echo(f"{'=' * 50}")

    click.echo("\n Stacks:")
    for stack in summary["stacks"]:
        depends = f" <- {', '.join(stack['depends_on'])}" if stack["depends_on"] else ""
        click.echo(f"  - {stack['name']} [{stack['region']}]{depends}")

    if summary["edges"]:
        click.echo("\n Wiring:")
        for edge in summary["edges"]:
            click.echo(f"  - {edge}")

    click.echo("\n Deploy Order:")
    for i, name in enumerate(summary["order"], 1):
        click.echo(f"  {i}. {name}")


def _print_deploy_report(report: DeploymentReport) -> None:
    click.echo(f"\n Deployment: {report.status.value}")
    click.echo(f"{'=' * 50}")

    if report.error is not None:
        click.echo(f"✗ {report.error}", err=True)

    for name in report.order:
        result = report.results.get(name)
        if result is None:
            continue
        if result.succeeded:
            note = " (unchanged)" if result.unchanged else ""
            click.echo(f"✓ {name} [{result.region}]{note}")
            for key, value in result.outputs.items():
                click.echo(f"    {key}: {value}")
        elif result.skipped:
            click.echo(f"- {name} skipped: {result.skipped_because}")
        else:
            click.echo(f"✗ {name} failed at step '{result.step}': {result.error.message}", err=True)


def _print_teardown_report(report: TeardownReport) -> None:
    click.echo(f"\n Teardown: {'complete' if report.complete else 'incomplete'}")
    click.echo(f"{'=' * 50}")

    for name in report.order:
        result = report.results[name]
        if result.succeeded:
            extras = []
            if result.drained:
                extras.append(f"drained {', '.join(result.drained)}")
            if result.forced:
                extras.append("forced")
            note = f" ({'; '.join(extras)})" if extras else ""
            click.echo(f"✓ {name} destroyed{note}")
        elif result.skipped_because:
            click.echo(f"- {name} kept: {result.skipped_because}")
        else:
            hint = " (a manual pass is needed)" if result.needs_manual_pass else ""
            click.echo(f"✗ {name} is {result.status.value}: {result.error}{hint}", err=True)


if __name__ == "__main__":
    cli()
