"""
Command-line interface for the promotion engine
"""
import asyncio
import json
import sys

import click

from core.config import TARGET_ENVIRONMENTS, get_settings
from core.exceptions import PromotionEngineError
from core.logging import get_logger
from deployment.artifact import resolve_artifact_reference
from deployment.models import DeploymentRequest, Environment, RegistryCredential
from deployment.ssh_deployer import SSHDeployer
from promotion.coordinator import build_coordinator

logger = get_logger(__name__)


def _emit(payload, failed: bool) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))
    if failed:
        sys.exit(1)


def _run_stage(operation, *args):
    """Run one coordinator operation and print its stage result."""

    async def run():
        coordinator = build_coordinator(get_settings())
        try:
            return await getattr(coordinator, operation)(*args)
        finally:
            await coordinator.tag_store.close()

    result = asyncio.run(run())
    _emit(result.model_dump(mode="json"), result.failed)


@click.group()
@click.version_option(version=get_settings().app_version)
def cli():
    """Promotion engine - acceptance, QA, sign-off and production deployments"""
    pass


@cli.command()
@click.option("--force", is_flag=True, help="Run even when latest has already been accepted")
def run_acceptance(force: bool):
    """Deploy latest to acceptance and mint the next -rc.N tag on success"""
    _run_stage("run_acceptance", force)


@cli.command()
@click.option("--interval", type=float, default=None, help="Seconds between runs")
@click.option("--iterations", type=int, default=None, help="Stop after this many runs")
def watch_acceptance(interval, iterations):
    """Run acceptance on a fixed schedule until interrupted"""

    async def run():
        coordinator = build_coordinator(get_settings())
        try:
            return await coordinator.watch_acceptance(interval=interval, iterations=iterations)
        finally:
            await coordinator.tag_store.close()

    try:
        results = asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Scheduled acceptance stopped")
        return
    _emit([r.model_dump(mode="json") for r in results], False)


@cli.command()
@click.argument("version")
def run_qa(version: str):
    """Deploy an exact -rc.N tag to QA"""
    _run_stage("run_qa", version)


@cli.command()
@click.argument("version")
@click.option("--result", "decision", type=click.Choice(["pass", "fail"]), required=True, help="QA decision")
def submit_signoff(version: str, decision: str):
    """Record the QA sign-off for an -rc.N tag"""
    _run_stage("submit_signoff", version, decision == "pass")


@cli.command()
@click.argument("version")
def run_production(version: str):
    """Mint vX.Y.Z from a signed-off -rc.N tag and deploy it to production"""
    _run_stage("run_production", version)


@cli.command()
@click.option("--environment", type=click.Choice(list(TARGET_ENVIRONMENTS)), required=True)
@click.option("--image", required=True, help="Artifact reference, optionally wrapped in a JSON array")
@click.option("--version", "version_label", required=True, help="Version label injected as APP_VERSION")
def deploy(environment: str, image: str, version_label: str):
    """Run a single deployment to one environment"""
    settings = get_settings()
    try:
        request = DeploymentRequest(
            environment=Environment(environment),
            artifact_reference=image,
            version_label=version_label,
            host=settings.host_for(environment),
            registry=RegistryCredential(
                registry=settings.registry_host,
                principal=settings.registry_user,
                token=settings.registry_token_value(),
            ),
        )
    except PromotionEngineError as e:
        _emit(e.to_dict(), True)
        return

    outcome = asyncio.run(SSHDeployer(settings).deploy(request))
    _emit(outcome.model_dump(mode="json"), not outcome.success)


@cli.command()
@click.argument("payload")
def resolve_artifact(payload: str):
    """Resolve a raw artifact payload to a registry reference"""
    try:
        reference = resolve_artifact_reference(payload)
    except PromotionEngineError as e:
        _emit(e.to_dict(), True)
        return
    click.echo(reference)


@cli.command()
def env_info():
    """Display the effective configuration with secrets masked"""
    settings = get_settings()
    click.echo(f"{settings.app_name} v{settings.app_version}")
    click.echo(json.dumps(settings.model_dump(mode="json"), indent=2, default=str))


def main():
    """Main entry point"""
    cli()


if __name__ == "__main__":
    main()
