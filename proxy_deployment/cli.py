"""
proxy-deploy: deploy and upgrade contracts behind transparent proxies.

    proxy-deploy deploy local Marketplace --params proxy_deployment/params/marketplace.yml
    proxy-deploy upgrade moonrabbit 0x... MarketplaceV2
"""

import logging
from urllib.parse import urlparse

import click
from dotenv import load_dotenv

from proxy_deployment import deployer, upgrader
from proxy_deployment.artifacts import ArtifactStore
from proxy_deployment.exceptions import OrchestrationError
from proxy_deployment.gateway import Web3Gateway
from proxy_deployment.networks import NetworkRegistry, is_valid_credential
from proxy_deployment.options import (
    account_index_option,
    artifacts_dir_option,
    autosign_option,
    initializer_option,
    networks_file_option,
    params_file_option,
    reference_contract_option,
    verbose_option,
)
from proxy_deployment.params import InitializerParameters
from proxy_deployment.reporter import report, report_error, report_validation

LOG_FORMAT = "%(message)s"


class EchoHandler(logging.Handler):
    """Sends log records to stderr through click so they honour redirection."""

    def emit(self, record):
        click.echo(self.format(record), err=True)


def _configure_logging(verbose: bool) -> None:
    package_logger = logging.getLogger("proxy_deployment")
    if not any(isinstance(h, EchoHandler) for h in package_logger.handlers):
        handler = EchoHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG if verbose else logging.INFO)


def _load_registry(ctx: click.Context) -> NetworkRegistry:
    try:
        return NetworkRegistry.from_yaml(ctx.obj["networks_file"], environ=ctx.obj.get("environ"))
    except OrchestrationError as e:
        ctx.exit(report_error(e))


@click.group()
@networks_file_option
@artifacts_dir_option
@verbose_option
@click.pass_context
def cli(ctx, networks_file, artifacts_dir, verbose):
    """Deploy and upgrade proxied contracts."""
    load_dotenv()
    _configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj.setdefault("connect", Web3Gateway.from_profile)
    ctx.obj["networks_file"] = networks_file
    ctx.obj["artifacts"] = ArtifactStore(artifacts_dir)


@cli.command("deploy")
@click.argument("network")
@click.argument("contract")
@click.argument("init_args", nargs=-1)
@initializer_option
@params_file_option
@account_index_option
@autosign_option
@click.pass_context
def deploy_command(
    ctx, network, contract, init_args, initializer, params_file, account_index, autosign
):
    """Deploy CONTRACT behind a new proxy on NETWORK."""
    if params_file and init_args:
        raise click.UsageError("Pass initializer arguments either inline or with --params.")

    registry = _load_registry(ctx)
    args = list(init_args)
    if params_file:
        try:
            call = InitializerParameters.from_yaml(params_file).for_contract(contract)
        except OrchestrationError as e:
            ctx.exit(report_error(e))
        initializer = initializer or call.method
        args = call.args

    record = deployer.deploy(
        registry,
        network,
        contract,
        init_args=args,
        artifacts=ctx.obj["artifacts"],
        connect=ctx.obj["connect"],
        account_index=account_index,
        initializer=initializer,
        autosign=autosign,
    )
    ctx.exit(report(record))


@cli.command("upgrade")
@click.argument("network")
@click.argument("proxy_address")
@click.argument("contract")
@click.argument("call_args", nargs=-1)
@click.option("--call", "call_method", help="Method of the new implementation to call on upgrade.")
@reference_contract_option
@account_index_option
@autosign_option
@click.pass_context
def upgrade_command(
    ctx,
    network,
    proxy_address,
    contract,
    call_args,
    call_method,
    reference_contract,
    account_index,
    autosign,
):
    """Upgrade the proxy at PROXY_ADDRESS on NETWORK to CONTRACT."""
    registry = _load_registry(ctx)
    record = upgrader.upgrade(
        registry,
        network,
        proxy_address,
        contract,
        artifacts=ctx.obj["artifacts"],
        connect=ctx.obj["connect"],
        account_index=account_index,
        reference_contract=reference_contract,
        call=call_method,
        call_args=call_args,
        autosign=autosign,
    )
    ctx.exit(report(record))


@cli.command("validate")
@click.argument("network")
@click.argument("proxy_address")
@click.argument("contract")
@reference_contract_option
@account_index_option
@click.pass_context
def validate_command(ctx, network, proxy_address, contract, reference_contract, account_index):
    """Check that CONTRACT can replace the implementation behind PROXY_ADDRESS."""
    registry = _load_registry(ctx)
    record = upgrader.validate_upgrade(
        registry,
        network,
        proxy_address,
        contract,
        artifacts=ctx.obj["artifacts"],
        connect=ctx.obj["connect"],
        account_index=account_index,
        reference_contract=reference_contract,
    )
    ctx.exit(report_validation(record))


@cli.command("networks")
@click.pass_context
def networks_command(ctx):
    """List the configured networks."""
    registry = _load_registry(ctx)
    for profile in registry:
        usable = bool(profile.credentials) and all(
            is_valid_credential(c) for c in profile.credentials
        )
        default = " (default)" if profile.name == registry.default_network else ""
        click.secho(f"{profile.name}{default}", fg="green" if usable else "yellow")
        click.echo(f"\tchain_id: {profile.chain_id}")
        click.echo(f"\trpc host: {urlparse(profile.rpc_url).netloc}")
        if usable:
            click.echo(f"\taccounts: {len(profile.credentials)}")
        else:
            sources = ", ".join(profile.credential_sources) or "none"
            click.echo(f"\taccounts: missing ({sources})")


if __name__ == "__main__":
    cli()
