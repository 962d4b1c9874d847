"""
Translates the outcome of a run into operator-visible output and an exit code.
This is the only place where records and errors leave the orchestration core.
"""

from typing import Callable, Union

import click

from proxy_deployment.exceptions import OrchestrationError
from proxy_deployment.records import (
    DeploymentRecord,
    DeploymentStatus,
    UpgradeRecord,
    UpgradeStatus,
)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_FATAL = 2

Echo = Callable[..., None]


def report_error(error: OrchestrationError, echo: Echo = click.echo) -> int:
    """Prints an error to stderr and returns the matching exit code."""
    echo(f"Error: {type(error).__name__}: {error}", err=True)
    if error.fatal:
        echo(
            "This is an internal consistency violation. Do not retry; "
            "inspect the proxy on-chain before doing anything else.",
            err=True,
        )
        return EXIT_FATAL
    return EXIT_FAILURE


def _report_failure(record: Union[DeploymentRecord, UpgradeRecord], echo: Echo) -> int:
    if record.tx_hashes:
        # the chain may already have state from this run
        echo(f"Submitted transactions: {', '.join(record.tx_hashes)}", err=True)
    if record.error is None:
        echo(f"Error: {record!r} failed without a recorded cause.", err=True)
        return EXIT_FAILURE
    return report_error(record.error, echo=echo)


def report(record: Union[DeploymentRecord, UpgradeRecord], echo: Echo = click.echo) -> int:
    """Prints the result of a deployment or upgrade and returns the process exit code."""
    if record.status == DeploymentStatus.DEPLOYED:
        echo(f"{record.contract_name} is deployed at: {record.proxy_address}")
        echo(f"Implementation: {record.implementation_address}", err=True)
        return EXIT_SUCCESS

    if record.status == UpgradeStatus.UPGRADED:
        echo(f"{record.contract_name} is at: {record.proxy_address}")
        echo(
            f"Implementation: {record.previous_implementation_address} -> "
            f"{record.new_implementation_address}",
            err=True,
        )
        return EXIT_SUCCESS

    if record.status in (DeploymentStatus.FAILED, UpgradeStatus.FAILED):
        return _report_failure(record, echo)

    echo(f"Error: {record!r} ended without reaching a terminal state.", err=True)
    return EXIT_FAILURE


def report_validation(record: UpgradeRecord, echo: Echo = click.echo) -> int:
    """Reports an upgrade that was only validated, never submitted."""
    if record.status == UpgradeStatus.FAILED:
        return _report_failure(record, echo)
    echo(
        f"{record.contract_name} is upgrade compatible with the proxy at {record.proxy_address} "
        f"(current implementation {record.previous_implementation_address})."
    )
    return EXIT_SUCCESS
