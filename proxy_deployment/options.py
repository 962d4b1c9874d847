from pathlib import Path

import click

from proxy_deployment.constants import ARTIFACTS_DIR, NETWORKS_FILEPATH
from proxy_deployment.types import MinInt

networks_file_option = click.option(
    "--networks-file",
    "-n",
    help="YAML file with network definitions.",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=NETWORKS_FILEPATH,
    show_default=True,
)

artifacts_dir_option = click.option(
    "--artifacts-dir",
    help="Directory containing compiled contract artifacts.",
    type=click.Path(file_okay=False, path_type=Path),
    default=ARTIFACTS_DIR,
    show_default=True,
)

verbose_option = click.option(
    "--verbose", "-v", help="Show debug output.", is_flag=True, default=False
)

account_index_option = click.option(
    "--account-index",
    "-i",
    help="Index of the network credential to sign with.",
    type=MinInt(0),
    default=0,
    show_default=True,
)

autosign_option = click.option(
    "--autosign",
    "-y",
    help="Submit transactions without asking for confirmation.",
    is_flag=True,
    default=False,
)

params_file_option = click.option(
    "--params",
    "params_file",
    help="YAML file with initializer parameters per contract.",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
)

initializer_option = click.option(
    "--initializer",
    help="Name of the initializer function called through the proxy.",
    default=None,
)

reference_contract_option = click.option(
    "--reference-contract",
    "-r",
    help="Contract the current implementation was compiled from, if it cannot be detected.",
    default=None,
)
