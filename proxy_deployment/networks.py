"""
Network registry: resolves a symbolic network name to connection parameters
and the signing credentials authorized for it.

Secrets are never read from ambient globals by the orchestrators. The registry
is constructed once from static definitions plus an environment mapping, and
passed explicitly to whoever needs it.
"""

import logging
import os
import string
import typing
from collections import OrderedDict, defaultdict
from pathlib import Path
from types import MappingProxyType
from typing import Iterator, List, NamedTuple, Optional, Tuple
from urllib.parse import urlparse

import yaml
from eth_account import Account
from eth_utils import is_hex, remove_0x_prefix, to_hex

from proxy_deployment.constants import (
    DEFAULT_CONFIRMATIONS,
    DEFAULT_DEV_ACCOUNTS,
    DEFAULT_TIMEOUT_MS,
    DEV_ACCOUNT_PATH,
    LOCAL_HOSTS,
    LOCAL_NETWORKS,
    NETWORKS_FILEPATH,
)
from proxy_deployment.exceptions import InvalidNetworkConfig, MissingCredentials, UnknownNetwork
from proxy_deployment.utils import _load_yaml

logger = logging.getLogger(__name__)

VARIABLE_PREFIX = "$"
PRIVATE_KEY_LENGTH = 64

Account.enable_unaudited_hdwallet_features()


class NetworkProfile(NamedTuple):
    """Connection parameters and credentials for one network."""

    name: str
    rpc_url: str
    chain_id: int
    credentials: Tuple[str, ...]
    gas_limit: Optional[int] = None
    timeout_ms: Optional[int] = None
    confirmations: int = DEFAULT_CONFIRMATIONS
    credential_sources: Tuple[str, ...] = ()

    def __repr__(self) -> str:
        # never leak secrets in logs or tracebacks
        return (
            f"NetworkProfile(name={self.name!r}, rpc_url={self.rpc_url!r}, "
            f"chain_id={self.chain_id}, credentials=<{len(self.credentials)} hidden>)"
        )

    @property
    def timeout(self) -> float:
        """Confirmation timeout in seconds."""
        timeout_ms = self.timeout_ms if self.timeout_ms is not None else DEFAULT_TIMEOUT_MS
        return timeout_ms / 1000

    def describe_source(self, index: int) -> str:
        if index < len(self.credential_sources):
            return self.credential_sources[index]
        return f"credential #{index}"


def is_local_network(profile: NetworkProfile) -> bool:
    """Returns True if the profile points at a local development chain."""
    if profile.name in LOCAL_NETWORKS:
        return True
    return urlparse(profile.rpc_url).hostname in LOCAL_HOSTS


def is_valid_credential(credential: str) -> bool:
    """Returns True if the credential looks like a usable 32-byte private key."""
    if not isinstance(credential, str):
        return False
    credential = credential.strip()
    if not credential or not is_hex(credential):
        return False
    key = remove_0x_prefix(credential)
    return len(key) == PRIVATE_KEY_LENGTH and int(key, 16) != 0


def validate_credentials(profile: NetworkProfile) -> None:
    """Rejects empty or placeholder credentials before any network interaction."""
    if not profile.credentials:
        sources = ", ".join(profile.credential_sources) or "none configured"
        raise MissingCredentials(
            f"No signing credentials for network '{profile.name}' ({sources})."
        )
    for index, credential in enumerate(profile.credentials):
        if not is_valid_credential(credential):
            raise MissingCredentials(
                f"Credential {profile.describe_source(index)} for network '{profile.name}' "
                "is empty or not a valid private key. Is the environment variable set?"
            )


#
# Configuration
#


def _resolve_variable(value: typing.Any, environ: typing.Mapping[str, str]) -> typing.Any:
    """Resolves a '$NAME' value from the environment; unset variables become ''."""
    if isinstance(value, str) and value.startswith(VARIABLE_PREFIX):
        return environ.get(value[len(VARIABLE_PREFIX) :], "")
    return value


def _interpolate(value: str, environ: typing.Mapping[str, str]) -> str:
    """Substitutes '${NAME}' references inside a string."""
    return string.Template(value).safe_substitute(defaultdict(str, environ))


def _derive_keys(network_name: str, mnemonic: str, count: int, passphrase: str = "") -> List[str]:
    keys = list()
    for index in range(count):
        path = DEV_ACCOUNT_PATH.format(index)
        try:
            account = Account.from_mnemonic(mnemonic, passphrase=passphrase, account_path=path)
        except Exception as e:
            raise InvalidNetworkConfig(
                f"Could not derive accounts for network '{network_name}' from mnemonic."
            ) from e
        keys.append(to_hex(account.key))
    return keys


def _process_accounts(
    network_name: str, accounts: typing.Any, environ: typing.Mapping[str, str]
) -> Tuple[Tuple[str, ...], Tuple[str, ...]]:
    """Returns the credentials and a description of where each one came from."""
    if accounts is None:
        return (), ()

    if isinstance(accounts, list):
        credentials, sources = list(), list()
        for index, value in enumerate(accounts):
            credentials.append(_resolve_variable(value, environ))
            if isinstance(value, str) and value.startswith(VARIABLE_PREFIX):
                sources.append(value)
            else:
                sources.append(f"accounts[{index}]")
        return tuple(credentials), tuple(sources)

    if isinstance(accounts, dict) and "mnemonic" in accounts:
        raw_mnemonic = accounts["mnemonic"]
        mnemonic = _resolve_variable(raw_mnemonic, environ)
        source = raw_mnemonic if str(raw_mnemonic).startswith(VARIABLE_PREFIX) else "mnemonic"
        if not mnemonic or not mnemonic.strip():
            # left empty on purpose; resolve() reports it as missing
            return (), (source,)
        count = int(accounts.get("count", DEFAULT_DEV_ACCOUNTS))
        passphrase = _resolve_variable(accounts.get("passphrase", ""), environ)
        keys = _derive_keys(network_name, mnemonic.strip(), count, passphrase)
        sources = tuple(f"{source}[{index}]" for index in range(count))
        return tuple(keys), sources

    raise InvalidNetworkConfig(
        f"Malformed 'accounts' for network '{network_name}': "
        "expected a list of keys or a mapping with a 'mnemonic'."
    )


def _optional_int(network_name: str, data: dict, key: str) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidNetworkConfig(f"'{key}' for network '{network_name}' must be an integer.")


def profile_from_config(
    name: str, data: dict, environ: typing.Mapping[str, str]
) -> NetworkProfile:
    """Builds a single network profile from its configuration entry."""
    if not isinstance(data, dict):
        raise InvalidNetworkConfig(f"Malformed configuration for network '{name}'.")

    rpc_url = data.get("rpc_url")
    if not rpc_url:
        raise InvalidNetworkConfig(f"rpc_url is not set for network '{name}'.")

    chain_id = _optional_int(name, data, "chain_id")
    if chain_id is None:
        raise InvalidNetworkConfig(f"chain_id is not set for network '{name}'.")

    credentials, sources = _process_accounts(name, data.get("accounts"), environ)
    confirmations = _optional_int(name, data, "confirmations")
    return NetworkProfile(
        name=name,
        rpc_url=_interpolate(str(rpc_url), environ),
        chain_id=chain_id,
        credentials=credentials,
        gas_limit=_optional_int(name, data, "gas_limit"),
        timeout_ms=_optional_int(name, data, "timeout_ms"),
        confirmations=DEFAULT_CONFIRMATIONS if confirmations is None else confirmations,
        credential_sources=sources,
    )


class NetworkRegistry:
    """Immutable mapping of network names to profiles."""

    def __init__(self, profiles: typing.Iterable[NetworkProfile], default_network: str = None):
        by_name = OrderedDict()
        endpoints = dict()
        for profile in profiles:
            if profile.name in by_name:
                raise InvalidNetworkConfig(f"Network '{profile.name}' is defined twice.")
            # a chain is identified by its id at an endpoint; mainnet and testnet
            # endpoints may report the same id
            endpoint = (profile.chain_id, profile.rpc_url)
            if endpoint in endpoints:
                raise InvalidNetworkConfig(
                    f"Networks '{endpoints[endpoint]}' and '{profile.name}' "
                    f"share chain_id {profile.chain_id} at {urlparse(profile.rpc_url).netloc}."
                )
            if profile.confirmations < 1:
                raise InvalidNetworkConfig(
                    f"confirmations for network '{profile.name}' must be at least 1."
                )
            by_name[profile.name] = profile
            endpoints[endpoint] = profile.name

        if default_network is not None and default_network not in by_name:
            raise InvalidNetworkConfig(f"Default network '{default_network}' is not defined.")

        self._profiles = MappingProxyType(by_name)
        self.default_network = default_network

    @classmethod
    def from_config(
        cls, config: dict, environ: typing.Mapping[str, str] = None
    ) -> "NetworkRegistry":
        """Builds a registry from a parsed configuration mapping."""
        environ = os.environ if environ is None else environ
        if not isinstance(config, dict):
            raise InvalidNetworkConfig("Network configuration must be a mapping.")
        networks = config.get("networks")
        if not networks:
            raise InvalidNetworkConfig("Network configuration missing 'networks' field.")
        if not isinstance(networks, dict):
            raise InvalidNetworkConfig("'networks' must map network names to their settings.")

        profiles = [profile_from_config(name, data, environ) for name, data in networks.items()]
        return cls(profiles=profiles, default_network=config.get("default_network"))

    @classmethod
    def from_yaml(
        cls, filepath: Path = NETWORKS_FILEPATH, environ: typing.Mapping[str, str] = None
    ) -> "NetworkRegistry":
        logger.debug("Loading networks from %s", filepath)
        try:
            config = _load_yaml(filepath)
        except (OSError, yaml.YAMLError) as e:
            raise InvalidNetworkConfig(f"Cannot read network configuration {filepath}: {e}") from e
        return cls.from_config(config, environ=environ)

    @property
    def names(self) -> List[str]:
        return list(self._profiles)

    def __contains__(self, name: str) -> bool:
        return name in self._profiles

    def __iter__(self) -> Iterator[NetworkProfile]:
        return iter(self._profiles.values())

    def __len__(self) -> int:
        return len(self._profiles)

    def get(self, name: str) -> NetworkProfile:
        """Returns a profile without validating its credentials."""
        try:
            return self._profiles[name]
        except KeyError:
            known = ", ".join(self._profiles) or "none"
            raise UnknownNetwork(f"Unknown network '{name}'. Known networks: {known}.")

    def resolve(self, name: str) -> NetworkProfile:
        """Returns the profile for a network that is usable for a deployment or upgrade."""
        profile = self.get(name)
        validate_credentials(profile)
        return profile
