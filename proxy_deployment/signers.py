from typing import List, NamedTuple

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_typing import ChecksumAddress

from proxy_deployment.exceptions import MissingCredentials, NoSigners
from proxy_deployment.networks import NetworkProfile


class Signer(NamedTuple):
    """An identity that authorizes transactions on one network."""

    account: LocalAccount
    network: NetworkProfile
    index: int

    @property
    def address(self) -> ChecksumAddress:
        return self.account.address

    def __repr__(self) -> str:
        return f"Signer({self.address}, network={self.network.name!r}, index={self.index})"


def resolve_signers(profile: NetworkProfile) -> List[Signer]:
    """Returns signers for every credential of the network, in credential order."""
    signers = list()
    for index, credential in enumerate(profile.credentials):
        try:
            account = Account.from_key(credential)
        except (TypeError, ValueError) as e:
            raise MissingCredentials(
                f"Credential {profile.describe_source(index)} for network "
                f"'{profile.name}' is not a valid private key."
            ) from e
        signers.append(Signer(account=account, network=profile, index=index))
    return signers


def primary_signer(profile: NetworkProfile, index: int = 0) -> Signer:
    """Returns the deployer identity; the first signer unless overridden."""
    signers = resolve_signers(profile)
    if not signers:
        raise NoSigners(f"No signers available for network '{profile.name}'.")
    if not 0 <= index < len(signers):
        raise NoSigners(
            f"No signer at index {index} for network '{profile.name}' "
            f"({len(signers)} available)."
        )
    return signers[index]
