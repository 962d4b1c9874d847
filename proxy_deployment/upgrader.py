import logging
from typing import Any, NamedTuple, Optional, Sequence, Tuple

import eth_abi
from eth_abi.exceptions import DecodingError
from eth_typing import ChecksumAddress
from eth_utils import function_signature_to_4byte_selector, is_address, to_checksum_address

from proxy_deployment.artifacts import ArtifactStore, ContractArtifact
from proxy_deployment.confirm import _continue
from proxy_deployment.constants import (
    EIP1967_ADMIN_SLOT,
    EIP1967_IMPLEMENTATION_SLOT,
    PROXY_ADMIN_LEGACY_UPGRADE_ABI,
    PROXY_ADMIN_OWNER_ABI,
    PROXY_ADMIN_UPGRADE_ABI,
    UPGRADE_INTERFACE_VERSION_ABI,
)
from proxy_deployment.deployer import GatewayFactory, Transactor
from proxy_deployment.exceptions import (
    IncompatibleStorageLayout,
    InitArgsMismatch,
    InvalidProxyAddress,
    NotProxyAdminOwner,
    OrchestrationError,
    ProxyAddressDrift,
    TransactionReverted,
)
from proxy_deployment.gateway import ChainGateway, Web3Gateway
from proxy_deployment.layout import assert_upgrade_safe
from proxy_deployment.networks import NetworkRegistry
from proxy_deployment.params import (
    VariableContext,
    encode_call,
    method_signature,
    resolve_method_args,
)
from proxy_deployment.records import UpgradeRecord, UpgradeStage
from proxy_deployment.signers import Signer, primary_signer
from proxy_deployment.utils import address_from_slot, is_empty_slot

logger = logging.getLogger(__name__)


class UpgradePlan(NamedTuple):
    """Everything checked before an upgrade is submitted."""

    proxy_address: ChecksumAddress
    admin_address: ChecksumAddress
    current: ContractArtifact
    new: ContractArtifact
    call_data: bytes
    upgrade_abi: dict


class ProxyUpgrader(Transactor):
    """
    Replaces the implementation behind an existing EIP-1967 transparent proxy,
    refusing any implementation whose storage layout is incompatible.
    """

    def __init__(
        self,
        gateway: ChainGateway,
        signer: Signer,
        artifacts: ArtifactStore,
        autosign: bool = False,
        reference_contract: Optional[str] = None,
        call: Optional[str] = None,
        call_args: Sequence[Any] = (),
    ):
        super().__init__(gateway, signer, autosign)
        self.artifacts = artifacts
        self.reference_contract = reference_contract
        self.call = call
        self.call_args = list(call_args)

    def resolve_proxy(self, record: UpgradeRecord) -> Tuple[ChecksumAddress, ChecksumAddress]:
        """Returns the current implementation and admin of the proxy."""
        raw_address = record.proxy_address
        if not isinstance(raw_address, str) or not is_address(raw_address):
            raise InvalidProxyAddress(f"'{raw_address}' is not a valid address.")
        proxy_address = to_checksum_address(raw_address)
        record.checksum_proxy_address(proxy_address)

        if not self.gateway.get_code(proxy_address):
            raise InvalidProxyAddress(
                f"No contract at {proxy_address} on network '{self.profile.name}'."
            )
        implementation_slot = self.gateway.get_storage_at(
            proxy_address, EIP1967_IMPLEMENTATION_SLOT
        )
        admin_slot = self.gateway.get_storage_at(proxy_address, EIP1967_ADMIN_SLOT)
        if is_empty_slot(implementation_slot) or is_empty_slot(admin_slot):
            raise InvalidProxyAddress(
                f"Implementation or admin slot for contract at {proxy_address} is empty. "
                "Are you sure this is an EIP1967-compatible proxy?"
            )
        return address_from_slot(implementation_slot), address_from_slot(admin_slot)

    def _current_artifact(self, implementation: ChecksumAddress) -> ContractArtifact:
        if self.reference_contract:
            return self.artifacts.get(self.reference_contract)
        artifact = self.artifacts.find_by_runtime_code(self.gateway.get_code(implementation))
        if artifact is None:
            raise IncompatibleStorageLayout(
                f"Could not identify the compiled artifact of the current implementation at "
                f"{implementation}; its storage layout is unknown. "
                "Specify the reference contract it was deployed from."
            )
        logger.info("Current implementation %s is %s", implementation, artifact.name)
        return artifact

    def _check_admin_owner(self, admin_address: ChecksumAddress) -> None:
        selector = function_signature_to_4byte_selector(method_signature(PROXY_ADMIN_OWNER_ABI))
        result = self.gateway.call(admin_address, bytes(selector))
        if len(result) < 32:
            raise NotProxyAdminOwner(f"Proxy admin at {admin_address} is not a ProxyAdmin contract.")
        (owner,) = eth_abi.decode(["address"], result)
        owner = to_checksum_address(owner)
        if owner != self.signer.address:
            raise NotProxyAdminOwner(
                f"ProxyAdmin {admin_address} is owned by {owner}, not by {self.signer.address}."
            )

    def _upgrade_interface_version(self, admin_address: ChecksumAddress) -> Optional[str]:
        """Returns the admin's UPGRADE_INTERFACE_VERSION, or None for a pre-5.0 ProxyAdmin."""
        selector = function_signature_to_4byte_selector(
            method_signature(UPGRADE_INTERFACE_VERSION_ABI)
        )
        try:
            result = self.gateway.call(admin_address, bytes(selector))
        except TransactionReverted:
            return None
        if not result:
            return None
        try:
            (version,) = eth_abi.decode(["string"], result)
        except DecodingError:
            return None
        return version

    def _upgrade_method(self, admin_address: ChecksumAddress, call_data: bytes) -> dict:
        """
        Chooses the ProxyAdmin method for the upgrade. Admins older than 5.0
        delegatecall even empty data in upgradeAndCall, so they get upgrade() instead.
        """
        version = self._upgrade_interface_version(admin_address)
        logger.debug("ProxyAdmin %s upgrade interface version: %s", admin_address, version)
        if version is None and not call_data:
            return PROXY_ADMIN_LEGACY_UPGRADE_ABI
        return PROXY_ADMIN_UPGRADE_ABI

    def _upgrade_call_data(self, new: ContractArtifact) -> bytes:
        if not self.call:
            if self.call_args:
                raise InitArgsMismatch("Upgrade call arguments given without a method to call.")
            return b""
        method_abis = new.method_abis(self.call)
        if not method_abis:
            raise InitArgsMismatch(f"{new.name} has no method '{self.call}' to call on upgrade.")
        context = VariableContext(deployer=self.signer.address)
        method_abi, resolved = resolve_method_args(method_abis, self.call_args, context)
        return encode_call(method_abi, list(resolved.values()))

    def prepare(self, record: UpgradeRecord) -> UpgradePlan:
        """Runs every check that must pass before anything is submitted."""
        implementation, admin = self.resolve_proxy(record)
        record.previous_implementation_address = implementation
        record.advance(UpgradeStage.PROXY_RESOLVED)

        new = self.artifacts.get(record.contract_name)
        record.advance(UpgradeStage.FACTORY_BUILT)

        current = self._current_artifact(implementation)
        assert_upgrade_safe(current, new)
        self._check_admin_owner(admin)
        call_data = self._upgrade_call_data(new)
        upgrade_abi = self._upgrade_method(admin, call_data)
        return UpgradePlan(
            proxy_address=record.proxy_address,
            admin_address=admin,
            current=current,
            new=new,
            call_data=call_data,
            upgrade_abi=upgrade_abi,
        )

    def _verify_upgrade(
        self, record: UpgradeRecord, plan: UpgradePlan, implementation: ChecksumAddress
    ) -> None:
        if record.proxy_address != plan.proxy_address:
            raise ProxyAddressDrift(
                f"Proxy address changed from {plan.proxy_address} to {record.proxy_address}."
            )
        bound = self.gateway.get_storage_at(plan.proxy_address, EIP1967_IMPLEMENTATION_SLOT)
        if is_empty_slot(bound) or address_from_slot(bound) != implementation:
            raise ProxyAddressDrift(
                f"Proxy at {plan.proxy_address} does not point at the new implementation "
                f"{implementation} after the upgrade."
            )
        admin = self.gateway.get_storage_at(plan.proxy_address, EIP1967_ADMIN_SLOT)
        if is_empty_slot(admin) or address_from_slot(admin) != plan.admin_address:
            raise ProxyAddressDrift(f"Admin of proxy {plan.proxy_address} changed during upgrade.")

    def run(self, record: UpgradeRecord) -> UpgradeRecord:
        self._print_deployment_info(record.contract_name)
        plan = self.prepare(record)
        logger.info(
            "Upgrading %s at %s from %s to %s",
            record.contract_name,
            plan.proxy_address,
            plan.current.name,
            plan.new.name,
        )
        if not self.autosign:
            _continue()

        record.advance(UpgradeStage.UPGRADE_SUBMITTED)
        implementation = self.deploy_contract(record, plan.new)
        upgrade_args = [plan.proxy_address, implementation]
        if plan.upgrade_abi is PROXY_ADMIN_UPGRADE_ABI:
            upgrade_args.append(plan.call_data)
        self.transact(
            record,
            plan.admin_address,
            plan.upgrade_abi,
            upgrade_args,
            contract_name="ProxyAdmin",
        )
        self._verify_upgrade(record, plan, implementation)
        record.new_implementation_address = implementation
        record.advance(UpgradeStage.UPGRADED)
        return record


def _run_upgrade(
    registry: NetworkRegistry,
    record: UpgradeRecord,
    connect: GatewayFactory,
    account_index: int,
    submit: bool,
    **kwargs,
) -> UpgradeRecord:
    try:
        profile = registry.resolve(record.network)
        signer = primary_signer(profile, index=account_index)
        upgrader = ProxyUpgrader(connect(profile), signer, **kwargs)
        if submit:
            upgrader.run(record)
        else:
            upgrader.prepare(record)
    except OrchestrationError as e:
        logger.debug("Upgrade of %s failed", record.proxy_address, exc_info=True)
        record.fail(e)
    return record


def upgrade(
    registry: NetworkRegistry,
    network_name: str,
    proxy_address: str,
    contract_name: str,
    artifacts: ArtifactStore = None,
    connect: GatewayFactory = Web3Gateway.from_profile,
    account_index: int = 0,
    reference_contract: Optional[str] = None,
    call: Optional[str] = None,
    call_args: Sequence[Any] = (),
    autosign: bool = True,
) -> UpgradeRecord:
    """
    Upgrades the proxy at proxy_address to a new implementation compiled from contract_name.

    Like deploy(), orchestration errors are recorded on the returned record.
    """
    record = UpgradeRecord(network_name, proxy_address, contract_name)
    return _run_upgrade(
        registry,
        record,
        connect,
        account_index,
        submit=True,
        artifacts=artifacts or ArtifactStore(),
        autosign=autosign,
        reference_contract=reference_contract,
        call=call,
        call_args=call_args,
    )


def validate_upgrade(
    registry: NetworkRegistry,
    network_name: str,
    proxy_address: str,
    contract_name: str,
    artifacts: ArtifactStore = None,
    connect: GatewayFactory = Web3Gateway.from_profile,
    account_index: int = 0,
    reference_contract: Optional[str] = None,
) -> UpgradeRecord:
    """Checks an upgrade without submitting anything. The record stays Pending when it is safe."""
    record = UpgradeRecord(network_name, proxy_address, contract_name)
    return _run_upgrade(
        registry,
        record,
        connect,
        account_index,
        submit=False,
        artifacts=artifacts or ArtifactStore(),
        reference_contract=reference_contract,
    )
