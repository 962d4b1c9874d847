import logging
from collections import OrderedDict
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

from eth_typing import ChecksumAddress

from proxy_deployment.artifacts import ArtifactStore, ContractArtifact
from proxy_deployment.confirm import _confirm_resolution
from proxy_deployment.constants import (
    DEFAULT_INITIALIZER,
    EIP1967_IMPLEMENTATION_SLOT,
    PROXY_ADMIN_CONTRACT,
    PROXY_CONTRACT,
    PROXY_LEGACY_ADMIN_ARGUMENT,
    PROXY_OWNER_ARGUMENT,
)
from proxy_deployment.exceptions import (
    ArtifactNotFound,
    InitArgsMismatch,
    NetworkError,
    OrchestrationError,
    ProxyAddressDrift,
    TransactionReverted,
)
from proxy_deployment.gateway import ChainGateway, Receipt, Web3Gateway
from proxy_deployment.networks import NetworkProfile, NetworkRegistry
from proxy_deployment.params import (
    VariableContext,
    encode_call,
    encode_constructor,
    resolve_method_args,
    validate_named_args,
)
from proxy_deployment.records import DeploymentRecord, DeploymentStage, _Record
from proxy_deployment.signers import Signer, primary_signer
from proxy_deployment.utils import address_from_slot, is_empty_slot

logger = logging.getLogger(__name__)

GatewayFactory = Callable[[NetworkProfile], ChainGateway]
InitArgs = Union[Sequence[Any], "OrderedDict[str, Any]"]


class Transactor:
    """
    Represents a signer plus validated/annotated transaction execution.
    """

    def __init__(self, gateway: ChainGateway, signer: Signer, autosign: bool = False):
        self.gateway = gateway
        self.signer = signer
        self.profile = signer.network
        if autosign:
            logger.warning("Autosign is enabled. Transactions will be submitted without asking.")
        self.autosign = autosign

    def _submit(
        self, record: _Record, to: Optional[ChecksumAddress], data: bytes, description: str
    ) -> Receipt:
        """Submits a transaction and blocks until the network confirms it."""
        logger.info(description)
        tx_hash = self.gateway.send_transaction(
            self.signer, to=to, data=data, gas=self.profile.gas_limit
        )
        record.tx_hashes.append(tx_hash)
        logger.info("Transaction %s submitted; waiting for confirmation...", tx_hash)
        receipt = self.gateway.wait_for_receipt(
            tx_hash, timeout=self.profile.timeout, confirmations=self.profile.confirmations
        )
        if not receipt.succeeded:
            raise TransactionReverted(f"Transaction {tx_hash} reverted ({description}).")
        logger.info("Confirmed in block %s, gas used: %s", receipt.block_number, receipt.gas_used)
        return receipt

    def deploy_contract(
        self, record: _Record, artifact: ContractArtifact, args: Sequence[Any] = ()
    ) -> ChecksumAddress:
        data = encode_constructor(artifact, args)
        receipt = self._submit(record, None, data, f"Deploying {artifact.name}...")
        if receipt.contract_address is None:
            raise NetworkError(f"Receipt {receipt.tx_hash} has no contract address.")
        logger.info("%s deployed at %s", artifact.name, receipt.contract_address)
        return receipt.contract_address

    def transact(
        self,
        record: _Record,
        to: ChecksumAddress,
        method_abi: dict,
        args: Sequence[Any],
        contract_name: str = "contract",
    ) -> Receipt:
        named_args = OrderedDict(
            (abi_input.get("name") or f"arg{i}", arg)
            for i, (abi_input, arg) in enumerate(zip(method_abi.get("inputs", []), args))
        )
        base_message = f"Transacting {contract_name}[{to[:10]}].{method_abi['name']}"
        if named_args:
            pretty_args = "\n\t".join(f"{k}={v}" for k, v in named_args.items())
            message = f"{base_message} with arguments:\n\t{pretty_args}"
        else:
            message = f"{base_message} with no arguments"
        return self._submit(record, to, encode_call(method_abi, args), message)

    def _print_deployment_info(self, contract_name: str) -> None:
        logger.info(
            "\n".join(
                [
                    f"Account: {self.signer.address}",
                    f"Network: {self.profile.name}",
                    f"Chain ID: {self.gateway.chain_id}",
                    f"Gas Price: {self.gateway.gas_price}",
                    f"Gas Limit: {self.profile.gas_limit or 'estimated'}",
                    f"Contract: {contract_name}",
                ]
            )
        )


class ProxyDeployer(Transactor):
    """
    Drives the first deployment of an implementation behind a transparent proxy.
    """

    def __init__(
        self,
        gateway: ChainGateway,
        signer: Signer,
        artifacts: ArtifactStore,
        autosign: bool = False,
        initializer: Optional[str] = None,
    ):
        super().__init__(gateway, signer, autosign)
        self.artifacts = artifacts
        self.initializer = initializer

    def _initializer_call(
        self, implementation: ContractArtifact, init_args: InitArgs
    ) -> Tuple[bytes, "OrderedDict[str, Any]"]:
        """Validates init args against the initializer ABI and returns its calldata."""
        method_name = self.initializer or DEFAULT_INITIALIZER
        method_abis = implementation.method_abis(method_name)
        if not method_abis:
            if init_args or self.initializer:
                raise InitArgsMismatch(
                    f"{implementation.name} has no initializer '{method_name}' "
                    f"to receive {len(init_args)} argument(s)."
                )
            return b"", OrderedDict()

        named = isinstance(init_args, dict)
        raw_args = list(init_args.values()) if named else list(init_args)
        context = VariableContext(deployer=self.signer.address)
        method_abi, resolved = resolve_method_args(method_abis, raw_args, context)
        if named:
            validate_named_args(method_abi, init_args)
        return encode_call(method_abi, list(resolved.values())), resolved

    def _proxy_admin_artifact(self, proxy: ContractArtifact) -> Optional[ContractArtifact]:
        """
        Returns the ProxyAdmin to deploy ahead of a 4.x proxy, or None when the
        proxy creates its own admin (OpenZeppelin 5).
        """
        constructor = proxy.constructor_abi or {}
        names = [abi_input.get("name") for abi_input in constructor.get("inputs", [])]
        admin_argument = names[1] if len(names) == 3 else None
        if admin_argument == PROXY_OWNER_ARGUMENT:
            return None
        if admin_argument == PROXY_LEGACY_ADMIN_ARGUMENT:
            logger.info(
                "%s takes an existing admin; deploying %s first.", proxy.name, PROXY_ADMIN_CONTRACT
            )
            return self.artifacts.get(PROXY_ADMIN_CONTRACT)
        raise ArtifactNotFound(
            f"{proxy.name} artifact does not have a transparent proxy constructor "
            f"(_logic, {PROXY_OWNER_ARGUMENT} or {PROXY_LEGACY_ADMIN_ARGUMENT}, _data)."
        )

    def _verify_binding(self, proxy_address: ChecksumAddress, implementation: ChecksumAddress):
        slot = self.gateway.get_storage_at(proxy_address, EIP1967_IMPLEMENTATION_SLOT)
        if is_empty_slot(slot) or address_from_slot(slot) != implementation:
            raise ProxyAddressDrift(
                f"Proxy at {proxy_address} does not point at implementation {implementation}."
            )

    def run(self, record: DeploymentRecord, init_args: InitArgs = ()) -> DeploymentRecord:
        self._print_deployment_info(record.contract_name)

        implementation = self.artifacts.get(record.contract_name)
        proxy = self.artifacts.get(PROXY_CONTRACT)
        proxy_admin = self._proxy_admin_artifact(proxy)
        if not implementation.storage_layout:
            logger.warning(
                "%s artifact has no storage layout; future upgrades cannot be validated.",
                implementation.name,
            )
        record.advance(DeploymentStage.FACTORY_BUILT)

        init_data, resolved_args = self._initializer_call(implementation, init_args)
        record.init_args = list(resolved_args.values())
        if not self.autosign:
            _confirm_resolution(resolved_args, record.contract_name)

        record.advance(DeploymentStage.PROXY_DEPLOYING)
        implementation_address = self.deploy_contract(record, implementation)
        record.implementation_address = implementation_address

        admin = self.signer.address
        if proxy_admin is not None:
            admin = self.deploy_contract(record, proxy_admin)

        logger.info(
            "Deploying %s contract to proxy %s.", proxy.name, record.contract_name
        )
        proxy_address = self.deploy_contract(
            record, proxy, [implementation_address, admin, init_data]
        )
        self._verify_binding(proxy_address, implementation_address)
        record.proxy_address = proxy_address
        record.advance(DeploymentStage.DEPLOYED)
        logger.info(
            "Wrapped %s into %s at %s.", record.contract_name, proxy.name, proxy_address
        )
        return record


def deploy(
    registry: NetworkRegistry,
    network_name: str,
    contract_name: str,
    init_args: InitArgs = (),
    artifacts: ArtifactStore = None,
    connect: GatewayFactory = Web3Gateway.from_profile,
    account_index: int = 0,
    initializer: Optional[str] = None,
    autosign: bool = True,
) -> DeploymentRecord:
    """
    Deploys contract_name behind a new proxy on network_name.

    Never raises orchestration errors: they end the run and are recorded on the
    returned record (status Failed) for the reporter.
    """
    initial_args: List[Any] = list(init_args.values() if isinstance(init_args, dict) else init_args)
    record = DeploymentRecord(
        network=network_name, contract_name=contract_name, init_args=initial_args
    )
    try:
        profile = registry.resolve(network_name)
        signer = primary_signer(profile, index=account_index)
        gateway = connect(profile)
        deployer = ProxyDeployer(
            gateway,
            signer,
            artifacts or ArtifactStore(),
            autosign=autosign,
            initializer=initializer,
        )
        deployer.run(record, init_args)
    except OrchestrationError as e:
        logger.debug("Deployment of %s failed", contract_name, exc_info=True)
        record.fail(e)
    return record
