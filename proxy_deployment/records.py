"""
Records of a single deployment or upgrade run.

A record is owned by exactly one orchestration run. Its stage only moves
forward along the transitions below, or to FAILED from any non-terminal stage.
"""

from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from eth_typing import ChecksumAddress

from proxy_deployment.exceptions import OrchestrationError, ProxyAddressDrift


class DeploymentStatus(Enum):
    PENDING = "Pending"
    DEPLOYED = "Deployed"
    FAILED = "Failed"


class UpgradeStatus(Enum):
    PENDING = "Pending"
    UPGRADED = "Upgraded"
    FAILED = "Failed"


class DeploymentStage(Enum):
    UNINITIALIZED = "Uninitialized"
    FACTORY_BUILT = "FactoryBuilt"
    PROXY_DEPLOYING = "ProxyDeploying"
    DEPLOYED = "Deployed"
    FAILED = "Failed"


class UpgradeStage(Enum):
    UNINITIALIZED = "Uninitialized"
    PROXY_RESOLVED = "ProxyResolved"
    FACTORY_BUILT = "FactoryBuilt"
    UPGRADE_SUBMITTED = "UpgradeSubmitted"
    UPGRADED = "Upgraded"
    FAILED = "Failed"


class _Record:
    """Stage machine shared by deployment and upgrade records."""

    TRANSITIONS: Dict[Enum, FrozenSet[Enum]] = {}
    FAILED_STAGE: Enum = None
    SUCCESS_STAGE: Enum = None

    class InvalidTransition(RuntimeError):
        """Raised when a record is moved along a transition that does not exist."""

    def __init__(self, network: str, contract_name: str, initial_stage: Enum):
        self.network = network
        self.contract_name = contract_name
        self.stage = initial_stage
        self.error: Optional[OrchestrationError] = None
        self.tx_hashes: List[str] = list()
        self.history: List[Enum] = [initial_stage]

    @property
    def is_terminal(self) -> bool:
        return self.stage in (self.FAILED_STAGE, self.SUCCESS_STAGE)

    def advance(self, stage: Enum) -> None:
        if stage not in self.TRANSITIONS.get(self.stage, frozenset()):
            raise self.InvalidTransition(
                f"{type(self).__name__} cannot move from {self.stage.value} to {stage.value}."
            )
        self.stage = stage
        self.history.append(stage)

    def fail(self, error: OrchestrationError) -> None:
        if self.is_terminal:
            raise self.InvalidTransition(
                f"{type(self).__name__} is already terminal ({self.stage.value})."
            )
        self.error = error
        self.stage = self.FAILED_STAGE
        self.history.append(self.FAILED_STAGE)


class DeploymentRecord(_Record):
    TRANSITIONS = {
        DeploymentStage.UNINITIALIZED: frozenset({DeploymentStage.FACTORY_BUILT}),
        DeploymentStage.FACTORY_BUILT: frozenset({DeploymentStage.PROXY_DEPLOYING}),
        DeploymentStage.PROXY_DEPLOYING: frozenset({DeploymentStage.DEPLOYED}),
    }
    FAILED_STAGE = DeploymentStage.FAILED
    SUCCESS_STAGE = DeploymentStage.DEPLOYED

    def __init__(self, network: str, contract_name: str, init_args: List[Any] = None):
        super().__init__(network, contract_name, DeploymentStage.UNINITIALIZED)
        self.init_args: List[Any] = list(init_args or [])
        self.implementation_address: Optional[ChecksumAddress] = None
        self._proxy_address: Optional[ChecksumAddress] = None

    @property
    def status(self) -> DeploymentStatus:
        if self.stage == DeploymentStage.DEPLOYED:
            return DeploymentStatus.DEPLOYED
        if self.stage == DeploymentStage.FAILED:
            return DeploymentStatus.FAILED
        return DeploymentStatus.PENDING

    @property
    def proxy_address(self) -> Optional[ChecksumAddress]:
        return self._proxy_address

    @proxy_address.setter
    def proxy_address(self, address: ChecksumAddress) -> None:
        if self._proxy_address is not None and self._proxy_address != address:
            raise ProxyAddressDrift(
                f"Proxy address of {self.contract_name} is already {self._proxy_address}; "
                f"refusing to reassign it to {address}."
            )
        self._proxy_address = address

    def __repr__(self) -> str:
        return (
            f"DeploymentRecord({self.contract_name} on {self.network}, "
            f"status={self.status.value}, proxy={self.proxy_address})"
        )


class UpgradeRecord(_Record):
    TRANSITIONS = {
        UpgradeStage.UNINITIALIZED: frozenset({UpgradeStage.PROXY_RESOLVED}),
        UpgradeStage.PROXY_RESOLVED: frozenset({UpgradeStage.FACTORY_BUILT}),
        UpgradeStage.FACTORY_BUILT: frozenset({UpgradeStage.UPGRADE_SUBMITTED}),
        UpgradeStage.UPGRADE_SUBMITTED: frozenset({UpgradeStage.UPGRADED}),
    }
    FAILED_STAGE = UpgradeStage.FAILED
    SUCCESS_STAGE = UpgradeStage.UPGRADED

    def __init__(self, network: str, proxy_address: str, contract_name: str):
        super().__init__(network, contract_name, UpgradeStage.UNINITIALIZED)
        self._proxy_address = proxy_address
        self.previous_implementation_address: Optional[ChecksumAddress] = None
        self.new_implementation_address: Optional[ChecksumAddress] = None

    @classmethod
    def from_deployment(cls, deployment: DeploymentRecord, contract_name: str) -> "UpgradeRecord":
        """Starts an upgrade of a proxy created by a completed deployment."""
        if deployment.status != DeploymentStatus.DEPLOYED:
            raise cls.InvalidTransition(
                f"Cannot upgrade {deployment.contract_name}: deployment is "
                f"{deployment.status.value}, not {DeploymentStatus.DEPLOYED.value}."
            )
        record = cls(deployment.network, deployment.proxy_address, contract_name)
        record.previous_implementation_address = deployment.implementation_address
        return record

    @property
    def proxy_address(self) -> str:
        return self._proxy_address

    def checksum_proxy_address(self, address: ChecksumAddress) -> None:
        """Replaces the operator supplied spelling of the proxy address with its checksum form."""
        if str(self._proxy_address).lower() != str(address).lower():
            raise ProxyAddressDrift(
                f"Upgrade of {self._proxy_address} cannot be rebound to {address}."
            )
        self._proxy_address = address

    @property
    def status(self) -> UpgradeStatus:
        if self.stage == UpgradeStage.UPGRADED:
            return UpgradeStatus.UPGRADED
        if self.stage == UpgradeStage.FAILED:
            return UpgradeStatus.FAILED
        return UpgradeStatus.PENDING

    def __repr__(self) -> str:
        return (
            f"UpgradeRecord({self.contract_name} on {self.network}, "
            f"status={self.status.value}, proxy={self.proxy_address})"
        )
