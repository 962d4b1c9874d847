from pathlib import Path

import proxy_deployment

#
# Filesystem
#

DEPLOYMENT_DIR = Path(proxy_deployment.__file__).parent
NETWORKS_FILEPATH = DEPLOYMENT_DIR / "networks.yml"
PARAMS_DIR = DEPLOYMENT_DIR / "params"
ARTIFACTS_DIR = Path("artifacts")

#
# Networks
#

LOCAL = "local"
MOONRABBIT = "moonrabbit"
MOONRABBIT_TEST = "moonrabbit_test"
RINKEBY = "rinkeby"

LOCAL_NETWORKS = [LOCAL]
LOCAL_HOSTS = ["127.0.0.1", "localhost"]

# Standard BIP-44 path for development accounts (hardhat/anvil)
DEV_ACCOUNT_PATH = "m/44'/60'/0'/0/{}"
DEFAULT_DEV_ACCOUNTS = 3

DEFAULT_TIMEOUT_MS = 120_000
DEFAULT_CONFIRMATIONS = 1
CONFIRMATION_POLL_SECONDS = 1.0

#
# Contracts
#

PROXY_CONTRACT = "TransparentUpgradeableProxy"
DEFAULT_INITIALIZER = "initialize"

# EIP1967 slots - https://eips.ethereum.org/EIPS/eip-1967
EIP1967_IMPLEMENTATION_SLOT = 0x360894A13BA1A3210667C828492DB98DCA3E2076CC3735A920A3CA505D382BBC
EIP1967_ADMIN_SLOT = 0xB53127684A568B3173AE13B9F8A6016E243E63B6E8EE1178D6A717850B5D6103

PROXY_ADMIN_OWNER_ABI = {
    "type": "function",
    "name": "owner",
    "inputs": [],
    "outputs": [{"name": "", "type": "address"}],
    "stateMutability": "view",
}

PROXY_ADMIN_UPGRADE_ABI = {
    "type": "function",
    "name": "upgradeAndCall",
    "inputs": [
        {"name": "proxy", "type": "address"},
        {"name": "implementation", "type": "address"},
        {"name": "data", "type": "bytes"},
    ],
    "outputs": [],
    "stateMutability": "payable",
}


# OpenZeppelin 4.x ProxyAdmin: upgradeAndCall always delegatecalls into the
# new implementation, so a plain upgrade goes through upgrade()
PROXY_ADMIN_LEGACY_UPGRADE_ABI = {
    "type": "function",
    "name": "upgrade",
    "inputs": [
        {"name": "proxy", "type": "address"},
        {"name": "implementation", "type": "address"},
    ],
    "outputs": [],
    "stateMutability": "nonpayable",
}

UPGRADE_INTERFACE_VERSION_ABI = {
    "type": "function",
    "name": "UPGRADE_INTERFACE_VERSION",
    "inputs": [],
    "outputs": [{"name": "", "type": "string"}],
    "stateMutability": "view",
}

# Name of the proxy constructor argument receiving the admin
PROXY_OWNER_ARGUMENT = "initialOwner"  # OpenZeppelin 5: the proxy creates its own ProxyAdmin
PROXY_LEGACY_ADMIN_ARGUMENT = "admin_"  # OpenZeppelin 4.x: a ProxyAdmin must exist already
PROXY_ADMIN_CONTRACT = "ProxyAdmin"

# Storage gaps reserved by upgradeable contracts (OpenZeppelin convention)
STORAGE_GAP_PREFIX = "__gap"
