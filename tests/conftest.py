import json

import eth_abi
import pytest
from eth_utils import function_signature_to_4byte_selector, to_checksum_address
from hexbytes import HexBytes

from proxy_deployment.artifacts import ArtifactStore
from proxy_deployment.constants import (
    EIP1967_ADMIN_SLOT,
    EIP1967_IMPLEMENTATION_SLOT,
    NETWORKS_FILEPATH,
)
from proxy_deployment.exceptions import ConfirmationTimeout, TransactionReverted
from proxy_deployment.gateway import ChainGateway, Receipt
from proxy_deployment.networks import NetworkRegistry

# Common constants

# Well known development accounts of the "test test ... junk" mnemonic
DEV_ADDRESS_0 = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
DEV_ADDRESS_1 = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
DEV_KEY_0 = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
DEV_KEY_1 = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"

ONE_THOUSAND_ETHER = 1000 * 10**18

OWNER_SELECTOR = bytes(function_signature_to_4byte_selector("owner()"))
UPGRADE_SELECTOR = bytes(
    function_signature_to_4byte_selector("upgradeAndCall(address,address,bytes)")
)
LEGACY_UPGRADE_SELECTOR = bytes(function_signature_to_4byte_selector("upgrade(address,address)"))
VERSION_SELECTOR = bytes(function_signature_to_4byte_selector("UPGRADE_INTERFACE_VERSION()"))
ADMIN_RUNTIME_CODE = HexBytes("0x60ad60ad")

TYPES = {
    "t_address": {"encoding": "inplace", "label": "address", "numberOfBytes": "20"},
    "t_bool": {"encoding": "inplace", "label": "bool", "numberOfBytes": "1"},
    "t_uint8": {"encoding": "inplace", "label": "uint8", "numberOfBytes": "1"},
    "t_uint256": {"encoding": "inplace", "label": "uint256", "numberOfBytes": "32"},
    "t_mapping(t_uint256,t_address)": {
        "encoding": "mapping",
        "key": "t_uint256",
        "value": "t_address",
        "label": "mapping(uint256 => address)",
        "numberOfBytes": "32",
    },
    "t_array(t_uint256)49_storage": {
        "encoding": "inplace",
        "base": "t_uint256",
        "label": "uint256[49]",
        "numberOfBytes": "1568",
    },
    "t_array(t_uint256)48_storage": {
        "encoding": "inplace",
        "base": "t_uint256",
        "label": "uint256[48]",
        "numberOfBytes": "1536",
    },
}

MARKETPLACE_STORAGE = [
    ("_initialized", 0, 0, "t_uint8"),
    ("_initializing", 0, 1, "t_bool"),
    ("auctionStep", 1, 0, "t_uint256"),
    ("startValue", 2, 0, "t_uint256"),
    ("owners", 3, 0, "t_mapping(t_uint256,t_address)"),
    ("__gap", 4, 0, "t_array(t_uint256)49_storage"),
]

MARKETPLACE_V2_STORAGE = MARKETPLACE_STORAGE[:-1] + [
    ("fee", 4, 0, "t_uint256"),
    ("__gap", 5, 0, "t_array(t_uint256)48_storage"),
]

# auctionStep and startValue swapped
MARKETPLACE_BROKEN_STORAGE = [
    ("_initialized", 0, 0, "t_uint8"),
    ("_initializing", 0, 1, "t_bool"),
    ("startValue", 1, 0, "t_uint256"),
    ("auctionStep", 2, 0, "t_uint256"),
    ("owners", 3, 0, "t_mapping(t_uint256,t_address)"),
    ("__gap", 4, 0, "t_array(t_uint256)49_storage"),
]

INITIALIZE_ABI = {
    "type": "function",
    "name": "initialize",
    "inputs": [
        {"name": "_auctionStep", "type": "uint256", "internalType": "uint256"},
        {"name": "_startValue", "type": "uint256", "internalType": "uint256"},
    ],
    "outputs": [],
    "stateMutability": "nonpayable",
}

SET_FEE_ABI = {
    "type": "function",
    "name": "setFee",
    "inputs": [{"name": "_fee", "type": "uint256", "internalType": "uint256"}],
    "outputs": [],
    "stateMutability": "nonpayable",
}

PROXY_CONSTRUCTOR_ABI = {
    "type": "constructor",
    "inputs": [
        {"name": "_logic", "type": "address", "internalType": "address"},
        {"name": "initialOwner", "type": "address", "internalType": "address"},
        {"name": "_data", "type": "bytes", "internalType": "bytes"},
    ],
    "stateMutability": "payable",
}

# OpenZeppelin 4.x proxies take an existing ProxyAdmin
PROXY_V4_CONSTRUCTOR_ABI = {
    "type": "constructor",
    "inputs": [
        {"name": "_logic", "type": "address", "internalType": "address"},
        {"name": "admin_", "type": "address", "internalType": "address"},
        {"name": "_data", "type": "bytes", "internalType": "bytes"},
    ],
    "stateMutability": "payable",
}


# Utility functions
def storage_layout(variables, contract="contracts/Marketplace.sol:Marketplace"):
    storage = [
        {
            "astId": ast_id,
            "contract": contract,
            "label": label,
            "offset": offset,
            "slot": str(slot),
            "type": type_id,
        }
        for ast_id, (label, slot, offset, type_id) in enumerate(variables)
    ]
    return {"storage": storage, "types": dict(TYPES)}


def artifact_json(name, bytecode, deployed_bytecode, abi, layout=None):
    data = {
        "_format": "hh-sol-artifact-1",
        "contractName": name,
        "sourceName": f"contracts/{name}.sol",
        "abi": abi,
        "bytecode": bytecode,
        "deployedBytecode": deployed_bytecode,
        "linkReferences": {},
        "deployedLinkReferences": {},
    }
    if layout is not None:
        data["storageLayout"] = layout
    return data


def write_artifact(artifacts_dir, data):
    name = data["contractName"]
    path = artifacts_dir / "contracts" / f"{name}.sol" / f"{name}.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))
    return path


def slot_value(address):
    return bytes(HexBytes(address).rjust(32, b"\x00"))


MARKETPLACE = artifact_json(
    "Marketplace",
    "0x6080600160016001",
    "0x6080600160016002",
    [INITIALIZE_ABI],
    storage_layout(MARKETPLACE_STORAGE),
)
MARKETPLACE_V2 = artifact_json(
    "MarketplaceV2",
    "0x6080600260026001",
    "0x6080600260026002",
    [INITIALIZE_ABI, SET_FEE_ABI],
    storage_layout(MARKETPLACE_V2_STORAGE, "contracts/MarketplaceV2.sol:MarketplaceV2"),
)
MARKETPLACE_BROKEN = artifact_json(
    "MarketplaceBroken",
    "0x6080600360036001",
    "0x6080600360036002",
    [INITIALIZE_ABI],
    storage_layout(MARKETPLACE_BROKEN_STORAGE, "contracts/MarketplaceBroken.sol:MarketplaceBroken"),
)
PROXY = artifact_json(
    "TransparentUpgradeableProxy",
    "0x60806040ff01",
    "0x60806040ff02",
    [PROXY_CONSTRUCTOR_ABI],
)
PROXY_V4 = artifact_json(
    "TransparentUpgradeableProxy",
    "0x60806040ee01",
    "0x60806040ee02",
    [PROXY_V4_CONSTRUCTOR_ABI],
)
PROXY_ADMIN = artifact_json("ProxyAdmin", "0x60806040ad01", "0x60ad60ad", [])


class FakeChain(ChainGateway):
    """
    An in-memory chain that understands just enough of a transparent proxy,
    its ProxyAdmin, and plain contract creation to drive the orchestrators.

    admin_version=None models OpenZeppelin 4.x: proxies are given an existing
    ProxyAdmin, which has no UPGRADE_INTERFACE_VERSION and reverts
    upgradeAndCall with empty data.
    """

    def __init__(
        self,
        chain_id=31337,
        creation_codes=None,
        proxy_bytecode=None,
        proxy_admin_bytecode=None,
        admin_version="5.0.0",
    ):
        self._chain_id = chain_id
        self.creation_codes = dict(creation_codes or {})
        self.proxy_bytecode = bytes(HexBytes(proxy_bytecode)) if proxy_bytecode else None
        self.proxy_admin_bytecode = (
            bytes(HexBytes(proxy_admin_bytecode)) if proxy_admin_bytecode else None
        )
        self.admin_version = admin_version
        self.code = dict()
        self.storage = dict()
        self.admin_owners = dict()
        self.initializer_calls = dict()
        self.upgrade_calls = list()
        self.transactions = list()
        self.receipts = dict()
        self.block_number = 0
        self._next_address = 0x1000

        # failure injection
        self.revert_next = False
        self.timeout_next = False
        self.ignore_upgrades = False

    @property
    def chain_id(self):
        return self._chain_id

    @property
    def gas_price(self):
        return 10**9

    def get_code(self, address):
        return self.code.get(to_checksum_address(address), b"")

    def get_storage_at(self, address, slot):
        return self.storage.get((to_checksum_address(address), slot), b"\x00" * 32)

    def call(self, to, data):
        to = to_checksum_address(to)
        if to not in self.admin_owners:
            return b""
        if data[:4] == OWNER_SELECTOR:
            return eth_abi.encode(["address"], [self.admin_owners[to]])
        if data[:4] == VERSION_SELECTOR:
            if self.admin_version is None:
                raise TransactionReverted(f"Reverted while calling {to}: execution reverted")
            return eth_abi.encode(["string"], [self.admin_version])
        return b""

    def _new_address(self):
        self._next_address += 1
        return to_checksum_address(f"0x{self._next_address:040x}")

    def _new_admin(self, owner):
        admin = self._new_address()
        self.code[admin] = bytes(ADMIN_RUNTIME_CODE)
        self.admin_owners[admin] = to_checksum_address(owner)
        return admin

    def _create(self, sender, data):
        if self.proxy_admin_bytecode and data.startswith(self.proxy_admin_bytecode):
            return self._new_admin(sender)
        if self.proxy_bytecode and data.startswith(self.proxy_bytecode):
            logic, admin_or_owner, init_data = eth_abi.decode(
                ["address", "address", "bytes"], data[len(self.proxy_bytecode) :]
            )
            proxy = self._new_address()
            if self.admin_version is None:
                admin = to_checksum_address(admin_or_owner)
            else:
                admin = self._new_admin(admin_or_owner)
            self.code[proxy] = b"\x60\x80\x60\x40\xff\x02"
            self.storage[(proxy, EIP1967_IMPLEMENTATION_SLOT)] = slot_value(logic)
            self.storage[(proxy, EIP1967_ADMIN_SLOT)] = slot_value(admin)
            self.initializer_calls[proxy] = init_data
            return proxy
        for creation_code, runtime_code in self.creation_codes.items():
            if data.startswith(creation_code):
                address = self._new_address()
                self.code[address] = runtime_code
                return address
        address = self._new_address()
        self.code[address] = b"\xfe"
        return address

    def _upgrade(self, sender, admin, data):
        if data[:4] == LEGACY_UPGRADE_SELECTOR:
            if self.admin_version is not None:
                return 0
            proxy, implementation = eth_abi.decode(["address", "address"], data[4:])
            call_data = b""
        else:
            proxy, implementation, call_data = eth_abi.decode(
                ["address", "address", "bytes"], data[4:]
            )
            if self.admin_version is None and not call_data:
                # forced delegatecall into an implementation without a fallback
                return 0
        if self.admin_owners.get(admin) != sender:
            return 0
        if not self.ignore_upgrades:
            proxy = to_checksum_address(proxy)
            self.storage[(proxy, EIP1967_IMPLEMENTATION_SLOT)] = slot_value(implementation)
        self.upgrade_calls.append((to_checksum_address(proxy), implementation, call_data))
        return 1

    def send_transaction(self, signer, to, data, gas=None):
        data = bytes(data)
        self.transactions.append({"from": signer.address, "to": to, "data": data, "gas": gas})
        tx_hash = f"0x{len(self.transactions):064x}"
        self.block_number += 1

        contract_address, status = None, 1
        if self.revert_next:
            self.revert_next = False
            status = 0
        elif to is None:
            contract_address = self._create(signer.address, data)
        elif data[:4] in (UPGRADE_SELECTOR, LEGACY_UPGRADE_SELECTOR) and to in self.admin_owners:
            status = self._upgrade(signer.address, to, data)

        self.receipts[tx_hash] = Receipt(
            tx_hash=tx_hash,
            block_number=self.block_number,
            status=status,
            contract_address=contract_address,
            gas_used=21000,
        )
        return tx_hash

    def wait_for_receipt(self, tx_hash, timeout, confirmations=1):
        if self.timeout_next:
            self.timeout_next = False
            raise ConfirmationTimeout(f"Timed out waiting for {tx_hash}")
        return self.receipts[tx_hash]


def creation_codes(*artifacts):
    return {
        bytes(HexBytes(a["bytecode"])): bytes(HexBytes(a["deployedBytecode"])) for a in artifacts
    }


# Fixtures
@pytest.fixture
def environ():
    return {
        "MOONRABBIT_PRIVATE_KEY": DEV_KEY_0,
        "RINKEBY_PRIVATE_KEY": DEV_KEY_0,
        "RINKEBY_PRIVATE_KEY_2": DEV_KEY_1,
        "INFURA_API_KEY": "infura-project-id",
    }


@pytest.fixture
def registry(environ):
    return NetworkRegistry.from_yaml(NETWORKS_FILEPATH, environ=environ)


@pytest.fixture
def artifacts_dir(tmp_path):
    path = tmp_path / "artifacts"
    for data in (MARKETPLACE, MARKETPLACE_V2, MARKETPLACE_BROKEN, PROXY):
        write_artifact(path, data)
    return path


@pytest.fixture
def artifacts(artifacts_dir):
    return ArtifactStore(artifacts_dir)


@pytest.fixture
def chain():
    return FakeChain(
        chain_id=31337,
        creation_codes=creation_codes(MARKETPLACE, MARKETPLACE_V2, MARKETPLACE_BROKEN),
        proxy_bytecode=PROXY["bytecode"],
    )


@pytest.fixture
def connect(chain):
    connected = list()

    def _connect(profile):
        connected.append(profile.name)
        return chain

    _connect.connected = connected
    return _connect


@pytest.fixture
def local_profile(registry):
    return registry.resolve("local")


