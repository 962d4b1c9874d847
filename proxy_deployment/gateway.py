"""
Chain access for the orchestrators.

Everything that talks to a node goes through a ChainGateway so that the
orchestration logic can be exercised against an in-memory chain. Transport
errors are translated into the orchestration error taxonomy here, at the
boundary, and nowhere else.
"""

import logging
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import NamedTuple, Optional

import requests
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address, to_hex
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from proxy_deployment.constants import CONFIRMATION_POLL_SECONDS
from proxy_deployment.exceptions import (
    ChainIdMismatch,
    ConfirmationTimeout,
    NetworkError,
    TransactionReverted,
)
from proxy_deployment.networks import NetworkProfile, is_local_network
from proxy_deployment.signers import Signer

logger = logging.getLogger(__name__)


class Receipt(NamedTuple):
    tx_hash: str
    block_number: int
    status: int
    contract_address: Optional[ChecksumAddress] = None
    gas_used: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class ChainGateway(ABC):
    """The operations the orchestrators need from a chain."""

    @property
    @abstractmethod
    def chain_id(self) -> int:
        raise NotImplementedError

    @property
    @abstractmethod
    def gas_price(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def get_code(self, address: ChecksumAddress) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def get_storage_at(self, address: ChecksumAddress, slot: int) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def call(self, to: ChecksumAddress, data: bytes) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def send_transaction(
        self, signer: Signer, to: Optional[ChecksumAddress], data: bytes, gas: Optional[int] = None
    ) -> str:
        """Signs and submits a transaction, returning its hash. to=None creates a contract."""
        raise NotImplementedError

    @abstractmethod
    def wait_for_receipt(self, tx_hash: str, timeout: float, confirmations: int = 1) -> Receipt:
        """Blocks until the transaction is mined with enough confirmations."""
        raise NotImplementedError


@contextmanager
def _rpc_errors(action: str):
    """Translates web3/requests failures into NetworkError."""
    try:
        yield
    except TimeExhausted as e:
        raise ConfirmationTimeout(f"Timed out while {action}: {e}") from e
    except ContractLogicError as e:
        raise TransactionReverted(f"Reverted while {action}: {e}") from e
    except (Web3Exception, requests.exceptions.RequestException, ConnectionError) as e:
        raise NetworkError(f"Network error while {action}: {e}") from e
    except ValueError as e:
        # JSON-RPC errors (e.g. insufficient funds) surface as ValueError
        raise NetworkError(f"RPC error while {action}: {e}") from e


class Web3Gateway(ChainGateway):
    """ChainGateway backed by a web3.py HTTP connection."""

    def __init__(self, w3: Web3, profile: NetworkProfile):
        self.w3 = w3
        self.profile = profile
        self._chain_id = None

    @classmethod
    def from_profile(cls, profile: NetworkProfile) -> "Web3Gateway":
        """Connects to the profile's RPC endpoint and checks the chain id."""
        provider = Web3.HTTPProvider(profile.rpc_url, request_kwargs={"timeout": profile.timeout})
        gateway = cls(Web3(provider), profile)
        gateway.check_chain_id()
        return gateway

    def check_chain_id(self) -> None:
        """Checks that the node serves the configured chain."""
        chain_id = self.chain_id
        if chain_id == self.profile.chain_id:
            return
        if is_local_network(self.profile):
            logger.warning(
                "Local node reports chain_id %s, configured %s", chain_id, self.profile.chain_id
            )
            return
        raise ChainIdMismatch(
            f"chain_id of network '{self.profile.name}' ({self.profile.chain_id}) does not "
            f"match chain_id of the connected node ({chain_id})."
        )

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            with _rpc_errors(f"connecting to {self.profile.name}"):
                self._chain_id = self.w3.eth.chain_id
        return self._chain_id

    @property
    def gas_price(self) -> int:
        with _rpc_errors("fetching gas price"):
            return self.w3.eth.gas_price

    def get_code(self, address: ChecksumAddress) -> bytes:
        with _rpc_errors(f"reading code at {address}"):
            return bytes(self.w3.eth.get_code(address))

    def get_storage_at(self, address: ChecksumAddress, slot: int) -> bytes:
        with _rpc_errors(f"reading storage of {address}"):
            return bytes(self.w3.eth.get_storage_at(address, slot))

    def call(self, to: ChecksumAddress, data: bytes) -> bytes:
        with _rpc_errors(f"calling {to}"):
            return bytes(self.w3.eth.call({"to": to, "data": to_hex(data)}))

    def send_transaction(
        self, signer: Signer, to: Optional[ChecksumAddress], data: bytes, gas: Optional[int] = None
    ) -> str:
        with _rpc_errors("submitting transaction"):
            transaction = {
                "from": signer.address,
                "data": to_hex(data),
                "value": 0,
                "chainId": self.chain_id,
                "nonce": self.w3.eth.get_transaction_count(signer.address, "pending"),
                "gasPrice": self.w3.eth.gas_price,
            }
            if to is not None:
                transaction["to"] = to
            transaction["gas"] = gas or self.w3.eth.estimate_gas(transaction)
            signed = signer.account.sign_transaction(transaction)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return to_hex(tx_hash)

    def wait_for_receipt(self, tx_hash: str, timeout: float, confirmations: int = 1) -> Receipt:
        deadline = time.monotonic() + timeout
        with _rpc_errors(f"waiting for {tx_hash}"):
            raw = self.w3.eth.wait_for_transaction_receipt(HexBytes(tx_hash), timeout=timeout)
            target_block = raw["blockNumber"] + confirmations - 1
            while self.w3.eth.block_number < target_block:
                if time.monotonic() > deadline:
                    raise ConfirmationTimeout(
                        f"Transaction {tx_hash} mined in block {raw['blockNumber']} but did not "
                        f"reach {confirmations} confirmation(s) within {timeout}s."
                    )
                time.sleep(CONFIRMATION_POLL_SECONDS)

        contract_address = raw.get("contractAddress")
        return Receipt(
            tx_hash=tx_hash,
            block_number=raw["blockNumber"],
            status=raw["status"],
            contract_address=to_checksum_address(contract_address) if contract_address else None,
            gas_used=raw.get("gasUsed"),
        )
