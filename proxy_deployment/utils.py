import json
from pathlib import Path

import yaml
from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address
from hexbytes import HexBytes

EMPTY_BYTES32 = HexBytes(b"\x00" * 32)


def _load_yaml(filepath: Path) -> dict:
    """Loads a YAML file."""
    with open(filepath, "r") as file:
        return yaml.safe_load(file)


def _load_json(filepath: Path) -> dict:
    """Loads a JSON file."""
    with open(filepath, "r") as file:
        return json.load(file)


def is_empty_slot(value: bytes) -> bool:
    return HexBytes(value).rjust(32, b"\x00") == EMPTY_BYTES32


def address_from_slot(value: bytes) -> ChecksumAddress:
    """Returns the address stored in the low 20 bytes of a storage slot."""
    return to_checksum_address(HexBytes(value).rjust(32, b"\x00")[-20:])
