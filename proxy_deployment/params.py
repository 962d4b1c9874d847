import json
import re
import typing
from abc import ABC, abstractmethod
from collections import OrderedDict
from decimal import Decimal, InvalidOperation, localcontext
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple

import eth_abi
import yaml
from eth_typing import ChecksumAddress
from eth_utils import function_signature_to_4byte_selector, is_address, to_checksum_address
from eth_utils.currency import units
from hexbytes import HexBytes

from proxy_deployment.artifacts import ContractArtifact
from proxy_deployment.exceptions import InitArgsMismatch
from proxy_deployment.utils import _load_yaml

ARRAY_TYPE = re.compile(r"^(?P<inner>.+)\[(?P<size>\d*)\]$")
TRUE_VALUES = ("true", "yes", "1")
FALSE_VALUES = ("false", "no", "0")


class VariableContext(typing.NamedTuple):
    deployer: Optional[ChecksumAddress] = None


# Variables


class Variable(ABC):
    VARIABLE_PREFIX = "$"

    @abstractmethod
    def resolve(self, context: VariableContext) -> Any:
        raise NotImplementedError

    @classmethod
    def is_variable(cls, param: Any) -> bool:
        """Returns True if the param is a variable."""
        return isinstance(param, str) and param.startswith(cls.VARIABLE_PREFIX)


class DeployerAccount(Variable):
    DEPLOYER_INDICATOR = "deployer"

    @classmethod
    def is_deployer(cls, value: str) -> bool:
        """Returns True if the variable is a special deployer variable."""
        return value == cls.DEPLOYER_INDICATOR

    def resolve(self, context: VariableContext) -> Any:
        if context.deployer is None:
            raise InitArgsMismatch("'$deployer' used but no deployer account is known.")
        return context.deployer


def _variable_from_value(value: str) -> Variable:
    name = value[len(Variable.VARIABLE_PREFIX) :]
    if DeployerAccount.is_deployer(name):
        return DeployerAccount()
    raise InitArgsMismatch(f"Unknown variable '{value}'.")


#
# ABI helpers
#


def canonical_type(abi_input: dict) -> str:
    """Returns the canonical ABI type, expanding tuples into their components."""
    abi_type = abi_input["type"]
    if abi_type.startswith("tuple"):
        components = ",".join(canonical_type(c) for c in abi_input.get("components", []))
        return f"({components}){abi_type[len('tuple'):]}"
    return abi_type


def method_signature(method_abi: dict) -> str:
    types = ",".join(canonical_type(i) for i in method_abi.get("inputs", []))
    return f"{method_abi['name']}({types})"


def encode_call(method_abi: dict, args: Sequence[Any]) -> bytes:
    """Returns calldata for a function call: selector followed by encoded arguments."""
    selector = function_signature_to_4byte_selector(method_signature(method_abi))
    types = [canonical_type(i) for i in method_abi.get("inputs", [])]
    return bytes(selector) + eth_abi.encode(types, list(args))


def encode_constructor(artifact: ContractArtifact, args: Sequence[Any] = ()) -> bytes:
    """Returns deployment data: creation bytecode followed by encoded constructor args."""
    constructor = artifact.constructor_abi
    inputs = constructor.get("inputs", []) if constructor else []
    if len(inputs) != len(args):
        raise InitArgsMismatch(
            f"{artifact.name} constructor requires {len(inputs)} argument(s), got {len(args)}."
        )
    data = bytes(artifact.bytecode)
    if inputs:
        data += eth_abi.encode([canonical_type(i) for i in inputs], list(args))
    return data


#
# Conversion of operator supplied values
#


def _convert_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("booleans are not integers")
    if isinstance(value, int):
        return value
    if not isinstance(value, str):
        raise ValueError(f"cannot interpret {value!r} as an integer")

    text = value.strip().replace("_", "")
    parts = text.split()
    if len(parts) == 2:
        # e.g. "1000 ether"
        amount, unit = parts
        if unit.lower() not in units:
            raise ValueError(f"unknown unit '{unit}'")
        with localcontext() as context:
            context.prec = 100
            try:
                wei = Decimal(amount) * units[unit.lower()]
            except InvalidOperation:
                raise ValueError(f"invalid amount '{amount}'")
            if wei != wei.to_integral_value():
                raise ValueError(f"'{value}' is not a whole number of wei")
            return int(wei)
    return int(text, 0)


def _convert_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in TRUE_VALUES:
            return True
        if text in FALSE_VALUES:
            return False
    raise ValueError(f"cannot interpret {value!r} as a boolean")


def _convert_address(value: Any, context: VariableContext) -> ChecksumAddress:
    if Variable.is_variable(value):
        value = _variable_from_value(value).resolve(context)
    if not is_address(value):
        raise ValueError(f"{value!r} is not a valid address")
    return to_checksum_address(value)


def _convert_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return bytes(HexBytes(value))
    raise ValueError(f"cannot interpret {value!r} as bytes")


def _as_sequence(value: Any) -> list:
    if isinstance(value, str):
        value = json.loads(value)
    if not isinstance(value, (list, tuple)):
        raise ValueError(f"expected a list, got {value!r}")
    return list(value)


def convert_value(abi_input: dict, value: Any, context: VariableContext) -> Any:
    """Converts a raw (often string) value to the Python value for an ABI type."""
    abi_type = abi_input["type"]

    array = ARRAY_TYPE.match(abi_type)
    if array:
        inner_input = dict(abi_input, type=array.group("inner"))
        items = _as_sequence(value)
        size = array.group("size")
        if size and len(items) != int(size):
            raise ValueError(f"expected {size} item(s), got {len(items)}")
        return [convert_value(inner_input, item, context) for item in items]

    if abi_type == "tuple":
        components = abi_input.get("components", [])
        items = _as_sequence(value)
        if len(items) != len(components):
            raise ValueError(f"expected {len(components)} component(s), got {len(items)}")
        return tuple(convert_value(c, item, context) for c, item in zip(components, items))

    if abi_type.startswith(("uint", "int")):
        return _convert_int(value)
    if abi_type == "address":
        return _convert_address(value, context)
    if abi_type == "bool":
        return _convert_bool(value)
    if abi_type.startswith("bytes"):
        return _convert_bytes(value)
    if abi_type == "string":
        if not isinstance(value, str):
            raise ValueError(f"expected a string, got {value!r}")
        return value
    return value


def _convert_for_abi(method_abi: dict, raw_args: Sequence[Any], context: VariableContext):
    converted = OrderedDict()
    for position, (abi_input, raw) in enumerate(zip(method_abi.get("inputs", []), raw_args)):
        name = abi_input.get("name") or f"arg{position}"
        try:
            value = convert_value(abi_input, raw, context)
        except (ValueError, TypeError) as e:
            raise InitArgsMismatch(
                f"Argument '{name}' at position {position} ({raw!r}) does not match "
                f"ABI type '{canonical_type(abi_input)}': {e}"
            )
        if not eth_abi.is_encodable(canonical_type(abi_input), value):
            raise InitArgsMismatch(
                f"Argument '{name}' at position {position} has a value '{value}' "
                f"whose type does not match expected ABI type '{canonical_type(abi_input)}'."
            )
        converted[name] = value
    return converted


def resolve_method_args(
    method_abis: List[dict],
    raw_args: Sequence[Any],
    context: VariableContext = VariableContext(),
) -> Tuple[dict, "OrderedDict[str, Any]"]:
    """
    Converts and validates arguments against the candidate ABIs of a method.
    Returns the matching ABI and the named, converted arguments.
    """
    if len(method_abis) == 0:
        raise InitArgsMismatch("No method ABI provided for validation of args.")

    method_name = method_abis[0]["name"]
    candidates = [abi for abi in method_abis if len(abi.get("inputs", [])) == len(raw_args)]
    if not candidates:
        expected = " or ".join(str(len(abi.get("inputs", []))) for abi in method_abis)
        raise InitArgsMismatch(
            f"'{method_name}' requires {expected} argument(s), got {len(raw_args)}."
        )

    error = None
    for abi in candidates:
        try:
            return abi, _convert_for_abi(abi, raw_args, context)
        except InitArgsMismatch as e:
            error = e
    if len(candidates) == 1:
        raise error
    raise InitArgsMismatch(
        f"Could not find ABI for '{method_name}' with {len(raw_args)} arg(s) and given type(s)."
    )


def validate_named_args(method_abi: dict, named_args: "OrderedDict[str, Any]") -> None:
    """Checks that parameter names from a params file match the ABI, in order."""
    inputs = method_abi.get("inputs", [])
    if len(named_args) != len(inputs):
        raise InitArgsMismatch(
            f"'{method_abi['name']}' requires {len(inputs)} argument(s), got {len(named_args)}."
        )
    for position, (abi_input, name) in enumerate(zip(inputs, named_args)):
        if abi_input.get("name") != name:
            raise InitArgsMismatch(
                f"'{method_abi['name']}' parameter '{name}' at position {position} does not "
                f"match the expected ABI name '{abi_input.get('name')}'."
            )


#
# Params files
#


class InitializerCall(typing.NamedTuple):
    method: str
    args: Optional["OrderedDict[str, Any]"]


class InitializerParameters:
    """Initializer parameters for contracts, loaded from a YAML params file."""

    INITIALIZER_KEY = "initializer"
    ARGS_KEY = "args"

    def __init__(self, parameters: "OrderedDict[str, InitializerCall]"):
        self.parameters = parameters

    @classmethod
    def from_config(cls, config: dict) -> "InitializerParameters":
        if not isinstance(config, dict):
            raise InitArgsMismatch("Params file must be a mapping with a 'contracts' field.")
        contracts = config.get("contracts")
        if not contracts:
            raise InitArgsMismatch("Params file missing 'contracts' field.")
        if not isinstance(contracts, list):
            raise InitArgsMismatch("'contracts' in params file must be a list.")

        parameters = OrderedDict()
        for contract_info in contracts:
            if isinstance(contract_info, str):
                parameters[contract_info] = InitializerCall(method=None, args=OrderedDict())
            elif isinstance(contract_info, dict) and len(contract_info) == 1:
                contract_name = list(contract_info.keys())[0]  # only one entry
                contract_data = contract_info[contract_name] or dict()
                if not isinstance(contract_data, dict):
                    raise InitArgsMismatch(f"Malformed params for {contract_name}.")
                args = contract_data.get(cls.ARGS_KEY) or dict()
                if not isinstance(args, dict):
                    raise InitArgsMismatch(
                        f"'{cls.ARGS_KEY}' for {contract_name} must map parameter names to values."
                    )
                parameters[contract_name] = InitializerCall(
                    method=contract_data.get(cls.INITIALIZER_KEY),
                    args=OrderedDict(args),
                )
            else:
                raise InitArgsMismatch("Malformed params YAML.")
        return cls(parameters=parameters)

    @classmethod
    def from_yaml(cls, filepath: Path) -> "InitializerParameters":
        try:
            config = _load_yaml(filepath)
        except (OSError, yaml.YAMLError) as e:
            raise InitArgsMismatch(f"Cannot read params file {filepath}: {e}") from e
        return cls.from_config(config)

    def for_contract(self, contract_name: str) -> InitializerCall:
        try:
            return self.parameters[contract_name]
        except KeyError:
            raise InitArgsMismatch(f"No initializer parameters for '{contract_name}' in params file.")
