from collections import OrderedDict

from proxy_deployment.exceptions import OperatorAborted

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def _confirm(question: str) -> None:
    answer = input(f"{question} Y/N? ")
    if answer.lower().strip() != "y":
        raise OperatorAborted("Aborted by operator before submission.")


def _confirm_deployment(contract_name: str) -> None:
    """Asks the user to confirm the deployment of a single contract."""
    _confirm(f"Deploy {contract_name}")


def _continue() -> None:
    """Asks the user to continue."""
    _confirm("Continue")


def _confirm_zero_address() -> None:
    _confirm("Zero Address detected for initializer parameter; Continue?")


def _confirm_resolution(resolved_params: OrderedDict, contract_name: str) -> None:
    """Asks the user to confirm the resolved initializer parameters for a single contract."""
    if len(resolved_params) == 0:
        print(f"\n(i) No initializer parameters for {contract_name}")
        _confirm_deployment(contract_name)
        return

    print(f"\nInitializer parameters for {contract_name}")
    contains_zero_address = False
    for name, resolved_value in resolved_params.items():
        print(f"\t{name}={resolved_value}")
        if not contains_zero_address:
            contains_zero_address = resolved_value == ZERO_ADDRESS
    _confirm_deployment(contract_name)
    if contains_zero_address:
        _confirm_zero_address()
