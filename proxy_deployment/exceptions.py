"""Errors raised while orchestrating a proxy deployment or upgrade."""


class OrchestrationError(Exception):
    """Base exception for errors that end an orchestration run."""

    fatal = False


class UnknownNetwork(OrchestrationError, LookupError):
    """Raised when a network name is not present in the registry."""


class MissingCredentials(OrchestrationError, ValueError):
    """Raised when a network has no usable signing credentials."""


class InvalidNetworkConfig(OrchestrationError, ValueError):
    """Raised when the network configuration itself is malformed."""


class NoSigners(OrchestrationError, LookupError):
    """Raised when no signer can be produced for a network."""


class ArtifactNotFound(OrchestrationError, LookupError):
    """Raised when a contract has no compiled artifact."""


class InitArgsMismatch(OrchestrationError, ValueError):
    """Raised when initializer arguments do not match the initializer ABI."""


class InvalidProxyAddress(OrchestrationError, ValueError):
    """Raised when an address is malformed or is not an EIP-1967 proxy."""


class IncompatibleStorageLayout(OrchestrationError):
    """Raised when a new implementation would corrupt existing proxy storage."""

    def __init__(self, message, problems=None):
        super().__init__(message)
        self.problems = list(problems or [])

    def __str__(self):
        message = super().__str__()
        if not self.problems:
            return message
        details = "\n".join(f"\t- {problem}" for problem in self.problems)
        return f"{message}\n{details}"


class NotProxyAdminOwner(OrchestrationError):
    """Raised when the signer does not own the proxy's ProxyAdmin."""


class ProxyAddressDrift(OrchestrationError):
    """Raised when the proxy binding changed unexpectedly. Internal consistency violation."""

    fatal = True


class ConfirmationTimeout(OrchestrationError, TimeoutError):
    """Raised when a submitted transaction was not confirmed in time."""


class NetworkError(OrchestrationError):
    """Generic transport/RPC failure."""


class ChainIdMismatch(NetworkError):
    """Raised when the connected chain is not the configured one."""


class TransactionReverted(NetworkError):
    """Raised when a mined transaction has a failed status."""


class OperatorAborted(OrchestrationError):
    """Raised when the operator declines to continue before submission."""
