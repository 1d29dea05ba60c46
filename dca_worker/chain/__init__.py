"""Chain access helpers: operation handles, bundler and RPC clients, confirmation."""

from .bundler import BundlerClient, BundlerError
from .handles import DirectTransaction, OperationHandle, SponsoredOperation, handle_from_result
from .rpc import ChainClient, build_web3
from .waiter import ConfirmationOptions, OperationWaiter

__all__ = [
    "BundlerClient",
    "BundlerError",
    "ChainClient",
    "ConfirmationOptions",
    "DirectTransaction",
    "OperationHandle",
    "OperationWaiter",
    "SponsoredOperation",
    "build_web3",
    "handle_from_result",
]
