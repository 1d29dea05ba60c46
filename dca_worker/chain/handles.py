"""Tagged handles for operations submitted by the execution service."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union


@dataclass(frozen=True)
class SponsoredOperation:
    """A gas-sponsored user operation, settled through the bundler."""

    user_op_hash: str

    @property
    def hash(self) -> str:
        return self.user_op_hash


@dataclass(frozen=True)
class DirectTransaction:
    """A self-paid transaction whose hash is already the settlement hash."""

    tx_hash: str

    @property
    def hash(self) -> str:
        return self.tx_hash


OperationHandle = Union[SponsoredOperation, DirectTransaction]


def _clean(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    text = value.strip()
    return text or None


def handle_from_result(result: Optional[Mapping[str, Any]], phase: str) -> Optional[OperationHandle]:
    """Resolve ``{phase}TxUserOperationHash`` / ``{phase}TxHash`` into a handle.

    ``phase`` is the result field prefix used by the service (``"approval"`` or
    ``"swap"``). Returns ``None`` when neither field is populated.
    """

    if not result:
        return None
    user_op_hash = _clean(result.get(f"{phase}TxUserOperationHash"))
    if user_op_hash:
        return SponsoredOperation(user_op_hash)
    tx_hash = _clean(result.get(f"{phase}TxHash"))
    if tx_hash:
        return DirectTransaction(tx_hash)
    return None
