"""Thin async wrapper around a ``web3`` HTTP provider."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from web3 import Web3
from web3.exceptions import TransactionNotFound

_ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    }
]


def build_web3(rpc_url: str, *, timeout: float = 30.0) -> Web3:
    """Return a ``Web3`` instance bound to ``rpc_url``."""

    return Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))


class ChainClient:
    """Chain reads used by the pipeline, run off the event loop."""

    def __init__(self, web3: Web3) -> None:
        self._web3 = web3

    @property
    def web3(self) -> Web3:
        return self._web3

    def _balance_of(self, token: str, owner: str) -> int:
        contract = self._web3.eth.contract(address=Web3.to_checksum_address(token), abi=_ERC20_ABI)
        return int(contract.functions.balanceOf(Web3.to_checksum_address(owner)).call())

    async def balance_of(self, token: str, owner: str) -> int:
        """Return ``owner``'s balance of ERC-20 ``token`` in base units."""

        return await asyncio.to_thread(self._balance_of, token, owner)

    def _receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        try:
            receipt = self._web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        payload = dict(receipt)
        raw_hash = payload.get("transactionHash")
        if raw_hash is not None and not isinstance(raw_hash, str):
            payload["transactionHash"] = Web3.to_hex(raw_hash)
        return payload

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """Return the mined receipt for ``tx_hash`` or ``None`` while pending."""

        return await asyncio.to_thread(self._receipt, tx_hash)
