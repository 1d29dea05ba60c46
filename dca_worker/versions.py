"""Resolution of the application version a schedule may run with."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from .errors import AuthorizationRevoked

logger = logging.getLogger(__name__)

# Minimal ABI for the delegation registry's permission lookup.
_REGISTRY_ABI = [
    {
        "inputs": [
            {"internalType": "uint256", "name": "pkpTokenId", "type": "uint256"},
            {"internalType": "uint40", "name": "appId", "type": "uint40"},
        ],
        "name": "getPermittedAppVersionForPkp",
        "outputs": [{"internalType": "uint24", "name": "", "type": "uint24"}],
        "stateMutability": "view",
        "type": "function",
    }
]


def resolve_app_version(stored: int, permitted: Optional[int], *, address: str = "") -> int:
    """Return the version to execute with.

    A missing permitted version means the owner revoked the app entirely. Any
    live permitted version replaces the stored one; compatibility between the
    two versions' parameters is not checked.
    """

    if permitted is None:
        raise AuthorizationRevoked(address=address, stored_version=stored)
    if permitted != stored:
        logger.info(
            "Permitted app version changed from %s to %s for %s",
            stored,
            permitted,
            address,
            extra={"event": "version.upgraded", "stored": stored, "permitted": permitted},
        )
    return permitted


class PermissionReader:
    """Read the currently permitted app version from the delegation registry."""

    def __init__(self, web3: Any, registry_address: str) -> None:
        self._web3 = web3
        self._contract = web3.eth.contract(
            address=web3.to_checksum_address(registry_address),
            abi=_REGISTRY_ABI,
        )

    def _call(self, pkp_token_id: int, app_id: int) -> int:
        return int(self._contract.functions.getPermittedAppVersionForPkp(pkp_token_id, app_id).call())

    async def permitted_version(self, pkp_token_id: str, app_id: int) -> Optional[int]:
        """Return the permitted version, or ``None`` when nothing is permitted."""

        token_id = int(pkp_token_id, 0) if pkp_token_id.startswith("0x") else int(pkp_token_id)
        version = await asyncio.to_thread(self._call, token_id, app_id)
        if version <= 0:
            return None
        return version
