"""
Latest-nonce tracking per (network, address).

Entries are overwritten unconditionally: the tracker records what the wallet
last submitted, it does not enforce monotonicity.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger("idwallet_nonces")


@dataclass(frozen=True)
class NonceRecord:
    block_height: int
    nonce: int


class NonceTracker:
    """In-memory map of ``(network, address) -> NonceRecord``."""

    def __init__(self):
        self._records: dict[tuple[str, str], NonceRecord] = {}

    def record_nonce(self, network: str, address: str,
                     block_height: int, nonce: int) -> NonceRecord:
        record = NonceRecord(block_height=block_height, nonce=nonce)
        previous = self._records.get((network, address))
        if previous is not None and nonce < previous.nonce:
            logger.debug(f"Nonce for {address} on {network} moved back "
                         f"{previous.nonce} -> {nonce}")
        self._records[(network, address)] = record
        return record

    def record_transaction(self, network: str, address: str,
                           nonce: Optional[int],
                           chain_tip: Optional[int]) -> Optional[NonceRecord]:
        """
        Record the nonce of a just-submitted transaction.

        Skipped when the nonce is zero/unknown or the chain tip height has
        not been fetched yet.
        """
        if not nonce or chain_tip is None:
            return None
        return self.record_nonce(network, address, chain_tip, nonce)

    def latest(self, network: str, address: str) -> Optional[NonceRecord]:
        return self._records.get((network, address))

    def __len__(self) -> int:
        return len(self._records)
