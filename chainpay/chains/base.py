"""Ledger reader contract consumed by chain watchers.

A reader hides the node protocol of one chain behind three calls: the current
tip height, the canonical block at a height (reduced to the value transfers it
contains), and the height a transaction is currently mined at.
"""

from dataclasses import dataclass, field
from typing import Protocol


NO_LOG_INDEX = -1


class LedgerReaderError(Exception):
    """Transient failure talking to the chain (timeout, RPC error, node lag)."""


class MalformedBlockError(LedgerReaderError):
    """The node answered, but the block or transaction could not be parsed."""


@dataclass(frozen=True)
class Transfer:
    """One value movement inside a block."""

    tx_hash: str
    from_address: str
    to_address: str
    amount_raw: int
    log_index: int = NO_LOG_INDEX
    # None for the chain's native asset, otherwise the token contract.
    contract: str | None = None

    @property
    def key(self) -> tuple[str, int]:
        return (self.tx_hash.lower(), self.log_index)


@dataclass(frozen=True)
class Block:
    number: int
    hash: str
    parent_hash: str
    transfers: tuple[Transfer, ...] = field(default_factory=tuple)

    def contains(self, tx_hash: str, log_index: int) -> bool:
        wanted = (tx_hash.lower(), log_index)
        return any(transfer.key == wanted for transfer in self.transfers)


class LedgerReader(Protocol):
    async def current_height(self) -> int: ...

    async def block_at(self, height: int) -> Block: ...

    async def transaction_block(self, tx_hash: str) -> int | None: ...

    async def close(self) -> None: ...
