"""Chain registry: operator configuration plus per-chain watcher state.

`ChainState` is the object a chain watcher owns. It is built from the
`chains`/`tokens` rows and handed to the watcher explicitly, so one chain can
be driven in isolation (tests inject a fake ledger reader next to it).
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select, update

from chainpay.chains.derivation import AddressDeriver
from chainpay.common.db import utcnow
from chainpay.common.logging import logger
from chainpay.common.models import Chain, ChainFamily, Invoice, Token
from chainpay.common.state_machine import InvoiceStatus


class RegistryError(ValueError):
    """Raised for operator configuration mistakes."""


@dataclass(frozen=True)
class TokenConfig:
    symbol: str
    contract: str
    decimals: int


@dataclass
class ChainState:
    """Configuration and mutable watermark of one chain."""

    name: str
    rpc_url: str
    family: ChainFamily
    xpub: str
    native_symbol: str
    decimals: int
    block_lag: int
    last_processed_block: int = 0
    tokens: list[TokenConfig] = field(default_factory=list)
    reorg_window: int = 64
    # height -> block hash for the most recent processed blocks.
    recent_hashes: OrderedDict = field(default_factory=OrderedDict)

    @classmethod
    def from_rows(cls, chain: Chain, tokens: list[Token], reorg_window: int = 64) -> "ChainState":
        return cls(
            name=chain.name,
            rpc_url=chain.rpc_url,
            family=chain.family,
            xpub=chain.xpub,
            native_symbol=chain.native_symbol,
            decimals=chain.decimals,
            block_lag=chain.block_lag,
            last_processed_block=chain.last_processed_block,
            tokens=[TokenConfig(t.symbol, t.contract_address, t.decimals) for t in tokens],
            reorg_window=reorg_window,
        )

    def token_contracts(self) -> list[str]:
        return [token.contract for token in self.tokens]

    def token_for(self, contract: str | None) -> str | None:
        """Symbol a transfer is denominated in, or None for unknown contracts."""

        if contract is None:
            return self.native_symbol
        wanted = contract.lower()
        for token in self.tokens:
            if token.contract.lower() == wanted:
                return token.symbol
        return None

    def remember_block(self, height: int, block_hash: str) -> None:
        self.recent_hashes[height] = block_hash
        self.recent_hashes.move_to_end(height)
        while len(self.recent_hashes) > self.reorg_window:
            self.recent_hashes.popitem(last=False)

    def forget_from(self, height: int) -> None:
        for known in [h for h in self.recent_hashes if h >= height]:
            del self.recent_hashes[known]

    def expected_parent(self, height: int) -> str | None:
        return self.recent_hashes.get(height - 1)

    def deriver(self) -> AddressDeriver:
        return AddressDeriver(self.xpub, self.family)


class ChainRegistry:
    """Reads and writes operator chain configuration."""

    def __init__(self, session_factory, reorg_window: int = 64) -> None:
        self.session_factory = session_factory
        self.reorg_window = reorg_window

    def _state(self, db, chain: Chain) -> ChainState:
        tokens = db.execute(select(Token).where(Token.chain_id == chain.id).order_by(Token.id)).scalars().all()
        return ChainState.from_rows(chain, list(tokens), self.reorg_window)

    def load_all(self) -> list[ChainState]:
        with self.session_factory() as db:
            chains = db.execute(select(Chain).order_by(Chain.id)).scalars().all()
            return [self._state(db, chain) for chain in chains]

    def load(self, name: str) -> ChainState | None:
        with self.session_factory() as db:
            chain = db.execute(select(Chain).where(Chain.name == name)).scalar_one_or_none()
            if chain is None:
                return None
            return self._state(db, chain)

    def register_chain(
        self,
        name: str,
        rpc_url: str,
        xpub: str,
        native_symbol: str,
        decimals: int,
        family: ChainFamily = ChainFamily.ACCOUNT,
        block_lag: int = 3,
        start_block: int = 0,
    ) -> ChainState:
        if block_lag < 0:
            raise RegistryError("block_lag must be >= 0")
        # Fail fast on an unusable xpub rather than at first invoice.
        AddressDeriver(xpub, family).derive(0)
        with self.session_factory() as db:
            if db.execute(select(Chain.id).where(Chain.name == name)).scalar_one_or_none() is not None:
                raise RegistryError(f"chain {name} already exists")
            chain = Chain(
                name=name,
                rpc_url=rpc_url,
                family=family,
                xpub=xpub,
                native_symbol=native_symbol,
                decimals=decimals,
                block_lag=block_lag,
                last_processed_block=start_block,
            )
            db.add(chain)
            db.commit()
            logger.info("chain registered name=%s family=%s block_lag=%s", name, family.value, block_lag)
            return self._state(db, chain)

    def add_token(self, chain_name: str, symbol: str, contract_address: str, decimals: int) -> TokenConfig:
        with self.session_factory() as db:
            chain = db.execute(select(Chain).where(Chain.name == chain_name)).scalar_one_or_none()
            if chain is None:
                raise RegistryError(f"chain {chain_name} does not exist")
            if chain.family != ChainFamily.ACCOUNT:
                raise RegistryError(f"chain {chain_name} does not support token contracts")
            db.add(Token(chain_id=chain.id, symbol=symbol, contract_address=contract_address, decimals=decimals))
            db.commit()
            logger.info("token added chain=%s symbol=%s contract=%s", chain_name, symbol, contract_address)
            return TokenConfig(symbol, contract_address, decimals)

    def remove_chain(self, name: str) -> None:
        """Delete a chain; refused while any invoice still references it."""

        with self.session_factory() as db:
            referenced = db.execute(
                select(func.count()).select_from(Invoice).where(Invoice.network == name)
            ).scalar_one()
            if referenced:
                raise RegistryError(f"chain {name} is referenced by {referenced} invoices")
            chain_id = db.execute(select(Chain.id).where(Chain.name == name)).scalar_one_or_none()
            if chain_id is None:
                raise RegistryError(f"chain {name} does not exist")
            db.execute(delete(Token).where(Token.chain_id == chain_id))
            db.execute(delete(Chain).where(Chain.id == chain_id))
            db.commit()

    def issue_invoice(
        self,
        chain_name: str,
        token: str,
        amount_raw: int,
        ttl: timedelta,
        webhook_url: str | None = None,
        webhook_secret: str | None = None,
        now: datetime | None = None,
    ) -> Invoice:
        """Allocate the next derivation index on the chain and create a Pending invoice.

        Indexes come from the chain's `next_address_index` counter, bumped in the
        same transaction as the insert, so deleting an invoice never frees its
        index for reuse.
        """

        if amount_raw <= 0:
            raise RegistryError("amount_raw must be positive")
        state = self.load(chain_name)
        if state is None:
            raise RegistryError(f"chain {chain_name} does not exist")
        if token != state.native_symbol and token not in {t.symbol for t in state.tokens}:
            raise RegistryError(f"token {token} is not accepted on {chain_name}")
        now = now or utcnow()
        with self.session_factory() as db:
            index = db.execute(
                update(Chain)
                .where(Chain.name == chain_name)
                .values(next_address_index=Chain.next_address_index + 1)
                .returning(Chain.next_address_index)
                .execution_options(synchronize_session=False)
            ).scalar_one() - 1
            invoice = Invoice(
                address=state.deriver().derive(index),
                address_index=index,
                network=chain_name,
                token=token,
                amount_raw=amount_raw,
                paid_raw=0,
                status=InvoiceStatus.PENDING,
                created_at=now,
                expires_at=now + ttl,
                webhook_url=webhook_url,
                webhook_secret=webhook_secret,
            )
            db.add(invoice)
            db.commit()
            logger.info(
                "invoice issued invoice_id=%s chain=%s index=%s address=%s",
                invoice.id,
                chain_name,
                index,
                invoice.address,
            )
            return invoice
