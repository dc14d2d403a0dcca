"""Shared fixtures: in-memory SQLite store, a registered chain, and a scripted ledger reader."""

import os

os.environ["POSTGRES_DSN"] = "sqlite://"
os.environ.setdefault("SERVICE_NAME", "chainpay-tests")

from datetime import timedelta

import pytest
from bip_utils import Bip32Slip10Secp256k1
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from chainpay.chains.base import Block, LedgerReaderError
from chainpay.common.db import Base
from chainpay.common import models  # noqa: F401  (registers tables on Base.metadata)
from chainpay.services.registry.service import ChainRegistry


USDC_CONTRACT = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
WEBHOOK_URL = "https://merchant.test/hooks/chainpay"
WEBHOOK_SECRET = "s3cret"


def make_xpub(seed: bytes = bytes(range(32))) -> str:
    return Bip32Slip10Secp256k1.FromSeed(seed).PublicKey().ToExtended()


class FakeLedgerReader:
    """Scripted chain: blocks are built per test, reorgs replace a suffix."""

    def __init__(self) -> None:
        self.blocks: dict[int, Block] = {}
        self.tip = 0
        self.fail_tip = False
        self.fail_heights: set[int] = set()
        self.requested: list[int] = []
        self.closed = False

    def build(self, start: int, end: int, fork: str = "a", transfers: dict | None = None) -> None:
        transfers = transfers or {}
        for height in range(start, end + 1):
            parent = self.blocks.get(height - 1)
            parent_hash = parent.hash if parent is not None else f"0x{fork}{height - 1}"
            self.blocks[height] = Block(
                number=height,
                hash=f"0x{fork}{height}",
                parent_hash=parent_hash,
                transfers=tuple(transfers.get(height, ())),
            )
        self.tip = end

    async def current_height(self) -> int:
        if self.fail_tip:
            raise LedgerReaderError("node unreachable")
        return self.tip

    async def block_at(self, height: int) -> Block:
        self.requested.append(height)
        if height in self.fail_heights:
            raise LedgerReaderError(f"timeout fetching block {height}")
        return self.blocks[height]

    async def transaction_block(self, tx_hash: str) -> int | None:
        for height in sorted(self.blocks):
            if height > self.tip:
                break
            if any(t.tx_hash.lower() == tx_hash.lower() for t in self.blocks[height].transfers):
                return height
        return None

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def xpub():
    return make_xpub()


@pytest.fixture
def registry(session_factory):
    return ChainRegistry(session_factory, reorg_window=64)


@pytest.fixture
def chain(registry, xpub):
    """`eth-main` with three-block lag, watermark at 95 and USDC accepted."""

    registry.register_chain(
        "eth-main",
        "http://node.invalid",
        xpub,
        native_symbol="ETH",
        decimals=18,
        block_lag=3,
        start_block=95,
    )
    registry.add_token("eth-main", "USDC", USDC_CONTRACT, 6)
    return registry.load("eth-main")


@pytest.fixture
def make_invoice(registry, chain):
    def _make(amount_raw: int = 1000, token: str = "ETH", ttl: timedelta = timedelta(hours=1), **kwargs):
        kwargs.setdefault("webhook_url", WEBHOOK_URL)
        kwargs.setdefault("webhook_secret", WEBHOOK_SECRET)
        return registry.issue_invoice(chain.name, token, amount_raw, ttl, **kwargs)

    return _make


@pytest.fixture
def fake_reader():
    return FakeLedgerReader()
