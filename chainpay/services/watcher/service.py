"""Per-chain watcher: block ingestion, reorg handling, and confirmation promotion.

One `ChainWatcher` runs per chain as an independent asyncio task. Each poll
cycle commits its effects block by block; a block's payment rows and the
watermark advance for that block share one transaction, so stopping a watcher
between (or during) cycles never loses a payment behind an advanced watermark.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy import func, select, update

from chainpay.chains.base import Block, LedgerReader, LedgerReaderError, MalformedBlockError
from chainpay.chains.evm import EvmLedgerReader
from chainpay.common.config import settings
from chainpay.common.db import as_utc, utcnow
from chainpay.common.logging import log_context, logger
from chainpay.common.metrics import (
    blocks_processed_total,
    chain_tip_height,
    chain_watermark_height,
    duplicate_transfers_skipped_total,
    ledger_reader_errors_total,
    payments_confirmed_total,
    payments_detected_total,
    payments_retracted_total,
    reorgs_detected_total,
    watcher_cycle_seconds,
)
from chainpay.common.models import Chain, ChainFamily, Invoice, Payment
from chainpay.common.state_machine import InvoiceStatus
from chainpay.common.tracing import tracer
from chainpay.services.ledger.service import PaymentLedger
from chainpay.services.registry.service import ChainRegistry, ChainState
from chainpay.services.settlement.service import SettlementEngine


class WatermarkConflict(RuntimeError):
    """The stored watermark moved under this watcher (a second watcher on the chain?)."""


@dataclass
class WatcherCycle:
    """What one poll cycle did; returned for tests and logged at debug level."""

    tip: int | None = None
    blocks_ingested: int = 0
    payments_detected: int = 0
    reorg_depth: int = 0
    retracted: int = 0
    relocated: int = 0
    confirmed: int = 0


class ChainWatcher:
    """Polls one chain through a ledger reader and feeds the payment ledger."""

    def __init__(
        self,
        session_factory,
        chain: ChainState,
        reader: LedgerReader,
        settlement: SettlementEngine | None = None,
        ledger: PaymentLedger | None = None,
        poll_interval: float | None = None,
        max_blocks_per_cycle: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.chain = chain
        self.reader = reader
        self.ledger = ledger or PaymentLedger()
        self.settlement = settlement or SettlementEngine(self.ledger)
        self.poll_interval = settings.watcher_poll_interval_seconds if poll_interval is None else poll_interval
        self.max_blocks_per_cycle = max_blocks_per_cycle or settings.watcher_max_blocks_per_cycle
        self._blocks: dict[int, Block] = {}

    async def run_forever(self) -> None:
        """Poll until cancelled; failures are logged and the cycle is retried."""

        while True:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("watcher cycle failed chain=%s error=%s", self.chain.name, exc)
            await asyncio.sleep(self.poll_interval)

    async def poll_once(self) -> WatcherCycle:
        cycle = WatcherCycle()
        self._blocks = {}
        with log_context(chain=self.chain.name):
            with tracer.start_as_current_span("watcher.poll"), watcher_cycle_seconds.labels(chain=self.chain.name).time():
                try:
                    cycle.tip = await self.reader.current_height()
                except LedgerReaderError as exc:
                    self._reader_error("tip", exc)
                    return cycle
                chain_tip_height.labels(chain=self.chain.name).set(cycle.tip)
                if self.chain.last_processed_block == 0 and cycle.tip > 0:
                    self._bootstrap_watermark(cycle.tip)

                try:
                    cycle.reorg_depth = await self._detect_reorg(cycle.tip)
                    await self._ingest_new_blocks(cycle)
                except LedgerReaderError as exc:
                    # Watermark stays put; the same heights are retried next cycle.
                    self._reader_error("block", exc)
                except WatermarkConflict as exc:
                    logger.error("watermark conflict chain=%s: %s", self.chain.name, exc)
                    self._reload_watermark()

                # Depth grows with the tip whether or not ingestion got anywhere.
                cycle.retracted, cycle.relocated, unverified = await self._verify_confirming(cycle.tip)
                cycle.confirmed = self._promote(cycle.tip, skip=unverified)
            logger.debug("watcher cycle chain=%s result=%s", self.chain.name, cycle)
            return cycle

    def _reader_error(self, stage: str, exc: LedgerReaderError) -> None:
        kind = "malformed" if isinstance(exc, MalformedBlockError) else "transient"
        ledger_reader_errors_total.labels(chain=self.chain.name, kind=kind).inc()
        logger.warning(
            "ledger reader error chain=%s stage=%s kind=%s watermark=%s error=%s",
            self.chain.name,
            stage,
            kind,
            self.chain.last_processed_block,
            exc,
        )

    async def _block(self, height: int) -> Block:
        block = self._blocks.get(height)
        if block is None:
            block = await self.reader.block_at(height)
            self._blocks[height] = block
        return block

    # ---------------------------------------------------------------- watermark --

    def _bootstrap_watermark(self, tip: int) -> None:
        """A chain without history starts at the current tip instead of genesis."""

        with self.session_factory() as db:
            result = db.execute(
                update(Chain)
                .where(Chain.name == self.chain.name, Chain.last_processed_block == 0)
                .values(last_processed_block=tip - 1)
            )
            db.commit()
        if result.rowcount == 1:
            self.chain.last_processed_block = tip - 1
            logger.info("watermark bootstrapped chain=%s start_height=%s", self.chain.name, tip)
        else:
            self._reload_watermark()

    def _advance_watermark(self, db, height: int) -> None:
        result = db.execute(
            update(Chain)
            .where(Chain.name == self.chain.name, Chain.last_processed_block == height - 1)
            .values(last_processed_block=height)
        )
        if result.rowcount != 1:
            raise WatermarkConflict(f"expected watermark {height - 1} before advancing to {height}")

    def _rewind_watermark(self, height: int) -> None:
        """Move the watermark back so ingestion replays every height above `height`."""

        watermark = self.chain.last_processed_block
        with self.session_factory() as db:
            result = db.execute(
                update(Chain)
                .where(Chain.name == self.chain.name, Chain.last_processed_block == watermark)
                .values(last_processed_block=height)
            )
            if result.rowcount != 1:
                raise WatermarkConflict(f"expected watermark {watermark} before rewinding to {height}")
            db.commit()
        self.chain.last_processed_block = height
        chain_watermark_height.labels(chain=self.chain.name).set(height)

    def _reload_watermark(self) -> None:
        with self.session_factory() as db:
            stored = db.execute(
                select(Chain.last_processed_block).where(Chain.name == self.chain.name)
            ).scalar_one()
        self.chain.last_processed_block = stored
        self.chain.recent_hashes.clear()

    # ---------------------------------------------------------------- ingestion --

    async def _ingest_new_blocks(self, cycle: WatcherCycle) -> None:
        start = self.chain.last_processed_block + 1
        end = min(cycle.tip, self.chain.last_processed_block + self.max_blocks_per_cycle)
        for height in range(start, end + 1):
            block = await self._block(height)
            expected = self.chain.expected_parent(height)
            if expected is not None and block.parent_hash != expected:
                # Next cycle's reorg detection walks back from the watermark.
                logger.warning(
                    "parent hash mismatch chain=%s height=%s expected=%s got=%s",
                    self.chain.name,
                    height,
                    expected,
                    block.parent_hash,
                )
                break
            cycle.payments_detected += self._ingest_block(block)
            cycle.blocks_ingested += 1

    def _ingest_block(self, block: Block) -> int:
        """Record payments for one block and advance the watermark in the same transaction."""

        detected = 0
        now = utcnow()
        with self.session_factory() as db:
            recipients = {transfer.to_address.lower() for transfer in block.transfers}
            invoices = {}
            if recipients:
                rows = db.execute(
                    select(Invoice).where(
                        Invoice.network == self.chain.name,
                        Invoice.status == InvoiceStatus.PENDING,
                        func.lower(Invoice.address).in_(recipients),
                    )
                ).scalars()
                invoices = {invoice.address.lower(): invoice for invoice in rows}

            for transfer in block.transfers:
                invoice = invoices.get(transfer.to_address.lower())
                if invoice is None or transfer.amount_raw <= 0:
                    continue
                token = self.chain.token_for(transfer.contract)
                if token != invoice.token:
                    logger.info(
                        "transfer token mismatch invoice_id=%s expected=%s got=%s tx_hash=%s",
                        invoice.id,
                        invoice.token,
                        token,
                        transfer.tx_hash,
                    )
                    continue
                if as_utc(invoice.expires_at) <= now:
                    logger.warning(
                        "transfer to expired invoice ignored invoice_id=%s tx_hash=%s amount_raw=%s",
                        invoice.id,
                        transfer.tx_hash,
                        transfer.amount_raw,
                    )
                    continue
                if self.ledger.record_transfer(db, self.chain.name, invoice, transfer, token, block.number):
                    detected += 1
                    payments_detected_total.labels(chain=self.chain.name).inc()
                    logger.info(
                        "payment detected invoice_id=%s amount_raw=%s token=%s tx_hash=%s log_index=%s block=%s",
                        invoice.id,
                        transfer.amount_raw,
                        token,
                        transfer.tx_hash,
                        transfer.log_index,
                        block.number,
                    )
                else:
                    duplicate_transfers_skipped_total.labels(chain=self.chain.name).inc()

            self._advance_watermark(db, block.number)
            db.commit()

        self.chain.last_processed_block = block.number
        chain_watermark_height.labels(chain=self.chain.name).set(block.number)
        blocks_processed_total.labels(chain=self.chain.name).inc()
        self.chain.remember_block(block.number, block.hash)
        return detected

    # -------------------------------------------------------------------- reorgs --

    async def _detect_reorg(self, tip: int) -> int:
        """Rewind the watermark below heights whose canonical block changed.

        Returns the number of replaced heights (0 when the chain is consistent).
        The watermark moves back to the last height that still matches, or to
        the new tip when the chain got shorter, and normal ingestion replays
        the rest. Ingestion is idempotent, so replayed blocks that still carry
        a known transfer add nothing.
        """

        watermark = self.chain.last_processed_block
        if not self.chain.recent_hashes:
            return 0
        fork = None
        if tip < watermark:
            # The canonical chain got shorter; everything above the tip is gone.
            fork = tip + 1
        height = min(watermark, tip)
        while height in self.chain.recent_hashes:
            block = await self._block(height)
            if block.hash == self.chain.recent_hashes[height]:
                break
            fork = height
            height -= 1
        else:
            if fork is not None and fork <= min(watermark, tip):
                logger.error(
                    "reorg reaches past the oldest remembered block chain=%s oldest_checked=%s",
                    self.chain.name,
                    fork,
                )
        if fork is None:
            return 0

        depth = watermark - fork + 1
        reorgs_detected_total.labels(chain=self.chain.name).inc()
        logger.warning(
            "reorg detected chain=%s fork_height=%s watermark=%s tip=%s depth=%s",
            self.chain.name,
            fork,
            watermark,
            tip,
            depth,
        )
        self._rewind_watermark(fork - 1)
        self.chain.forget_from(fork)
        return depth

    async def _verify_confirming(self, tip: int) -> tuple[int, int, set[str]]:
        """Retract or relocate Confirming payments no longer in their canonical block.

        Returns the retracted and relocated counts plus the ids of payments that
        could not be checked because the reader failed; those are not promoted
        this cycle.
        """

        with self.session_factory() as db:
            payments = self.ledger.confirming_payments(db, self.chain.name)
        retracted = relocated = 0
        unverified: set[str] = set()
        for payment in payments:
            try:
                action = await self._check_payment(payment, tip)
            except LedgerReaderError as exc:
                self._reader_error("verify", exc)
                unverified.add(payment.id)
                continue
            if action == "relocated":
                relocated += 1
            elif action == "retracted":
                retracted += 1
        return retracted, relocated, unverified

    async def _check_payment(self, payment: Payment, tip: int) -> str | None:
        if payment.block_number <= tip:
            block = await self._block(payment.block_number)
            if block.contains(payment.tx_hash, payment.log_index):
                return None

        moved_to = await self.reader.transaction_block(payment.tx_hash)
        if moved_to is not None and moved_to <= tip and moved_to != payment.block_number:
            moved_block = await self._block(moved_to)
            if moved_block.contains(payment.tx_hash, payment.log_index):
                with self.session_factory() as db:
                    moved = self.ledger.relocate(db, payment.id, moved_to)
                    db.commit()
                if not moved:
                    return None
                payments_retracted_total.labels(chain=self.chain.name, action="relocated").inc()
                logger.warning(
                    "payment relocated after reorg payment_id=%s tx_hash=%s from_block=%s to_block=%s",
                    payment.id,
                    payment.tx_hash,
                    payment.block_number,
                    moved_to,
                )
                return "relocated"

        with self.session_factory() as db:
            removed = self.ledger.retract(db, payment.id)
            db.commit()
        if not removed:
            return None
        payments_retracted_total.labels(chain=self.chain.name, action="retracted").inc()
        logger.warning(
            "payment retracted after reorg payment_id=%s invoice_id=%s tx_hash=%s block=%s",
            payment.id,
            payment.invoice_id,
            payment.tx_hash,
            payment.block_number,
        )
        return "retracted"

    # ----------------------------------------------------------------- promotion --

    def _promote(self, tip: int, skip: set[str] | None = None) -> int:
        """Confirm payments at depth >= block_lag and settle their invoices."""

        with self.session_factory() as db:
            due = self.ledger.due_for_confirmation(db, self.chain.name, tip, self.chain.block_lag)
        skip = skip or set()
        confirmed = 0
        for payment in due:
            if payment.id in skip:
                continue
            depth = tip - payment.block_number
            try:
                with self.session_factory() as db:
                    if not self.ledger.confirm(db, payment):
                        db.rollback()
                        continue
                    self.settlement.settle(db, payment.invoice_id, payment, confirmations=depth)
                    db.commit()
            except Exception as exc:
                # Rolled back: the payment stays Confirming and is retried next cycle.
                logger.exception("payment promotion failed payment_id=%s error=%s", payment.id, exc)
                continue
            confirmed += 1
            payments_confirmed_total.labels(chain=self.chain.name).inc()
            logger.info(
                "payment confirmed payment_id=%s invoice_id=%s tx_hash=%s depth=%s",
                payment.id,
                payment.invoice_id,
                payment.tx_hash,
                depth,
            )
        return confirmed


def default_reader_factory(chain: ChainState) -> LedgerReader:
    if chain.family == ChainFamily.ACCOUNT:
        return EvmLedgerReader(
            chain.rpc_url,
            token_contracts=chain.token_contracts,
            timeout_seconds=settings.ledger_rpc_timeout_seconds,
        )
    raise ValueError(f"no ledger reader available for chain family {chain.family.value}")


class WatcherService:
    """Owns one watcher task per configured chain."""

    def __init__(
        self,
        session_factory,
        registry: ChainRegistry | None = None,
        reader_factory: Callable[[ChainState], LedgerReader] = default_reader_factory,
    ) -> None:
        self.session_factory = session_factory
        self.registry = registry or ChainRegistry(session_factory, settings.reorg_window_blocks)
        self.reader_factory = reader_factory
        self.settlement = SettlementEngine()
        self.watchers: dict[str, ChainWatcher] = {}
        self.tasks: dict[str, asyncio.Task] = {}

    def start_all(self) -> None:
        for chain in self.registry.load_all():
            try:
                self.start(chain)
            except ValueError as exc:
                logger.error("chain %s not watched: %s", chain.name, exc)

    def start(self, chain: ChainState | str) -> ChainWatcher:
        if isinstance(chain, str):
            loaded = self.registry.load(chain)
            if loaded is None:
                raise ValueError(f"chain '{chain}' does not exist")
            chain = loaded
        if chain.name in self.tasks:
            raise ValueError(f"chain {chain.name} is already watched")
        watcher = ChainWatcher(self.session_factory, chain, self.reader_factory(chain), self.settlement)
        self.watchers[chain.name] = watcher
        self.tasks[chain.name] = asyncio.create_task(watcher.run_forever(), name=f"watcher:{chain.name}")
        logger.info("watcher started chain=%s watermark=%s", chain.name, chain.last_processed_block)
        return watcher

    async def stop(self, name: str) -> None:
        task = self.tasks.pop(name, None)
        watcher = self.watchers.pop(name, None)
        if task is None:
            raise ValueError(f"chain {name} is not watched")
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        if watcher is not None:
            await watcher.reader.close()
        logger.info("watcher stopped chain=%s", name)

    async def stop_all(self) -> None:
        for name in list(self.tasks):
            await self.stop(name)
