"""Chain watcher cycles against a scripted ledger reader."""

from datetime import timedelta

import pytest
from sqlalchemy import select, update

from chainpay.chains.base import Transfer
from chainpay.common.db import utcnow
from chainpay.common.models import Chain, ChainFamily, Invoice, Payment, Webhook
from chainpay.common.state_machine import InvoiceStatus, PaymentStatus
from chainpay.services.watcher.service import ChainWatcher, WatcherService

from conftest import USDC_CONTRACT, FakeLedgerReader


def native(tx_hash, invoice, amount_raw):
    # Nodes report lowercase recipients; invoices store checksummed addresses.
    return Transfer(tx_hash, "0x00000000000000000000000000000000000000aa", invoice.address.lower(), amount_raw)


def watcher_for(session_factory, registry, reader, name="eth-main"):
    return ChainWatcher(session_factory, registry.load(name), reader, poll_interval=0, max_blocks_per_cycle=50)


def payments(session_factory):
    with session_factory() as db:
        return db.execute(select(Payment).order_by(Payment.block_number)).scalars().all()


def watermark(session_factory, name="eth-main"):
    with session_factory() as db:
        return db.execute(select(Chain.last_processed_block).where(Chain.name == name)).scalar_one()


def invoice_state(session_factory, invoice_id):
    with session_factory() as db:
        invoice = db.get(Invoice, invoice_id)
        events = db.execute(
            select(Webhook.event_type).where(Webhook.invoice_id == invoice_id).order_by(Webhook.created_at)
        ).scalars().all()
        return invoice.status, invoice.paid_raw, events


@pytest.mark.asyncio
async def test_confirmation_depth_and_settlement(session_factory, registry, make_invoice, fake_reader):
    """Tip 100, lag 3: block 96 confirms, block 98 waits until the tip reaches 101."""

    invoice = make_invoice(amount_raw=1000)
    fake_reader.build(96, 100, transfers={96: [native("0xaa", invoice, 400)], 98: [native("0xbb", invoice, 600)]})
    watcher = watcher_for(session_factory, registry, fake_reader)

    cycle = await watcher.poll_once()

    assert (cycle.tip, cycle.blocks_ingested, cycle.payments_detected, cycle.confirmed) == (100, 5, 2, 1)
    assert watermark(session_factory) == 100
    assert [(p.block_number, p.status) for p in payments(session_factory)] == [
        (96, PaymentStatus.CONFIRMED),
        (98, PaymentStatus.CONFIRMING),
    ]
    assert invoice_state(session_factory, invoice.id) == (InvoiceStatus.PENDING, 400, ["payment.confirmed"])

    fake_reader.build(101, 101)
    cycle = await watcher.poll_once()

    assert cycle.confirmed == 1
    assert all(p.status == PaymentStatus.CONFIRMED for p in payments(session_factory))
    assert invoice_state(session_factory, invoice.id) == (
        InvoiceStatus.PAID,
        1000,
        ["payment.confirmed", "invoice.paid"],
    )


@pytest.mark.asyncio
async def test_reprocessing_blocks_is_idempotent(session_factory, registry, make_invoice, fake_reader):
    """A restart that replays already-seen blocks creates no second payment."""

    invoice = make_invoice(amount_raw=1000)
    fake_reader.build(96, 100, transfers={99: [native("0xaa", invoice, 1000)]})
    await watcher_for(session_factory, registry, fake_reader).poll_once()

    with session_factory() as db:
        db.execute(update(Chain).where(Chain.name == "eth-main").values(last_processed_block=95))
        db.commit()
    cycle = await watcher_for(session_factory, registry, fake_reader).poll_once()

    assert cycle.payments_detected == 0
    assert len(payments(session_factory)) == 1
    assert watermark(session_factory) == 100


@pytest.mark.asyncio
async def test_second_transfer_in_same_transaction_is_kept(session_factory, registry, make_invoice, fake_reader):
    invoice = make_invoice(amount_raw=1000, token="USDC")
    transfers = [
        Transfer("0xaa", "0xsender", invoice.address.lower(), 500, log_index=1, contract=USDC_CONTRACT.lower()),
        Transfer("0xaa", "0xsender", invoice.address.lower(), 500, log_index=2, contract=USDC_CONTRACT.lower()),
    ]
    fake_reader.build(96, 100, transfers={96: transfers})

    await watcher_for(session_factory, registry, fake_reader).poll_once()

    assert sorted(p.log_index for p in payments(session_factory)) == [1, 2]
    assert invoice_state(session_factory, invoice.id)[:2] == (InvoiceStatus.PAID, 1000)


@pytest.mark.asyncio
async def test_token_must_match_invoice(session_factory, registry, make_invoice, fake_reader):
    """Native ETH sent to a USDC invoice (or an unknown token) is not a payment."""

    invoice = make_invoice(amount_raw=1000, token="USDC")
    fake_reader.build(
        96,
        100,
        transfers={
            96: [
                native("0xaa", invoice, 1000),
                Transfer("0xbb", "0xsender", invoice.address.lower(), 1000, log_index=0, contract="0x" + "11" * 20),
            ]
        },
    )

    cycle = await watcher_for(session_factory, registry, fake_reader).poll_once()

    assert cycle.payments_detected == 0
    assert payments(session_factory) == []


@pytest.mark.asyncio
async def test_transfers_to_expired_invoices_are_ignored(session_factory, registry, make_invoice, fake_reader):
    invoice = make_invoice(amount_raw=1000, ttl=timedelta(hours=1), now=utcnow() - timedelta(hours=2))
    fake_reader.build(96, 100, transfers={97: [native("0xaa", invoice, 1000)]})

    await watcher_for(session_factory, registry, fake_reader).poll_once()

    assert payments(session_factory) == []
    assert watermark(session_factory) == 100


@pytest.mark.asyncio
async def test_tip_failure_leaves_watermark(session_factory, registry, chain, fake_reader):
    fake_reader.build(96, 100)
    fake_reader.fail_tip = True

    cycle = await watcher_for(session_factory, registry, fake_reader).poll_once()

    assert cycle.tip is None
    assert watermark(session_factory) == 95


@pytest.mark.asyncio
async def test_block_failure_retries_same_height(session_factory, registry, make_invoice, fake_reader):
    invoice = make_invoice(amount_raw=1000)
    fake_reader.build(96, 100, transfers={98: [native("0xaa", invoice, 1000)]})
    fake_reader.fail_heights = {98}
    watcher = watcher_for(session_factory, registry, fake_reader)

    await watcher.poll_once()
    assert watermark(session_factory) == 97
    assert payments(session_factory) == []

    fake_reader.fail_heights = set()
    await watcher.poll_once()
    assert watermark(session_factory) == 100
    assert [p.block_number for p in payments(session_factory)] == [98]


@pytest.mark.asyncio
async def test_blocks_per_cycle_bound(session_factory, registry, chain, fake_reader):
    fake_reader.build(96, 110)
    watcher = ChainWatcher(session_factory, registry.load("eth-main"), fake_reader, poll_interval=0, max_blocks_per_cycle=4)

    await watcher.poll_once()
    assert watermark(session_factory) == 99
    await watcher.poll_once()
    assert watermark(session_factory) == 103


@pytest.mark.asyncio
async def test_fresh_chain_starts_at_tip(session_factory, registry, xpub, fake_reader):
    """A chain registered without a start height does not scan from genesis."""

    registry.register_chain("base", "http://base.invalid", xpub, "ETH", 18, block_lag=1)
    fake_reader.build(500, 500)

    await watcher_for(session_factory, registry, fake_reader, name="base").poll_once()

    assert watermark(session_factory, "base") == 500
    assert fake_reader.requested == [500]


@pytest.mark.asyncio
async def test_reorg_retracts_orphaned_payment(session_factory, registry, make_invoice, fake_reader):
    invoice = make_invoice(amount_raw=1000)
    fake_reader.build(96, 100, transfers={99: [native("0xcc", invoice, 1000)]})
    watcher = watcher_for(session_factory, registry, fake_reader)
    await watcher.poll_once()
    assert [p.status for p in payments(session_factory)] == [PaymentStatus.CONFIRMING]

    # Blocks 98.. are replaced; the transaction is gone from the canonical chain.
    fake_reader.build(98, 101, fork="b")
    cycle = await watcher.poll_once()

    assert cycle.reorg_depth == 3
    assert cycle.retracted == 1
    assert payments(session_factory) == []
    assert watermark(session_factory) == 101
    assert invoice_state(session_factory, invoice.id) == (InvoiceStatus.PENDING, 0, [])


@pytest.mark.asyncio
async def test_reorg_relocates_remined_payment(session_factory, registry, make_invoice, fake_reader):
    invoice = make_invoice(amount_raw=1000)
    fake_reader.build(96, 100, transfers={99: [native("0xcc", invoice, 1000)]})
    watcher = watcher_for(session_factory, registry, fake_reader)
    await watcher.poll_once()

    fake_reader.build(98, 101, fork="b", transfers={100: [native("0xcc", invoice, 1000)]})
    cycle = await watcher.poll_once()

    assert cycle.relocated == 1
    assert [(p.block_number, p.status) for p in payments(session_factory)] == [(100, PaymentStatus.CONFIRMING)]

    fake_reader.build(102, 103, fork="b")
    await watcher.poll_once()
    assert invoice_state(session_factory, invoice.id)[:2] == (InvoiceStatus.PAID, 1000)


@pytest.mark.asyncio
async def test_reorg_never_touches_confirmed_payment(session_factory, registry, make_invoice, fake_reader):
    invoice = make_invoice(amount_raw=1000)
    fake_reader.build(96, 100, transfers={96: [native("0xaa", invoice, 1000)]})
    watcher = watcher_for(session_factory, registry, fake_reader)
    await watcher.poll_once()
    assert invoice_state(session_factory, invoice.id)[:2] == (InvoiceStatus.PAID, 1000)

    fake_reader.build(96, 101, fork="b")
    cycle = await watcher.poll_once()

    assert cycle.retracted == 0
    assert [p.status for p in payments(session_factory)] == [PaymentStatus.CONFIRMED]
    assert invoice_state(session_factory, invoice.id)[:2] == (InvoiceStatus.PAID, 1000)


class UtxoUnsupported(ValueError):
    pass


@pytest.mark.asyncio
async def test_service_starts_and_stops_one_task_per_chain(session_factory, registry, chain, xpub):
    registry.register_chain("btc-main", "http://btc.invalid", xpub, "BTC", 8, family=ChainFamily.UTXO)
    readers = {}

    def reader_factory(state):
        if state.family != ChainFamily.ACCOUNT:
            raise UtxoUnsupported("no reader")
        readers[state.name] = FakeLedgerReader()
        readers[state.name].build(96, 96)
        return readers[state.name]

    service = WatcherService(session_factory, registry=registry, reader_factory=reader_factory)
    service.start_all()

    assert list(service.tasks) == ["eth-main"]
    with pytest.raises(ValueError):
        service.start("eth-main")

    await service.stop_all()
    assert service.tasks == {}
    assert readers["eth-main"].closed


@pytest.mark.asyncio
async def test_shorter_fork_rescans_heights_above_its_tip(session_factory, registry, make_invoice, fake_reader):
    """A reorg to a shorter chain rewinds the watermark so later blocks at old heights are read."""

    invoice = make_invoice(amount_raw=1000)
    fake_reader.build(96, 100)
    watcher = watcher_for(session_factory, registry, fake_reader)
    await watcher.poll_once()
    assert watermark(session_factory) == 100

    fake_reader.build(98, 98, fork="b")
    cycle = await watcher.poll_once()
    assert cycle.reorg_depth == 3
    assert watermark(session_factory) == 98

    fake_reader.build(98, 104, fork="b", transfers={99: [native("0xdd", invoice, 1000)]})
    cycle = await watcher.poll_once()

    assert cycle.payments_detected == 1
    assert watermark(session_factory) == 104
    assert [(p.block_number, p.status) for p in payments(session_factory)] == [(99, PaymentStatus.CONFIRMED)]
    assert invoice_state(session_factory, invoice.id)[:2] == (InvoiceStatus.PAID, 1000)


@pytest.mark.asyncio
async def test_failing_block_does_not_hold_back_promotion(session_factory, registry, make_invoice, fake_reader):
    """A height that keeps failing stalls ingestion but buried payments still confirm."""

    invoice = make_invoice(amount_raw=1000)
    fake_reader.build(96, 100, transfers={99: [native("0xee", invoice, 1000)]})
    watcher = watcher_for(session_factory, registry, fake_reader)
    await watcher.poll_once()
    assert [p.status for p in payments(session_factory)] == [PaymentStatus.CONFIRMING]

    fake_reader.build(101, 110)
    fake_reader.fail_heights = {101}
    cycle = await watcher.poll_once()

    assert cycle.blocks_ingested == 0
    assert cycle.confirmed == 1
    assert watermark(session_factory) == 100
    assert [p.status for p in payments(session_factory)] == [PaymentStatus.CONFIRMED]
    assert invoice_state(session_factory, invoice.id)[:2] == (InvoiceStatus.PAID, 1000)


@pytest.mark.asyncio
async def test_unverifiable_payment_is_not_promoted(session_factory, registry, make_invoice, fake_reader):
    invoice = make_invoice(amount_raw=1000)
    fake_reader.build(96, 100, transfers={99: [native("0xee", invoice, 1000)]})
    watcher = watcher_for(session_factory, registry, fake_reader)
    await watcher.poll_once()

    fake_reader.build(101, 110)
    fake_reader.fail_heights = {99}
    cycle = await watcher.poll_once()

    assert cycle.confirmed == 0
    assert watermark(session_factory) == 110
    assert [p.status for p in payments(session_factory)] == [PaymentStatus.CONFIRMING]

    fake_reader.fail_heights = set()
    cycle = await watcher.poll_once()
    assert cycle.confirmed == 1
