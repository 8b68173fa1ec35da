from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional, Set

import anyio
import pytest

from forwarding.calculator import TipInfo
from forwarding.config import OffRampConfig, StoreConfig
from forwarding.events import OutcomeStatus, SettlementEvent
from forwarding.ledger import InvoiceLedger
from forwarding.offramp import OffRampError
from forwarding.orchestrator import DisbursementOrchestrator
from forwarding.payment_store import PaymentRecordStore
from forwarding.rail import PaymentResult, RailError
from forwarding.settlement_source import InvoiceDetail, PaymentTotal, SettlementSourceError
from forwarding.stores import StoreDirectory

TIP = TipInfo(amount=Decimal("2.00"), subtotal=Decimal("10.00"), total=Decimal("12.00"))


@pytest.fixture()
def anyio_backend():
    return "asyncio"


class FakeSource:
    def __init__(
        self,
        status: str = "Settled",
        tip: Optional[TipInfo] = None,
        btc: str = "0.00001",
        error: Optional[Exception] = None,
    ) -> None:
        self.status = status
        self.tip = tip
        self.btc = btc
        self.error = error
        self.calls = 0

    async def get_invoice(self, store_id: str, invoice_id: str) -> InvoiceDetail:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return InvoiceDetail(invoice_id=invoice_id, status=self.status, tip=self.tip)

    async def get_payment_totals(self, store_id: str, invoice_id: str) -> List[PaymentTotal]:
        return [PaymentTotal(asset_code="BTC", confirmed_amount=Decimal(self.btc))]


class FakeRail:
    def __init__(self, failing: Optional[Set[str]] = None, delay: float = 0.0) -> None:
        self.failing = failing or set()
        self.delay = delay
        self.payments: List[tuple] = []
        self.invoices_paid: List[str] = []

    async def pay_recipient(self, address: str, amount_msat: int) -> PaymentResult:
        if self.delay:
            await anyio.sleep(self.delay)
        self.payments.append((address, amount_msat))
        if address in self.failing:
            raise RailError(f"no route to {address}")
        return PaymentResult(payment_id=f"hash-{address}", confirmed=True)

    async def pay(self, payment_request: str) -> PaymentResult:
        self.invoices_paid.append(payment_request)
        if "offramp" in self.failing:
            return PaymentResult(payment_id=None, confirmed=False, error="no_route")
        return PaymentResult(payment_id="hash-offramp", confirmed=True)


class FakeOffRamp:
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.orders: List[Dict] = []

    async def create_order(self, account_token, recipient_id, amount_msat, reference_id) -> str:
        self.orders.append(
            {
                "account_token": account_token,
                "recipient_id": recipient_id,
                "amount_msat": amount_msat,
                "reference_id": reference_id,
            }
        )
        if self.error is not None:
            raise self.error
        return "lnbc1offramp"


def build_store(**overrides) -> StoreConfig:
    values = dict(
        store_id="store-1",
        payout_recipient="merchant",
        payout_fraction=Decimal("0.97"),
        tip_recipients=["alice", "bob", "carol"],
    )
    values.update(overrides)
    return StoreConfig(**values)


def build_orchestrator(tmp_path: Path, source=None, rail=None, stores=None, off_ramp=None):
    path = tmp_path / "forwarding.sqlite3"
    ledger = InvoiceLedger(path)
    payments = PaymentRecordStore(path)
    orchestrator = DisbursementOrchestrator(
        StoreDirectory(stores if stores is not None else [build_store()]),
        ledger,
        payments,
        source or FakeSource(tip=TIP),
        rail or FakeRail(),
        off_ramp,
    )
    return orchestrator, ledger, payments


def settled_event(invoice_id: str = "inv-1", **overrides) -> SettlementEvent:
    payload = {
        "storeId": "store-1",
        "invoiceId": invoice_id,
        "deliveryId": "delivery-1",
        "type": "InvoiceSettled",
        "timestamp": 1_700_000_000,
    }
    payload.update(overrides)
    return SettlementEvent.model_validate(payload)


@pytest.mark.anyio("asyncio")
async def test_settled_invoice_pays_owner_and_tips(tmp_path: Path):
    rail = FakeRail()
    orchestrator, ledger, payments = build_orchestrator(tmp_path, rail=rail)

    outcome = await orchestrator.process(settled_event())

    assert outcome.status is OutcomeStatus.PROCESSED
    assert outcome.acknowledged
    assert outcome.owner_payout_msat == 776_000
    assert outcome.fee_retained_msat == 30_000
    assert rail.payments == [
        ("merchant", 776_000),
        ("alice", 64_000),
        ("bob", 64_000),
        ("carol", 64_000),
    ]
    entry = ledger.get("store-1", "inv-1")
    assert entry.is_processed and not entry.is_processing

    records = payments.list("store-1", "inv-1")
    assert [(record.kind, record.recipient) for record in records] == [
        ("owner", "merchant"),
        ("tip", "alice"),
        ("tip", "bob"),
        ("tip", "carol"),
    ]
    assert records[0].fee_retained_msat == 30_000
    assert records[0].timestamp == 1_700_000_000


@pytest.mark.anyio("asyncio")
async def test_replayed_event_makes_no_rail_calls(tmp_path: Path):
    rail = FakeRail()
    orchestrator, _, payments = build_orchestrator(tmp_path, rail=rail)

    await orchestrator.process(settled_event())
    calls_after_first = len(rail.payments)
    replay = await orchestrator.process(settled_event())

    assert replay.status is OutcomeStatus.ALREADY_DONE
    assert replay.acknowledged
    assert len(rail.payments) == calls_after_first
    assert len(payments.list("store-1", "inv-1")) == 4


@pytest.mark.anyio("asyncio")
async def test_concurrent_deliveries_pay_once(tmp_path: Path):
    rail = FakeRail(delay=0.2)
    orchestrator, _, _ = build_orchestrator(tmp_path, rail=rail)
    outcomes = []

    async def deliver():
        outcomes.append(await orchestrator.process(settled_event()))

    async with anyio.create_task_group() as tg:
        tg.start_soon(deliver)
        tg.start_soon(deliver)

    statuses = sorted(outcome.status.value for outcome in outcomes)
    assert statuses == ["conflict", "processed"]
    assert [address for address, _ in rail.payments].count("merchant") == 1


@pytest.mark.anyio("asyncio")
async def test_partial_tip_failure_is_not_fatal(tmp_path: Path):
    rail = FakeRail(failing={"bob"})
    orchestrator, ledger, payments = build_orchestrator(tmp_path, rail=rail)

    outcome = await orchestrator.process(settled_event())

    assert outcome.status is OutcomeStatus.PROCESSED
    assert outcome.failed_tip_recipients == ["bob"]
    assert outcome.tip_payment_ids == ["hash-alice", "hash-carol"]
    assert ledger.get("store-1", "inv-1").is_processed
    tip_recipients = [record.recipient for record in payments.list("store-1", "inv-1") if record.kind == "tip"]
    assert tip_recipients == ["alice", "carol"]


@pytest.mark.anyio("asyncio")
async def test_owner_failure_leaves_claim_and_no_record(tmp_path: Path):
    rail = FakeRail(failing={"merchant"})
    orchestrator, ledger, payments = build_orchestrator(tmp_path, rail=rail)

    outcome = await orchestrator.process(settled_event())

    assert outcome.status is OutcomeStatus.FAILED
    assert not outcome.acknowledged
    entry = ledger.get("store-1", "inv-1")
    assert entry.is_processing and not entry.is_processed
    assert payments.list("store-1", "inv-1") == []
    assert rail.payments == [("merchant", 776_000)]

    redelivery = await orchestrator.process(settled_event())
    assert redelivery.status is OutcomeStatus.CONFLICT


@pytest.mark.anyio("asyncio")
async def test_manually_marked_invoice_is_processed_without_payout(tmp_path: Path):
    source = FakeSource(tip=TIP)
    rail = FakeRail()
    orchestrator, ledger, _ = build_orchestrator(tmp_path, source=source, rail=rail)

    outcome = await orchestrator.process(settled_event(manuallyMarked=True))

    assert outcome.status is OutcomeStatus.MANUALLY_MARKED
    assert rail.payments == []
    assert source.calls == 0
    assert ledger.get("store-1", "inv-1").is_processed


@pytest.mark.anyio("asyncio")
async def test_unsettled_invoice_releases_claim(tmp_path: Path):
    source = FakeSource(status="Processing")
    rail = FakeRail()
    orchestrator, ledger, _ = build_orchestrator(tmp_path, source=source, rail=rail)

    outcome = await orchestrator.process(settled_event())

    assert outcome.status is OutcomeStatus.NOT_SETTLED
    assert outcome.acknowledged
    entry = ledger.get("store-1", "inv-1")
    assert not entry.is_processing and not entry.is_processed
    assert rail.payments == []

    source.status = "Settled"
    retry = await orchestrator.process(settled_event())
    assert retry.status is OutcomeStatus.PROCESSED


@pytest.mark.anyio("asyncio")
async def test_unknown_store_is_inconsistent(tmp_path: Path):
    orchestrator, ledger, _ = build_orchestrator(tmp_path, stores=[])

    outcome = await orchestrator.process(settled_event())

    assert outcome.status is OutcomeStatus.INCONSISTENT
    assert not ledger.get("store-1", "inv-1").is_processing


@pytest.mark.anyio("asyncio")
async def test_zero_confirmed_amount_is_inconsistent(tmp_path: Path):
    rail = FakeRail()
    orchestrator, ledger, _ = build_orchestrator(tmp_path, source=FakeSource(btc="0"), rail=rail)

    outcome = await orchestrator.process(settled_event())

    assert outcome.status is OutcomeStatus.INCONSISTENT
    assert rail.payments == []
    assert not ledger.get("store-1", "inv-1").is_processing


@pytest.mark.anyio("asyncio")
async def test_source_outage_keeps_claim(tmp_path: Path):
    source = FakeSource(error=SettlementSourceError("HTTP 503"))
    orchestrator, ledger, _ = build_orchestrator(tmp_path, source=source)

    outcome = await orchestrator.process(settled_event())

    assert outcome.status is OutcomeStatus.FAILED
    assert ledger.get("store-1", "inv-1").is_processing


@pytest.mark.anyio("asyncio")
async def test_tip_ignored_for_store_without_tip_recipients(tmp_path: Path):
    rail = FakeRail()
    orchestrator, _, _ = build_orchestrator(tmp_path, rail=rail, stores=[build_store(tip_recipients=[])])

    outcome = await orchestrator.process(settled_event())

    assert outcome.owner_payout_msat == 970_000
    assert rail.payments == [("merchant", 970_000)]


@pytest.mark.anyio("asyncio")
async def test_non_settlement_events_are_ignored(tmp_path: Path):
    rail = FakeRail()
    orchestrator, ledger, _ = build_orchestrator(tmp_path, rail=rail)

    outcome = await orchestrator.process(settled_event(type="InvoiceCreated"))

    assert outcome.status is OutcomeStatus.IGNORED
    assert ledger.get("store-1", "inv-1") is None
    assert rail.payments == []


@pytest.mark.anyio("asyncio")
async def test_off_ramp_leg_reduces_owner_payout(tmp_path: Path):
    rail = FakeRail()
    off_ramp = FakeOffRamp()
    store = build_store(
        tip_recipients=[],
        off_ramp=OffRampConfig(percent=Decimal("25"), account_token="acct", recipient_id="rcpt"),
    )
    orchestrator, _, payments = build_orchestrator(tmp_path, rail=rail, stores=[store], off_ramp=off_ramp)

    outcome = await orchestrator.process(settled_event())

    assert off_ramp.orders[0]["amount_msat"] == 242_000
    assert off_ramp.orders[0]["reference_id"] == "store-1:inv-1"
    assert rail.invoices_paid == ["lnbc1offramp"]
    assert outcome.off_ramp_payment_id == "hash-offramp"
    assert rail.payments == [("merchant", 728_000)]
    kinds = [record.kind for record in payments.list("store-1", "inv-1")]
    assert kinds == ["off_ramp", "owner"]


@pytest.mark.anyio("asyncio")
async def test_off_ramp_failure_pays_full_owner_amount(tmp_path: Path):
    rail = FakeRail()
    off_ramp = FakeOffRamp(error=OffRampError("recipient has no active payment processor"))
    store = build_store(
        tip_recipients=[],
        off_ramp=OffRampConfig(percent=Decimal("25"), account_token="acct", recipient_id="rcpt"),
    )
    orchestrator, _, _ = build_orchestrator(tmp_path, rail=rail, stores=[store], off_ramp=off_ramp)

    outcome = await orchestrator.process(settled_event())

    assert outcome.status is OutcomeStatus.PROCESSED
    assert outcome.off_ramp_payment_id is None
    assert rail.invoices_paid == []
    assert rail.payments == [("merchant", 970_000)]


@pytest.mark.anyio("asyncio")
async def test_tip_above_order_total_is_inconsistent(tmp_path: Path):
    rail = FakeRail()
    source = FakeSource(tip=TipInfo(amount=Decimal("50"), subtotal=Decimal("10"), total=Decimal("12")))
    orchestrator, ledger, payments = build_orchestrator(tmp_path, source=source, rail=rail)

    outcome = await orchestrator.process(settled_event())

    assert outcome.status is OutcomeStatus.INCONSISTENT
    assert rail.payments == []
    assert payments.list("store-1", "inv-1") == []
    entry = ledger.get("store-1", "inv-1")
    assert not entry.is_processing and not entry.is_processed


@pytest.mark.anyio("asyncio")
async def test_paid_off_ramp_leg_is_not_repeated_after_release(tmp_path: Path):
    rail = FakeRail(failing={"merchant"})
    off_ramp = FakeOffRamp()
    store = build_store(
        tip_recipients=[],
        off_ramp=OffRampConfig(percent=Decimal("25"), account_token="acct", recipient_id="rcpt"),
    )
    orchestrator, ledger, payments = build_orchestrator(tmp_path, rail=rail, stores=[store], off_ramp=off_ramp)

    first = await orchestrator.process(settled_event())
    assert first.status is OutcomeStatus.FAILED
    assert [record.kind for record in payments.list("store-1", "inv-1")] == ["off_ramp"]

    assert ledger.release("store-1", "inv-1") is True
    rail.failing.clear()
    second = await orchestrator.process(settled_event())

    assert second.status is OutcomeStatus.PROCESSED
    assert second.off_ramp_payment_id == "hash-offramp"
    assert len(off_ramp.orders) == 1
    assert rail.invoices_paid == ["lnbc1offramp"]
    assert rail.payments[-1] == ("merchant", 728_000)
    assert [record.kind for record in payments.list("store-1", "inv-1")] == ["off_ramp", "owner"]


@pytest.mark.anyio("asyncio")
async def test_record_write_failure_does_not_undo_payout(tmp_path: Path):
    class RejectingStore(PaymentRecordStore):
        def append(self, record):
            raise ValueError(f"unknown payment kind {record.kind!r}")

    path = tmp_path / "forwarding.sqlite3"
    ledger = InvoiceLedger(path)
    rail = FakeRail()
    orchestrator = DisbursementOrchestrator(
        StoreDirectory([build_store(tip_recipients=[])]),
        ledger,
        RejectingStore(path),
        FakeSource(),
        rail,
    )

    outcome = await orchestrator.process(settled_event())

    assert outcome.status is OutcomeStatus.PROCESSED
    assert rail.payments == [("merchant", 970_000)]
    assert ledger.get("store-1", "inv-1").is_processed
