"""Settlement processing: claim, compute, disburse, record."""
from __future__ import annotations

import logging
import sqlite3
from decimal import Decimal
from typing import List, Optional

import anyio

from .calculator import SettlementAmounts, btc_to_msat, calculate_settlement, split_tip
from .config import StoreConfig
from .events import OutcomeStatus, SettlementEvent, SettlementOutcome
from .ledger import ClaimResult, InvoiceLedger, LedgerError
from .offramp import OffRampConnector, OffRampError
from .payment_store import PaymentRecord, PaymentRecordStore
from .rail import LightningRail, PaymentResult, RailError
from .settlement_source import (
    SettlementDataError,
    SettlementSource,
    SettlementSourceError,
    sum_for_asset,
)
from .stores import StoreDirectory

logger = logging.getLogger(__name__)


class DisbursementOrchestrator:
    """Processes one settlement event end-to-end.

    The ledger claim is the only serialization point: whichever task wins it
    disburses, every concurrent duplicate is rejected. ``process`` never raises;
    every failure is reported as a ``SettlementOutcome`` for the delivery layer.
    """

    def __init__(
        self,
        stores: StoreDirectory,
        ledger: InvoiceLedger,
        payments: PaymentRecordStore,
        source: SettlementSource,
        rail: LightningRail,
        off_ramp: Optional[OffRampConnector] = None,
        *,
        asset_code: str = "BTC",
    ) -> None:
        self.stores = stores
        self.ledger = ledger
        self.payments = payments
        self.source = source
        self.rail = rail
        self.off_ramp = off_ramp
        self.asset_code = asset_code

    async def process(self, event: SettlementEvent) -> SettlementOutcome:
        if not event.is_settlement:
            logger.debug("Ignoring %s event for %s/%s", event.type, event.store_id, event.invoice_id)
            return SettlementOutcome(OutcomeStatus.IGNORED, f"event type {event.type} ignored")

        try:
            claim = await anyio.to_thread.run_sync(self.ledger.try_claim, event.store_id, event.invoice_id)
        except LedgerError as exc:
            logger.error("Ledger claim failed for %s/%s: %s", event.store_id, event.invoice_id, exc)
            return SettlementOutcome(OutcomeStatus.FAILED, "ledger unavailable")

        if claim is ClaimResult.ALREADY_PROCESSING:
            logger.info(
                "Invoice %s/%s is already processing (delivery=%s)",
                event.store_id,
                event.invoice_id,
                event.delivery_id,
            )
            return SettlementOutcome(OutcomeStatus.CONFLICT, "invoice is currently processing")
        if claim is ClaimResult.ALREADY_PROCESSED:
            logger.info("Invoice %s/%s already processed", event.store_id, event.invoice_id)
            return SettlementOutcome(OutcomeStatus.ALREADY_DONE, "invoice already processed")

        try:
            return await self._process_claimed(event)
        except Exception as exc:
            logger.exception(
                "Unexpected failure processing %s/%s; leaving claim in place: %s",
                event.store_id,
                event.invoice_id,
                exc,
            )
            return SettlementOutcome(OutcomeStatus.FAILED, "unexpected error")

    async def _release(self, event: SettlementEvent, status: OutcomeStatus, message: str) -> SettlementOutcome:
        await anyio.to_thread.run_sync(self.ledger.release, event.store_id, event.invoice_id)
        return SettlementOutcome(status, message)

    async def _process_claimed(self, event: SettlementEvent) -> SettlementOutcome:
        store_id, invoice_id = event.store_id, event.invoice_id

        if event.manually_marked:
            # No funds moved; only suppress future disbursement for this invoice.
            await anyio.to_thread.run_sync(self.ledger.mark_processed, store_id, invoice_id)
            logger.info("Invoice %s/%s was manually marked; processed without payout", store_id, invoice_id)
            return SettlementOutcome(OutcomeStatus.MANUALLY_MARKED, "manually marked, no payout")

        store = self.stores.get(store_id)
        if store is None:
            logger.error("No store config for %s; releasing claim on %s", store_id, invoice_id)
            return await self._release(event, OutcomeStatus.INCONSISTENT, "unknown store")

        try:
            invoice = await self.source.get_invoice(store_id, invoice_id)
            if not invoice.is_settled:
                logger.info("Invoice %s/%s not settled (status=%s)", store_id, invoice_id, invoice.status)
                return await self._release(event, OutcomeStatus.NOT_SETTLED, "invoice not settled")
            totals = await self.source.get_payment_totals(store_id, invoice_id)
        except SettlementSourceError as exc:
            logger.error("Settlement source failure for %s/%s: %s", store_id, invoice_id, exc)
            return SettlementOutcome(OutcomeStatus.FAILED, "settlement source unavailable")
        except SettlementDataError as exc:
            logger.error("Malformed settlement data for %s/%s: %s", store_id, invoice_id, exc)
            return await self._release(event, OutcomeStatus.INCONSISTENT, str(exc))

        gross_msat = btc_to_msat(sum_for_asset(totals, self.asset_code))
        if gross_msat <= 0:
            logger.error("Invoice %s/%s has no confirmed %s payments", store_id, invoice_id, self.asset_code)
            return await self._release(event, OutcomeStatus.INCONSISTENT, "no confirmed payments")

        tip = invoice.tip if store.tip_recipients else None
        try:
            amounts = calculate_settlement(
                gross_msat,
                store.payout_fraction,
                tip=tip,
                off_ramp_fraction=store.off_ramp_fraction if self.off_ramp is not None else Decimal("0"),
            )
        except ValueError as exc:
            logger.error("Cannot compute payout for %s/%s: %s", store_id, invoice_id, exc)
            return await self._release(event, OutcomeStatus.INCONSISTENT, str(exc))

        logger.info(
            "Invoice %s/%s: gross=%s msat payout=%s msat fee=%s msat tip=%s msat off_ramp=%s msat",
            store_id,
            invoice_id,
            gross_msat,
            amounts.owner_payout_msat,
            amounts.fee_retained_msat,
            amounts.tip_msat,
            amounts.off_ramp_msat,
        )

        outcome = SettlementOutcome(OutcomeStatus.PROCESSED, fee_retained_msat=amounts.fee_retained_msat)

        owner_amount = amounts.owner_payout_msat
        if amounts.off_ramp_msat > 0:
            outcome.off_ramp_payment_id = await self._recorded_off_ramp(store_id, invoice_id)
            if outcome.off_ramp_payment_id is not None:
                logger.info(
                    "Off-ramp leg for %s/%s already paid (%s); not ordering again",
                    store_id,
                    invoice_id,
                    outcome.off_ramp_payment_id,
                )
            else:
                outcome.off_ramp_payment_id = await self._run_off_ramp_leg(event, store, amounts)
            if outcome.off_ramp_payment_id is not None:
                owner_amount = amounts.owner_after_off_ramp()

        owner = await self._pay(store.payout_recipient, owner_amount)
        if not owner.confirmed:
            logger.error(
                "Owner payout failed for %s/%s (%s msat to %s): %s; invoice left processing",
                store_id,
                invoice_id,
                owner_amount,
                store.payout_recipient,
                owner.error,
            )
            outcome.status = OutcomeStatus.FAILED
            outcome.message = "owner payout failed"
            return outcome

        await anyio.to_thread.run_sync(self.ledger.mark_processed, store_id, invoice_id)
        outcome.owner_payment_id = owner.payment_id
        outcome.owner_payout_msat = owner_amount
        if owner.payment_id is not None:
            await self._record(
                PaymentRecord(
                    payment_id=owner.payment_id,
                    store_id=store_id,
                    invoice_id=invoice_id,
                    kind="owner",
                    timestamp=event.timestamp,
                    fee_retained_msat=amounts.fee_retained_msat,
                    recipient=store.payout_recipient,
                    amount_msat=owner_amount,
                )
            )
        logger.info("Owner payout succeeded for %s/%s; marked processed", store_id, invoice_id)

        if amounts.tip_msat > 0:
            failed = await self._pay_tips(event, store.tip_recipients, amounts, outcome.tip_payment_ids)
            outcome.failed_tip_recipients = failed

        outcome.message = "payout complete"
        if outcome.failed_tip_recipients:
            outcome.message = f"payout complete; {len(outcome.failed_tip_recipients)} tip payment(s) failed"
        return outcome

    async def _pay(self, recipient: str, amount_msat: int) -> PaymentResult:
        try:
            return await self.rail.pay_recipient(recipient, amount_msat)
        except RailError as exc:
            return PaymentResult(payment_id=None, confirmed=False, error=str(exc))

    async def _record(self, record: PaymentRecord) -> None:
        try:
            await anyio.to_thread.run_sync(self.payments.append, record)
        except (sqlite3.Error, ValueError) as exc:
            logger.exception(
                "Failed to record %s payment %s for %s/%s: %s",
                record.kind,
                record.payment_id,
                record.store_id,
                record.invoice_id,
                exc,
            )

    async def _recorded_off_ramp(self, store_id: str, invoice_id: str) -> Optional[str]:
        records = await anyio.to_thread.run_sync(self.payments.list, store_id, invoice_id)
        for record in records:
            if record.kind == "off_ramp":
                return record.payment_id
        return None

    async def _run_off_ramp_leg(
        self,
        event: SettlementEvent,
        store: StoreConfig,
        amounts: SettlementAmounts,
    ) -> Optional[str]:
        if self.off_ramp is None or store.off_ramp is None:
            return None
        reference_id = f"{event.store_id}:{event.invoice_id}"
        try:
            payment_request = await self.off_ramp.create_order(
                store.off_ramp.account_token,
                store.off_ramp.recipient_id,
                amounts.off_ramp_msat,
                reference_id,
            )
            result = await self.rail.pay(payment_request)
        except (OffRampError, RailError) as exc:
            logger.warning("Skipping off-ramp for %s: %s", reference_id, exc)
            return None
        if not result.confirmed or result.payment_id is None:
            logger.warning("Off-ramp payment for %s not confirmed: %s", reference_id, result.error)
            return None

        await self._record(
            PaymentRecord(
                payment_id=result.payment_id,
                store_id=event.store_id,
                invoice_id=event.invoice_id,
                kind="off_ramp",
                timestamp=event.timestamp,
                fee_retained_msat=None,
                recipient=store.off_ramp.recipient_id,
                amount_msat=amounts.off_ramp_msat,
            )
        )
        logger.info("Off-ramp leg paid %s msat for %s", amounts.off_ramp_msat, reference_id)
        return result.payment_id

    async def _pay_tips(
        self,
        event: SettlementEvent,
        recipients: List[str],
        amounts: SettlementAmounts,
        paid_ids: List[str],
    ) -> List[str]:
        failed: List[str] = []
        shares = split_tip(amounts.tip_msat, len(recipients))
        for recipient, share in zip(recipients, shares):
            result = await self._pay(recipient, share)
            if not result.confirmed:
                logger.warning(
                    "Tip payment of %s msat to %s failed for %s/%s: %s",
                    share,
                    recipient,
                    event.store_id,
                    event.invoice_id,
                    result.error,
                )
                failed.append(recipient)
                continue
            if result.payment_id is None:
                continue
            paid_ids.append(result.payment_id)
            await self._record(
                PaymentRecord(
                    payment_id=result.payment_id,
                    store_id=event.store_id,
                    invoice_id=event.invoice_id,
                    kind="tip",
                    timestamp=event.timestamp,
                    fee_retained_msat=None,
                    recipient=recipient,
                    amount_msat=share,
                )
            )
        return failed
