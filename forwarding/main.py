"""CLI entrypoint for the payment forwarding service."""
from __future__ import annotations

import logging
import sys

from pydantic import ValidationError

from .api import create_app, run_api
from .config import ForwarderSettings, load_settings
from .ledger import InvoiceLedger
from .offramp import OffRampConnector
from .orchestrator import DisbursementOrchestrator
from .payment_store import PaymentRecordStore
from .rail import LightningRail
from .settlement_source import SettlementSource
from .stores import StoreDirectory


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s:%(lineno)d | %(message)s",
        stream=sys.stdout,
    )


def build_app(settings: ForwarderSettings):
    logger = logging.getLogger(__name__)

    stores = StoreDirectory.from_file(settings.stores_path)
    ledger = InvoiceLedger(settings.db_path)
    payments = PaymentRecordStore(settings.db_path)
    source = SettlementSource(
        base_uri=settings.btcpay_base_uri,
        api_key=settings.btcpay_api_key,
        timeout_seconds=settings.http_timeout_seconds,
    )
    rail = LightningRail(
        lnurl_base_uri=settings.lnurl_base_uri,
        lnd_rest_url=settings.lnd_rest_url,
        macaroon_hex=settings.lnd_macaroon_hex,
        tls_cert_path=settings.lnd_tls_cert_path,
        timeout_seconds=settings.http_timeout_seconds,
        pay_timeout_seconds=settings.rail_pay_timeout_seconds,
        dry_run=settings.rail_dry_run,
    )

    off_ramp = None
    if settings.offramp_enabled:
        off_ramp = OffRampConnector(
            base_uri=str(settings.offramp_base_uri),
            api_key=str(settings.offramp_api_key),
            timeout_seconds=settings.http_timeout_seconds,
        )
        logger.info("Off-ramp connector enabled at %s", settings.offramp_base_uri)
    else:
        logger.info("Off-ramp connector disabled")

    stuck = ledger.list_stuck()
    if stuck:
        logger.warning(
            "%s invoice(s) are still marked processing and need manual review: %s",
            len(stuck),
            ", ".join(f"{entry.store_id}/{entry.invoice_id}" for entry in stuck[:10]),
        )

    orchestrator = DisbursementOrchestrator(
        stores,
        ledger,
        payments,
        source,
        rail,
        off_ramp,
        asset_code=settings.rail_asset_code,
    )
    return create_app(orchestrator, ledger, payments, settings, off_ramp=off_ramp)


def main() -> None:
    configure_logging()
    logger = logging.getLogger(__name__)

    try:
        settings = load_settings()
    except ValidationError as exc:
        logger.error("Invalid configuration: %s", exc)
        sys.exit(2)

    logger.info("Starting payment forwarding service (dry-run=%s)", settings.rail_dry_run)
    app = build_app(settings)
    logger.info("HTTP API available at http://%s:%s", settings.api_host, settings.api_port)
    run_api(app, settings)


if __name__ == "__main__":
    main()
