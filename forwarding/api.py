"""HTTP API: settlement webhook intake and admin visibility into the ledger."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterator, List, Optional

import anyio
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import ForwarderSettings
from .events import OutcomeStatus, SettlementEvent
from .ledger import InvoiceLedger, LedgerError
from .offramp import OffRampConnector
from .orchestrator import DisbursementOrchestrator
from .payment_store import PaymentRecordStore

logger = logging.getLogger(__name__)

OUTCOME_STATUS_CODES = {
    OutcomeStatus.CONFLICT: status.HTTP_409_CONFLICT,
    OutcomeStatus.INCONSISTENT: status.HTTP_404_NOT_FOUND,
    OutcomeStatus.FAILED: status.HTTP_502_BAD_GATEWAY,
}


class LedgerEntryRecord(BaseModel):
    store_id: str
    invoice_id: str
    is_processing: bool
    is_processed: bool
    created_at: str
    updated_at: str


class LedgerEntryListResponse(BaseModel):
    invoices: List[LedgerEntryRecord]


class ReleaseResponse(BaseModel):
    store_id: str
    invoice_id: str
    released: bool


class PaymentRecordModel(BaseModel):
    payment_id: str
    store_id: str
    invoice_id: str
    kind: str
    timestamp: Optional[int]
    fee_retained_msat: Optional[int]
    recipient: str
    amount_msat: int
    created_at: str


class PaymentListResponse(BaseModel):
    payments: List[PaymentRecordModel]


def create_app(
    orchestrator: DisbursementOrchestrator,
    ledger: InvoiceLedger,
    payments: PaymentRecordStore,
    settings: ForwarderSettings,
    off_ramp: Optional[OffRampConnector] = None,
) -> FastAPI:
    @contextlib.asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        refresh_task: Optional[asyncio.Task] = None
        if off_ramp is not None:
            interval = float(settings.offramp_refresh_interval_seconds)
            refresh_task = asyncio.create_task(off_ramp.run_refresh_loop(interval), name="offramp-refresh")
        try:
            yield
        finally:
            if refresh_task is not None:
                refresh_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await refresh_task
            for client in (orchestrator.source, orchestrator.rail, off_ramp):
                aclose = getattr(client, "aclose", None)
                if callable(aclose):
                    await aclose()

    app = FastAPI(title="Payment Forwarding", version="1.0.0", lifespan=lifespan)

    async def require_admin(request: Request) -> None:
        token = settings.api_admin_token
        if not token:
            return
        provided = request.headers.get("X-Admin-Token")
        if provided != token:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin token required")

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(_: Request, exc: LedgerError) -> JSONResponse:
        logger.error("Ledger error: %s", exc)
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": "ledger unavailable"})

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.post("/forward")
    async def forward(event: SettlementEvent) -> JSONResponse:
        outcome = await orchestrator.process(event)
        status_code = OUTCOME_STATUS_CODES.get(outcome.status, status.HTTP_200_OK)
        logger.info(
            "Delivery %s for %s/%s -> %s (%s)",
            event.delivery_id,
            event.store_id,
            event.invoice_id,
            outcome.status.value,
            status_code,
        )
        return JSONResponse(status_code=status_code, content=outcome.as_dict())

    @app.get("/api/invoices/stuck", response_model=LedgerEntryListResponse)
    async def list_stuck_invoices(_: Any = Depends(require_admin)) -> LedgerEntryListResponse:
        entries = await anyio.to_thread.run_sync(ledger.list_stuck)
        return LedgerEntryListResponse(invoices=[LedgerEntryRecord(**entry.as_dict()) for entry in entries])

    @app.get("/api/invoices/{store_id}/{invoice_id}", response_model=LedgerEntryRecord)
    async def get_invoice(store_id: str, invoice_id: str, _: Any = Depends(require_admin)) -> LedgerEntryRecord:
        entry = await anyio.to_thread.run_sync(ledger.get, store_id, invoice_id)
        if entry is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
        return LedgerEntryRecord(**entry.as_dict())

    @app.post("/api/invoices/{store_id}/{invoice_id}/release", response_model=ReleaseResponse)
    async def release_invoice(
        store_id: str,
        invoice_id: str,
        force: bool = Query(default=False),
        _: Any = Depends(require_admin),
    ) -> ReleaseResponse:
        entry = await anyio.to_thread.run_sync(ledger.get, store_id, invoice_id)
        if entry is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
        if entry.is_processed:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Invoice already processed")
        records = await anyio.to_thread.run_sync(payments.list, store_id, invoice_id)
        if records and not force:
            kinds = ", ".join(sorted({record.kind for record in records}))
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Invoice has recorded payments ({kinds}); pass force=true to release",
            )
        released = await anyio.to_thread.run_sync(ledger.release, store_id, invoice_id)
        if released:
            logger.warning("Admin released claim on %s/%s", store_id, invoice_id)
        return ReleaseResponse(store_id=store_id, invoice_id=invoice_id, released=released)

    @app.get("/api/payments", response_model=PaymentListResponse)
    async def list_payments(
        store_id: Optional[str] = Query(default=None),
        invoice_id: Optional[str] = Query(default=None),
        _: Any = Depends(require_admin),
    ) -> PaymentListResponse:
        records = await anyio.to_thread.run_sync(payments.list, store_id, invoice_id)
        return PaymentListResponse(payments=[PaymentRecordModel(**record.as_dict()) for record in records])

    return app


def run_api(app: FastAPI, settings: ForwarderSettings) -> None:
    """Run the FastAPI app using uvicorn."""
    import uvicorn  # Imported lazily to avoid mandatory dependency in tests

    config = uvicorn.Config(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level="info",
        root_path=settings.api_root_path,
    )
    server = uvicorn.Server(config)
    server.run()


__all__ = ["create_app", "run_api"]
