"""BTCPay Server Greenfield API client for invoice and payment lookups."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from .calculator import TipInfo

logger = logging.getLogger(__name__)

SETTLED_STATUS = "Settled"


class SettlementSourceError(RuntimeError):
    """The settlement source could not be reached or answered with an error."""


class SettlementDataError(ValueError):
    """The settlement source answered, but the payload is missing required data."""


@dataclass(frozen=True)
class InvoiceDetail:
    invoice_id: str
    status: str
    tip: Optional[TipInfo] = None
    order_id: Optional[str] = None

    @property
    def is_settled(self) -> bool:
        return self.status == SETTLED_STATUS


@dataclass(frozen=True)
class PaymentTotal:
    asset_code: str
    confirmed_amount: Decimal


def _parse_decimal(value: Any, field_name: str) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise SettlementDataError(f"{field_name} is missing or not numeric")
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise SettlementDataError(f"{field_name} is not numeric: {value!r}") from exc
    if not parsed.is_finite():
        raise SettlementDataError(f"{field_name} is not finite: {value!r}")
    return parsed


def _optional_decimal(value: Any, field_name: str) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return _parse_decimal(value, field_name)


def parse_pos_data(raw: Any) -> Dict[str, Any]:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise SettlementDataError("posData is not valid JSON") from exc
    if not isinstance(raw, dict):
        raise SettlementDataError("posData must be an object")
    return raw


def parse_tip(pos_data: Dict[str, Any]) -> Optional[TipInfo]:
    amount = _optional_decimal(pos_data.get("tip"), "posData.tip")
    if amount is None or amount <= 0:
        return None
    subtotal = _optional_decimal(pos_data.get("subTotal"), "posData.subTotal")
    total = _optional_decimal(pos_data.get("total"), "posData.total")
    if (subtotal is None or subtotal <= 0) and (total is None or total <= 0):
        raise SettlementDataError("posData.tip present without subTotal or total")
    tip = TipInfo(amount=amount, subtotal=subtotal, total=total)
    try:
        tip.fraction()
    except ValueError as exc:
        raise SettlementDataError(f"posData.{exc}") from exc
    return tip


def parse_invoice(payload: Any) -> InvoiceDetail:
    if not isinstance(payload, dict):
        raise SettlementDataError("invoice payload must be an object")
    invoice_id = payload.get("id")
    status = payload.get("status")
    if not isinstance(invoice_id, str) or not invoice_id:
        raise SettlementDataError("invoice payload missing id")
    if not isinstance(status, str) or not status:
        raise SettlementDataError("invoice payload missing status")
    metadata = payload.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise SettlementDataError("invoice metadata must be an object")
    pos_data = parse_pos_data(metadata.get("posData"))
    order_id = metadata.get("orderId")
    return InvoiceDetail(
        invoice_id=invoice_id,
        status=status,
        tip=parse_tip(pos_data),
        order_id=str(order_id) if order_id is not None else None,
    )


def parse_payment_totals(payload: Any) -> List[PaymentTotal]:
    if not isinstance(payload, list):
        raise SettlementDataError("payment-methods payload must be a list")
    totals: List[PaymentTotal] = []
    for entry in payload:
        if not isinstance(entry, dict):
            raise SettlementDataError("payment-method entry must be an object")
        asset_code = entry.get("cryptoCode") or entry.get("currency")
        if not isinstance(asset_code, str) or not asset_code:
            raise SettlementDataError("payment-method entry missing cryptoCode")
        payments = entry.get("payments")
        if payments is None:
            payments = []
        if not isinstance(payments, list):
            raise SettlementDataError("payment-method payments must be a list")
        confirmed = Decimal("0")
        for payment in payments:
            if not isinstance(payment, dict):
                raise SettlementDataError("payment entry must be an object")
            status = payment.get("status")
            if status is not None and status != SETTLED_STATUS:
                continue
            confirmed += _parse_decimal(payment.get("value"), "payment.value")
        totals.append(PaymentTotal(asset_code=asset_code.upper(), confirmed_amount=confirmed))
    return totals


def sum_for_asset(totals: List[PaymentTotal], asset_code: str) -> Decimal:
    wanted = asset_code.upper()
    return sum((total.confirmed_amount for total in totals if total.asset_code == wanted), Decimal("0"))


class SettlementSource:
    def __init__(
        self,
        base_uri: str,
        api_key: Optional[str],
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_uri = base_uri if base_uri.endswith("/") else base_uri + "/"
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"token {self.api_key}"
        return headers

    def _invoice_url(self, store_id: str, invoice_id: str) -> str:
        return f"{self.base_uri}api/v1/stores/{quote(store_id, safe='')}/invoices/{quote(invoice_id, safe='')}"

    async def _get_json(self, url: str) -> Any:
        try:
            response = await self._client.get(url, headers=self._headers())
        except httpx.HTTPError as exc:
            raise SettlementSourceError(f"request to {url} failed: {exc}") from exc
        if response.status_code != 200:
            raise SettlementSourceError(f"{url} returned HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise SettlementDataError(f"{url} returned invalid JSON") from exc

    async def get_invoice(self, store_id: str, invoice_id: str) -> InvoiceDetail:
        payload = await self._get_json(self._invoice_url(store_id, invoice_id))
        return parse_invoice(payload)

    async def get_payment_totals(self, store_id: str, invoice_id: str) -> List[PaymentTotal]:
        payload = await self._get_json(self._invoice_url(store_id, invoice_id) + "/payment-methods")
        return parse_payment_totals(payload)

    async def aclose(self) -> None:
        await self._client.aclose()
